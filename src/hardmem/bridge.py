"""
hardmem Bridge -- High-level API for the Hard Memory system.

Used by the MCP handlers, the HTTP API and the CLI. Functions delegate to a
lazily built MemoryStore singleton (``create_store()``), chosen once per
process.

Public API:
    Context:    lookup, get_context, recall
    Core:       save_memory_from_ai, remember, edit_memory, delete_memory
    Commands:   handle_command
    Splitting:  split_memory
    Export:     export_memories, import_memories
    Suggest:    extract_memory_worthy_content
    Testing:    set_store, reset_memory
"""

import atexit
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from hardmem.commands import RECALL, REMEMBER, parse_memory_command
from hardmem.entities import entity_tags
from hardmem.formatter import format_hard_memory_for_prompt
from hardmem.retrieval import DEFAULT_MAX_RESULTS, get_hard_memory_context
from hardmem.splitting import part_title, smart_split
from hardmem.storage import MemoryStore, create_store
from hardmem.types import SPLIT_TAG, HardMemoryContext, HardMemoryError, Memory, MemoryNotFound

logger = logging.getLogger("hardmem.bridge")


def default_user_id() -> str:
    """User id for local surfaces (CLI, MCP) that have no caller identity."""
    return os.environ.get("HARDMEM_USER", "local")


# ---------------------------------------------------------------------------
# Lazy singleton
# ---------------------------------------------------------------------------

_store_instance: Optional[MemoryStore] = None
_store_lock = threading.Lock()
_atexit_registered = False


def get_store() -> MemoryStore:
    """Get or create the configured store (thread-safe)."""
    global _store_instance, _atexit_registered
    if _store_instance is not None:
        return _store_instance
    with _store_lock:
        if _store_instance is not None:
            return _store_instance
        _store_instance = create_store()
        logger.info("Using %s memory store", _store_instance.name)
        if not _atexit_registered:
            atexit.register(_close_store)
            _atexit_registered = True
    return _store_instance


def set_store(store: MemoryStore) -> None:
    """Install *store* as the singleton, closing any previous one."""
    global _store_instance
    with _store_lock:
        if _store_instance is not None and _store_instance is not store:
            _close_store()
        _store_instance = store


def _close_store():
    if _store_instance is not None:
        try:
            _store_instance.close()
        except Exception as e:
            logger.debug("Store close failed: %s", e)


def reset_memory():
    """Drop the singleton (useful for testing)."""
    global _store_instance
    _close_store()
    _store_instance = None


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


async def lookup(
    user_id: str,
    query: str,
    max_results: int = DEFAULT_MAX_RESULTS,
    search_tags: Optional[List[str]] = None,
    include_recent: bool = True,
) -> HardMemoryContext:
    return await get_hard_memory_context(
        user_id,
        query,
        max_results=max_results,
        search_tags=search_tags,
        include_recent=include_recent,
    )


async def get_context(user_id: str, query: str, **options) -> str:
    """Prompt block of the user's memories relevant to *query* ('' if none)."""
    return format_hard_memory_for_prompt(await lookup(user_id, query, **options))


async def recall(user_id: str, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> List[Memory]:
    """Memories matching *query*, without recency padding."""
    context = await lookup(user_id, query, max_results=max_results, include_recent=False)
    return context.found_memories


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------


async def save_memory_from_ai(
    user_id: str,
    title: str,
    content: str,
    tags: Optional[List[str]] = None,
    folder_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    auto_entities: bool = True,
) -> Memory:
    """Save a memory proposed during a conversation.

    With *auto_entities*, ``entity:<name>`` tags for the proper nouns and
    numbers in title and content are added so entity search can find it.
    Errors are logged and re-raised.
    """
    tags = list(tags or [])
    if auto_entities:
        tags.extend(t for t in entity_tags(title, content) if t not in tags)
    try:
        memory = await get_store().save_memory(
            {
                "title": title,
                "content": content,
                "tags": tags,
                "folder_id": folder_id,
                "conversation_source": conversation_id,
                "user_id": user_id,
            }
        )
    except Exception as e:
        logger.error("Saving memory for %s failed: %s", user_id, e)
        raise
    logger.info("Saved memory %s (%d chars, %d tags)", memory.id, len(memory.content), len(memory.tags))
    return memory


async def remember(user_id: str, title: str, content: str = "", tags: Optional[List[str]] = None) -> Dict[str, Any]:
    """User-facing 'remember this'."""
    try:
        memory = await save_memory_from_ai(user_id, title, content, tags=tags)
    except (ValueError, HardMemoryError) as e:
        return {"success": False, "error": str(e)}
    return {"success": True, "memory": memory.to_dict()}


async def _owned(memory_id: str, user_id: Optional[str]) -> Optional[Memory]:
    """The memory, or None when missing or owned by someone other than *user_id*."""
    memory = await get_store().get_memory(memory_id)
    if memory is None or (user_id is not None and memory.user_id != user_id):
        return None
    return memory


async def delete_memory(memory_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Delete a memory by id, optionally only if *user_id* owns it."""
    try:
        if await _owned(memory_id, user_id) is None:
            return {"success": False, "error": f"Memory {memory_id} not found"}
        await get_store().delete_memory(memory_id)
    except HardMemoryError as e:
        logger.error("Failed to delete memory %s: %s", memory_id, e)
        return {"success": False, "error": str(e)}
    logger.info("Deleted memory %s", memory_id)
    return {"success": True, "deleted_id": memory_id}


async def edit_memory(memory_id: str, patch: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    """Update title, content, tags or folder of a memory."""
    try:
        old = await _owned(memory_id, user_id)
        if old is None:
            return {"success": False, "error": f"Memory {memory_id} not found"}
        if "title" in patch and not (patch["title"] or "").strip():
            return {"success": False, "error": "title must be a non-empty string"}
        memory = await get_store().update_memory(memory_id, patch)
    except (ValueError, HardMemoryError) as e:
        logger.error("Failed to edit memory %s: %s", memory_id, e)
        return {"success": False, "error": str(e)}
    logger.info("Edited memory %s", memory_id)
    return {
        "success": True,
        "id": memory_id,
        "old_content_preview": old.content[:80],
        "new_content_preview": memory.content[:80],
        "memory": memory.to_dict(),
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def format_recall(query: str, memories: List[Memory]) -> str:
    if not memories:
        return f'No memories found for "{query}".'
    lines = [f'Found {len(memories)} memories for "{query}":']
    for i, memory in enumerate(memories, 1):
        tags = f" ({' '.join('#' + t for t in memory.tags)})" if memory.tags else ""
        lines.append(f"\n**{i}. {memory.title}**{tags}\n{memory.content}")
    return "\n".join(lines)


async def handle_command(user_id: str, text: str) -> Dict[str, Any]:
    """Run a ``remember``/``recall`` chat command; ``{"handled": False}`` otherwise."""
    command = parse_memory_command(text)
    kind, data = command["type"], command["data"]
    if kind is None:
        return {"handled": False}

    if kind == REMEMBER:
        result = await remember(user_id, data["title"], data["content"], data["tags"])
        if result["success"]:
            result["message"] = f'Saved memory "{result["memory"]["title"]}".'
        return {"handled": True, "type": REMEMBER, **result}

    memories = await recall(user_id, data["query"])
    return {
        "handled": True,
        "type": RECALL,
        "success": True,
        "query": data["query"],
        "memories": [m.to_dict() for m in memories],
        "message": format_recall(data["query"], memories),
    }


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------


async def split_memory(memory_id: str, user_id: Optional[str] = None) -> List[Memory]:
    """Save each section of a large memory as a new memory; the original stays."""
    original = await _owned(memory_id, user_id)
    if original is None:
        raise MemoryNotFound(f"Memory {memory_id} not found")

    db = get_store()
    tags = original.tags + ([SPLIT_TAG] if SPLIT_TAG not in original.tags else [])
    parts = []
    for i, section in enumerate(smart_split(original.content), 1):
        parts.append(
            await db.save_memory(
                {
                    "title": part_title(original.title, i, section),
                    "content": section.content,
                    "tags": tags,
                    "folder_id": original.folder_id,
                    "user_id": original.user_id,
                }
            )
        )
    logger.info("Split memory %s into %d parts", memory_id, len(parts))
    return parts


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _exporting_store():
    db = get_store()
    if not hasattr(db, "export_to_file"):
        raise HardMemoryError(f"The {db.name} store does not support export/import")
    return db


async def export_memories(user_id: Optional[str], filepath: str) -> str:
    """Export one user's memories (all users when *user_id* is None)."""
    result = await _exporting_store().export_to_file(Path(filepath), user_id=user_id)

    output = "# Hard Memory Export Complete\n\n"
    output += f"**File:** {result['filepath']}\n"
    output += f"**Memories:** {result['memory_count']}\n"
    output += f"**Folders:** {result['folder_count']}\n"
    output += f"**Encrypted:** {'Yes' if result['encrypted'] else 'No'}\n"
    output += f"**Size:** {result['file_size_kb']:.1f} KB\n"
    output += f"**Exported:** {result['exported_at']}\n"
    return output


async def import_memories(user_id: Optional[str], filepath: str, clear_existing: bool = False) -> str:
    result = await _exporting_store().import_from_file(
        Path(filepath), user_id=user_id, clear_existing=clear_existing
    )

    output = "# Hard Memory Import Complete\n\n"
    output += f"**File:** {result['filepath']}\n"
    output += f"**Memories Imported:** {result['memory_count']}\n"
    output += f"**Already Present:** {result['skipped']}\n"
    output += f"**Cleared Existing:** {'Yes' if clear_existing and user_id else 'No'}\n"
    return output


# ---------------------------------------------------------------------------
# Save suggestions
# ---------------------------------------------------------------------------

_MEMORY_WORTHY_PATTERNS = [
    re.compile(r"remember|save|note|important|keep track|don't forget"),
    re.compile(r"my name is|i am|i work as|i live in|my goal is"),
    re.compile(r"project|task|deadline|meeting|appointment"),
    re.compile(r"learned|discovered|found out|realized"),
    re.compile(r"recipe|instructions|steps|how to"),
    re.compile(r"contact|email|phone|address"),
]
_HASHTAG_RE = re.compile(r"#(\w+)")


def extract_memory_worthy_content(user_message: str, ai_response: str) -> Dict[str, Any]:
    """Decide whether an exchange is worth suggesting as a memory."""
    combined = f"{user_message} {ai_response}".lower()
    if not any(p.search(combined) for p in _MEMORY_WORTHY_PATTERNS):
        return {"should_suggest": False}

    sentences = [s for s in user_message.split(".") if len(s.strip()) > 10]
    title = sentences[0].strip()[:50] if sentences else "Important Information"
    tags = _HASHTAG_RE.findall(combined) or ["conversation"]
    return {
        "should_suggest": True,
        "suggested_title": title,
        "suggested_content": f"User: {user_message}\n\nAssistant: {ai_response}",
        "suggested_tags": tags,
    }
