"""
hardmem MCP Handlers -- Maps tool names to async handler functions.

Each handler delegates to hardmem.bridge and returns an MCP-compatible
response dict.
"""

import logging
from typing import Any, Dict

from hardmem import bridge
from hardmem.formatter import format_hard_memory_for_prompt
from hardmem.types import HardMemoryError

logger = logging.getLogger("hardmem.server.handlers")


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 100) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _user(arguments: dict) -> str:
    return (arguments.get("user_id") or "").strip() or bridge.default_user_id()


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


# ============================================================================
# Handlers
# ============================================================================


async def handle_hardmem_remember(arguments: dict) -> dict:
    """Save a memory with entity tags."""
    title = (arguments.get("title") or "").strip()
    if not title:
        return mcp_error("title is required")

    try:
        memory = await bridge.save_memory_from_ai(
            _user(arguments),
            title,
            arguments.get("content") or "",
            tags=arguments.get("tags") or [],
            folder_id=arguments.get("folder_id"),
            conversation_id=arguments.get("conversation_id"),
        )
    except ValueError as e:
        return mcp_error(str(e))
    except HardMemoryError as e:
        logger.error("hardmem_remember failed: %s", e)
        return mcp_error(f"Failed to save memory: {e}")
    return mcp_response(f"Saved memory `{memory.id}`: {memory.title}")


async def handle_hardmem_recall(arguments: dict) -> dict:
    query = (arguments.get("query") or "").strip()
    if not query:
        return mcp_error("query is required")

    limit = _clamp_int(arguments.get("limit", 10), default=10)
    memories = await bridge.recall(_user(arguments), query, max_results=limit)
    return mcp_response(bridge.format_recall(query, memories))


async def handle_hardmem_context(arguments: dict) -> dict:
    """Prompt block for the user's current message."""
    query = arguments.get("query") or ""
    context = await bridge.lookup(
        _user(arguments),
        query,
        max_results=_clamp_int(arguments.get("max_results", 10), default=10),
        search_tags=arguments.get("search_tags") or [],
        include_recent=bool(arguments.get("include_recent", True)),
    )
    prompt = format_hard_memory_for_prompt(context)
    return mcp_response(prompt or "No hard memories found.")


async def handle_hardmem_command(arguments: dict) -> dict:
    text = (arguments.get("text") or "").strip()
    if not text:
        return mcp_error("text is required")

    result = await bridge.handle_command(_user(arguments), text)
    if not result["handled"]:
        return mcp_error("Not a memory command. Use './remember Title | Content | #tags' or './recall query'")
    if not result["success"]:
        return mcp_error(result["error"])
    return mcp_response(result["message"])


async def handle_hardmem_edit(arguments: dict) -> dict:
    """Edit fields of a specific memory."""
    memory_id = (arguments.get("memory_id") or "").strip()
    if not memory_id:
        return mcp_error("memory_id is required")
    patch = {k: arguments[k] for k in ("title", "content", "tags", "folder_id") if k in arguments}
    if not patch:
        return mcp_error("nothing to edit: give title, content, tags or folder_id")

    result = await bridge.edit_memory(memory_id, patch, user_id=_user(arguments))
    if not result["success"]:
        return mcp_error(result["error"])
    return mcp_response(f"Edited memory `{memory_id}`")


async def handle_hardmem_delete(arguments: dict) -> dict:
    """Delete a specific memory by its ID."""
    memory_id = (arguments.get("memory_id") or "").strip()
    if not memory_id:
        return mcp_error("memory_id is required")

    result = await bridge.delete_memory(memory_id, user_id=_user(arguments))
    if not result["success"]:
        return mcp_error(result["error"])
    return mcp_response(f"Deleted memory `{memory_id}`")


HANDLERS: Dict[str, Any] = {
    "hardmem_remember": handle_hardmem_remember,
    "hardmem_recall": handle_hardmem_recall,
    "hardmem_context": handle_hardmem_context,
    "hardmem_command": handle_hardmem_command,
    "hardmem_edit": handle_hardmem_edit,
    "hardmem_delete": handle_hardmem_delete,
}
