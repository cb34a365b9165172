"""
hardmem storage -- the Memory Store Adapter the retrieval engine consumes.

MemoryStore is the one storage interface; a backend is picked once, at
composition time, by ``create_store()``:

    store = create_store()            # HARDMEM_BACKEND, default "sqlite"
    store = create_store("memory")    # process-local, nothing on disk

All operations are coroutines. The retrieval engine only ever calls
``get_all_memories`` and ``search_memories``; the rest serve the write
surfaces (bridge, HTTP, MCP, CLI).
"""

import abc
import itertools
import logging
import os
import re
import uuid
from typing import Any, Dict, List, Optional

from hardmem.types import (
    Folder,
    FolderCycleError,
    Memory,
    MemoryNotFound,
    parse_dt,
    utcnow,
)

logger = logging.getLogger("hardmem.storage")

DEFAULT_FOLDERS = ("Projects", "People", "Facts", "References")

_MEMORY_PATCH_FIELDS = ("title", "content", "tags", "folder_id", "conversation_source")
_TERM_RE = re.compile(r"\w+")

# Words too common to narrow a search. Every remaining term must match, so
# leaving these in makes natural-language queries match nothing.
SEARCH_STOP_WORDS = frozenset(
    """
    a about an and any are as at be been but by called can could did do does
    for from had has have he how i in is it its know many me my name of on
    or our remember she tell that the their them there these they this those
    to was we were what when where which who whom why will with would you
    your
    """.split()
)


def new_memory_id() -> str:
    return f"mem-{uuid.uuid4().hex[:12]}"


def new_folder_id() -> str:
    return f"fld-{uuid.uuid4().hex[:12]}"


def max_content_size() -> int:
    return int(os.environ.get("HARDMEM_MAX_CONTENT_SIZE", "1000000"))


def search_terms(query: str) -> List[str]:
    """Lower-cased word terms of a search query (every term must match).

    Stop words and single characters are dropped, so "what do I know
    about Rex" searches for ``["rex"]``.
    """
    return [
        t for t in _TERM_RE.findall((query or "").lower())
        if len(t) > 1 and t not in SEARCH_STOP_WORDS
    ]


def matches_search(memory: Memory, terms: List[str], tags: List[str]) -> bool:
    """Store-side search predicate shared by the backends without an index."""
    if tags and not set(tags) & set(memory.tags):
        return False
    if not terms:
        return bool(tags)
    text = memory.searchable_text.lower()
    return all(t in text for t in terms)


def _check_content_size(content: str) -> None:
    limit = max_content_size()
    if len(content) > limit:
        raise ValueError(
            f"Content size ({len(content):,} chars) exceeds limit ({limit:,} chars). "
            "Override with HARDMEM_MAX_CONTENT_SIZE env var."
        )


def validate_memory_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a save payload. Raises ValueError on a bad title or size."""
    title = (data.get("title") or "").strip()
    if not title:
        raise ValueError("title must be a non-empty string")
    content = data.get("content") or ""
    _check_content_size(content)
    if not data.get("user_id"):
        raise ValueError("user_id is required")
    return {
        "title": title,
        "content": content,
        "tags": list(data.get("tags") or []),
        "folder_id": data.get("folder_id"),
        "user_id": data["user_id"],
        "conversation_source": data.get("conversation_source"),
    }


def validate_memory_patch(patch: Dict[str, Any]) -> None:
    """Apply the save-time title and size rules to an update."""
    if "title" in patch and not (patch["title"] or "").strip():
        raise ValueError("title must be a non-empty string")
    if "content" in patch:
        _check_content_size(patch["content"] or "")


class MemoryStore(abc.ABC):
    """Storage collaborator of the retrieval engine."""

    name = "abstract"

    # -- memories ------------------------------------------------------

    @abc.abstractmethod
    async def get_all_memories(self, user_id: str) -> List[Memory]:
        """All memories of *user_id*, newest first."""

    @abc.abstractmethod
    async def search_memories(self, query: str, tags: List[str], user_id: str) -> List[Memory]:
        """Text search: every query term in title or content, optional tag overlap."""

    @abc.abstractmethod
    async def save_memory(self, data: Dict[str, Any]) -> Memory:
        """Create a memory; id and timestamps are assigned here."""

    @abc.abstractmethod
    async def update_memory(self, memory_id: str, patch: Dict[str, Any]) -> Memory:
        """Apply *patch*; raises MemoryNotFound for unknown ids."""

    @abc.abstractmethod
    async def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory. Returns False when it did not exist."""

    @abc.abstractmethod
    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        """Fetch one memory and mark it accessed."""

    @abc.abstractmethod
    async def get_memories_in_folder(self, folder_id: Optional[str], user_id: str) -> List[Memory]:
        """Memories directly inside *folder_id* (None = root), newest first."""

    # -- folders -------------------------------------------------------

    @abc.abstractmethod
    async def save_folder(self, data: Dict[str, Any]) -> Folder:
        """Create a folder."""

    @abc.abstractmethod
    async def update_folder(self, folder_id: str, patch: Dict[str, Any]) -> Folder:
        """Rename or move a folder; moves that create a cycle raise FolderCycleError."""

    @abc.abstractmethod
    async def get_folder(self, folder_id: str) -> Optional[Folder]:
        """Fetch one folder."""

    @abc.abstractmethod
    async def get_all_folders(self, user_id: str) -> List[Folder]:
        """All folders of *user_id*, oldest first."""

    @abc.abstractmethod
    async def delete_folder(self, folder_id: str, user_id: str) -> None:
        """Delete a folder, re-homing its memories (root) and children (its parent)."""

    async def get_child_folders(self, parent_id: Optional[str], user_id: str) -> List[Folder]:
        return [f for f in await self.get_all_folders(user_id) if f.parent_id == parent_id]

    async def create_default_folders(self, user_id: str) -> List[Folder]:
        created = []
        for name in DEFAULT_FOLDERS:
            try:
                created.append(await self.save_folder({"name": name, "parent_id": None, "user_id": user_id}))
            except Exception as e:
                logger.error("Creating default folder %r failed: %s", name, e)
        return created

    async def get_all_tags(self, user_id: str) -> List[str]:
        tags = set()
        for memory in await self.get_all_memories(user_id):
            tags.update(memory.tags)
        return sorted(tags)

    async def _check_folder_move(self, folder_id: str, new_parent_id: Optional[str]) -> None:
        """Raise FolderCycleError if *new_parent_id* is *folder_id* or below it."""
        seen = set()
        current = new_parent_id
        while current is not None:
            if current == folder_id:
                raise FolderCycleError(f"Folder {folder_id} cannot be moved under itself")
            if current in seen:
                break
            seen.add(current)
            parent = await self.get_folder(current)
            current = parent.parent_id if parent else None

    def close(self) -> None:
        """Release backend resources."""


class InMemoryStore(MemoryStore):
    """Process-local store. Used when nothing should touch disk (tests, demos)."""

    name = "memory"

    def __init__(self):
        self._memories: Dict[str, Memory] = {}
        self._folders: Dict[str, Folder] = {}
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()

    def _sorted(self, memories) -> List[Memory]:
        ordered = sorted(memories, key=lambda m: (m.created_at, self._order.get(m.id, 0)), reverse=True)
        return [m.copy() for m in ordered]

    def _require(self, memory_id: str) -> Memory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFound(f"Memory {memory_id} not found")
        return memory

    async def get_all_memories(self, user_id: str) -> List[Memory]:
        return self._sorted(m for m in self._memories.values() if m.user_id == user_id)

    async def search_memories(self, query: str, tags: List[str], user_id: str) -> List[Memory]:
        terms = search_terms(query)
        tags = list(tags or [])
        return self._sorted(
            m for m in self._memories.values() if m.user_id == user_id and matches_search(m, terms, tags)
        )

    async def save_memory(self, data: Dict[str, Any]) -> Memory:
        fields = validate_memory_data(data)
        memory = Memory(id=data.get("id") or new_memory_id(), created_at=parse_dt(data.get("created_at")),
                        **fields)
        self._memories[memory.id] = memory
        self._order[memory.id] = next(self._seq)
        return memory.copy()

    async def update_memory(self, memory_id: str, patch: Dict[str, Any]) -> Memory:
        validate_memory_patch(patch)
        memory = self._require(memory_id)
        for field in _MEMORY_PATCH_FIELDS:
            if field in patch:
                value = patch[field]
                setattr(memory, field, list(value or []) if field == "tags" else value)
        now = utcnow()
        memory.last_modified = now
        memory.last_accessed = now
        return memory.copy()

    async def delete_memory(self, memory_id: str) -> bool:
        self._order.pop(memory_id, None)
        return self._memories.pop(memory_id, None) is not None

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        memory = self._memories.get(memory_id)
        if memory is None:
            return None
        memory.last_accessed = utcnow()
        return memory.copy()

    async def get_memories_in_folder(self, folder_id: Optional[str], user_id: str) -> List[Memory]:
        return self._sorted(
            m for m in self._memories.values() if m.user_id == user_id and m.folder_id == folder_id
        )

    async def save_folder(self, data: Dict[str, Any]) -> Folder:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValueError("folder name must be a non-empty string")
        folder = Folder(
            id=new_folder_id(),
            name=name,
            parent_id=data.get("parent_id"),
            user_id=data["user_id"],
        )
        self._folders[folder.id] = folder
        return folder

    async def update_folder(self, folder_id: str, patch: Dict[str, Any]) -> Folder:
        folder = self._folders.get(folder_id)
        if folder is None:
            raise MemoryNotFound(f"Folder {folder_id} not found")
        if "parent_id" in patch:
            await self._check_folder_move(folder_id, patch["parent_id"])
            folder.parent_id = patch["parent_id"]
        if patch.get("name"):
            folder.name = patch["name"]
        return folder

    async def get_folder(self, folder_id: str) -> Optional[Folder]:
        return self._folders.get(folder_id)

    async def get_all_folders(self, user_id: str) -> List[Folder]:
        return sorted((f for f in self._folders.values() if f.user_id == user_id), key=lambda f: f.created_at)

    async def delete_folder(self, folder_id: str, user_id: str) -> None:
        folder = self._folders.get(folder_id)
        for memory in self._memories.values():
            if memory.folder_id == folder_id and memory.user_id == user_id:
                memory.folder_id = None
        if folder is not None:
            for child in self._folders.values():
                if child.parent_id == folder_id and child.user_id == user_id:
                    child.parent_id = folder.parent_id
        self._folders.pop(folder_id, None)


def create_store(backend: Optional[str] = None, **kwargs) -> MemoryStore:
    """Build the configured backend. Called once per process by the bridge."""
    backend = (backend or os.environ.get("HARDMEM_BACKEND", "sqlite")).strip().lower()
    if backend == "sqlite":
        from hardmem.sqlite_store import SQLiteStore

        return SQLiteStore(**kwargs)
    if backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown HARDMEM_BACKEND {backend!r} (expected 'sqlite' or 'memory')")
