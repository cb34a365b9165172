"""
hardmem types -- records and errors shared by the stores and the retrieval engine.

Memory and Folder mirror the rows the stores persist. HardMemoryContext is the
transient result of one retrieval pass and is only ever read by the formatter
and the outer surfaces (HTTP, MCP, CLI).
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ENTITY_TAG_PREFIX = "entity:"
SPLIT_TAG = "split-from-large-file"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Accepts datetimes as-is, naive strings, Z-suffix and +00:00 suffix.
    Returns None when *value* is falsy.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HardMemoryError(Exception):
    """Base class for hardmem errors."""


class StoreUnavailable(HardMemoryError):
    """The memory store could not be reached or failed mid-operation."""


class MemoryNotFound(HardMemoryError, KeyError):
    """No memory (or folder) with the given id."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "not found"


class FolderCycleError(HardMemoryError, ValueError):
    """A folder move would make the folder its own ancestor."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Memory:
    """A stored hard memory. Content is the unit of retrieval and budgeting."""

    __slots__ = (
        "id",
        "title",
        "content",
        "tags",
        "folder_id",
        "user_id",
        "conversation_source",
        "created_at",
        "last_modified",
        "last_accessed",
    )

    def __init__(
        self,
        id: str,
        title: str,
        content: str = "",
        tags: Optional[List[str]] = None,
        folder_id: Optional[str] = None,
        user_id: str = "",
        conversation_source: Optional[str] = None,
        created_at: Optional[datetime] = None,
        last_modified: Optional[datetime] = None,
        last_accessed: Optional[datetime] = None,
    ):
        now = utcnow()
        self.id = id
        self.title = title
        self.content = content or ""
        self.tags = list(tags or [])
        self.folder_id = folder_id
        self.user_id = user_id
        self.conversation_source = conversation_source
        self.created_at = created_at or now
        self.last_modified = last_modified or self.created_at
        self.last_accessed = last_accessed or self.created_at

    def __repr__(self) -> str:
        return f"Memory(id={self.id!r}, title={self.title!r}, {len(self.content)} chars)"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Memory):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    @property
    def searchable_text(self) -> str:
        """Title and content joined the way every text matcher sees them."""
        return self.title + " " + self.content

    def copy(self) -> "Memory":
        return Memory(**{name: getattr(self, name) for name in self.__slots__})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "folder_id": self.folder_id,
            "user_id": self.user_id,
            "conversation_source": self.conversation_source,
            "created_at": self.created_at.isoformat(),
            "last_modified": self.last_modified.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Memory":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            tags=data.get("tags") or [],
            folder_id=data.get("folder_id"),
            user_id=data.get("user_id", ""),
            conversation_source=data.get("conversation_source"),
            created_at=parse_dt(data.get("created_at")),
            last_modified=parse_dt(data.get("last_modified")),
            last_accessed=parse_dt(data.get("last_accessed")),
        )


class Folder:
    """A node in a user's folder tree. parent_id None means top level."""

    __slots__ = ("id", "name", "parent_id", "user_id", "created_at")

    def __init__(
        self,
        id: str,
        name: str,
        parent_id: Optional[str] = None,
        user_id: str = "",
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.name = name
        self.parent_id = parent_id
        self.user_id = user_id
        self.created_at = created_at or utcnow()

    def __repr__(self) -> str:
        return f"Folder(id={self.id!r}, name={self.name!r}, parent_id={self.parent_id!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
        }


class Entity:
    """A candidate entity pulled out of free text."""

    __slots__ = ("text",)

    def __init__(self, text: str):
        self.text = text

    def __repr__(self) -> str:
        return f"Entity({self.text!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, Entity) and other.text == self.text

    def __hash__(self) -> int:
        return hash(self.text)

    @property
    def tag(self) -> str:
        return f"{ENTITY_TAG_PREFIX}{self.text.lower()}"


class HardMemoryContext:
    """Outcome of one retrieval pass.

    ``stages`` maps each cascade stage that ran to the number of memories it
    added, in the order the stages ran.
    """

    __slots__ = ("found_memories", "relevant_count", "search_query", "tags", "stages", "is_factual")

    def __init__(
        self,
        found_memories: Optional[List[Memory]] = None,
        relevant_count: int = 0,
        search_query: str = "",
        tags: Optional[List[str]] = None,
        stages: Optional[Dict[str, int]] = None,
        is_factual: bool = False,
    ):
        self.found_memories = list(found_memories or [])
        self.relevant_count = relevant_count
        self.search_query = search_query
        self.tags = list(tags or [])
        self.stages = OrderedDict(stages or {})
        self.is_factual = is_factual

    @classmethod
    def empty(cls, search_query: str = "", tags: Optional[List[str]] = None) -> "HardMemoryContext":
        return cls(search_query=search_query, tags=tags)

    def __repr__(self) -> str:
        return (
            f"HardMemoryContext({len(self.found_memories)} memories, "
            f"relevant_count={self.relevant_count}, query={self.search_query!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "found_memories": [m.to_dict() for m in self.found_memories],
            "relevant_count": self.relevant_count,
            "search_query": self.search_query,
            "tags": list(self.tags),
            "stages": dict(self.stages),
            "is_factual": self.is_factual,
        }
