"""hardmem -- Hard Memory retrieval for AI chat assistants.

Direct Python API::

    import asyncio
    from hardmem import get_context, save_memory_from_ai

    asyncio.run(save_memory_from_ai("u1", "Dog", "My dog is called Rex"))
    prompt = asyncio.run(get_context("u1", "What is my dog called?"))

For the MCP tools and the HTTP API, run ``hardmem serve`` or ``hardmem http``.
"""

__version__ = "0.3.0"

from hardmem.bridge import (
    delete_memory,
    edit_memory,
    export_memories,
    extract_memory_worthy_content,
    get_context,
    handle_command,
    import_memories,
    lookup,
    recall,
    remember,
    save_memory_from_ai,
    split_memory,
)
from hardmem.commands import parse_memory_command
from hardmem.formatter import format_hard_memory_for_prompt
from hardmem.retrieval import get_hard_memory_context
from hardmem.storage import InMemoryStore, MemoryStore, create_store
from hardmem.types import Folder, HardMemoryContext, Memory

__all__ = [
    # Engine
    "get_hard_memory_context",
    "format_hard_memory_for_prompt",
    "parse_memory_command",
    # Stores
    "MemoryStore",
    "InMemoryStore",
    "create_store",
    # Records
    "Memory",
    "Folder",
    "HardMemoryContext",
    # High-level API
    "lookup",
    "get_context",
    "recall",
    "remember",
    "save_memory_from_ai",
    "edit_memory",
    "delete_memory",
    "handle_command",
    "split_memory",
    "export_memories",
    "import_memories",
    "extract_memory_worthy_content",
    # Meta
    "__version__",
]
