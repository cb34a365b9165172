"""hardmem MCP Tool Schemas -- 6 tools for Hard Memory.

Every tool takes an optional ``user_id``; it defaults to HARDMEM_USER.
"""

_USER_ID = {"type": "string", "description": "Owner of the memories (defaults to HARDMEM_USER)"}

TOOL_SCHEMAS = [
    {
        "name": "hardmem_remember",
        "description": "Save a hard memory. Use when the user says 'remember this' or shares a fact worth keeping (names, places, numbers, preferences). Entity tags for proper nouns are added automatically.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Short title"},
                "content": {"type": "string", "description": "Full content, stored verbatim"},
                "tags": {"type": "array", "items": {"type": "string"}, "description": "Tags without '#'"},
                "folder_id": {"type": "string"},
                "conversation_id": {"type": "string", "description": "Conversation the memory came from"},
                "user_id": _USER_ID,
            },
            "required": ["title"],
        },
    },
    {
        "name": "hardmem_recall",
        "description": "Find hard memories matching a query (entity tags, keywords and text search). Returns full memory contents.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "limit": {"type": "integer", "default": 10},
                "user_id": _USER_ID,
            },
            "required": ["query"],
        },
    },
    {
        "name": "hardmem_context",
        "description": "Build the Hard Memory Context block for a user message, ready to append to a system prompt. Memories are included whole or not at all within an 8000-character budget.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The user's current message"},
                "max_results": {"type": "integer", "default": 10},
                "search_tags": {"type": "array", "items": {"type": "string"}},
                "include_recent": {"type": "boolean", "default": True},
                "user_id": _USER_ID,
            },
            "required": ["query"],
        },
    },
    {
        "name": "hardmem_command",
        "description": "Run a chat memory command: './remember Title | Content | #tags' or './recall query'.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "user_id": _USER_ID,
            },
            "required": ["text"],
        },
    },
    {
        "name": "hardmem_edit",
        "description": "Edit a hard memory's title, content, tags or folder.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "memory_id": {"type": "string"},
                "title": {"type": "string"},
                "content": {"type": "string"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "folder_id": {"type": "string"},
                "user_id": _USER_ID,
            },
            "required": ["memory_id"],
        },
    },
    {
        "name": "hardmem_delete",
        "description": "Delete a hard memory by ID.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "memory_id": {"type": "string"},
                "user_id": _USER_ID,
            },
            "required": ["memory_id"],
        },
    },
]
