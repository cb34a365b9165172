"""hardmem MCP Server -- stdio MCP server exposing the Hard Memory tools."""

import asyncio
import atexit
import logging
import os
import sys

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from hardmem.server.handlers import HANDLERS
from hardmem.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("hardmem.server")

server = Server("hardmem")


def _close_on_exit():
    """Close the memory store when the server process exits."""
    from hardmem.bridge import reset_memory

    reset_memory()


atexit.register(_close_on_exit)


@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name=schema["name"],
            description=schema["description"],
            inputSchema=schema["inputSchema"],
        )
        for schema in TOOL_SCHEMAS
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Dispatch tool call to the appropriate handler."""
    handler = HANDLERS.get(name)
    if not handler:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]

    try:
        result = await handler(arguments or {})
        content_list = result.get("content", [{}])
        text = content_list[0].get("text", str(result)) if content_list else str(result)
        return [TextContent(type="text", text=text)]
    except Exception as e:
        logger.error("Tool %s failed: %s", name, e, exc_info=True)
        return [TextContent(type="text", text=f"Error in {name}: {e}")]


async def main():
    """Entry point for the hardmem MCP server."""
    level = os.environ.get("HARDMEM_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, stream=sys.stderr)
    logger.info("Starting hardmem MCP server...")

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


if __name__ == "__main__":
    asyncio.run(main())
