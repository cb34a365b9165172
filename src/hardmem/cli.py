"""hardmem CLI -- memory commands, export/import and server management."""

import argparse
import asyncio
import json
import logging
import os
import sys

from hardmem.types import HardMemoryError


def _user(args) -> str:
    from hardmem.bridge import default_user_id

    return args.user or default_user_id()


def _fail(message: str):
    print(message, file=sys.stderr)
    sys.exit(1)


def cmd_remember(args):
    """Save a memory: hardmem remember TITLE [CONTENT...] [-t TAG]."""
    from hardmem.bridge import remember

    result = asyncio.run(remember(_user(args), args.title, " ".join(args.content), args.tag or []))
    if not result["success"]:
        _fail(f"Error: {result['error']}")
    memory = result["memory"]
    if args.json:
        print(json.dumps(memory, indent=2))
    else:
        print(f"Remembered [{memory['id']}]: {memory['title']}")


def cmd_recall(args):
    """Search memories."""
    query_text = " ".join(args.query_text)
    if not query_text.strip():
        _fail("Usage: hardmem recall <search text>")

    from hardmem.bridge import format_recall, recall

    memories = asyncio.run(recall(_user(args), query_text, max_results=args.limit))
    if args.json:
        print(json.dumps({"results": [m.to_dict() for m in memories], "count": len(memories)}, indent=2))
    else:
        print(format_recall(query_text, memories))


def cmd_context(args):
    """Print the Hard Memory Context block for a message."""
    from hardmem.bridge import lookup
    from hardmem.formatter import budget_report, format_hard_memory_for_prompt

    query_text = " ".join(args.query_text)
    context = asyncio.run(
        lookup(_user(args), query_text, max_results=args.limit, include_recent=not args.no_recent)
    )
    if args.json:
        out = context.to_dict()
        out["budget"] = budget_report(context).to_dict()
        print(json.dumps(out, indent=2))
        return
    prompt = format_hard_memory_for_prompt(context)
    print(prompt if prompt else "No hard memories found.")


def cmd_command(args):
    """Run a ./remember or ./recall chat command."""
    from hardmem.bridge import handle_command

    result = asyncio.run(handle_command(_user(args), " ".join(args.text)))
    if not result["handled"]:
        _fail("Not a memory command. Use './remember Title | Content | #tags' or './recall query'")
    if not result["success"]:
        _fail(f"Error: {result['error']}")
    print(json.dumps(result, indent=2) if args.json else result["message"])


def cmd_split(args):
    """Split a large memory into parts."""
    from hardmem.bridge import split_memory

    try:
        parts = asyncio.run(split_memory(args.memory_id, user_id=_user(args)))
    except HardMemoryError as e:
        _fail(f"Error: {e}")
    print(f"Created {len(parts)} memories from {args.memory_id} (original kept)")
    for part in parts:
        print(f"  {part.id}  {part.title}  ({len(part.content):,} chars)")


def cmd_export(args):
    """Export memories to a JSON file."""
    from hardmem.bridge import export_memories

    try:
        print(asyncio.run(export_memories(None if args.all_users else _user(args), args.path)))
    except (HardMemoryError, OSError) as e:
        _fail(f"Error: {e}")


def cmd_import(args):
    """Import memories from an export file."""
    from hardmem.bridge import import_memories

    try:
        print(asyncio.run(import_memories(_user(args), args.path, clear_existing=args.clear)))
    except (HardMemoryError, ValueError, OSError) as e:
        _fail(f"Error: {e}")


def cmd_tags(args):
    """List all tags of a user."""
    from hardmem.bridge import get_store

    tags = asyncio.run(get_store().get_all_tags(_user(args)))
    if not args.entities:
        tags = [t for t in tags if not t.startswith("entity:")]
    if args.json:
        print(json.dumps(tags))
    else:
        for tag in tags:
            print(f"#{tag}")


def cmd_serve(args):
    """Run the MCP server (stdio mode)."""
    from hardmem.server.mcp_server import main

    asyncio.run(main())


def cmd_http(args):
    """Run the HTTP API."""
    from hardmem.server.http_server import get_or_create_api_key, run_http

    api_key = None if args.no_auth else get_or_create_api_key()
    if api_key:
        print(f"API key: {api_key}", file=sys.stderr)
    asyncio.run(run_http(args.host, args.port, api_key))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hardmem",
        description="hardmem -- Hard Memory retrieval for AI chat assistants",
    )
    parser.add_argument("--user", help="User id (default: $HARDMEM_USER or 'local')")
    parser.add_argument("--json", action="store_true", help="JSON output where supported")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- Memory commands ---
    remember_parser = subparsers.add_parser("remember", help="Save a memory")
    remember_parser.add_argument("title", help="Memory title")
    remember_parser.add_argument("content", nargs="*", help="Memory content")
    remember_parser.add_argument("-t", "--tag", action="append", help="Tag (repeatable)")

    recall_parser = subparsers.add_parser("recall", help="Search memories")
    recall_parser.add_argument("query_text", nargs="+", help="Search text")
    recall_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")

    context_parser = subparsers.add_parser("context", help="Show the prompt context for a message")
    context_parser.add_argument("query_text", nargs="*", help="User message")
    context_parser.add_argument("--limit", type=int, default=10, help="Max memories (default: 10)")
    context_parser.add_argument("--no-recent", action="store_true", help="Do not pad with recent memories")

    command_parser = subparsers.add_parser("command", help="Run a ./remember or ./recall command")
    command_parser.add_argument("text", nargs="+", help="Command text")

    split_parser = subparsers.add_parser("split", help="Split a large memory into parts")
    split_parser.add_argument("memory_id")

    export_parser = subparsers.add_parser("export", help="Export memories to a file")
    export_parser.add_argument("path")
    export_parser.add_argument("--all-users", action="store_true", help="Export every user's memories")

    import_parser = subparsers.add_parser("import", help="Import memories from an export file")
    import_parser.add_argument("path")
    import_parser.add_argument("--clear", action="store_true", help="Delete the user's memories first")

    tags_parser = subparsers.add_parser("tags", help="List tags")
    tags_parser.add_argument("--entities", action="store_true", help="Include entity: tags")

    # --- Servers ---
    subparsers.add_parser("serve", help="Run MCP server (stdio mode)")
    http_parser = subparsers.add_parser("http", help="Run the HTTP API")
    http_parser.add_argument("--host", default="127.0.0.1")
    http_parser.add_argument("--port", type=int, default=8089)
    http_parser.add_argument("--no-auth", action="store_true", help="Disable API key check")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    level = os.environ.get("HARDMEM_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, stream=sys.stderr)

    commands = {
        "remember": cmd_remember,
        "recall": cmd_recall,
        "context": cmd_context,
        "command": cmd_command,
        "split": cmd_split,
        "export": cmd_export,
        "import": cmd_import,
        "tags": cmd_tags,
        "serve": cmd_serve,
        "http": cmd_http,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
