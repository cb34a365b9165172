"""
hardmem commands -- chat-line memory commands.

    ./remember Title | Content | #tag1 #tag2
    ./recall search terms

The leading ``./`` may also be written ``/`` or left out. The remember form
splits on ``|`` without escaping, so content cannot itself contain a pipe.
"""

import re
from typing import Any, Dict

REMEMBER = "remember"
RECALL = "recall"
DEFAULT_TITLE = "Untitled Memory"

_PREFIXES = ("./", "/", "")
_HASHTAG_RE = re.compile(r"#(\w+)")


def _strip_command(text: str, name: str):
    """Return the argument text if *text* starts with a form of *name*, else None."""
    for prefix in _PREFIXES:
        head = f"{prefix}{name} "
        if text.startswith(head):
            return text[len(head):]
    return None


def parse_tags(text: str):
    return _HASHTAG_RE.findall(text or "")


def parse_memory_command(text: str) -> Dict[str, Any]:
    """Parse a command line into ``{"type": ..., "data": ...}``.

    >>> parse_memory_command("remember Trip | Went to the coast | #travel #summer")
    {'type': 'remember', 'data': {'title': 'Trip', 'content': 'Went to the coast', 'tags': ['travel', 'summer']}}
    >>> parse_memory_command("hello")
    {'type': None, 'data': None}
    """
    trimmed = (text or "").strip()

    args = _strip_command(trimmed, REMEMBER)
    if args is not None:
        parts = [p.strip() for p in args.split("|")]
        title = parts[0] or DEFAULT_TITLE
        content = parts[1] if len(parts) > 1 else ""
        tags = parse_tags(parts[2]) if len(parts) > 2 else []
        return {"type": REMEMBER, "data": {"title": title, "content": content, "tags": tags}}

    args = _strip_command(trimmed, RECALL)
    if args is not None:
        return {"type": RECALL, "data": {"query": args}}

    return {"type": None, "data": None}
