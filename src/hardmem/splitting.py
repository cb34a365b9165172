"""
hardmem splitting -- break an oversized memory into smaller ones.

A memory too large for the prompt budget is never truncated by the
formatter, so the way to make it usable is to split it. ``smart_split``
cuts on ``=== HEADER ===`` markers when the text has them and on paragraph
boundaries otherwise.
"""

import re
from typing import List

HEADER_RE = re.compile(r"===\s*([^=]+?)\s*===")
MIN_SECTION_SIZE = 100
MAX_SECTION_SIZE = 15000
CHUNK_SIZE = 10000


class Section:
    __slots__ = ("title", "content")

    def __init__(self, title: str, content: str):
        self.title = title
        self.content = content

    def __repr__(self) -> str:
        return f"Section({self.title!r}, {len(self.content)} chars)"

    def __eq__(self, other) -> bool:
        return isinstance(other, Section) and (other.title, other.content) == (self.title, self.content)


def split_by_paragraphs(text: str, max_size: int = CHUNK_SIZE) -> List[str]:
    """Pack paragraphs into chunks of at most *max_size* characters.

    A paragraph that is itself too large is cut on sentence boundaries
    (``". "``); a single sentence longer than *max_size* stays whole.
    """
    chunks = []
    current = ""
    for para in text.split("\n\n"):
        if len(current) + len(para) <= max_size:
            current += ("\n\n" if current else "") + para
            continue
        if current:
            chunks.append(current.strip())
            current = ""
        if len(para) <= max_size:
            current = para
            continue
        for sentence in para.split(". "):
            if current and len(current) + len(sentence) > max_size:
                chunks.append(current.strip())
                current = ""
            current += sentence + ". "
    if current.strip():
        chunks.append(current.strip())
    return chunks


def smart_split(content: str) -> List[Section]:
    matches = list(HEADER_RE.finditer(content))
    if not matches:
        return [Section(f"Section {i}", chunk) for i, chunk in enumerate(split_by_paragraphs(content), 1)]

    sections = []
    for i, match in enumerate(matches):
        title = match.group(1).strip()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        body = content[match.end():end].strip()
        if len(body) <= MIN_SECTION_SIZE:
            continue
        if len(body) > MAX_SECTION_SIZE:
            for n, chunk in enumerate(split_by_paragraphs(body), 1):
                sections.append(Section(f"{title} ({n})", chunk))
        else:
            sections.append(Section(title, body))
    return sections


def part_title(original_title: str, index: int, section: Section) -> str:
    """Title of the memory created for the 1-based *index*-th section."""
    return f"{original_title} - Part {index}: {section.title}"
