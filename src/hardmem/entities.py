"""
hardmem entities -- candidate proper nouns and numbers pulled out of free text.

Two extractors live here:

* ``extract_entities`` is case-sensitive. It feeds the keyword matcher, which
  looks for the entity verbatim (and then lower-cased) in memory text.
* ``extract_tag_entities`` lower-cases what it finds. It feeds the entity-tag
  lookup, which compares against stored ``entity:<text>`` tags.
"""

import re
from typing import Iterable, List

from hardmem.types import Entity

# Applied in order; matches are concatenated before de-duplication. ASCII
# classes and boundaries, so "Zoë" yields "Zo".
_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b", re.ASCII)
_NAME_PATTERNS = (
    re.compile(r"\b[A-Z][a-z]{2,}\b", re.ASCII),
    re.compile(r"\b[A-Z]{2,}\b", re.ASCII),
    re.compile(r"\b\d+\b", re.ASCII),
)

# Case-sensitive: "what" survives, "What" does not.
KEYWORD_ENTITY_STOP_WORDS = frozenset(
    {"What", "The", "And", "Are", "You", "How", "Many", "Called", "Name", "My", "Is"}
)

# Unicode-aware word tokens with an optional apostrophe part (Lilou's, O'Neil).
_TOKEN_RE = re.compile(r"[^\W_]+(?:['’][^\W_]+)*")
_POSSESSIVE_SUFFIXES = ("'s", "’s")

# Compared case-insensitively against tag-entity candidates.
TAG_ENTITY_STOP_WORDS = frozenset(
    {
        "a", "about", "an", "and", "are", "can", "called", "could", "did", "do",
        "does", "for", "hello", "hey", "hi", "how", "i", "in", "is", "it", "many",
        "me", "my", "name", "of", "on", "please", "recall", "remember", "should",
        "tell", "that", "the", "there", "this", "to", "was", "we", "were", "what",
        "when", "where", "which", "who", "whom", "whose", "why", "would", "you",
        "your",
    }
)


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def extract_entities(text: str) -> List[str]:
    """Return distinct capitalized words, acronyms and integers in *text*.

    Order is first occurrence across the patterns, applied in sequence.
    """
    if not text:
        return []
    candidates = list(_CAPITALIZED_RE.findall(text))
    for pattern in _NAME_PATTERNS:
        candidates.extend(pattern.findall(text))
    return [e for e in _dedupe(candidates) if e not in KEYWORD_ENTITY_STOP_WORDS]


def extract_tag_entities(text: str) -> List[Entity]:
    """Return entities for tag lookup, lower-cased, in first-seen order.

    A token qualifies when it starts with an upper-case letter (any script)
    or is a number. Possessive ``'s`` is dropped so "Lilou's" yields "lilou".
    """
    if not text:
        return []
    found = []
    for token in _TOKEN_RE.findall(text):
        if not (token[0].isupper() or token.isdigit()):
            continue
        for suffix in _POSSESSIVE_SUFFIXES:
            if token.lower().endswith(suffix):
                token = token[: -len(suffix)]
                break
        lowered = token.lower()
        if not lowered or lowered in TAG_ENTITY_STOP_WORDS:
            continue
        if len(lowered) < 2 and not lowered.isdigit():
            continue
        found.append(lowered)
    return [Entity(t) for t in _dedupe(found)]


def entity_tags(*texts: str) -> List[str]:
    """Build ``entity:<text>`` tags for every tag entity in *texts*."""
    tags = []
    for text in texts:
        tags.extend(e.tag for e in extract_tag_entities(text))
    return _dedupe(tags)
