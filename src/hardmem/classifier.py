"""
hardmem classifier -- FACTUAL vs SEMANTIC query routing.

FACTUAL queries go to entity/keyword search first, SEMANTIC ones to the
store's own text search first. The capitalized-word and digit checks make
most non-trivial queries FACTUAL, so proper nouns and numbers stay on the
exact-match path.
"""

import re
from enum import Enum

_FACTUAL_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE | re.ASCII)
    for p in (
        r"what.*name",
        r"what.*called",
        r"name of",
        r"called\?",
        r"how many",
        r"what.*brand",
        r"which.*university",
        r"what.*city",
        r"what.*number",
        r"specific",
        r"who.*is",
        r"where.*from",
        r"what.*type",
        r"\bdog\b",
        r"\bcat\b",
        r"\bpet\b",
        r"\buniversity\b",
        r"\bcity\b",
        r"\bbrand\b",
        r"\bcompany\b",
    )
)

_PROPER_NOUN_RE = re.compile(r"\b[A-Z][a-z]+\b", re.ASCII)
_DIGIT_RE = re.compile(r"\d", re.ASCII)


class QueryKind(Enum):
    """Which search path a query takes first."""

    FACTUAL = "factual"
    SEMANTIC = "semantic"


def is_factual_query(query: str) -> bool:
    """True if *query* asks for a specific fact, names something, or has a number."""
    if not query:
        return False
    if any(p.search(query) for p in _FACTUAL_PATTERNS):
        return True
    return bool(_PROPER_NOUN_RE.search(query) or _DIGIT_RE.search(query))


def classify_query(query: str) -> QueryKind:
    return QueryKind.FACTUAL if is_factual_query(query) else QueryKind.SEMANTIC
