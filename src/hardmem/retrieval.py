"""
hardmem retrieval -- the search cascade behind every Hard Memory lookup.

    context = await get_hard_memory_context("u1", "What is Lilou's name?", store=store)

FACTUAL queries (see ``hardmem.classifier``) try entity tags first. An entity
hit is treated as high confidence: at most three store search results are
added and keyword matching is skipped. Without an entity hit the keyword
matcher runs, then the store's own search fills up. SEMANTIC queries start
with the store search and fall back to entity and keyword matching.

A FACTUAL query that still found nothing gets an any-word substring pass,
and the result is padded with the user's memories in store order (newest
first) when ``include_recent`` is set.

Each stage records how many memories it contributed in
``HardMemoryContext.stages``. Store failures and the overall timeout produce
an empty context, never an exception.
"""

import asyncio
import logging
import os
import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from hardmem.classifier import is_factual_query
from hardmem.entities import extract_entities, extract_tag_entities
from hardmem.storage import MemoryStore
from hardmem.types import HardMemoryContext, Memory

logger = logging.getLogger("hardmem.retrieval")

DEFAULT_MAX_RESULTS = 10
HIGH_CONFIDENCE_SUPPLEMENT = 3

KEYWORD_STOP_WORDS = frozenset(
    {"what", "the", "and", "are", "you", "how", "many", "called", "name", "my", "is"}
)
_PUNCT_RE = re.compile(r"[^\w\s]")

STAGE_ENTITY = "entity"
STAGE_KEYWORD = "keyword"
STAGE_SEMANTIC = "semantic"
STAGE_FALLBACK = "fallback"
STAGE_RECENT = "recent"


def context_timeout() -> Optional[float]:
    """Seconds one resolution may take (HARDMEM_CONTEXT_TIMEOUT); None = unbounded."""
    value = float(os.environ.get("HARDMEM_CONTEXT_TIMEOUT", "10"))
    return value if value > 0 else None


def query_words(query: str) -> List[str]:
    """Lower-cased query words longer than one character, punctuation removed."""
    return [w for w in _PUNCT_RE.sub(" ", query.lower()).split() if len(w) > 1]


def query_keywords(query: str) -> List[str]:
    return [w for w in query_words(query) if w not in KEYWORD_STOP_WORDS]


class MemorySnapshot:
    """The user's full memory list, fetched from the store on first use only."""

    def __init__(self, store: MemoryStore, user_id: str):
        self.store = store
        self.user_id = user_id
        self._memories: Optional[List[Memory]] = None
        self.fetches = 0

    async def get(self) -> List[Memory]:
        if self._memories is None:
            self._memories = await self.store.get_all_memories(self.user_id)
            self.fetches += 1
        return self._memories


async def _all_memories(store: MemoryStore, user_id: str, snapshot: Optional[MemorySnapshot]) -> List[Memory]:
    if snapshot is not None:
        return await snapshot.get()
    return await store.get_all_memories(user_id)


async def perform_entity_search(
    user_id: str,
    query: str,
    store: MemoryStore,
    snapshot: Optional[MemorySnapshot] = None,
) -> List[Memory]:
    """Memories tagged ``entity:<e>`` for any tag entity found in *query*."""
    wanted = {e.tag for e in extract_tag_entities(query)}
    logger.debug("Entity search %r: tags %s", query, sorted(wanted))
    if not wanted:
        return []
    memories = await _all_memories(store, user_id, snapshot)
    return [m for m in memories if wanted.intersection(m.tags)]


def keyword_match(memory: Memory, query: str, entities: List[str], keywords: List[str]) -> bool:
    """First rule that fires wins; see ``perform_keyword_search``."""
    original = memory.searchable_text
    lowered = original.lower()
    if query.lower().strip() in lowered:
        return True
    if any(e in original for e in entities):
        return True
    if any(e.lower() in lowered for e in entities):
        return True
    hits = sum(1 for k in keywords if k in lowered)
    if hits >= min(2, len(keywords)):
        return True
    return len(keywords) == 1 and keywords[0] in lowered


async def perform_keyword_search(
    user_id: str,
    query: str,
    store: MemoryStore,
    snapshot: Optional[MemorySnapshot] = None,
) -> List[Memory]:
    """Scan the user's memories for the query phrase, its entities or keywords.

    A memory matches on the first of: the whole lower-cased query as a
    substring; an extracted entity verbatim; an entity case-insensitively;
    at least ``min(2, len(keywords))`` keywords; the only keyword. Matches
    keep store order.
    """
    entities = extract_entities(query)
    keywords = query_keywords(query)
    logger.debug("Keyword search %r: entities=%s keywords=%s", query, entities, keywords)
    memories = await _all_memories(store, user_id, snapshot)
    return [m for m in memories if keyword_match(m, query, entities, keywords)]


async def perform_fallback_search(
    user_id: str,
    query: str,
    store: MemoryStore,
    snapshot: Optional[MemorySnapshot] = None,
) -> List[Memory]:
    """Any query word (longer than one character) anywhere in title or content."""
    words = query_words(query)
    if not words:
        return []
    memories = await _all_memories(store, user_id, snapshot)
    return [m for m in memories if any(w in m.searchable_text.lower() for w in words)]


class _Collector:
    """Ordered, id-unique result list with per-stage accounting."""

    def __init__(self):
        self.memories: List[Memory] = []
        self.ids = set()
        self.stages: Dict[str, int] = OrderedDict()

    def __len__(self) -> int:
        return len(self.memories)

    def add(self, stage: str, candidates: Iterable[Memory], limit: Optional[int] = None) -> int:
        added = 0
        for memory in candidates:
            if limit is not None and added >= limit:
                break
            if memory.id in self.ids:
                continue
            self.ids.add(memory.id)
            self.memories.append(memory)
            added += 1
        self.stages[stage] = self.stages.get(stage, 0) + added
        logger.debug("Stage %s added %d memories (total %d)", stage, added, len(self.memories))
        return added


async def _resolve(
    store: MemoryStore,
    user_id: str,
    query: str,
    max_results: int,
    search_tags: List[str],
    include_recent: bool,
) -> HardMemoryContext:
    snapshot = MemorySnapshot(store, user_id)
    found = _Collector()
    is_factual = is_factual_query(query)

    if query.strip():
        logger.debug("Query %r classified as %s", query, "FACTUAL" if is_factual else "SEMANTIC")
        if is_factual:
            entity_results = await perform_entity_search(user_id, query, store, snapshot)
            found.add(STAGE_ENTITY, entity_results)
            if entity_results:
                semantic = await store.search_memories(query, search_tags, user_id)
                found.add(STAGE_SEMANTIC, semantic, limit=HIGH_CONFIDENCE_SUPPLEMENT)
            else:
                found.add(STAGE_KEYWORD, await perform_keyword_search(user_id, query, store, snapshot))
                if len(found) < max_results:
                    found.add(STAGE_SEMANTIC, await store.search_memories(query, search_tags, user_id))
        else:
            found.add(STAGE_SEMANTIC, await store.search_memories(query, search_tags, user_id))
            if len(found) < max_results:
                found.add(STAGE_ENTITY, await perform_entity_search(user_id, query, store, snapshot))
                found.add(STAGE_KEYWORD, await perform_keyword_search(user_id, query, store, snapshot))

        if not found.memories and is_factual:
            found.add(STAGE_FALLBACK, await perform_fallback_search(user_id, query, store, snapshot))
    else:
        logger.debug("Empty query, skipping search")

    if len(found) < max_results and include_recent:
        found.add(STAGE_RECENT, await snapshot.get(), limit=max_results - len(found))

    context = HardMemoryContext(
        found_memories=found.memories[:max_results],
        relevant_count=len(found),
        search_query=query,
        tags=search_tags,
        stages=found.stages,
        is_factual=is_factual,
    )
    logger.info(
        "Hard memory context for %s: %d of %d memories, stages %s",
        user_id, len(context.found_memories), context.relevant_count, dict(context.stages),
    )
    return context


async def get_hard_memory_context(
    user_id: str,
    query: str,
    max_results: int = DEFAULT_MAX_RESULTS,
    search_tags: Optional[List[str]] = None,
    include_recent: bool = True,
    store: Optional[MemoryStore] = None,
    timeout: Optional[float] = None,
) -> HardMemoryContext:
    """Resolve *query* into a ranked, de-duplicated list of the user's memories.

    Returns an empty context (and logs) when the store fails or the
    resolution exceeds *timeout* seconds (default HARDMEM_CONTEXT_TIMEOUT).
    """
    query = query or ""
    search_tags = list(search_tags or [])
    try:
        if store is None:
            from hardmem.bridge import get_store

            store = get_store()
        if timeout is None:
            timeout = context_timeout()
        return await asyncio.wait_for(
            _resolve(store, user_id, query, max_results, search_tags, include_recent),
            timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Hard memory lookup for %s timed out after %ss", user_id, timeout)
    except Exception as e:
        logger.error("Hard memory lookup for %s failed: %s", user_id, e, exc_info=True)
    return HardMemoryContext.empty(search_query=query, tags=search_tags)
