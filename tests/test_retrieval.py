"""Tests for hardmem.retrieval -- the search cascade."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from hardmem.retrieval import (
    get_hard_memory_context,
    keyword_match,
    perform_entity_search,
    perform_fallback_search,
    perform_keyword_search,
    query_keywords,
)
from hardmem.storage import InMemoryStore
from hardmem.types import Memory, StoreUnavailable


def _ids(memories):
    return [m.id for m in memories]


# ============================================================================
# Entity search
# ============================================================================


class TestEntitySearch:
    @pytest.mark.asyncio
    async def test_possessive_name_matches_entity_tag(self, memory_store, seed):
        lilou = await seed("Cat", "Our cat", tags=["entity:lilou"])
        await seed("Other", "Unrelated")
        found = await perform_entity_search("u1", "What is Lilou's name?", memory_store)
        assert _ids(found) == [lilou.id]

    @pytest.mark.asyncio
    async def test_query_without_entity_finds_nothing(self, memory_store, seed):
        await seed("Cat", "Our cat", tags=["entity:lilou"])
        assert await perform_entity_search("u1", "what is the name", memory_store) == []

    @pytest.mark.asyncio
    async def test_only_tags_count_not_text(self, memory_store, seed):
        await seed("Lilou", "Lilou is mentioned but not tagged")
        assert await perform_entity_search("u1", "Lilou", memory_store) == []


# ============================================================================
# Keyword search
# ============================================================================


class TestKeywordSearch:
    @pytest.mark.asyncio
    async def test_exact_phrase(self, memory_store, seed):
        await seed("Groceries", "milk and eggs")
        trip = await seed("Trip Notes", "We went to Kazerun last summer")
        found = await perform_keyword_search("u1", "Kazerun last summer", memory_store)
        assert _ids(found) == [trip.id]

    @pytest.mark.asyncio
    async def test_keeps_store_order(self, memory_store, seed):
        older = await seed("Old", "the coast trip")
        newer = await seed("New", "a trip to the coast")
        found = await perform_keyword_search("u1", "coast trip", memory_store)
        assert _ids(found) == [newer.id, older.id]

    def test_keywords_drop_stop_words_and_punctuation(self):
        assert query_keywords("What is my dog's name?") == ["dog"]

    def test_entity_case_sensitive_then_insensitive(self):
        memory = Memory(id="m1", title="Pets", content="our dog rex sleeps")
        # "Rex" is an entity; only the case-insensitive rule matches
        assert keyword_match(memory, "Rex?", ["Rex"], ["rex"]) is True

    def test_two_keywords_required_when_several(self):
        memory = Memory(id="m1", title="Garden", content="tomatoes grow in summer")
        assert keyword_match(memory, "tomatoes winter plans", [], ["tomatoes", "winter", "plans"]) is False
        assert keyword_match(memory, "summer tomatoes plans", [], ["summer", "tomatoes", "plans"]) is True

    def test_single_keyword(self):
        memory = Memory(id="m1", title="Garden", content="tomatoes grow")
        assert keyword_match(memory, "the tomatoes", [], ["tomatoes"]) is True


# ============================================================================
# Cascade
# ============================================================================


class TestCascade:
    @pytest.mark.asyncio
    async def test_empty_query_uses_recency_only(self, memory_store, seed):
        a = await seed("A", "first")
        b = await seed("B", "second")
        c = await seed("C", "third")
        ctx = await get_hard_memory_context("u1", "", store=memory_store)
        assert _ids(ctx.found_memories) == [c.id, b.id, a.id]
        assert ctx.relevant_count == 3
        assert dict(ctx.stages) == {"recent": 3}

    @pytest.mark.asyncio
    async def test_whitespace_query_is_empty(self, memory_store, seed):
        await seed("A", "first")
        ctx = await get_hard_memory_context("u1", "   ", include_recent=False, store=memory_store)
        assert ctx.found_memories == []
        assert ctx.relevant_count == 0

    @pytest.mark.asyncio
    async def test_entity_hit_skips_keyword_search(self, memory_store, seed):
        tagged = await seed("Profile", "A friend from school", tags=["entity:yexen"])
        await seed("Notes", "the word yexen appears here")
        with patch("hardmem.retrieval.perform_keyword_search", new_callable=AsyncMock) as spy:
            ctx = await get_hard_memory_context("u1", "Who is Yexen?", store=memory_store)
        spy.assert_not_called()
        assert ctx.found_memories[0].id == tagged.id
        assert ctx.stages["entity"] == 1
        assert "keyword" not in ctx.stages

    @pytest.mark.asyncio
    async def test_entity_hit_adds_at_most_three_search_results(self, memory_store, seed):
        await seed("Dog", "good boy", tags=["entity:rex"])
        for i in range(5):
            await seed(f"Walk {i}", "walked rex today")
        ctx = await get_hard_memory_context("u1", "Rex", include_recent=False, store=memory_store)
        assert len(ctx.found_memories) == 4
        assert dict(ctx.stages) == {"entity": 1, "semantic": 3}

    @pytest.mark.asyncio
    async def test_factual_without_entity_runs_keyword_then_semantic(self, memory_store, seed):
        pets = await seed("Pets", "Our dog is a beagle")
        ctx = await get_hard_memory_context(
            "u1", "what is my dog called", include_recent=False, store=memory_store
        )
        assert ctx.is_factual is True
        assert _ids(ctx.found_memories) == [pets.id]
        assert list(ctx.stages) == ["entity", "keyword", "semantic"]
        assert ctx.stages["keyword"] == 1

    @pytest.mark.asyncio
    async def test_semantic_query_starts_with_store_search(self, memory_store, seed):
        trip = await seed("Trip", "Went to the coast")
        ctx = await get_hard_memory_context("u1", "coast trip", include_recent=False, store=memory_store)
        assert ctx.is_factual is False
        assert _ids(ctx.found_memories) == [trip.id]
        assert list(ctx.stages) == ["semantic", "entity", "keyword"]
        assert ctx.stages["semantic"] == 1
        assert ctx.stages["keyword"] == 0

    @pytest.mark.asyncio
    async def test_fallback_only_for_factual_queries(self, memory_store, seed):
        cousins = await seed("Family", "my cousins live in Oslo")
        await seed("Shopping", "groceries: milk")

        ctx = await get_hard_memory_context(
            "u1", "how many cousins visited yesterday", include_recent=False, store=memory_store
        )
        assert _ids(ctx.found_memories) == [cousins.id]
        assert ctx.stages["fallback"] == 1

        ctx = await get_hard_memory_context(
            "u1", "cousins visited yesterday", include_recent=False, store=memory_store
        )
        assert ctx.found_memories == []
        assert "fallback" not in ctx.stages

    @pytest.mark.asyncio
    async def test_fallback_search_matches_any_word(self, memory_store, seed):
        m = await seed("Family", "my cousins live in Oslo")
        assert _ids(await perform_fallback_search("u1", "cousins? nope", memory_store)) == [m.id]
        assert await perform_fallback_search("u1", "a ?", memory_store) == []

    @pytest.mark.asyncio
    async def test_cap_applies_after_all_stages(self, memory_store, seed):
        for i in range(12):
            await seed(f"Fruit {i}", "an apple a day")
        ctx = await get_hard_memory_context("u1", "apple", store=memory_store)
        assert len(ctx.found_memories) == 10
        assert ctx.relevant_count == 12
        assert "recent" not in ctx.stages

    @pytest.mark.asyncio
    async def test_recency_padding_fills_free_slots(self, memory_store, seed):
        for i in range(5):
            await seed(f"Note {i}", "filler")
        trip = await seed("Trip", "Went to the coast")
        ctx = await get_hard_memory_context("u1", "coast trip", max_results=3, store=memory_store)
        assert ctx.found_memories[0].id == trip.id
        assert len(ctx.found_memories) == 3
        assert ctx.stages["recent"] == 2

    @pytest.mark.asyncio
    async def test_no_duplicates_across_stages(self, memory_store, seed):
        for i in range(3):
            await seed(f"Trip {i}", "coast trip with Rex", tags=["entity:rex"])
        ctx = await get_hard_memory_context("u1", "coast trip", store=memory_store)
        ids = _ids(ctx.found_memories)
        assert len(ids) == len(set(ids)) == 3

    @pytest.mark.asyncio
    async def test_idempotent(self, memory_store, seed):
        for i in range(6):
            await seed(f"Note {i}", f"Rex walked {i} miles", tags=["entity:rex"] if i % 2 else [])
        first = await get_hard_memory_context("u1", "How far did Rex walk?", store=memory_store)
        second = await get_hard_memory_context("u1", "How far did Rex walk?", store=memory_store)
        assert _ids(first.found_memories) == _ids(second.found_memories)
        assert first.relevant_count == second.relevant_count

    @pytest.mark.asyncio
    async def test_other_users_memories_are_invisible(self, memory_store, seed):
        await seed("Secret", "Rex", tags=["entity:rex"], user_id="someone-else")
        ctx = await get_hard_memory_context("u1", "Rex", store=memory_store)
        assert ctx.found_memories == []

    @pytest.mark.asyncio
    async def test_all_memories_fetched_once(self, memory_store, seed):
        await seed("Oslo", "A city in Norway")
        await seed("Bergen", "Rainy")
        with patch.object(
            memory_store, "get_all_memories", AsyncMock(wraps=memory_store.get_all_memories)
        ) as spy:
            await get_hard_memory_context("u1", "Where is Trondheim?", store=memory_store)
        assert spy.await_count == 1

    @pytest.mark.asyncio
    async def test_search_tags_reach_the_store(self, memory_store, seed):
        tagged = await seed("Trip", "coast trip", tags=["travel"])
        await seed("Trip 2", "coast trip")
        ctx = await get_hard_memory_context(
            "u1", "coast trip", search_tags=["travel"], max_results=1, store=memory_store
        )
        assert _ids(ctx.found_memories) == [tagged.id]
        assert ctx.tags == ["travel"]


# ============================================================================
# Failure handling
# ============================================================================


class _BrokenStore(InMemoryStore):
    async def get_all_memories(self, user_id):
        raise StoreUnavailable("database is gone")

    async def search_memories(self, query, tags, user_id):
        raise StoreUnavailable("database is gone")


class _SlowStore(InMemoryStore):
    async def search_memories(self, query, tags, user_id):
        await asyncio.sleep(5)
        return []


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_store_failure_returns_empty_context(self):
        ctx = await get_hard_memory_context("u1", "Who is Yexen?", store=_BrokenStore())
        assert ctx.found_memories == []
        assert ctx.relevant_count == 0
        assert ctx.search_query == "Who is Yexen?"

    @pytest.mark.asyncio
    async def test_timeout_returns_empty_context(self):
        ctx = await get_hard_memory_context("u1", "thoughts on writing", store=_SlowStore(), timeout=0.05)
        assert ctx.found_memories == []
        assert ctx.relevant_count == 0

    @pytest.mark.asyncio
    async def test_timeout_from_environment(self, monkeypatch):
        monkeypatch.setenv("HARDMEM_CONTEXT_TIMEOUT", "0.05")
        ctx = await get_hard_memory_context("u1", "thoughts on writing", store=_SlowStore())
        assert ctx.found_memories == []

    @pytest.mark.asyncio
    async def test_bad_timeout_setting_returns_empty_context(self, memory_store, seed, monkeypatch):
        await seed("Dog", "Rex", tags=["entity:rex"])
        monkeypatch.setenv("HARDMEM_CONTEXT_TIMEOUT", "ten")
        ctx = await get_hard_memory_context("u1", "Rex", store=memory_store)
        assert ctx.found_memories == []
        assert ctx.search_query == "Rex"

    @pytest.mark.asyncio
    async def test_unavailable_default_store_returns_empty_context(self):
        with patch("hardmem.bridge.get_store", side_effect=StoreUnavailable("HARDMEM_HOME is not writable")):
            ctx = await get_hard_memory_context("u1", "Who is Rex?", search_tags=["pets"])
        assert ctx.found_memories == []
        assert ctx.tags == ["pets"]
