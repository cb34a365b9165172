"""Tests for hardmem.bridge -- the high-level API used by every surface."""
import pytest

from hardmem import bridge
from hardmem.formatter import HEADER
from hardmem.sqlite_store import SQLiteStore
from hardmem.types import SPLIT_TAG, HardMemoryError, MemoryNotFound


class TestSaveFromAI:
    @pytest.mark.asyncio
    async def test_entity_tags_added(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex lives in Lyon", tags=["pets"])
        assert memory.tags == ["pets", "entity:dog", "entity:rex", "entity:lyon"]

    @pytest.mark.asyncio
    async def test_existing_entity_tag_not_duplicated(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex", tags=["entity:rex"])
        assert memory.tags.count("entity:rex") == 1

    @pytest.mark.asyncio
    async def test_auto_entities_off(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex", auto_entities=False)
        assert memory.tags == []

    @pytest.mark.asyncio
    async def test_conversation_source(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex", conversation_id="conv-1")
        assert memory.conversation_source == "conv-1"

    @pytest.mark.asyncio
    async def test_errors_are_raised(self, bridge_store):
        with pytest.raises(ValueError):
            await bridge.save_memory_from_ai("u1", "", "no title")

    @pytest.mark.asyncio
    async def test_entity_tag_makes_memory_findable(self, bridge_store):
        saved = await bridge.save_memory_from_ai("u1", "Cat", "Our cat is Lilou")
        found = await bridge.recall("u1", "What is Lilou's name?")
        assert found[0].id == saved.id


class TestRemember:
    @pytest.mark.asyncio
    async def test_success(self, bridge_store):
        result = await bridge.remember("u1", "Dog", "Rex")
        assert result["success"] is True
        assert result["memory"]["title"] == "Dog"

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, bridge_store):
        result = await bridge.remember("u1", "  ")
        assert result["success"] is False
        assert "title" in result["error"]


class TestContext:
    @pytest.mark.asyncio
    async def test_get_context_renders_prompt(self, bridge_store):
        await bridge.save_memory_from_ai("u1", "Dog", "Rex is a beagle")
        text = await bridge.get_context("u1", "")
        assert text.startswith(HEADER)
        assert "Rex is a beagle" in text

    @pytest.mark.asyncio
    async def test_get_context_empty(self, bridge_store):
        assert await bridge.get_context("u1", "anything") == ""

    @pytest.mark.asyncio
    async def test_recall_has_no_recency_padding(self, bridge_store):
        await bridge.save_memory_from_ai("u1", "Dog", "Rex is a beagle")
        assert await bridge.recall("u1", "thoughts on writing") == []

    @pytest.mark.asyncio
    async def test_lookup_returns_context(self, bridge_store):
        await bridge.save_memory_from_ai("u1", "Dog", "Rex is a beagle")
        ctx = await bridge.lookup("u1", "Who is Rex?")
        assert ctx.relevant_count == 1
        assert ctx.stages["entity"] == 1

    @pytest.mark.asyncio
    async def test_unusable_home_gives_empty_context(self, _reset_bridge, tmp_hardmem_dir, monkeypatch):
        blocker = tmp_hardmem_dir / "blocker"
        blocker.write_text("")
        monkeypatch.setenv("HARDMEM_BACKEND", "sqlite")
        monkeypatch.setenv("HARDMEM_HOME", str(blocker / "home"))
        ctx = await bridge.lookup("u1", "Who is Rex?")
        assert ctx.found_memories == []
        assert await bridge.get_context("u1", "Who is Rex?") == ""


class TestEditDelete:
    @pytest.mark.asyncio
    async def test_edit(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex")
        result = await bridge.edit_memory(memory.id, {"content": "Rex the beagle"}, user_id="u1")
        assert result["success"] is True
        assert result["old_content_preview"] == "Rex"
        assert result["new_content_preview"] == "Rex the beagle"

    @pytest.mark.asyncio
    async def test_edit_blank_title(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex")
        result = await bridge.edit_memory(memory.id, {"title": " "})
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_edit_other_users_memory(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex")
        result = await bridge.edit_memory(memory.id, {"content": "mine now"}, user_id="u2")
        assert result == {"success": False, "error": f"Memory {memory.id} not found"}

    @pytest.mark.asyncio
    async def test_delete(self, bridge_store):
        memory = await bridge.save_memory_from_ai("u1", "Dog", "Rex")
        assert (await bridge.delete_memory(memory.id, user_id="u2"))["success"] is False
        assert await bridge.delete_memory(memory.id, user_id="u1") == {
            "success": True,
            "deleted_id": memory.id,
        }
        assert await bridge_store.get_memory(memory.id) is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, bridge_store):
        result = await bridge.delete_memory("mem-missing")
        assert result["error"] == "Memory mem-missing not found"


class TestHandleCommand:
    @pytest.mark.asyncio
    async def test_not_a_command(self, bridge_store):
        assert await bridge.handle_command("u1", "how are you?") == {"handled": False}

    @pytest.mark.asyncio
    async def test_remember_then_recall(self, bridge_store):
        saved = await bridge.handle_command("u1", "./remember Dog | Rex is a beagle | #pets")
        assert saved["handled"] is True
        assert saved["type"] == "remember"
        assert saved["message"] == 'Saved memory "Dog".'
        assert "pets" in saved["memory"]["tags"]
        assert "entity:rex" in saved["memory"]["tags"]

        found = await bridge.handle_command("u1", "/recall Rex")
        assert found["type"] == "recall"
        assert [m["title"] for m in found["memories"]] == ["Dog"]
        assert found["message"].startswith('Found 1 memories for "Rex":')

    @pytest.mark.asyncio
    async def test_recall_nothing(self, bridge_store):
        result = await bridge.handle_command("u1", "recall unicorns")
        assert result["message"] == 'No memories found for "unicorns".'


class TestSplitMemory:
    @pytest.mark.asyncio
    async def test_split(self, bridge_store):
        content = "=== Intro ===\n" + "a" * 150 + "\n=== Body ===\n" + "b" * 200
        original = await bridge.save_memory_from_ai("u1", "Notes", content, tags=["work"], auto_entities=False)
        parts = await bridge.split_memory(original.id, user_id="u1")
        assert [p.title for p in parts] == ["Notes - Part 1: Intro", "Notes - Part 2: Body"]
        assert all(p.tags == ["work", SPLIT_TAG] for p in parts)
        assert await bridge_store.get_memory(original.id) is not None

    @pytest.mark.asyncio
    async def test_split_tag_added_once(self, bridge_store):
        original = await bridge.save_memory_from_ai(
            "u1", "Notes", "x" * 50, tags=[SPLIT_TAG], auto_entities=False
        )
        (part,) = await bridge.split_memory(original.id)
        assert part.tags == [SPLIT_TAG]

    @pytest.mark.asyncio
    async def test_split_missing(self, bridge_store):
        with pytest.raises(MemoryNotFound):
            await bridge.split_memory("mem-missing")


class TestExport:
    @pytest.mark.asyncio
    async def test_memory_store_cannot_export(self, bridge_store, tmp_path):
        with pytest.raises(HardMemoryError, match="export"):
            await bridge.export_memories("u1", str(tmp_path / "out.json"))

    @pytest.mark.asyncio
    async def test_export_and_import_report(self, _reset_bridge, tmp_hardmem_dir):
        bridge.set_store(SQLiteStore(db_path=tmp_hardmem_dir / "bridge.db"))
        await bridge.save_memory_from_ai("u1", "Dog", "Rex")
        path = str(tmp_hardmem_dir / "out.json")

        report = await bridge.export_memories("u1", path)
        assert report.startswith("# Hard Memory Export Complete")
        assert "**Memories:** 1" in report
        assert "**Encrypted:** No" in report

        report = await bridge.import_memories("u1", path)
        assert "**Memories Imported:** 0" in report
        assert "**Already Present:** 1" in report


class TestSingleton:
    def test_get_store_uses_backend(self, _reset_bridge, monkeypatch):
        monkeypatch.setenv("HARDMEM_BACKEND", "memory")
        first = bridge.get_store()
        assert first.name == "memory"
        assert bridge.get_store() is first

    def test_default_user(self, monkeypatch):
        monkeypatch.delenv("HARDMEM_USER", raising=False)
        assert bridge.default_user_id() == "local"
        monkeypatch.setenv("HARDMEM_USER", "sam")
        assert bridge.default_user_id() == "sam"


class TestMemoryWorthy:
    def test_suggests_personal_fact(self):
        result = bridge.extract_memory_worthy_content("My name is Sam. I live in Oslo.", "Nice to meet you!")
        assert result["should_suggest"] is True
        assert result["suggested_title"] == "My name is Sam"
        assert result["suggested_tags"] == ["conversation"]
        assert result["suggested_content"] == "User: My name is Sam. I live in Oslo.\n\nAssistant: Nice to meet you!"

    def test_hashtags_become_tags(self):
        result = bridge.extract_memory_worthy_content("please note this #travel", "Done #summer")
        assert result["suggested_tags"] == ["travel", "summer"]
        assert result["suggested_title"] == "please note this #travel"

    def test_short_message_gets_default_title(self):
        result = bridge.extract_memory_worthy_content("remember", "ok")
        assert result["suggested_title"] == "Important Information"

    def test_small_talk(self):
        assert bridge.extract_memory_worthy_content("hi", "hello!") == {"should_suggest": False}
