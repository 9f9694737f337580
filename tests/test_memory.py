"""Tests for short-term eviction, long-term write-through and the memory summary."""

from unittest.mock import AsyncMock

import pytest

from codeagent.domain.context.memory.key_value_store import InMemoryKeyValueStore, StoredRecord
from codeagent.domain.context.memory.long_term_memory import DEFAULT_RETRIEVAL_RELEVANCE, LongTermMemory
from codeagent.domain.context.memory.short_term_memory import ShortTermMemory
from codeagent.domain.context.memory_manager import MemoryManager
from codeagent.domain.models.memory_item import MemoryItem, MemoryKind


class TestShortTermMemory:

    def test_capacity_is_enforced_by_relevance(self):
        memory = ShortTermMemory(capacity=3)
        low = MemoryItem(content="low", relevance=0.1)
        memory.add("c1", MemoryItem(content="a", relevance=0.5))
        memory.add("c1", low)
        memory.add("c1", MemoryItem(content="b", relevance=0.9))

        evicted = memory.add("c1", MemoryItem(content="c", relevance=0.6))

        assert evicted == [low]
        assert memory.size("c1") == 3
        assert [i.content for i in memory.get("c1")] == ["b", "c", "a"]

    def test_ties_evict_the_newest_item(self):
        memory = ShortTermMemory(capacity=2)
        old = MemoryItem(content="old", relevance=0.5)
        memory.add("c1", MemoryItem(content="keep", relevance=0.8))
        memory.add("c1", old)

        evicted = memory.add("c1", MemoryItem(content="new", relevance=0.5))

        assert [i.content for i in evicted] == ["new"]
        assert [i.content for i in memory.get("c1")] == ["keep", "old"]

    def test_conversations_are_isolated(self):
        memory = ShortTermMemory(capacity=1)
        memory.add("c1", MemoryItem(content="a"))
        memory.add("c2", MemoryItem(content="b"))
        assert memory.size("c1") == memory.size("c2") == 1

    def test_remove_and_clear(self):
        memory = ShortTermMemory()
        item = MemoryItem(content="a")
        memory.add("c1", item)

        assert memory.remove("c1", item.id)
        assert not memory.remove("c1", item.id)

        memory.add("c1", item)
        memory.clear("c1")
        assert memory.get("c1") == []

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ShortTermMemory(capacity=0)


class TestLongTermMemory:

    @pytest.mark.asyncio
    async def test_persist_then_search(self):
        memory = LongTermMemory(InMemoryKeyValueStore())
        key = await memory.persist(MemoryKind.CODEBASE, "auth module uses JWT tokens", 0.6, tags=["auth"])

        items = await memory.search("auth tokens")

        assert key.startswith("ltm_")
        assert [i.id for i in items] == [key]
        assert items[0].kind == MemoryKind.CODEBASE
        assert items[0].relevance == 0.6

    @pytest.mark.asyncio
    async def test_missing_relevance_uses_default(self):
        store = AsyncMock()
        store.search.return_value = [StoredRecord(key="k", value="v", metadata={"kind": "user"})]

        items = await LongTermMemory(store).search("anything")

        assert items[0].relevance == DEFAULT_RETRIEVAL_RELEVANCE
        assert items[0].kind == MemoryKind.USER

    @pytest.mark.asyncio
    async def test_store_failures_are_contained(self):
        store = AsyncMock()
        store.store.side_effect = IOError("disk full")
        store.search.side_effect = IOError("disk gone")
        store.delete.side_effect = IOError("disk gone")
        memory = LongTermMemory(store)

        assert await memory.persist(MemoryKind.CONTEXT, "x", 0.5) is None
        assert await memory.search("x") == []
        assert await memory.delete("k") is False


class TestMemoryManager:

    def test_add_short_term_bounded(self):
        manager = MemoryManager(short_term_capacity=2)
        for i in range(4):
            manager.add_short_term("c1", MemoryKind.TOOL_RESULT, f"r{i}", relevance=0.5)
        assert len(manager.get_short_term("c1")) == 2

    def test_context_merges_and_skips_none(self):
        manager = MemoryManager()
        manager.update_context("c1", active_file="a.py", workspace_root="/ws")
        context = manager.update_context("c1", active_file=None, user_query="fix it")

        assert context == {"active_file": "a.py", "workspace_root": "/ws", "user_query": "fix it"}
        assert manager.get_context("c2") == {}

    def test_summary_groups_by_kind(self):
        manager = MemoryManager()
        manager.add_short_term("c1", MemoryKind.TOOL_RESULT, {"tool": "listFiles"}, relevance=0.7)
        manager.add_short_term("c1", MemoryKind.USER, "prefers tabs", relevance=0.9)
        manager.add_short_term("c1", MemoryKind.REASONING, "check tests first", relevance=0.4)

        summary = manager.get_summary("c1")

        assert summary.index("## User") < summary.index("## Tool Results") < summary.index("## Reasoning")
        assert '- {"tool": "listFiles"}' in summary
        assert "- prefers tabs" in summary
        assert "## Codebase" not in summary

    def test_summary_empty_conversation(self):
        assert MemoryManager().get_summary("nobody") == ""

    @pytest.mark.asyncio
    async def test_retrieved_items_join_the_summary(self):
        manager = MemoryManager()
        await manager.persist_long_term(
            MemoryKind.CODEBASE, "database layer uses sqlalchemy", relevance=0.6, conversation_id="old"
        )

        items = await manager.retrieve_relevant("database layer", conversation_id="c1")

        assert len(items) == 1
        assert items[0].metadata["conversation_id"] == "old"
        assert "## Codebase" in manager.get_summary("c1")

    @pytest.mark.asyncio
    async def test_blank_query_retrieves_nothing(self):
        manager = MemoryManager()
        await manager.persist_long_term(MemoryKind.CONTEXT, "anything")
        assert await manager.retrieve_relevant("   ") == []

    @pytest.mark.asyncio
    async def test_forget_drops_retrieved_copy(self):
        manager = MemoryManager()
        key = await manager.persist_long_term(MemoryKind.CONTEXT, "deploy with docker")
        await manager.retrieve_relevant("docker", conversation_id="c1")

        assert await manager.forget(key)
        assert manager.retrieved["c1"] == []

    @pytest.mark.asyncio
    async def test_clear_conversation(self):
        manager = MemoryManager()
        manager.add_short_term("c1", MemoryKind.USER, "x")
        manager.update_context("c1", active_file="a.py")

        manager.clear_conversation("c1")

        assert manager.stats("c1") == {
            "conversation_id": "c1",
            "short_term_items": 0,
            "short_term_capacity": 20,
            "retrieved_items": 0,
            "context_keys": [],
        }
