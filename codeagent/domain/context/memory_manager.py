from typing import Dict, List, Any, Optional
import json

import structlog

from codeagent.domain.models.memory_item import MemoryItem, MemoryKind
from codeagent.infrastructure.observability.logging import agent_logger
from .memory.key_value_store import KeyValueStore, InMemoryKeyValueStore
from .memory.long_term_memory import LongTermMemory
from .memory.short_term_memory import ShortTermMemory

logger = structlog.get_logger(__name__)

SUMMARY_SECTIONS = [
    (MemoryKind.CONTEXT, "Context"),
    (MemoryKind.CODEBASE, "Codebase"),
    (MemoryKind.USER, "User"),
    (MemoryKind.TOOL_RESULT, "Tool Results"),
    (MemoryKind.REASONING, "Reasoning"),
]


class MemoryManager:
    """Tiered memory for conversations.

    Short-term items live per conversation and are capacity bounded; the
    least relevant are evicted first. Long-term items are written through
    to a KeyValueStore and found again by free-text search. Each
    conversation also has a small context dict (active file, workspace
    root, user query) that is merged on update.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        short_term_capacity: int = 20,
        search_limit: int = 5
    ):
        self.short_term = ShortTermMemory(capacity=short_term_capacity)
        self.long_term = LongTermMemory(store or InMemoryKeyValueStore())
        self.search_limit = search_limit
        self.contexts: Dict[str, Dict[str, Any]] = {}
        self.retrieved: Dict[str, List[MemoryItem]] = {}

    def add_short_term(
        self,
        conversation_id: str,
        kind: MemoryKind,
        content: Any,
        relevance: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None
    ) -> MemoryItem:
        item = MemoryItem(kind=kind, content=content, relevance=relevance, metadata=metadata)
        evicted = self.short_term.add(conversation_id, item)

        agent_logger.log_memory_update(
            conversation_id, "short_term", "add",
            {"item_id": item.id, "kind": item.kind.value, "evicted": [e.id for e in evicted]}
        )
        return item

    def get_short_term(self, conversation_id: str) -> List[MemoryItem]:
        return self.short_term.get(conversation_id)

    async def persist_long_term(
        self,
        kind: MemoryKind,
        content: Any,
        relevance: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        conversation_id: Optional[str] = None
    ) -> Optional[str]:
        """Write an item to the store; None when the write failed"""
        if conversation_id:
            metadata = {**(metadata or {}), "conversation_id": conversation_id}
        key = await self.long_term.persist(kind, content, relevance, metadata, tags)

        agent_logger.log_memory_update(
            conversation_id, "long_term", "persist" if key else "persist_failed",
            {"key": key, "kind": MemoryKind(kind).value}
        )
        return key

    async def retrieve_relevant(
        self,
        query: str,
        conversation_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[MemoryItem]:
        """Search long-term memory; results are remembered for the conversation's summary"""
        if not query or not query.strip():
            return []
        items = await self.long_term.search(query, limit or self.search_limit)
        if conversation_id:
            self.retrieved[conversation_id] = items
        return items

    async def forget(self, key: str) -> bool:
        removed = await self.long_term.delete(key)
        for items in self.retrieved.values():
            items[:] = [item for item in items if item.id != key]
        return removed

    def update_context(self, conversation_id: str, **updates: Any) -> Dict[str, Any]:
        context = self.contexts.setdefault(conversation_id, {})
        context.update({key: value for key, value in updates.items() if value is not None})
        return dict(context)

    def get_context(self, conversation_id: str) -> Dict[str, Any]:
        return dict(self.contexts.get(conversation_id, {}))

    def get_summary(self, conversation_id: str) -> str:
        """Markdown digest of what is remembered, grouped by kind, most relevant first"""

        items = self.short_term.get(conversation_id) + self.retrieved.get(conversation_id, [])
        items.sort(key=lambda i: i.relevance, reverse=True)

        sections = []
        for kind, heading in SUMMARY_SECTIONS:
            lines = [f"- {self._render(item.content)}" for item in items if item.kind == kind]
            if lines:
                sections.append(f"## {heading}\n" + "\n".join(lines))
        return "\n\n".join(sections)

    def clear_conversation(self, conversation_id: str):
        logger.info("clearing_conversation_memory", conversation_id=conversation_id)
        self.short_term.clear(conversation_id)
        self.retrieved.pop(conversation_id, None)
        self.contexts.pop(conversation_id, None)

    def stats(self, conversation_id: str) -> Dict[str, Any]:
        return {
            "conversation_id": conversation_id,
            "short_term_items": self.short_term.size(conversation_id),
            "short_term_capacity": self.short_term.capacity,
            "retrieved_items": len(self.retrieved.get(conversation_id, [])),
            "context_keys": sorted(self.contexts.get(conversation_id, {}).keys()),
        }

    @staticmethod
    def _render(content: Any) -> str:
        if isinstance(content, str):
            return content
        return json.dumps(content, default=str)
