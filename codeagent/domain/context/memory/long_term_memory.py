from typing import Dict, Any, List, Optional
from datetime import datetime
import asyncio
import uuid

import structlog

from codeagent.domain.models.conversation_state import utcnow
from codeagent.domain.models.memory_item import MemoryItem, MemoryKind
from .key_value_store import KeyValueStore, StoredRecord

logger = structlog.get_logger(__name__)

# Relevance given to retrieved items when the store reports no score
DEFAULT_RETRIEVAL_RELEVANCE = 0.8


class LongTermMemory:
    """Write-through layer over a KeyValueStore.

    Writes are queued behind one lock so concurrent persists reach the
    store in order. Store failures are logged; reads then come back empty.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._write_lock = asyncio.Lock()

    @staticmethod
    def new_key() -> str:
        return f"ltm_{uuid.uuid4().hex}"

    async def persist(
        self,
        kind: MemoryKind,
        content: Any,
        relevance: float,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None
    ) -> Optional[str]:
        key = self.new_key()
        record_metadata = dict(metadata or {})
        record_metadata.update({
            "kind": MemoryKind(kind).value,
            "relevance": relevance,
            "tags": list(tags or []),
        })

        async with self._write_lock:
            try:
                await self.store.store(key, content, record_metadata)
            except Exception as e:
                logger.error("long_term_write_failed", key=key, error=str(e), exc_info=True)
                return None
        return key

    async def search(self, query: str, limit: int = 5) -> List[MemoryItem]:
        try:
            records = await self.store.search(query, limit)
        except Exception as e:
            logger.error("long_term_search_failed", query=query[:50], error=str(e), exc_info=True)
            return []
        return [self._to_item(record) for record in records[:limit]]

    async def delete(self, key: str) -> bool:
        async with self._write_lock:
            try:
                return await self.store.delete(key)
            except Exception as e:
                logger.error("long_term_delete_failed", key=key, error=str(e), exc_info=True)
                return False

    @staticmethod
    def _to_item(record: StoredRecord) -> MemoryItem:
        metadata = dict(record.metadata or {})
        try:
            kind = MemoryKind(metadata.get("kind", MemoryKind.CONTEXT.value))
        except ValueError:
            kind = MemoryKind.CONTEXT

        timestamp = utcnow()
        updated_at = metadata.get("updated_at")
        if isinstance(updated_at, str):
            try:
                timestamp = datetime.fromisoformat(updated_at)
            except ValueError:
                pass

        relevance = metadata.get("relevance")
        if not isinstance(relevance, (int, float)) or not 0.0 <= relevance <= 1.0:
            relevance = DEFAULT_RETRIEVAL_RELEVANCE

        return MemoryItem(
            id=record.key,
            kind=kind,
            content=record.value,
            relevance=relevance,
            timestamp=timestamp,
            metadata=metadata
        )
