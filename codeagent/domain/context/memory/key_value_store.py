from typing import Dict, Any, List, Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import asyncio
import json

from codeagent.domain.context.context_ranker import ContextRanker
from codeagent.domain.models.conversation_state import utcnow


@dataclass
class StoredRecord:
    key: str
    value: Any
    metadata: Dict[str, Any] = field(default_factory=dict)
    score: float = 0.0


class KeyValueStore(ABC):
    """Persistent store behind long-term memory"""

    @abstractmethod
    async def store(self, key: str, value: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    async def retrieve(self, key: str) -> Optional[StoredRecord]:
        ...

    @abstractmethod
    async def search(self, query: str, limit: int = 5) -> List[StoredRecord]:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store; search scores records by keyword overlap"""

    def __init__(self, ranker: Optional[ContextRanker] = None):
        self.records: Dict[str, StoredRecord] = {}
        self.ranker = ranker or ContextRanker()
        self._lock = asyncio.Lock()

    async def store(self, key: str, value: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock:
            meta = dict(metadata or {})
            meta["updated_at"] = utcnow().isoformat()
            self.records[key] = StoredRecord(key=key, value=value, metadata=meta)

    async def retrieve(self, key: str) -> Optional[StoredRecord]:
        async with self._lock:
            return self.records.get(key)

    async def search(self, query: str, limit: int = 5) -> List[StoredRecord]:
        async with self._lock:
            records = list(self.records.values())

        scored = []
        for record in records:
            text = f"{self._as_text(record.value)} {self._as_text(record.metadata.get('tags', ''))}"
            score = self.ranker.calculate_relevance(query, text)
            if score > 0:
                scored.append(StoredRecord(record.key, record.value, record.metadata, score))

        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:limit]

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.records.pop(key, None) is not None

    @staticmethod
    def _as_text(value: Any) -> str:
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)
