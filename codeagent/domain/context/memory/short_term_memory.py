from typing import Dict, List
from collections import defaultdict

from codeagent.domain.models.memory_item import MemoryItem


class ShortTermMemory:
    """Capacity-bounded memory of the active conversations"""

    def __init__(self, capacity: int = 20):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.conversations: Dict[str, List[MemoryItem]] = defaultdict(list)

    def add(self, conversation_id: str, item: MemoryItem) -> List[MemoryItem]:
        """Append an item; returns whatever was evicted to stay within capacity"""

        items = self.conversations[conversation_id]
        items.append(item)

        if len(items) <= self.capacity:
            return []

        # Least relevant go first; the sort is stable so on a tie the newest item goes
        items.sort(key=lambda i: i.relevance, reverse=True)
        evicted = items[self.capacity:]
        del items[self.capacity:]
        return evicted

    def get(self, conversation_id: str) -> List[MemoryItem]:
        return list(self.conversations.get(conversation_id, []))

    def remove(self, conversation_id: str, item_id: str) -> bool:
        items = self.conversations.get(conversation_id)
        if not items:
            return False
        for index, item in enumerate(items):
            if item.id == item_id:
                del items[index]
                return True
        return False

    def clear(self, conversation_id: str):
        self.conversations.pop(conversation_id, None)

    def size(self, conversation_id: str) -> int:
        return len(self.conversations.get(conversation_id, []))
