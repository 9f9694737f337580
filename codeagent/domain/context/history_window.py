from typing import List

from codeagent.domain.models.conversation_state import ConversationState, HistoryEntry


class HistoryWindow:
    """Which history entries a reasoning call gets to see.

    The last `size` entries, plus the most recent user input when it has
    already scrolled out of that range.
    """

    def __init__(self, size: int = 6):
        if size < 1:
            raise ValueError("size must be at least 1")
        self.size = size

    def select(self, state: ConversationState) -> List[HistoryEntry]:
        window = state.recent_history(self.size)
        user_input = state.last_user_input()
        if user_input is not None and not any(entry is user_input for entry in window):
            window = [user_input] + window
        return window

    @staticmethod
    def render(entries: List[HistoryEntry]) -> str:
        """One line per entry; failed and skipped entries carry their status"""
        lines = []
        for entry in entries:
            status = entry.status
            suffix = f" [{status}]" if status and status != "success" else ""
            lines.append(f"[{entry.phase.value} #{entry.iteration}]{suffix} {entry.content}")
        return "\n".join(lines)
