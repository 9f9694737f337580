from typing import Dict, Set, Sequence
import re

from codeagent.domain.tool.tool_models import ToolDefinition

_WORD = re.compile(r'\w+')


def tokenize(text: str) -> Set[str]:
    return set(_WORD.findall(text.lower()))


class ContextRanker:
    """Ranks tools and stored content by keyword relevance to a query"""

    def rank_tools(self, query: str, tools: Sequence[ToolDefinition]) -> Dict[str, float]:
        """Rank tools by relevance to query"""

        scores = {}
        query_words = tokenize(query)

        for tool in tools:
            # Tool names are snake_case; split them into words
            name_words = tokenize(tool.name.replace("_", " "))
            desc_words = tokenize(tool.description)

            desc_overlap = len(query_words & desc_words)
            name_overlap = len(query_words & name_words)

            # Weight name matches higher
            score = (name_overlap * 2 + desc_overlap) / len(query_words) if query_words else 0.0
            scores[tool.name] = min(score, 1.0)

        return scores

    def calculate_relevance(self, query: str, content: str) -> float:
        """Calculate relevance score between query and content"""

        query_lower = query.lower().strip()
        content_lower = content.lower()

        query_words = tokenize(query_lower)
        if not query_words:
            return 0.0

        overlap = len(query_words & tokenize(content_lower))
        score = overlap / len(query_words)

        # Boost score if query appears as substring
        if query_lower in content_lower:
            score += 0.3

        return min(score, 1.0)
