from typing import Dict, Any, List, Optional
import re

import structlog

from codeagent.domain.context.context_ranker import ContextRanker
from codeagent.domain.models.plan import AnalysisResult, AnalysisType
from codeagent.domain.orchestration.core.reasoning import RequestClassifier
from codeagent.domain.tool.tool_models import ToolDefinition

logger = structlog.get_logger(__name__)

# key=value, key="quoted value" or key='quoted value'
_ASSIGNMENT = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|(\S+))')
_QUOTED = re.compile(r'"([^"]+)"|\'([^\']+)\'')


class KeywordInputAnalyzer(RequestClassifier):
    """Classifies a request by keyword overlap with the registered tools.

    A request is a direct action when one tool clearly matches and every
    parameter that tool requires can be read off the message, either as
    `name=value` pairs or as a single quoted string for a tool with one
    required string parameter.
    """

    def __init__(self, ranker: Optional[ContextRanker] = None, min_score: float = 0.5):
        self.ranker = ranker or ContextRanker()
        self.min_score = min_score

    async def classify(self, message: str, tools: List[ToolDefinition]) -> AnalysisResult:
        candidates = [tool for tool in tools if not tool.interactive]
        scores = self.ranker.rank_tools(message, candidates)
        if not scores:
            return AnalysisResult(reason="No tools registered")

        best_name, best_score = max(scores.items(), key=lambda item: item[1])
        best = next(tool for tool in candidates if tool.name == best_name)

        if best_score < self.min_score:
            return AnalysisResult(
                confidence=best_score,
                category=best.category,
                reason=f"Best match '{best_name}' scored {best_score:.2f}"
            )

        parameters = self._extract_parameters(message, best)
        if parameters is None:
            return AnalysisResult(
                tool_name=best_name,
                confidence=best_score,
                category=best.category,
                reason="Required parameters not given explicitly"
            )

        logger.debug("direct_action_candidate", tool_name=best_name, score=best_score)
        return AnalysisResult(
            type=AnalysisType.DIRECT_ACTION,
            tool_name=best_name,
            parameters=parameters,
            confidence=best_score,
            category=best.category,
            reason=f"Matched tool '{best_name}'"
        )

    @staticmethod
    def _extract_parameters(message: str, tool: ToolDefinition) -> Optional[Dict[str, Any]]:
        """Parameters stated in the message, or None when a required one is missing"""
        properties = tool.parameters_schema.get("properties", {})
        required = list(tool.parameters_schema.get("required", []))

        parameters: Dict[str, Any] = {}
        for match in _ASSIGNMENT.finditer(message):
            key = match.group(1)
            if key in properties:
                value = next(group for group in match.groups()[1:] if group is not None)
                parameters[key] = _coerce(value, properties[key])

        missing = [name for name in required if name not in parameters]
        if len(missing) == 1 and len(required) == 1:
            schema = properties.get(missing[0], {})
            quoted = _QUOTED.search(message)
            if quoted and schema.get("type", "string") == "string":
                parameters[missing[0]] = quoted.group(1) or quoted.group(2)
                missing = []

        return None if missing else parameters


def _coerce(value: str, schema: Dict[str, Any]) -> Any:
    kind = schema.get("type") if isinstance(schema, dict) else None
    try:
        if kind == "integer":
            return int(value)
        if kind == "number":
            return float(value)
    except ValueError:
        return value
    if kind == "boolean":
        return value.lower() in ("true", "yes", "1")
    return value
