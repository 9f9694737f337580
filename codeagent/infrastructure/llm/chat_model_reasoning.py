"""
Reasoning and planning backed by any LangChain chat model.

The model is asked to answer in JSON. Replies are parsed leniently: code
fences and preamble text are stripped, and a reply that still cannot be
parsed becomes a reasoning result carrying an error instead of an
exception.
"""

from typing import Dict, Any, List
import json
import re

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from codeagent.domain.context.history_window import HistoryWindow
from codeagent.domain.models.conversation_state import ConversationState, HistoryEntry
from codeagent.domain.models.plan import Plan, PlanStep
from codeagent.domain.orchestration.core.reasoning import Planner, ReasoningOutput, ReasoningService

logger = structlog.get_logger(__name__)

REASONING_PROMPT = """You are a coding assistant working inside the user's editor.
Decide the next step towards the user's objective.

Available tools:
{tools}

Reply with a single JSON object:
{{"thought": "<your reasoning>", "capability_name": "<tool name or null>", "capability_input": {{...}}}}
Use capability_name null when you are ready to give the final answer."""

FINAL_RESPONSE_PROMPT = """You are a coding assistant working inside the user's editor.
Write the final answer to the user's request using the work done so far.
Reply with plain text only."""

PLANNING_PROMPT = """You are a coding assistant working inside the user's editor.
Break the user's request into an ordered list of tool calls.

Available tools:
{tools}

Reply with a single JSON object:
{{"goal": "<goal>", "steps": [{{"tool_name": "<tool>", "parameters": {{...}}, "description": "<why>", "required": true, "fallback_step": null}}]}}
fallback_step is the index of a step to run if this one fails."""

_NAME_KEYS = ("capability_name", "capability", "tool_name", "tool", "action")
_INPUT_KEYS = ("capability_input", "input", "parameters", "params", "arguments")


def parse_json_reply(raw: str) -> Dict[str, Any]:
    """Extract the first JSON object from a model reply; raises ValueError"""

    text = raw.strip()
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.DOTALL)
    text = re.sub(r"\s*```$", "", text, flags=re.DOTALL).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("No JSON object in reply")
    text = text[start:end + 1]

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        # Lone backslashes from Windows paths are not valid JSON escapes
        fixed = re.sub(r'\\(?!["\\/bfnrtu])', r'\\\\', text)
        try:
            parsed = json.loads(fixed)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed JSON in reply: {e.msg}") from e

    if not isinstance(parsed, dict):
        raise ValueError("Reply is not a JSON object")
    return parsed


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Content blocks
    return "".join(
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content
    )


def _user_prompt(state: ConversationState, history: List[HistoryEntry]) -> str:
    parts = [f"Objective: {state.objective or state.user_message}", f"User message: {state.user_message}"]
    if state.memory_summary:
        parts.append(f"Memory:\n{state.memory_summary}")
    if state.editor_context:
        parts.append(f"Editor context: {json.dumps(state.editor_context, default=str)}")
    if history:
        parts.append(f"Recent history:\n{HistoryWindow.render(history)}")
    if state.error:
        parts.append(f"Errors so far: {state.error}")
    return "\n\n".join(parts)


class ChatModelReasoningService(ReasoningService):
    """ReasoningService over a LangChain chat model"""

    def __init__(self, model: BaseChatModel, final_history_limit: int = 10):
        self.model = model
        self.final_history_limit = final_history_limit

    async def generate_reasoning(
        self,
        state: ConversationState,
        capability_descriptions: str,
        history_window: List[HistoryEntry]
    ) -> ReasoningOutput:
        messages = [
            SystemMessage(content=REASONING_PROMPT.format(tools=capability_descriptions or "(none)")),
            HumanMessage(content=_user_prompt(state, history_window)),
        ]
        reply = _message_text(await self.model.ainvoke(messages))

        try:
            parsed = parse_json_reply(reply)
        except ValueError as e:
            logger.warning("malformed_reasoning_reply", error=str(e), reply=reply[:200])
            return ReasoningOutput(thought=reply.strip(), error=f"Malformed reasoning output: {e}")

        name = next((parsed[key] for key in _NAME_KEYS if parsed.get(key)), None)
        params = next((parsed[key] for key in _INPUT_KEYS if key in parsed), None) or {}
        if isinstance(params, str):
            try:
                params = json.loads(params)
            except json.JSONDecodeError:
                params = {}
        if not isinstance(params, dict):
            params = {}

        return ReasoningOutput(
            thought=str(parsed.get("thought", "")),
            capability_name=str(name) if name else None,
            capability_input=params
        )

    async def generate_final_response(self, state: ConversationState) -> str:
        messages = [
            SystemMessage(content=FINAL_RESPONSE_PROMPT),
            HumanMessage(content=_user_prompt(state, HistoryWindow(self.final_history_limit).select(state))),
        ]
        return _message_text(await self.model.ainvoke(messages)).strip()


class ChatModelPlanner(Planner):
    """Planner over a LangChain chat model"""

    def __init__(self, model: BaseChatModel, history_limit: int = 6):
        self.model = model
        self.history_limit = history_limit

    async def create_plan(self, state: ConversationState, capability_descriptions: str) -> Plan:
        messages = [
            SystemMessage(content=PLANNING_PROMPT.format(tools=capability_descriptions or "(none)")),
            HumanMessage(content=_user_prompt(state, HistoryWindow(self.history_limit).select(state))),
        ]
        reply = _message_text(await self.model.ainvoke(messages))

        try:
            parsed = parse_json_reply(reply)
            steps = [PlanStep.model_validate(step) for step in parsed.get("steps") or []]
        except (ValueError, ValidationError, TypeError) as e:
            logger.warning("malformed_plan_reply", error=str(e), reply=reply[:200])
            return Plan(goal=state.user_message)

        return Plan(goal=str(parsed.get("goal") or state.user_message), steps=steps)

