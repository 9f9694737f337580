"""Shared fixtures: a scripted reasoning service and a handful of tools."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from codeagent.domain.context.memory_manager import MemoryManager
from codeagent.domain.context.state.state_store import ConversationStateStore
from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.models.conversation_state import ConversationState, HistoryEntry
from codeagent.domain.orchestration.core.interaction_broker import InteractionBroker
from codeagent.domain.orchestration.core.reasoning import ReasoningOutput, ReasoningService
from codeagent.domain.tool.builtin.interaction import builtin_tools
from codeagent.domain.tool.permission_manager import PermissionManager
from codeagent.domain.tool.tool_models import ToolDefinition
from codeagent.domain.tool.tool_registry import ToolRegistry
from codeagent.infrastructure.config.settings import AgentSettings, PermissionMode

WORKSPACE = {
    "src/app.py": "print('hello')\n",
    "README.md": "# Demo\n",
}


class FakeReasoningService(ReasoningService):
    """Plays back scripted decisions; answers with no capability once the script runs out"""

    def __init__(self, outputs: Optional[List[Any]] = None, final_response: str = "All done."):
        self.outputs = list(outputs or [])
        self.final_response = final_response
        self.calls: List[List[HistoryEntry]] = []
        self.final_calls = 0

    async def generate_reasoning(
        self,
        state: ConversationState,
        capability_descriptions: str,
        history_window: List[HistoryEntry]
    ) -> ReasoningOutput:
        self.calls.append(list(history_window))
        if not self.outputs:
            return ReasoningOutput(thought="Nothing left to do")
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output

    async def generate_final_response(self, state: ConversationState) -> str:
        self.final_calls += 1
        return self.final_response


def list_files(params: Dict[str, Any], context) -> List[str]:
    prefix = params.get("prefix", "")
    return sorted(path for path in WORKSPACE if path.startswith(prefix))


async def read_file(params: Dict[str, Any], context) -> str:
    path = params["path"]
    if path not in WORKSPACE:
        raise FileNotFoundError(f"No such file: {path}")
    return WORKSPACE[path]


async def write_file(params: Dict[str, Any], context) -> Dict[str, Any]:
    return {"path": params["path"], "bytes": len(params["content"])}


async def slow_tool(params: Dict[str, Any], context) -> str:
    await asyncio.sleep(5)
    return "too late"


LIST_FILES = ToolDefinition(
    name="listFiles",
    description="List files in the workspace",
    parameters_schema={
        "type": "object",
        "properties": {"prefix": {"type": "string", "default": ""}},
    },
    required_permissions=["filesystem.read"],
    execute=list_files,
    category="filesystem",
)

READ_FILE = ToolDefinition(
    name="read_file",
    description="Read the content of a file in the workspace",
    parameters_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Workspace relative path"},
            "encoding": {"type": "string", "default": "utf-8"},
        },
        "required": ["path"],
    },
    required_permissions=["filesystem.read"],
    execute=read_file,
    category="filesystem",
)

WRITE_FILE = ToolDefinition(
    name="write_file",
    description="Write content to a file in the workspace",
    parameters_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
    },
    required_permissions=["filesystem.write"],
    execute=write_file,
    category="filesystem",
)

SLOW_TOOL = ToolDefinition(
    name="slow_tool",
    description="Takes far too long",
    execute=slow_tool,
    timeout_seconds=0.05,
)

ALL_TEST_TOOLS = [LIST_FILES, READ_FILE, WRITE_FILE, SLOW_TOOL]


def make_settings(**overrides) -> AgentSettings:
    values = dict(
        max_iterations=10,
        reasoning_timeout_seconds=2.0,
        tool_timeout_seconds=2.0,
        user_input_timeout_seconds=1.0,
    )
    values.update(overrides)
    return AgentSettings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def dispatcher():
    dispatcher = EventDispatcher(max_history=500)
    yield dispatcher
    dispatcher.dispose()


@pytest.fixture
def permission_manager(settings):
    return PermissionManager(policy=settings.permission_policy, default_mode=PermissionMode.DENY)


@pytest.fixture
def registry(permission_manager, dispatcher):
    registry = ToolRegistry(permission_manager=permission_manager, dispatcher=dispatcher)
    registry.register_many(builtin_tools())
    registry.register_many(ALL_TEST_TOOLS)
    return registry


@pytest.fixture
def memory():
    return MemoryManager(short_term_capacity=10)


@pytest.fixture
def state_store(settings):
    return ConversationStateStore(max_iterations=settings.max_iterations)


@pytest.fixture
def broker(dispatcher):
    broker = InteractionBroker(dispatcher)
    yield broker
    broker.close()


def event_types(dispatcher: EventDispatcher) -> List[str]:
    return [event.type.value for event in dispatcher.get_history()]
