"""
Tests for tool registration, parameter validation and execution.

Every failure mode of execute comes back as a ToolResult with an error
kind; none of them raise.
"""

import asyncio

import pytest

from codeagent.domain.events.event_types import EventType, SystemPayload
from codeagent.domain.exceptions import ToolRegistrationError
from codeagent.domain.tool.tool_models import (
    ToolDefinition,
    ToolErrorKind,
    ToolExecutionContext,
    ToolResult,
)
from codeagent.domain.tool.tool_validator import ToolParameterValidator

from conftest import READ_FILE


class TestRegistration:

    def test_duplicate_name_rejected(self, registry):
        with pytest.raises(ToolRegistrationError):
            registry.register(READ_FILE)

    def test_invalid_schema_rejected(self, registry):
        bad = ToolDefinition(
            name="bad",
            description="Broken schema",
            parameters_schema={"type": "object", "properties": {"x": {"type": "nonsense"}}},
            execute=lambda params, context: None,
        )
        with pytest.raises(ToolRegistrationError):
            registry.register(bad)

    def test_non_object_schema_rejected(self, registry):
        bad = ToolDefinition(
            name="scalar",
            description="Not an object",
            parameters_schema={"type": "string"},
            execute=lambda params, context: None,
        )
        with pytest.raises(ToolRegistrationError):
            registry.register(bad)

    def test_lookup_and_categories(self, registry):
        assert registry.get("read_file") is READ_FILE
        assert {t.name for t in registry.get_tools_by_category("filesystem")} == {
            "listFiles", "read_file", "write_file"
        }
        assert [t.name for t in registry.search_tools("WRITE")] == ["write_file"]

    def test_unregister(self, registry):
        assert registry.unregister("read_file") is True
        assert registry.unregister("read_file") is False
        assert registry.get("read_file") is None
        assert "read_file" not in registry.describe_tools()

    def test_describe_tools_lists_parameters(self, registry):
        text = registry.describe_tools()
        assert "- read_file: Read the content of a file in the workspace" in text
        assert "    - path (string, required): Workspace relative path" in text
        assert "    - encoding (string, optional)" in text


class TestValidator:

    def test_defaults_are_filled(self):
        result = ToolParameterValidator.validate_tool_call(READ_FILE.parameters_schema, {"path": "a.py"})
        assert result.is_valid
        assert result.params == {"path": "a.py", "encoding": "utf-8"}

    def test_input_is_not_mutated(self):
        params = {"path": "a.py"}
        ToolParameterValidator.validate_tool_call(READ_FILE.parameters_schema, params)
        assert params == {"path": "a.py"}

    def test_errors_name_the_field(self):
        result = ToolParameterValidator.validate_tool_call(READ_FILE.parameters_schema, {"path": 3})
        assert not result.is_valid
        assert result.errors[0].startswith("path:")

    def test_non_dict_parameters(self):
        result = ToolParameterValidator.validate_tool_call(READ_FILE.parameters_schema, ["a.py"])
        assert not result.is_valid


class TestExecute:

    @pytest.mark.asyncio
    async def test_successful_call(self, registry, dispatcher):
        result = await registry.execute("read_file", {"path": "README.md"})

        assert result.success
        assert result.data == "# Demo\n"
        assert result.execution_time_ms >= 0
        types = [e.type for e in dispatcher.get_history()]
        assert types == [EventType.TOOL_EXECUTION_STARTED, EventType.TOOL_EXECUTION_COMPLETED]

    @pytest.mark.asyncio
    async def test_sync_tool_runs(self, registry):
        result = await registry.execute("listFiles", {"prefix": "src"})
        assert result.success
        assert result.data == ["src/app.py"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry, dispatcher):
        result = await registry.execute("nope", {})

        assert not result.success
        assert result.error_kind == ToolErrorKind.NOT_FOUND
        assert dispatcher.get_history()[-1].type == EventType.TOOL_EXECUTION_ERROR
        assert dispatcher.get_history()[-1].payload.error_kind == "not_found"

    @pytest.mark.asyncio
    async def test_validation_failure_skips_tool(self, registry):
        result = await registry.execute("read_file", {})
        assert result.error_kind == ToolErrorKind.VALIDATION
        assert "path" in result.error

    @pytest.mark.asyncio
    async def test_exception_becomes_execution_error(self, registry):
        result = await registry.execute("read_file", {"path": "missing.py"})
        assert result.error_kind == ToolErrorKind.EXECUTION
        assert "No such file" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self, registry):
        result = await registry.execute("slow_tool", {})
        assert result.error_kind == ToolErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_permission_denied_without_approver(self, registry, dispatcher):
        result = await registry.execute("write_file", {"path": "a.py", "content": "x"})

        assert result.permission_denied
        warnings = [e for e in dispatcher.get_history() if e.type == EventType.SYSTEM_WARNING]
        assert len(warnings) == 1
        assert warnings[0].payload.details["permission"] == "filesystem.write"

    @pytest.mark.asyncio
    async def test_granted_permissions_on_context_skip_the_check(self, registry):
        context = ToolExecutionContext(granted_permissions=["filesystem.write"])
        result = await registry.execute("write_file", {"path": "a.py", "content": "abc"}, context)
        assert result.success
        assert result.data == {"path": "a.py", "bytes": 3}

    @pytest.mark.asyncio
    async def test_tool_returning_tool_result_is_passed_through(self, registry):
        async def partial(params, context):
            return ToolResult(success=False, error="half done", error_kind=ToolErrorKind.EXECUTION)

        registry.register(ToolDefinition(name="partial", description="Fails softly", execute=partial))
        result = await registry.execute("partial", {})
        assert result.error == "half done"

    @pytest.mark.asyncio
    async def test_events_carry_conversation_and_correlation(self, registry, dispatcher):
        context = ToolExecutionContext(conversation_id="c1", correlation_id="corr-1")
        await registry.execute("listFiles", {}, context)

        for event in dispatcher.get_history():
            assert event.conversation_id == "c1"
            assert event.payload.correlation_id == "corr-1"

    @pytest.mark.asyncio
    async def test_interactive_tool_requests_input(self, registry, dispatcher):
        context = ToolExecutionContext(conversation_id="c1", correlation_id="corr-7")
        result = await registry.execute("ask_user", {"prompt": "Which file?"}, context)

        assert result.success
        assert result.awaiting_input
        assert result.correlation_id == "corr-7"

        requests = [e for e in dispatcher.get_history() if e.type == EventType.USER_INTERACTION_REQUIRED]
        assert len(requests) == 1
        assert requests[0].id == "corr-7"
        assert requests[0].payload.details == {"prompt": "Which file?", "input_type": "text"}

    @pytest.mark.asyncio
    async def test_sync_tool_progress_reaches_async_subscribers(self, registry, dispatcher):
        def build(params, context):
            context.publish(EventType.SYSTEM_INFO, SystemPayload(message="50% done"))
            return "built"

        seen = []

        async def on_info(event):
            seen.append(event.payload.message)

        dispatcher.subscribe(EventType.SYSTEM_INFO, on_info)
        registry.register(ToolDefinition(name="build", description="Build the project", execute=build))

        result = await registry.execute("build", {}, ToolExecutionContext(conversation_id="c1"))
        for _ in range(20):
            if seen:
                break
            await asyncio.sleep(0.01)

        assert result.success
        assert seen == ["50% done"]
