from typing import Dict, List, Any, Optional, Iterable
import asyncio
import inspect
import time
import uuid

import structlog

from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import EventType, ToolExecutionPayload
from codeagent.domain.exceptions import ToolRegistrationError
from codeagent.infrastructure.observability.logging import agent_logger
from .permission_manager import PermissionManager
from .tool_models import (
    ToolDefinition,
    ToolErrorKind,
    ToolExecutionContext,
    ToolResult,
    ToolStatus,
)
from .tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)


class ToolRegistry:
    """Registry for managing and executing available tools"""

    def __init__(
        self,
        permission_manager: Optional[PermissionManager] = None,
        dispatcher: Optional[EventDispatcher] = None,
        default_timeout: float = 60.0
    ):
        self.tools: Dict[str, ToolDefinition] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        self.permission_manager = permission_manager or PermissionManager()
        self.dispatcher = dispatcher
        self.default_timeout = default_timeout
        self._description_cache: Optional[str] = None

    def register(self, definition: ToolDefinition):
        """Register a new tool; duplicate names and bad schemas are rejected"""

        if definition.name in self.tools:
            raise ToolRegistrationError(f"Tool already registered: {definition.name}")

        problems = ToolParameterValidator.check_schema(definition.parameters_schema)
        if problems:
            raise ToolRegistrationError(f"Tool '{definition.name}': {'; '.join(problems)}")

        self.tools[definition.name] = definition
        self.tool_categories.setdefault(definition.category, []).append(definition.name)
        self._description_cache = None

        logger.debug("tool_registered", tool_name=definition.name, category=definition.category)

    def register_many(self, definitions: Iterable[ToolDefinition]):
        for definition in definitions:
            self.register(definition)

    def unregister(self, name: str) -> bool:
        tool = self.tools.pop(name, None)
        if tool is None:
            return False
        names = self.tool_categories.get(tool.category, [])
        if name in names:
            names.remove(name)
        if not names:
            self.tool_categories.pop(tool.category, None)
        self._description_cache = None
        return True

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self.tools.get(name)

    def list_tools(self) -> List[ToolDefinition]:
        return list(self.tools.values())

    def get_tools_by_category(self, category: str) -> List[ToolDefinition]:
        """Get tools by category"""

        names = self.tool_categories.get(category, [])
        return [self.tools[name] for name in names if name in self.tools]

    def search_tools(self, query: str) -> List[ToolDefinition]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            tool for tool in self.tools.values()
            if query_lower in tool.name.lower() or query_lower in tool.description.lower()
        ]

    def describe_tools(self) -> str:
        """Capability descriptions handed to the reasoning service"""

        if self._description_cache is None:
            self._description_cache = "\n\n".join(
                self._describe(tool) for tool in self.tools.values()
            )
        return self._description_cache

    @staticmethod
    def _describe(tool: ToolDefinition) -> str:
        lines = [f"- {tool.name}: {tool.description}"]
        properties = tool.parameters_schema.get("properties", {})
        required = set(tool.parameters_schema.get("required", []))
        if properties:
            lines.append("  Parameters:")
            for param, schema in properties.items():
                param_type = schema.get("type", "any") if isinstance(schema, dict) else "any"
                flag = "required" if param in required else "optional"
                line = f"    - {param} ({param_type}, {flag})"
                description = schema.get("description") if isinstance(schema, dict) else None
                if description:
                    line += f": {description}"
                lines.append(line)
        return "\n".join(lines)

    async def execute(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[ToolExecutionContext] = None
    ) -> ToolResult:
        """Run a tool by name. Failures come back as results, never as exceptions."""

        params = params if params is not None else {}
        context = self._prepare_context(context)
        start_time = time.perf_counter()

        self._publish(context, EventType.TOOL_EXECUTION_STARTED, tool_name=name, parameters=params)

        tool = self.get(name)
        if tool is None:
            return self._finish(
                context, name, params, start_time,
                ToolResult.failure(f"Tool not found: {name}", ToolErrorKind.NOT_FOUND)
            )

        validation = ToolParameterValidator.validate_tool_call(tool.parameters_schema, params)
        if not validation.is_valid:
            return self._finish(
                context, name, params, start_time,
                ToolResult.failure(
                    f"Invalid parameters for tool '{name}': {'; '.join(validation.errors)}",
                    ToolErrorKind.VALIDATION
                )
            )
        params = validation.params

        decision = await self.permission_manager.check_permissions(
            name, tool.required_permissions, params, context
        )
        if not decision.granted:
            return self._finish(
                context, name, params, start_time,
                ToolResult.failure(
                    f"Permission denied for tool '{name}': {decision.reason}",
                    ToolErrorKind.PERMISSION_DENIED
                )
            )

        timeout = tool.timeout_seconds or self.default_timeout
        try:
            output = await asyncio.wait_for(self._invoke(tool, params, context), timeout=timeout)
        except asyncio.TimeoutError:
            result = ToolResult.failure(
                f"Tool '{name}' timed out after {timeout}s", ToolErrorKind.TIMEOUT
            )
        except Exception as e:
            logger.error("tool_execution_exception", tool_name=name, error=str(e), exc_info=True)
            result = ToolResult.failure(str(e) or type(e).__name__, ToolErrorKind.EXECUTION)
        else:
            result = self._to_result(tool, output, context)

        return self._finish(context, name, params, start_time, result)

    async def _invoke(self, tool: ToolDefinition, params: Dict[str, Any], context: ToolExecutionContext) -> Any:
        if inspect.iscoroutinefunction(tool.execute):
            return await tool.execute(params, context)
        if context.dispatcher is not None:
            context.dispatcher.bind_loop(asyncio.get_running_loop())
        output = await asyncio.to_thread(tool.execute, params, context)
        if inspect.isawaitable(output):
            output = await output
        return output

    @staticmethod
    def _to_result(tool: ToolDefinition, output: Any, context: ToolExecutionContext) -> ToolResult:
        if isinstance(output, ToolResult):
            result = output
        else:
            result = ToolResult(success=True, data=output)
        if tool.interactive and result.success:
            result = result.model_copy(update={
                "status": result.status or ToolStatus.USER_INPUT_REQUESTED.value,
                "correlation_id": result.correlation_id or context.correlation_id,
            })
        return result

    def _prepare_context(self, context: Optional[ToolExecutionContext]) -> ToolExecutionContext:
        context = context or ToolExecutionContext()
        updates: Dict[str, Any] = {}
        if context.correlation_id is None:
            updates["correlation_id"] = str(uuid.uuid4())
        if context.dispatcher is None and self.dispatcher is not None:
            updates["dispatcher"] = self.dispatcher
        return context.model_copy(update=updates) if updates else context

    def _finish(
        self,
        context: ToolExecutionContext,
        name: str,
        params: Dict[str, Any],
        start_time: float,
        result: ToolResult
    ) -> ToolResult:
        duration_ms = (time.perf_counter() - start_time) * 1000
        result = result.model_copy(update={"execution_time_ms": duration_ms})

        agent_logger.log_tool_execution(
            tool_name=name,
            conversation_id=context.conversation_id,
            input_data=params,
            output_data=result.data if result.success else None,
            duration_ms=duration_ms,
            success=result.success,
            error=result.error
        )

        if result.success:
            self._publish(
                context, EventType.TOOL_EXECUTION_COMPLETED,
                tool_name=name, parameters=params, result=result.data, duration_ms=duration_ms
            )
        else:
            self._publish(
                context, EventType.TOOL_EXECUTION_ERROR,
                tool_name=name, parameters=params, error=result.error,
                error_kind=result.error_kind.value if result.error_kind else None,
                duration_ms=duration_ms
            )
        return result

    @staticmethod
    def _publish(context: ToolExecutionContext, event_type: EventType, **fields):
        if context.dispatcher is None:
            return
        context.dispatcher.dispatch(
            event_type,
            ToolExecutionPayload(
                conversation_id=context.conversation_id,
                correlation_id=context.correlation_id,
                source="ToolRegistry",
                **fields
            )
        )
