"""Tools for talking to the user: asking a question and delivering an answer."""

from typing import Dict, Any, List

from codeagent.domain.events.event_types import EventType, InteractionPayload
from codeagent.domain.tool.tool_models import ToolDefinition, ToolExecutionContext


async def ask_user(params: Dict[str, Any], context: ToolExecutionContext) -> Dict[str, Any]:
    """Publish a request for input; the loop suspends until the answer arrives."""
    details = {
        "prompt": params["prompt"],
        "input_type": params.get("input_type", "text"),
    }
    if params.get("options"):
        details["options"] = params["options"]

    # The event id doubles as the correlation id the answer must carry
    context.publish(
        EventType.USER_INTERACTION_REQUIRED,
        InteractionPayload(
            interaction_type="request_input",
            details=details,
            source="ask_user"
        ),
        forced_id=context.correlation_id
    )
    return {"prompt": params["prompt"], "correlation_id": context.correlation_id}


async def respond(params: Dict[str, Any], context: ToolExecutionContext) -> Dict[str, Any]:
    return {"message": params["message"]}


ASK_USER = ToolDefinition(
    name="ask_user",
    description="Ask the user a question and wait for their answer",
    parameters_schema={
        "type": "object",
        "properties": {
            "prompt": {"type": "string", "description": "Question shown to the user"},
            "input_type": {
                "type": "string",
                "enum": ["text", "confirmation", "choice"],
                "default": "text",
            },
            "options": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["prompt"],
    },
    required_permissions=["interaction.userInput"],
    execute=ask_user,
    category="interaction",
    interactive=True,
)

RESPOND = ToolDefinition(
    name="respond",
    description="Send the final answer to the user and finish the task",
    parameters_schema={
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "Answer shown to the user"},
        },
        "required": ["message"],
    },
    execute=respond,
    category="interaction",
)


def builtin_tools() -> List[ToolDefinition]:
    return [ASK_USER, RESPOND]
