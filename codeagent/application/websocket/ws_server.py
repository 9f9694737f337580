from typing import Any, Dict
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
import structlog

from codeagent.domain.exceptions import ConversationBusyError
from .schema.events import MessageType, UserInputMessage, UserMessage

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.websocket("/ws/conversations/{conversation_id}")
async def conversation_websocket(websocket: WebSocket, conversation_id: str):
    """Main WebSocket endpoint for agent interaction"""

    container = websocket.app.state.container
    connection_manager = container.connection_manager
    streaming_handler = container.streaming_handler

    # Connect the WebSocket
    await connection_manager.connect(websocket, conversation_id)
    streaming_handler.attach(conversation_id)

    try:
        # Main message loop
        while True:
            data = await websocket.receive_json()
            connection_manager.touch(conversation_id)

            try:
                await handle_client_message(container, conversation_id, data)
            except ConversationBusyError as e:
                await connection_manager.send_error(conversation_id, str(e), error_code="conversation_busy")
            except ValidationError as e:
                await connection_manager.send_error(
                    conversation_id,
                    f"Invalid message: {e.errors()[0]['msg']}",
                    error_code="invalid_message"
                )

    except WebSocketDisconnect:
        logger.info("Client disconnected", conversation_id=conversation_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), conversation_id=conversation_id)
    finally:
        streaming_handler.detach(conversation_id)
        await connection_manager.disconnect(conversation_id, websocket)


async def handle_client_message(container, conversation_id: str, data: Dict[str, Any]):
    """Route one client frame to the conversation service"""

    message_type = data.get("type") if isinstance(data, dict) else None

    if message_type == MessageType.USER_MESSAGE:
        message = UserMessage(**data)
        container.service.start_message(conversation_id, message.content, message.context)

    elif message_type == MessageType.USER_INPUT:
        answer = UserInputMessage(**data)
        container.service.submit_user_input(conversation_id, answer.correlation_id, answer.value)

    else:
        await container.connection_manager.send_error(
            conversation_id,
            f"Unsupported message type: {message_type}",
            error_code="unsupported_type"
        )
