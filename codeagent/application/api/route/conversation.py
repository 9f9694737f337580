from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from codeagent.domain.events.event_types import EventFilter, EventType
from codeagent.domain.exceptions import ConversationBusyError
from codeagent.domain.models.conversation_state import ConversationState

router = APIRouter(prefix="/api/v1")


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None


class UserInputRequest(BaseModel):
    correlation_id: str
    value: Any = None


class ConversationResponse(BaseModel):
    conversation_id: str
    status: str
    final_output: Optional[str] = None
    error: Optional[str] = None
    iteration_count: int
    paused: bool = False
    pending_correlation_id: Optional[str] = None
    ended: bool = False
    history: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_state(cls, state: ConversationState, include_history: bool = False) -> "ConversationResponse":
        summary = state.get_state_summary()
        return cls(
            conversation_id=state.conversation_id,
            status=summary["status"],
            final_output=state.final_output,
            error=state.error,
            iteration_count=state.iteration_count,
            paused=summary["paused"],
            pending_correlation_id=summary["pending_correlation_id"],
            ended=summary["ended"],
            history=[entry.model_dump(mode="json") for entry in state.history] if include_history else None
        )


def _container(request: Request):
    return request.app.state.container


# REST endpoint for one user message
@router.post("/conversations/{conversation_id}/messages")
async def post_message(
    conversation_id: str,
    body: MessageRequest,
    request: Request,
    response: Response,
    wait: bool = Query(True, description="Block until the run finishes")
):
    service = _container(request).service

    try:
        if not wait:
            service.start_message(conversation_id, body.message, body.context)
            response.status_code = 202
            return {"conversation_id": conversation_id, "status": "accepted"}

        state = await service.handle_message(conversation_id, body.message, body.context)
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ConversationResponse.from_state(state, include_history=True)


@router.post("/conversations/{conversation_id}/input", status_code=202)
async def post_user_input(conversation_id: str, body: UserInputRequest, request: Request):
    service = _container(request).service

    if await service.get_state(conversation_id) is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")

    event = service.submit_user_input(conversation_id, body.correlation_id, body.value)
    return {"conversation_id": conversation_id, "event_id": event.id}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    request: Request,
    include_history: bool = Query(False)
):
    state = await _container(request).service.get_state(conversation_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return ConversationResponse.from_state(state, include_history=include_history)


@router.post("/conversations/{conversation_id}/end")
async def end_conversation(conversation_id: str, request: Request):
    try:
        state = await _container(request).service.end_conversation(conversation_id)
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if state is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return ConversationResponse.from_state(state)


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    container = _container(request)
    if container.state_store.is_running(conversation_id):
        raise HTTPException(status_code=409, detail="Conversation has an active run")

    if not await container.service.clear_conversation(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return {"conversation_id": conversation_id, "cleared": True}


@router.get("/events")
async def list_events(
    request: Request,
    conversation_id: Optional[str] = None,
    types: Optional[List[str]] = Query(None),
    limit: int = Query(100, ge=1, le=1000)
):
    try:
        event_types = {EventType(value) for value in types} if types else None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    events = _container(request).dispatcher.get_history(
        EventFilter(types=event_types, conversation_id=conversation_id)
    )
    return [event.to_message() for event in events[-limit:]]
