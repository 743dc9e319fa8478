# Role: Thin HTTP adapter for the conversation endpoints. Validates request/response shapes and delegates
# each operation to FlowController (business logic lives in core, not in the API layer).

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tech_router.api.deps import get_flow_controller
from tech_router.core.flow_controller import FlowController, TurnResponse
from tech_router.llm.errors import ConversationBusy

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatRequest(BaseModel):
    session_id: str
    user_message: str


class SessionRequest(BaseModel):
    session_id: str


class RegenerateRequest(BaseModel):
    session_id: str
    message_id: Optional[str] = None


class ChatResponse(BaseModel):
    session_id: str
    assistant_message: str
    phase: str
    identified_technology: Optional[str] = None
    routing_message: Optional[str] = None
    message_id: Optional[str] = None
    is_error: bool = False
    stopped: bool = False


class GreetingResponse(BaseModel):
    session_id: str
    assistant_message: str
    message_id: Optional[str] = None


class StopResponse(BaseModel):
    session_id: str
    stopped: bool


def _to_response(result: TurnResponse) -> ChatResponse:
    return ChatResponse(
        session_id=result.session_id,
        assistant_message=result.assistant_message,
        phase=result.phase.value,
        identified_technology=result.identified_technology,
        routing_message=result.routing_message,
        message_id=result.message_id,
        is_error=result.is_error,
        stopped=result.stopped,
    )


@router.post("", response_model=ChatResponse)
def chat(req: ChatRequest, flow: FlowController = Depends(get_flow_controller)) -> ChatResponse:
    # 1) Forward (session state, user_message) to the orchestrator
    # 2) Return the assistant text in a stable schema for UI/clients
    if not req.user_message.strip():
        raise HTTPException(status_code=422, detail="user_message must be non-empty")

    state = flow.state_manager.get_or_create(req.session_id)
    try:
        result = flow.handle_turn(state, req.user_message)
    except ConversationBusy as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _to_response(result)


@router.post("/new", response_model=GreetingResponse)
def new_conversation(req: SessionRequest, flow: FlowController = Depends(get_flow_controller)) -> GreetingResponse:
    state = flow.state_manager.get_or_create(req.session_id)
    try:
        greeting = flow.start_conversation(state)
    except ConversationBusy as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return GreetingResponse(session_id=req.session_id, assistant_message=greeting.content, message_id=greeting.id)


@router.post("/regenerate", response_model=ChatResponse)
def regenerate(req: RegenerateRequest, flow: FlowController = Depends(get_flow_controller)) -> ChatResponse:
    state = flow.state_manager.get_or_create(req.session_id)
    try:
        result = flow.regenerate(state, req.message_id)
    except ConversationBusy as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Message not found: {req.message_id}") from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if result is None:
        raise HTTPException(status_code=400, detail="No user message left to regenerate from")
    return _to_response(result)


@router.post("/stop", response_model=StopResponse)
def stop(req: SessionRequest, flow: FlowController = Depends(get_flow_controller)) -> StopResponse:
    state = flow.state_manager.get_or_create(req.session_id)
    return StopResponse(session_id=req.session_id, stopped=flow.stop(state))


@router.post("/clear", response_model=SessionRequest)
def clear(req: SessionRequest, flow: FlowController = Depends(get_flow_controller)) -> SessionRequest:
    state = flow.state_manager.get_or_create(req.session_id)
    try:
        flow.clear(state)
    except ConversationBusy as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return req
