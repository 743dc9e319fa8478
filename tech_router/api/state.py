# Role: Read-only transparency endpoint plus generation settings for the UI.
# Does NOT change any flow logic; settings writes go through FlowController.

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tech_router.api.deps import get_flow_controller
from tech_router.core.flow_controller import FlowController
from tech_router.models.message import Message
from tech_router.models.settings import GenerationSettings
from tech_router.utils.token_count import estimate_tokens

router = APIRouter(tags=["state"])


class StateSnapshot(BaseModel):
    session_id: str
    phase: str
    identified_technology: Optional[str]
    is_generating: bool
    last_error: Optional[str]
    turn_count: int
    token_estimate: int
    history: list[Message]


@router.get("/state/{session_id}", response_model=StateSnapshot)
def get_state(session_id: str, flow: FlowController = Depends(get_flow_controller)) -> StateSnapshot:
    state = flow.state_manager.get_or_create(session_id)
    return StateSnapshot(
        session_id=session_id,
        phase=state.phase.value,
        identified_technology=state.identified_technology,
        is_generating=state.is_generating,
        last_error=state.last_error,
        turn_count=state.turn_count,
        token_estimate=estimate_tokens(state.routing_prompt or flow.routing_prompt, state.conversation_history),
        history=state.conversation_history,
    )


@router.get("/settings/{session_id}", response_model=GenerationSettings)
def get_settings(session_id: str, flow: FlowController = Depends(get_flow_controller)) -> GenerationSettings:
    return flow.state_manager.get_or_create(session_id).settings


@router.put("/settings/{session_id}", response_model=GenerationSettings)
def put_settings(
    session_id: str,
    settings: GenerationSettings,
    flow: FlowController = Depends(get_flow_controller),
) -> GenerationSettings:
    state = flow.state_manager.get_or_create(session_id)
    if state.is_generating:
        raise HTTPException(status_code=409, detail="Cannot change settings while generating")
    return flow.update_settings(state, settings)


@router.post("/settings/{session_id}/reset", response_model=GenerationSettings)
def reset_settings(session_id: str, flow: FlowController = Depends(get_flow_controller)) -> GenerationSettings:
    state = flow.state_manager.get_or_create(session_id)
    if state.is_generating:
        raise HTTPException(status_code=409, detail="Cannot reset settings while generating")
    return flow.reset_settings(state)
