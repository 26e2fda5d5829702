from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from roleplay_core.schemas.chat import (
    ImageTriggerResponse,
    MemorySnapshotResponse,
    MessageListResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from roleplay_core.services.chat_session import ChatSession, TurnState
from roleplay_core.services.compression_service import CompressionEngine, get_compression_engine
from roleplay_core.services.session_manager import SessionManager, get_session_manager
from roleplay_core.services.turn_service import TurnOrchestrator, get_turn_orchestrator
from roleplay_core.services.visual_service import VisualTrigger, get_visual_trigger

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.get("/{scenario_id}/messages", response_model=MessageListResponse)
async def list_messages(
    scenario_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> MessageListResponse:
    session = await _require_session(scenario_id, manager)
    return MessageListResponse(
        messages=session.messages,
        turn_state=session.turn_state.value,
        image_state=session.image_state.value,
    )


@router.post("/{scenario_id}/send", response_model=SendMessageResponse)
async def send_message(
    scenario_id: str,
    payload: SendMessageRequest,
    manager: SessionManager = Depends(get_session_manager),
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> SendMessageResponse:
    """Post a user message and wait for the character's reply."""

    if not payload.text.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message text is empty")
    session = await _require_session(scenario_id, manager)
    _ensure_idle(session)
    accepted = await orchestrator.submit_user_message(session, payload.text)
    if not accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A response is still pending")
    return SendMessageResponse(accepted=True)


@router.post("/{scenario_id}/regenerate", response_model=SendMessageResponse)
async def regenerate(
    scenario_id: str,
    manager: SessionManager = Depends(get_session_manager),
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> SendMessageResponse:
    """Re-run the last character turn."""

    session = await _require_session(scenario_id, manager)
    _ensure_idle(session)
    accepted = await orchestrator.regenerate_last(session)
    return SendMessageResponse(accepted=accepted)


@router.post("/{scenario_id}/image", response_model=ImageTriggerResponse)
async def trigger_image(
    scenario_id: str,
    manager: SessionManager = Depends(get_session_manager),
    visual_trigger: VisualTrigger = Depends(get_visual_trigger),
) -> ImageTriggerResponse:
    """Illustrate the current scene now instead of waiting for the cadence."""

    session = await _require_session(scenario_id, manager)
    return ImageTriggerResponse(started=visual_trigger.generate_now(session))


@router.get("/{scenario_id}/memory", response_model=MemorySnapshotResponse)
async def get_memory(
    scenario_id: str,
    manager: SessionManager = Depends(get_session_manager),
    engine: CompressionEngine = Depends(get_compression_engine),
) -> MemorySnapshotResponse:
    session = await _require_session(scenario_id, manager)
    return MemorySnapshotResponse(
        memory=session.memory,
        compression_state=session.compression_state.value,
        window_size=engine.window_size,
        tier_bounds=[spec.bound for spec in engine.tiers],
    )


async def _require_session(scenario_id: str, manager: SessionManager) -> ChatSession:
    session = await manager.get_session(scenario_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scenario not found")
    return session


def _ensure_idle(session: ChatSession) -> None:
    if session.turn_state is TurnState.AWAITING_RESPONSE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A response is still pending")
