from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from roleplay_core.core.security import sanitize_text
from roleplay_core.schemas.chat import DeleteResponse, MemoryStore, Scenario
from roleplay_core.schemas.common import ErrorResponse
from roleplay_core.services.chat_store import ChatStore, ChatStoreError, get_chat_store
from roleplay_core.services.session_manager import SessionManager, get_session_manager

router = APIRouter(prefix="/api/scenarios", tags=["scenarios"])

MAX_NAME_LEN = 200
MAX_TEXT_LEN = 12000
PASSWORD_MASK = "********"


@router.get("", response_model=list[Scenario])
async def list_scenarios(store: ChatStore = Depends(get_chat_store)) -> list[Scenario]:
    return [_public(scenario) for scenario in await store.list_scenarios()]


@router.get("/{scenario_id}", response_model=Scenario)
async def get_scenario(
    scenario_id: str,
    manager: SessionManager = Depends(get_session_manager),
    store: ChatStore = Depends(get_chat_store),
) -> Scenario:
    session = manager.live_session(scenario_id)
    scenario = session.scenario if session is not None else await store.get_scenario(scenario_id)
    if scenario is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scenario not found")
    return _public(scenario)


@router.post("", response_model=Scenario, status_code=status.HTTP_201_CREATED)
async def create_scenario(
    payload: Scenario,
    store: ChatStore = Depends(get_chat_store),
) -> Scenario:
    """Create a scenario. Memory always starts empty."""

    if await store.get_scenario(payload.id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Scenario id already exists")
    await _ensure_characters_exist(payload, store)
    scenario = _clean(payload).model_copy(update={"memory": MemoryStore()})
    if scenario.tunnel_password == PASSWORD_MASK:
        scenario.tunnel_password = None
    try:
        await store.save_scenario(scenario)
    except ChatStoreError as exc:
        raise _store_error(exc) from exc
    return _public(scenario)


@router.put("/{scenario_id}", response_model=Scenario)
async def update_scenario(
    scenario_id: str,
    payload: Scenario,
    manager: SessionManager = Depends(get_session_manager),
    store: ChatStore = Depends(get_chat_store),
) -> Scenario:
    """Update scenario settings. Memory is owned by the compression engine and is kept."""

    await _ensure_characters_exist(payload, store)
    update = _clean(payload)
    if update.tunnel_password == PASSWORD_MASK:
        live = manager.live_session(scenario_id)
        current = live.scenario if live is not None else await store.get_scenario(scenario_id)
        update.tunnel_password = current.tunnel_password if current is not None else None
    try:
        scenario = await manager.update_scenario(scenario_id, update)
    except ChatStoreError as exc:
        raise _store_error(exc) from exc
    if scenario is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scenario not found")
    return _public(scenario)


@router.delete("/{scenario_id}", response_model=DeleteResponse)
async def delete_scenario(
    scenario_id: str,
    manager: SessionManager = Depends(get_session_manager),
    store: ChatStore = Depends(get_chat_store),
) -> DeleteResponse:
    if manager.live_session(scenario_id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Scenario is open in a chat")
    try:
        deleted = await store.delete_scenario(scenario_id)
    except ChatStoreError as exc:
        raise _store_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scenario not found")
    return DeleteResponse(deleted=True)


@router.post("/direct/{character_id}", response_model=Scenario)
async def start_direct_chat(
    character_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> Scenario:
    """Open (or create) the one-on-one scenario for a character."""

    scenario = await manager.start_direct_chat(character_id)
    if scenario is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Character not found")
    return _public(scenario)


async def _ensure_characters_exist(scenario: Scenario, store: ChatStore) -> None:
    known = {character.id for character in await store.list_characters()}
    missing = [character_id for character_id in scenario.character_ids if character_id not in known]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown character ids: {', '.join(missing)}",
        )


def _clean(scenario: Scenario) -> Scenario:
    name = sanitize_text(scenario.name, MAX_NAME_LEN)
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Scenario name is required")
    return scenario.model_copy(
        update={
            "name": name,
            "description": sanitize_text(scenario.description, MAX_TEXT_LEN),
            "system_instruction": sanitize_text(scenario.system_instruction, MAX_TEXT_LEN),
            "user_persona": sanitize_text(scenario.user_persona, MAX_TEXT_LEN),
            "language": sanitize_text(scenario.language, 40) or "English",
        }
    )


def _public(scenario: Scenario) -> Scenario:
    if not scenario.tunnel_password:
        return scenario
    return scenario.model_copy(update={"tunnel_password": PASSWORD_MASK})


def _store_error(exc: ChatStoreError) -> HTTPException:
    status_code = status.HTTP_409_CONFLICT
    if exc.code == "APP_SECRET_MISSING":
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(code=exc.code, message=exc.message).model_dump(),
    )
