from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from roleplay_core.core.security import sanitize_text
from roleplay_core.schemas.chat import Character, DeleteResponse
from roleplay_core.services.chat_store import ChatStore, get_chat_store
from roleplay_core.services.session_manager import SessionManager, get_session_manager

router = APIRouter(prefix="/api/characters", tags=["characters"])

MAX_NAME_LEN = 120
MAX_CARD_FIELD_LEN = 12000


@router.get("", response_model=list[Character])
async def list_characters(store: ChatStore = Depends(get_chat_store)) -> list[Character]:
    return await store.list_characters()


@router.post("", response_model=Character, status_code=status.HTTP_201_CREATED)
async def create_character(
    payload: Character,
    store: ChatStore = Depends(get_chat_store),
) -> Character:
    """Create a character card."""

    if await store.get_character(payload.id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Character id already exists")
    return await store.upsert_character(_clean(payload))


@router.put("/{character_id}", response_model=Character)
async def update_character(
    character_id: str,
    payload: Character,
    store: ChatStore = Depends(get_chat_store),
    manager: SessionManager = Depends(get_session_manager),
) -> Character:
    """Replace a character card; open chats pick up the change on their next turn."""

    if await store.get_character(character_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Character not found")
    character = _clean(payload.model_copy(update={"id": character_id}))
    await store.upsert_character(character)
    await manager.refresh_character(character)
    return character


@router.delete("/{character_id}", response_model=DeleteResponse)
async def delete_character(
    character_id: str,
    store: ChatStore = Depends(get_chat_store),
) -> DeleteResponse:
    """Delete a character that no scenario references."""

    for scenario in await store.list_scenarios():
        if character_id in scenario.character_ids:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Character is used by scenario {scenario.name}",
            )
    deleted = await store.delete_character(character_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Character not found")
    return DeleteResponse(deleted=True)


def _clean(character: Character) -> Character:
    name = sanitize_text(character.name, MAX_NAME_LEN)
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Character name is required")
    return character.model_copy(
        update={
            "name": name,
            "persona": sanitize_text(character.persona, MAX_CARD_FIELD_LEN),
            "system_instruction": sanitize_text(character.system_instruction, MAX_CARD_FIELD_LEN),
            "pre_history": sanitize_text(character.pre_history, MAX_CARD_FIELD_LEN),
            "post_history": sanitize_text(character.post_history, MAX_CARD_FIELD_LEN),
            "visual_description": sanitize_text(character.visual_description, MAX_CARD_FIELD_LEN),
        }
    )
