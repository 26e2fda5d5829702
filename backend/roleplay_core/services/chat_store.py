from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import TYPE_CHECKING, Any, Iterable, Optional, Protocol

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roleplay_core.repos.blob_repo import BlobRepo
from roleplay_core.schemas.chat import Character, Message, MessageState, Scenario
from roleplay_core.utils.crypto import SecretCipher

if TYPE_CHECKING:
    from roleplay_core.services.chat_session import ChatSession

logger = logging.getLogger(__name__)

CHARACTERS_KEY = "characters"
SCENARIOS_KEY = "scenarios"


def messages_key(scenario_id: str) -> str:
    return f"messages:{scenario_id}"


class KeyValueStore(Protocol):
    """Get/set of JSON-serializable values by key. No cross-key transactions."""

    async def get(self, key: str) -> Any:
        """Return the stored value or None."""

    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    async def delete(self, key: str) -> None:
        """Remove a key if present."""


class InMemoryKeyValueStore:
    """Process-local store; values are round-tripped through JSON like the real one."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class SQLKeyValueStore:
    """Key/value store backed by the ``kv_blobs`` table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> Any:
        async with self._sessionmaker() as db:
            raw = await BlobRepo(db).get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable blob under key %s", key)
            return None

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        async with self._sessionmaker() as db:
            async with db.begin():
                await BlobRepo(db).upsert(key, payload)

    async def delete(self, key: str) -> None:
        async with self._sessionmaker() as db:
            async with db.begin():
                await BlobRepo(db).delete(key)


class ChatStoreError(RuntimeError):
    """Raised when a store operation is rejected."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class ChatStore:
    """Typed access to characters, scenarios, and message lists in a key/value store."""

    def __init__(self, kv: KeyValueStore, secret_key: str = "") -> None:
        self._kv = kv
        self._secret_key = secret_key
        self._lock = asyncio.Lock()

    async def list_characters(self) -> list[Character]:
        raw = await self._kv.get(CHARACTERS_KEY) or []
        return [Character.model_validate(item) for item in raw]

    async def get_character(self, character_id: str) -> Optional[Character]:
        for character in await self.list_characters():
            if character.id == character_id:
                return character
        return None

    async def upsert_character(self, character: Character) -> Character:
        async with self._lock:
            characters = await self.list_characters()
            await self._kv.set(CHARACTERS_KEY, _upsert_dump(characters, character))
        return character

    async def delete_character(self, character_id: str) -> bool:
        async with self._lock:
            characters = await self.list_characters()
            remaining = [item for item in characters if item.id != character_id]
            if len(remaining) == len(characters):
                return False
            await self._kv.set(CHARACTERS_KEY, [item.model_dump(mode="json") for item in remaining])
        return True

    async def list_scenarios(self) -> list[Scenario]:
        raw = await self._kv.get(SCENARIOS_KEY) or []
        return [self._unseal(Scenario.model_validate(item)) for item in raw]

    async def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        for scenario in await self.list_scenarios():
            if scenario.id == scenario_id:
                return scenario
        return None

    async def save_scenario(self, scenario: Scenario) -> Scenario:
        sealed = self._seal(scenario)
        async with self._lock:
            raw = await self._kv.get(SCENARIOS_KEY) or []
            scenarios = [Scenario.model_validate(item) for item in raw]
            await self._kv.set(SCENARIOS_KEY, _upsert_dump(scenarios, sealed))
        return scenario

    async def delete_scenario(self, scenario_id: str) -> bool:
        if await self._kv.get(messages_key(scenario_id)):
            raise ChatStoreError(
                "SCENARIO_IN_USE", "Scenario still has stored messages; clear the chat first."
            )
        async with self._lock:
            raw = await self._kv.get(SCENARIOS_KEY) or []
            remaining = [item for item in raw if item.get("id") != scenario_id]
            if len(remaining) == len(raw):
                return False
            await self._kv.set(SCENARIOS_KEY, remaining)
        return True

    async def load_messages(self, scenario_id: str) -> list[Message]:
        """Load the message list; placeholders from an interrupted run are dropped."""

        raw = await self._kv.get(messages_key(scenario_id)) or []
        messages = [Message.model_validate(item) for item in raw]
        return [item for item in messages if item.state is not MessageState.PENDING]

    async def save_messages(self, scenario_id: str, messages: Iterable[Message]) -> None:
        payload = [
            item.model_dump(mode="json") for item in messages if item.state is not MessageState.PENDING
        ]
        await self._kv.set(messages_key(scenario_id), payload)

    async def clear_messages(self, scenario_id: str) -> None:
        await self._kv.delete(messages_key(scenario_id))

    async def save_session(self, session: "ChatSession") -> None:
        await self.save_scenario(session.scenario)
        await self.save_messages(session.scenario_id, session.messages)

    async def seed(self, characters: Iterable[Character], scenarios: Iterable[Scenario]) -> bool:
        """Populate an empty store; returns False when data already exists."""

        if await self._kv.get(CHARACTERS_KEY) or await self._kv.get(SCENARIOS_KEY):
            return False
        for character in characters:
            await self.upsert_character(character)
        for scenario in scenarios:
            await self.save_scenario(scenario)
        return True

    def _seal(self, scenario: Scenario) -> Scenario:
        if not scenario.tunnel_password:
            return scenario
        sealed = self._cipher().seal(scenario.tunnel_password)
        return scenario.model_copy(update={"tunnel_password": sealed, "memory": copy.deepcopy(scenario.memory)})

    def _unseal(self, scenario: Scenario) -> Scenario:
        if not scenario.tunnel_password:
            return scenario
        try:
            scenario.tunnel_password = self._cipher().unseal(scenario.tunnel_password)
        except (ValueError, ChatStoreError):
            logger.warning("Could not decrypt endpoint password for scenario %s", scenario.id)
            scenario.tunnel_password = None
        return scenario

    def _cipher(self) -> SecretCipher:
        try:
            return SecretCipher(self._secret_key)
        except ValueError as exc:
            raise ChatStoreError(
                "APP_SECRET_MISSING", "APP_SECRET_KEY must be set to store endpoint passwords."
            ) from exc


def _upsert_dump(items: list, item: Any) -> list[dict]:
    replaced = False
    payload: list[dict] = []
    for existing in items:
        if existing.id == item.id:
            payload.append(item.model_dump(mode="json"))
            replaced = True
        else:
            payload.append(existing.model_dump(mode="json"))
    if not replaced:
        payload.append(item.model_dump(mode="json"))
    return payload


def get_chat_store(request: Request) -> ChatStore:
    """Dependency to access the app chat store."""

    return request.app.state.chat_store
