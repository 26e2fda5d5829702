from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import Request

from roleplay_core.schemas.chat import Character, Scenario
from roleplay_core.services.chat_session import ChatSession
from roleplay_core.services.chat_store import ChatStore
from roleplay_core.services.compression_service import CompressionEngine
from roleplay_core.services.presets import direct_chat_scenario
from roleplay_core.services.visual_service import VisualTrigger

logger = logging.getLogger(__name__)


class SessionManager:
    """Keep one live ChatSession per opened scenario."""

    def __init__(
        self,
        store: ChatStore,
        compression_engine: CompressionEngine,
        visual_trigger: VisualTrigger,
        max_live_sessions: int = 32,
    ) -> None:
        self._store = store
        self._compression_engine = compression_engine
        self._visual_trigger = visual_trigger
        self._max_live_sessions = max(1, max_live_sessions)
        self._sessions: dict[str, ChatSession] = {}
        self._sessions_lock = asyncio.Lock()

    async def get_session(self, scenario_id: str) -> Optional[ChatSession]:
        """Return the live session, loading it from the store on first use."""

        async with self._sessions_lock:
            existing = self._sessions.pop(scenario_id, None)
            if existing is not None:
                # Reinsert to keep the dict ordered by last use.
                self._sessions[scenario_id] = existing
                return existing
            scenario = await self._store.get_scenario(scenario_id)
            if scenario is None:
                return None
            characters = await self._participants(scenario)
            messages = await self._store.load_messages(scenario_id)
            session = ChatSession(scenario, characters, messages)
            self._visual_trigger.reset(session)
            self._sessions[scenario_id] = session
            evicted = self._evict_idle(keep=scenario_id)

        for stale in evicted:
            await stale.close()
        logger.info(
            "Opened scenario %s with %d characters and %d messages",
            scenario_id,
            len(characters),
            len(messages),
        )
        if self._compression_engine.needs_work(session):
            session.spawn(self._compression_engine.check(session), "compression")
        return session

    def live_session(self, scenario_id: str) -> Optional[ChatSession]:
        return self._sessions.get(scenario_id)

    async def update_scenario(self, scenario_id: str, update: Scenario) -> Optional[Scenario]:
        """Apply user edits to a scenario without touching its memory.

        The memory object stays shared with the live session so an in-flight
        compression keeps writing to the record that gets persisted.
        """

        session = self._sessions.get(scenario_id)
        if session is not None:
            current = session.scenario
        else:
            current = await self._store.get_scenario(scenario_id)
        if current is None:
            return None

        fields = update.model_dump(exclude={"id", "memory"})
        scenario = Scenario.model_validate({**fields, "id": scenario_id})
        scenario.memory = current.memory
        if session is not None:
            session.scenario = scenario
            session.characters = await self._participants(scenario)
        await self._store.save_scenario(scenario)
        return scenario

    async def refresh_character(self, character: Character) -> None:
        """Push an edited character card into the live sessions that use it."""

        for session in list(self._sessions.values()):
            session.characters = [
                character if item.id == character.id else item for item in session.characters
            ]

    async def start_direct_chat(self, character_id: str) -> Optional[Scenario]:
        """Return the one-on-one scenario for a character, creating it if needed."""

        character = await self._store.get_character(character_id)
        if character is None:
            return None
        for scenario in await self._store.list_scenarios():
            if scenario.character_ids == [character.id] and scenario.name == character.name:
                return scenario
        scenario = direct_chat_scenario(character)
        await self._store.save_scenario(scenario)
        logger.info("Created direct chat %s for character %s", scenario.id, character.id)
        return scenario

    async def shutdown(self) -> None:
        """Cancel background work of every live session."""

        async with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)

    def _evict_idle(self, keep: str) -> list[ChatSession]:
        """Drop least recently used idle sessions above the live limit.

        Busy sessions stay; their state is persisted after every step, so an
        evicted scenario reloads from the store on its next use.
        """

        evicted: list[ChatSession] = []
        for scenario_id in list(self._sessions):
            if len(self._sessions) <= self._max_live_sessions:
                break
            session = self._sessions[scenario_id]
            if scenario_id == keep or not session.is_idle:
                continue
            evicted.append(self._sessions.pop(scenario_id))
            logger.info("Evicted idle scenario %s", scenario_id)
        return evicted

    async def _participants(self, scenario: Scenario) -> list[Character]:
        by_id = {character.id: character for character in await self._store.list_characters()}
        participants = []
        for character_id in scenario.character_ids:
            character = by_id.get(character_id)
            if character is None:
                logger.warning("Scenario %s references missing character %s", scenario.id, character_id)
                continue
            participants.append(character)
        return participants


def get_session_manager(request: Request) -> SessionManager:
    """Dependency to access the app session manager."""

    return request.app.state.session_manager
