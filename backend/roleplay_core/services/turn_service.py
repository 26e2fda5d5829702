from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from fastapi import Request

from roleplay_core.providers.base import ProviderError
from roleplay_core.schemas.chat import Character, Message, MessageSender, MessageState
from roleplay_core.services.chat_session import ChatSession, TurnState
from roleplay_core.services.compression_service import CompressionEngine
from roleplay_core.services.contracts import (
    Broadcaster,
    NullBroadcaster,
    TextGenerator,
    message_event,
)
from roleplay_core.services.prompt_builder import PromptBuilder

if TYPE_CHECKING:
    from roleplay_core.services.chat_store import ChatStore
    from roleplay_core.services.visual_service import VisualTrigger

logger = logging.getLogger(__name__)


class TurnOrchestrator:
    """Drive user/character turns with at most one generation in flight per session."""

    def __init__(
        self,
        prompt_builder: PromptBuilder,
        text_generator: TextGenerator,
        compression_engine: Optional[CompressionEngine] = None,
        visual_trigger: Optional["VisualTrigger"] = None,
        *,
        timeout_sec: float = 60,
        store: Optional["ChatStore"] = None,
        broadcaster: Optional[Broadcaster] = None,
    ) -> None:
        self._prompt_builder = prompt_builder
        self._text_generator = text_generator
        self._compression_engine = compression_engine
        self._visual_trigger = visual_trigger
        self._timeout = timeout_sec
        self._store = store
        self._broadcaster = broadcaster or NullBroadcaster()

    async def submit_user_message(self, session: ChatSession, text: str) -> bool:
        """Append the user's message and run one character turn.

        Returns False without touching the session when a response is still
        pending or the text is blank.
        """

        cleaned = (text or "").strip()
        if not cleaned or session.turn_state is TurnState.AWAITING_RESPONSE:
            return False

        user_message = session.append_message(Message(sender=MessageSender.USER, text=cleaned))
        speaker = session.current_speaker()
        if speaker is None:
            await self._broadcaster.broadcast(
                session.scenario_id, message_event("message_added", user_message)
            )
            await self._persist(session)
            self._schedule_compression(session)
            return True

        session.turn_state = TurnState.AWAITING_RESPONSE
        await self._broadcaster.broadcast(
            session.scenario_id, message_event("message_added", user_message)
        )
        await self._run_turn(session, speaker, advance=True)
        return True

    async def regenerate_last(self, session: ChatSession) -> bool:
        """Replace the trailing character reply with a fresh one from the same speaker."""

        if session.turn_state is TurnState.AWAITING_RESPONSE:
            return False
        # Image and notice messages may trail the reply being retried.
        last = next(
            (item for item in reversed(session.messages) if item.sender is not MessageSender.SYSTEM),
            None,
        )
        if last is None:
            return False
        if last.sender is MessageSender.CHARACTER and last.state is not MessageState.PENDING:
            speaker = session.character_by_id(last.character_id) or session.current_speaker()
            advance = False
        elif last.sender is MessageSender.USER:
            speaker = session.current_speaker()
            advance = True
        else:
            return False
        if speaker is None:
            return False

        session.turn_state = TurnState.AWAITING_RESPONSE
        if last.sender is MessageSender.CHARACTER:
            session.remove_message(last.id)
            await self._broadcaster.broadcast(
                session.scenario_id, {"event": "message_removed", "message_id": last.id}
            )
        await self._run_turn(session, speaker, advance=advance)
        return True

    async def _run_turn(self, session: ChatSession, speaker: Character, *, advance: bool) -> None:
        placeholder = session.append_message(
            Message(
                sender=MessageSender.CHARACTER,
                character_id=speaker.id,
                state=MessageState.PENDING,
            )
        )
        outcome: Optional[Message] = None
        try:
            await self._broadcaster.broadcast(
                session.scenario_id, message_event("message_added", placeholder)
            )
            await self._broadcast_state(session)
            outcome = await self._generate(session, speaker)
        finally:
            session.remove_message(placeholder.id)
            if outcome is not None:
                session.append_message(outcome)
            session.turn_state = TurnState.IDLE
            if advance:
                session.advance_turn()

        await self._broadcaster.broadcast(
            session.scenario_id, {"event": "message_removed", "message_id": placeholder.id}
        )
        await self._broadcaster.broadcast(session.scenario_id, message_event("message_added", outcome))
        await self._broadcast_state(session)
        await self._persist(session)

        self._schedule_compression(session)
        if outcome.state is MessageState.FINAL and self._visual_trigger is not None:
            self._visual_trigger.observe(session, outcome)

    async def _generate(self, session: ChatSession, speaker: Character) -> Message:
        """Call the text generator; failures become a failed chat message."""

        try:
            prompt = self._prompt_builder.assemble(
                speaker, session.scenario, session.messages, session.characters
            )
            text = await asyncio.wait_for(
                self._text_generator.generate_reply(session.scenario, prompt.to_messages()),
                timeout=self._timeout,
            )
            reply = text.strip() if isinstance(text, str) else ""
            if not reply:
                raise ProviderError("PROVIDER_EMPTY_OUTPUT", "Provider returned empty content.")
            return Message(sender=MessageSender.CHARACTER, character_id=speaker.id, text=reply)
        except asyncio.TimeoutError:
            logger.warning("Generation timed out for scenario %s", session.scenario_id)
            notice = f"The response timed out after {self._timeout:g}s."
        except ProviderError as exc:
            logger.warning(
                "Generation failed for scenario %s: %s %s", session.scenario_id, exc.code, exc.message
            )
            notice = exc.message
        except Exception:  # noqa: BLE001
            logger.exception("Generation crashed for scenario %s", session.scenario_id)
            notice = "Unexpected error while generating."
        return Message(
            sender=MessageSender.CHARACTER,
            character_id=speaker.id,
            text=f"AI turn error: {notice} Check the connection and try again.",
            state=MessageState.FAILED,
        )

    def _schedule_compression(self, session: ChatSession) -> None:
        engine = self._compression_engine
        if engine is None or not engine.needs_work(session):
            return
        session.spawn(engine.check(session), "compression")

    async def _broadcast_state(self, session: ChatSession) -> None:
        await self._broadcaster.broadcast(
            session.scenario_id, {"event": "turn_state", "state": session.turn_state.value}
        )

    async def _persist(self, session: ChatSession) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_session(session)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist chat for scenario %s", session.scenario_id)


def get_turn_orchestrator(request: Request) -> TurnOrchestrator:
    """Dependency to access the app turn orchestrator."""

    return request.app.state.turn_orchestrator
