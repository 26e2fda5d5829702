from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Optional

from fastapi import Request

from roleplay_core.providers.base import ProviderError
from roleplay_core.schemas.chat import Message, MessageSender, MessageState
from roleplay_core.services.chat_session import ChatSession, ImageState
from roleplay_core.services.contracts import (
    Broadcaster,
    ImageSynthesizer,
    NullBroadcaster,
    SceneSummarizer,
    message_event,
)
from roleplay_core.utils.time_utils import utc_now_iso

if TYPE_CHECKING:
    from roleplay_core.services.chat_store import ChatStore

logger = logging.getLogger(__name__)


class VisualTrigger:
    """Generate a scene illustration every few character replies.

    The cadence threshold is redrawn from ``threshold_range`` after each
    trigger. The pipeline runs as a background task and never writes
    anything but its own placeholder message.
    """

    def __init__(
        self,
        scene_summarizer: SceneSummarizer,
        image_synthesizer: ImageSynthesizer,
        *,
        threshold_range: tuple[int, int] = (3, 5),
        history_window: int = 6,
        timeout_sec: float = 120,
        rng: Optional[random.Random] = None,
        store: Optional["ChatStore"] = None,
        broadcaster: Optional[Broadcaster] = None,
    ) -> None:
        low, high = threshold_range
        if low < 1 or high < low:
            raise ValueError("threshold_range must be (min, max) with 1 <= min <= max")
        self._scene_summarizer = scene_summarizer
        self._image_synthesizer = image_synthesizer
        self._threshold_range = (low, high)
        self._history_window = max(1, history_window)
        self._timeout = timeout_sec
        self._rng = rng or random.Random()
        self._store = store
        self._broadcaster = broadcaster or NullBroadcaster()

    def draw_threshold(self) -> int:
        low, high = self._threshold_range
        return self._rng.randint(low, high)

    def reset(self, session: ChatSession) -> None:
        session.messages_since_last_image = 0
        session.next_image_threshold = self.draw_threshold()

    def observe(self, session: ChatSession, message: Message) -> bool:
        """Count a finalized character reply; returns True when a pipeline was started."""

        if message.sender is not MessageSender.CHARACTER or not message.is_raw:
            return False
        if session.next_image_threshold < 1:
            self.reset(session)
        session.messages_since_last_image += 1
        if session.messages_since_last_image < session.next_image_threshold:
            return False
        self.reset(session)
        return self._start(session)

    def generate_now(self, session: ChatSession) -> bool:
        """Start the pipeline immediately (manual request)."""

        started = self._start(session)
        if started:
            self.reset(session)
        return started

    def _start(self, session: ChatSession) -> bool:
        if session.image_state is ImageState.GENERATING:
            logger.debug("Image pipeline already running for scenario %s", session.scenario_id)
            return False
        if not self._image_synthesizer.is_configured(session.scenario):
            logger.debug("Image endpoint not configured for scenario %s", session.scenario_id)
            return False
        session.image_state = ImageState.GENERATING
        session.spawn(self._run_pipeline(session), "image")
        return True

    async def _run_pipeline(self, session: ChatSession) -> None:
        placeholder = session.append_message(
            Message(sender=MessageSender.SYSTEM, state=MessageState.PENDING)
        )
        image_url = ""
        try:
            await self._broadcaster.broadcast(
                session.scenario_id, message_event("message_added", placeholder)
            )
            history = session.log.raw_messages()[-self._history_window :]
            description = await asyncio.wait_for(
                self._scene_summarizer.describe_scene(session.scenario, session.characters, history),
                timeout=self._timeout,
            )
            description = description.strip() if isinstance(description, str) else ""
            if not description:
                logger.info("Scene summary was empty for scenario %s", session.scenario_id)
            else:
                result = await asyncio.wait_for(
                    self._image_synthesizer.synthesize(session.scenario, description),
                    timeout=self._timeout,
                )
                image_url = result.strip() if isinstance(result, str) else ""
                if not image_url:
                    logger.warning("Image endpoint returned nothing for scenario %s", session.scenario_id)
        except asyncio.TimeoutError:
            logger.warning("Image pipeline timed out for scenario %s", session.scenario_id)
        except ProviderError as exc:
            logger.warning(
                "Image pipeline failed for scenario %s: %s %s", session.scenario_id, exc.code, exc.message
            )
        except Exception:  # noqa: BLE001
            logger.exception("Image pipeline crashed for scenario %s", session.scenario_id)
        finally:
            if image_url:
                final = placeholder.model_copy(
                    update={
                        "image_url": image_url,
                        "state": MessageState.FINAL,
                        "timestamp": utc_now_iso(),
                    }
                )
                session.replace_message(placeholder.id, final)
            else:
                session.remove_message(placeholder.id)
            session.image_state = ImageState.IDLE

        if image_url:
            await self._broadcaster.broadcast(session.scenario_id, message_event("message_replaced", final))
        else:
            await self._broadcaster.broadcast(
                session.scenario_id, {"event": "message_removed", "message_id": placeholder.id}
            )
        await self._persist(session)

    async def _persist(self, session: ChatSession) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_messages(session.scenario_id, session.messages)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist image message for scenario %s", session.scenario_id)


def get_visual_trigger(request: Request) -> VisualTrigger:
    """Dependency to access the app visual trigger."""

    return request.app.state.visual_trigger
