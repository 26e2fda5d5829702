from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Sequence

from fastapi import Request

from roleplay_core.memory.types import (
    BASE_MEMORY_INSTRUCTION,
    CompressionReport,
    TierSpec,
    build_tier_specs,
)
from roleplay_core.providers.base import ProviderError
from roleplay_core.schemas.chat import Message, Scenario
from roleplay_core.services.chat_session import ChatSession, CompressionState
from roleplay_core.services.contracts import Broadcaster, NullBroadcaster, Summarizer

if TYPE_CHECKING:
    from roleplay_core.services.chat_store import ChatStore

logger = logging.getLogger(__name__)


class CompressionEngine:
    """Fold the raw message stream into bounded memory tiers.

    Every ``window_size`` raw messages produce one base memory. A tier that
    reaches its bound is summarized into the next tier (or merged into main
    memory for the last tier) and cleared within the same step.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        *,
        window_size: int = 20,
        tier_bounds: Sequence[int] = (10, 10),
        timeout_sec: float = 60,
        store: Optional["ChatStore"] = None,
        broadcaster: Optional[Broadcaster] = None,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be positive")
        self._summarizer = summarizer
        self._window_size = window_size
        self._tiers = build_tier_specs(tier_bounds)
        self._timeout = timeout_sec
        self._store = store
        self._broadcaster = broadcaster or NullBroadcaster()

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def tiers(self) -> tuple[TierSpec, ...]:
        return tuple(self._tiers)

    def needs_work(self, session: ChatSession) -> bool:
        memory = session.memory
        if memory.pending_windows(self._window_size) > 0:
            return True
        return any(
            len(memory.tier(index)) >= spec.bound for index, spec in enumerate(self._tiers)
        )

    async def check(self, session: ChatSession) -> Optional[CompressionReport]:
        """Process every due window, oldest first. No-op while a check is in flight."""

        if session.compression_state is CompressionState.COMPRESSING:
            logger.debug("Compression already running for scenario %s", session.scenario_id)
            return None
        if not self.needs_work(session):
            return None

        session.compression_state = CompressionState.COMPRESSING
        report = CompressionReport()
        try:
            # Re-evaluated after every await so windows that fill up meanwhile are not dropped.
            while session.memory.pending_windows(self._window_size) > 0:
                await self._compress_next_window(session, report)
            if not report.windows_processed:
                await self._cascade(session, report)
        finally:
            session.compression_state = CompressionState.IDLE

        if report.changed:
            await self._publish(session)
        logger.info(
            "Compression for scenario %s: windows=%s forfeited=%s cascades=%s failed=%s",
            session.scenario_id,
            report.windows_processed,
            report.windows_forfeited,
            report.cascades,
            report.failed_cascades,
        )
        return report

    async def _compress_next_window(self, session: ChatSession, report: CompressionReport) -> None:
        memory = session.memory
        start = memory.compressed_through
        window = session.raw_window(start, self._window_size)
        summary: Optional[str] = None
        if window:
            summary = await self._summarize(
                session.scenario,
                BASE_MEMORY_INSTRUCTION,
                self._format_window(session, window),
            )
        else:
            logger.warning(
                "Raw window at %s is no longer available for scenario %s", start, session.scenario_id
            )

        # The window is consumed even when summarization failed; it is not retried.
        memory.compressed_through = start + self._window_size
        report.windows_processed += 1
        if summary is None:
            report.windows_forfeited += 1
        else:
            memory.tier(0).append(summary)
        await self._cascade(session, report)

    async def _cascade(self, session: ChatSession, report: CompressionReport) -> None:
        memory = session.memory
        memory.ensure_tiers(len(self._tiers))
        for index, spec in enumerate(self._tiers):
            tier = memory.tiers[index]
            if len(tier) < spec.bound:
                break
            entries = list(tier)
            if spec.feeds_main:
                source = (
                    f"Global Memory: {memory.main_memory.strip() or 'None'}\n"
                    "Points to Merge:\n" + "\n".join(entries)
                )
            else:
                source = "\n".join(entries)

            merged = await self._summarize(session.scenario, spec.instruction, source)
            if merged is None:
                # Full tier stays intact and is retried on the next pass.
                report.failed_cascades.append(spec.name)
                break
            if spec.feeds_main:
                memory.main_memory = merged
            else:
                memory.tiers[index + 1].append(merged)
            del tier[: len(entries)]
            report.cascades.append(spec.name)

    async def _summarize(self, scenario: Scenario, instruction: str, source: str) -> Optional[str]:
        try:
            result = await asyncio.wait_for(
                self._summarizer.summarize(scenario, instruction, source),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Memory summarization timed out for scenario %s", scenario.id)
            return None
        except ProviderError as exc:
            logger.warning(
                "Memory summarization failed for scenario %s: %s %s",
                scenario.id,
                exc.code,
                exc.message,
            )
            return None
        except Exception:  # noqa: BLE001
            logger.exception("Memory summarization crashed for scenario %s", scenario.id)
            return None

        text = result.strip() if isinstance(result, str) else ""
        if not text:
            logger.warning("Memory summarization returned empty output for scenario %s", scenario.id)
            return None
        return text

    async def _publish(self, session: ChatSession) -> None:
        if self._store is not None:
            try:
                await self._store.save_scenario(session.scenario)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to persist memory for scenario %s", session.scenario_id)
        await self._broadcaster.broadcast(
            session.scenario_id,
            {"event": "memory_updated", "memory": session.memory.model_dump(mode="json")},
        )

    @staticmethod
    def _format_window(session: ChatSession, window: Sequence[Message]) -> str:
        return "\n".join(
            f"{session.speaker_label(message)}: {(message.text or '').strip()}" for message in window
        )


def get_compression_engine(request: Request) -> CompressionEngine:
    """Dependency to access the app compression engine."""

    return request.app.state.compression_engine
