from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

BASE_MEMORY_INSTRUCTION = (
    "Summarize these messages into ONE dense paragraph for story tracking. "
    "Keep names, decisions, and emotional shifts. No intro/outro."
)
CORE_MEMORY_INSTRUCTION = (
    "Condense these memory points into ONE dense paragraph that preserves their order "
    "of events. Output ONLY the paragraph."
)
MAIN_MEMORY_INSTRUCTION = (
    "Merge the 'Global Memory' and these 'New Points' into a single, high-density "
    "paragraph of permanent history. Keep it concise but detailed. Output ONLY the paragraph."
)


@dataclass(frozen=True)
class TierSpec:
    """One level of the memory cascade.

    When a tier holds ``bound`` entries they are summarized into the next tier,
    or merged into main memory when ``feeds_main`` is set.
    """

    name: str
    bound: int
    instruction: str
    feeds_main: bool = False


@dataclass
class CompressionReport:
    """What one compression check did; used for logging and tests."""

    windows_processed: int = 0
    windows_forfeited: int = 0
    cascades: list[str] = field(default_factory=list)
    failed_cascades: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        # Forfeited windows still move compressed_through.
        return self.windows_processed > 0 or bool(self.cascades)


def build_tier_specs(bounds: Sequence[int]) -> list[TierSpec]:
    """Build the cascade from configured bounds, base tier first."""

    if not bounds:
        raise ValueError("At least one memory tier bound is required.")
    specs: list[TierSpec] = []
    last = len(bounds) - 1
    for index, bound in enumerate(bounds):
        if bound < 2:
            raise ValueError("Memory tier bounds must be at least 2.")
        if index == last:
            instruction = MAIN_MEMORY_INSTRUCTION
        else:
            instruction = CORE_MEMORY_INSTRUCTION
        specs.append(
            TierSpec(
                name=_tier_name(index),
                bound=bound,
                instruction=instruction,
                feeds_main=index == last,
            )
        )
    return specs


def _tier_name(index: int) -> str:
    if index == 0:
        return "base"
    if index == 1:
        return "core"
    return f"tier{index + 1}"
