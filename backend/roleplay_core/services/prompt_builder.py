from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence

from roleplay_core.schemas.chat import Character, MemoryStore, Message, MessageSender, Scenario


@dataclass(frozen=True)
class PromptSection:
    key: str
    content: str


@dataclass(frozen=True)
class AssembledPrompt:
    """Ordered instruction sections plus the sliding window of raw turns."""

    sections: tuple[PromptSection, ...]
    history: tuple[dict, ...]

    @property
    def system_prompt(self) -> str:
        return "\n\n".join(section.content for section in self.sections if section.content)

    def section(self, key: str) -> str:
        for item in self.sections:
            if item.key == key:
                return item.content
        return ""

    def to_messages(self) -> List[dict]:
        """Return OpenAI-style role/content messages for the text generator."""

        return [{"role": "system", "content": self.system_prompt}, *[dict(item) for item in self.history]]


class PromptBuilder:
    """Compose the bounded prompt for one character turn."""

    SECTION_ORDER = ("identity", "behavior", "chronology", "memory", "world", "format")

    def __init__(self, max_history: int = 20, enforce_context_budget: bool = False) -> None:
        self._max_history = max(1, max_history)
        self._enforce_context_budget = enforce_context_budget

    def assemble(
        self,
        character: Character,
        scenario: Scenario,
        raw_history: Iterable[Message],
        participants: Sequence[Character] = (),
    ) -> AssembledPrompt:
        """Build the prompt. Pure: no I/O and no mutation of the inputs."""

        sections = (
            PromptSection("identity", self._build_identity(character)),
            PromptSection("behavior", self._build_behavior(character, scenario)),
            PromptSection("chronology", self._build_chronology(character)),
            PromptSection("memory", self.build_memory_section(scenario.memory)),
            PromptSection("world", self._build_world(scenario)),
            PromptSection("format", self._build_format(character, scenario)),
        )
        history = self._build_history(character, raw_history, participants)
        if self._enforce_context_budget:
            history = self._fit_budget(sections, history, scenario)
        return AssembledPrompt(sections=sections, history=tuple(history))

    @staticmethod
    def build_memory_section(memory: MemoryStore) -> str:
        """Render memory most-compressed-first; empty tiers contribute nothing."""

        blocks: list[str] = []
        main = memory.main_memory.strip()
        if main:
            blocks.append(f"[PERMANENT HISTORY]: {main}")
        for index in reversed(range(len(memory.tiers))):
            entries = [item.strip() for item in memory.tiers[index] if item.strip()]
            if not entries:
                continue
            lines = "\n- ".join(entries)
            blocks.append(f"[{_tier_label(index)}]:\n- {lines}")
        return "\n".join(blocks)

    @staticmethod
    def _build_identity(character: Character) -> str:
        text = f"CORE DIRECTIVE: You are {character.name}."
        persona = character.persona.strip()
        if persona:
            text += f"\n\nCHARACTER PERSONA: {persona}"
        return text

    @staticmethod
    def _build_behavior(character: Character, scenario: Scenario) -> str:
        lines = []
        if character.system_instruction.strip():
            lines.append(f"INSTRUCTIONS: {character.system_instruction.strip()}")
        if scenario.system_instruction.strip():
            lines.append(f"SCENARIO: {scenario.system_instruction.strip()}")
        return "\n".join(lines)

    @staticmethod
    def _build_chronology(character: Character) -> str:
        lines = []
        if character.pre_history.strip():
            lines.append(f"BACKSTORY: {character.pre_history.strip()}")
        if character.post_history.strip():
            lines.append(f"CURRENT STATE: {character.post_history.strip()}")
        if not lines:
            return ""
        return "[CHRONOLOGY]\n" + "\n".join(lines)

    @staticmethod
    def _build_world(scenario: Scenario) -> str:
        lines = []
        if scenario.description.strip():
            lines.append(f"WORLD: {scenario.description.strip()}")
        lines.append(f"USER PERSONA: {scenario.user_persona.strip() or 'A stranger'}")
        return "\n".join(lines)

    def _build_format(self, character: Character, scenario: Scenario) -> str:
        return (
            "[OUTPUT FORMAT]\n"
            "- USE ASTERISKS (*) for all narrations and physical actions.\n"
            "- USE PLAIN TEXT for spoken dialogue.\n"
            f"- Reply only as {character.name}; never write the user's lines.\n"
            f"- LANGUAGE: {self._language_name(scenario.language)}."
        )

    def _build_history(
        self,
        character: Character,
        raw_history: Iterable[Message],
        participants: Sequence[Character],
    ) -> list[dict]:
        names = {item.id: item.name for item in participants}
        raw = [message for message in raw_history if message.is_raw]
        history: list[dict] = []
        for message in raw[-self._max_history :]:
            content = (message.text or "").strip()
            if message.sender is MessageSender.USER:
                history.append({"role": "user", "content": content})
                continue
            speaker = names.get(message.character_id or "")
            if speaker and message.character_id != character.id:
                content = f"{speaker}: {content}"
            history.append({"role": "assistant", "content": content})
        return history

    def _fit_budget(
        self,
        sections: Sequence[PromptSection],
        history: list[dict],
        scenario: Scenario,
    ) -> list[dict]:
        params = scenario.chat_parameters
        budget = params.context_size - params.max_tokens
        used = sum(self._estimate_tokens(item.content) for item in sections)
        costs = [self._estimate_tokens(item["content"]) for item in history]
        # Drop oldest turns first, but always keep the latest one.
        start = 0
        while start < len(history) - 1 and used + sum(costs[start:]) > budget:
            start += 1
        return history[start:]

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        compact = text.strip()
        if not compact:
            return 0
        return max(1, len(compact) // 4)

    @staticmethod
    def _language_name(code: str) -> str:
        normalized = code.strip().lower().replace("_", "-")
        mapping = {
            "en": "English",
            "english": "English",
            "manglish": "Manglish (Malayalam slang mixed with English)",
            "ml": "Malayalam",
            "hi": "Hindi",
            "ja": "Japanese",
            "es": "Spanish",
            "fr": "French",
            "de": "German",
        }
        return mapping.get(normalized, code.strip() or "English")


def _tier_label(index: int) -> str:
    if index == 0:
        return "BASE MEMORIES"
    if index == 1:
        return "CORE MEMORIES"
    return f"TIER {index + 1} MEMORIES"
