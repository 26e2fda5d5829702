from __future__ import annotations

from typing import Protocol, Sequence

from roleplay_core.schemas.chat import Character, Message, Scenario


class Summarizer(Protocol):
    """Condenses source text into one paragraph."""

    async def summarize(self, scenario: Scenario, instruction: str, source: str) -> str:
        """Return a non-empty summary or raise ProviderError."""


class TextGenerator(Protocol):
    """Produces the next character reply."""

    async def generate_reply(self, scenario: Scenario, messages: list[dict]) -> str:
        """Return generated text for OpenAI-style role/content messages."""


class SceneSummarizer(Protocol):
    """Turns recent conversation into one visual description sentence."""

    async def describe_scene(
        self,
        scenario: Scenario,
        characters: Sequence[Character],
        history: Sequence[Message],
    ) -> str:
        """Return a visual description for image synthesis."""


class ImageSynthesizer(Protocol):
    """Renders a description into an image reference (URL or data URI)."""

    def is_configured(self, scenario: Scenario) -> bool:
        """Return True when the scenario has a usable image endpoint."""

    async def synthesize(self, scenario: Scenario, description: str) -> str:
        """Return an image reference for the description."""


class Broadcaster(Protocol):
    """Pushes session events to connected clients."""

    async def broadcast(self, session_id: str, payload: dict) -> None:
        """Send a JSON payload to every listener of the session."""


class NullBroadcaster:
    """Broadcaster used when no client transport is attached."""

    async def broadcast(self, session_id: str, payload: dict) -> None:
        return None


def message_event(event: str, message: Message) -> dict:
    """Build the payload for message_added / message_replaced events."""

    return {"event": event, "message": message.model_dump(mode="json")}
