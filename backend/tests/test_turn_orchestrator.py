from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingBroadcaster, StubSummarizer, make_character, make_scenario
from roleplay_core.providers.base import ProviderError
from roleplay_core.schemas.chat import Message, MessageSender, MessageState
from roleplay_core.services.chat_session import ChatSession, TurnState
from roleplay_core.services.chat_store import ChatStore, InMemoryKeyValueStore
from roleplay_core.services.compression_service import CompressionEngine
from roleplay_core.services.prompt_builder import PromptBuilder
from roleplay_core.services.turn_service import TurnOrchestrator


class ScriptedGenerator:
    def __init__(self, reply: str = "*smiles* Hello.", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[list[dict]] = []

    async def generate_reply(self, scenario, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply


class GatedGenerator:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls = 0

    async def generate_reply(self, scenario, messages):
        self.calls += 1
        await self.gate.wait()
        return f"reply {self.calls}"


class RecordingVisualTrigger:
    def __init__(self) -> None:
        self.observed = []

    def observe(self, session, message):
        self.observed.append(message)
        return False


def new_session(*names: str) -> ChatSession:
    cast = [make_character(name) for name in names]
    return ChatSession(make_scenario(*cast), cast)


@pytest.mark.anyio
async def test_submit_appends_user_message_then_reply():
    generator = ScriptedGenerator(reply="  *smiles* Hello.  ")
    broadcaster = RecordingBroadcaster()
    orchestrator = TurnOrchestrator(PromptBuilder(), generator, broadcaster=broadcaster)
    session = new_session("Alice")

    accepted = await orchestrator.submit_user_message(session, "  hi there ")

    assert accepted is True
    messages = session.messages
    assert [item.sender for item in messages] == [MessageSender.USER, MessageSender.CHARACTER]
    assert messages[0].text == "hi there"
    assert messages[1].text == "*smiles* Hello."
    assert messages[1].character_id == "char_alice"
    assert messages[1].state is MessageState.FINAL
    assert session.turn_state is TurnState.IDLE
    assert session.memory.raw_counter == 2

    prompt = generator.calls[0]
    assert prompt[0]["role"] == "system"
    assert prompt[-1] == {"role": "user", "content": "hi there"}
    assert broadcaster.names() == [
        "message_added",
        "message_added",
        "turn_state",
        "message_removed",
        "message_added",
        "turn_state",
    ]


@pytest.mark.anyio
async def test_second_submit_rejected_while_response_pending():
    generator = GatedGenerator()
    orchestrator = TurnOrchestrator(PromptBuilder(), generator)
    session = new_session("Alice")

    first = asyncio.create_task(orchestrator.submit_user_message(session, "first"))
    while generator.calls == 0:
        await asyncio.sleep(0)

    assert session.turn_state is TurnState.AWAITING_RESPONSE
    assert session.messages[-1].is_loading
    before = session.messages

    assert await orchestrator.submit_user_message(session, "second") is False
    assert session.messages == before

    generator.gate.set()
    assert await first is True
    assert [item.text for item in session.messages] == ["first", "reply 1"]


@pytest.mark.anyio
async def test_round_robin_over_three_characters():
    orchestrator = TurnOrchestrator(PromptBuilder(), ScriptedGenerator())
    session = new_session("Alice", "Bob", "Cara")

    for turn in range(9):
        assert await orchestrator.submit_user_message(session, f"turn {turn}")

    speakers = [item.character_id for item in session.messages if item.sender is MessageSender.CHARACTER]
    assert speakers == ["char_alice", "char_bob", "char_cara"] * 3


@pytest.mark.anyio
async def test_provider_failure_becomes_failed_message_and_turn_advances():
    error = ProviderError("PROVIDER_CONNECTION_ERROR", "Failed to connect to provider.", retryable=True)
    generator = ScriptedGenerator(error=error)
    orchestrator = TurnOrchestrator(PromptBuilder(), generator)
    session = new_session("Alice", "Bob")

    assert await orchestrator.submit_user_message(session, "hello")

    failed = session.messages[-1]
    assert failed.state is MessageState.FAILED
    assert failed.character_id == "char_alice"
    assert "Failed to connect to provider." in failed.text
    assert len(generator.calls) == 1
    assert session.turn_index == 1
    assert session.turn_state is TurnState.IDLE
    assert session.memory.raw_counter == 1
    assert not any(item.is_loading for item in session.messages)


@pytest.mark.anyio
async def test_blank_output_is_treated_as_failure():
    orchestrator = TurnOrchestrator(PromptBuilder(), ScriptedGenerator(reply="   "))
    session = new_session("Alice")

    assert await orchestrator.submit_user_message(session, "hello")

    assert session.messages[-1].state is MessageState.FAILED
    assert "empty" in session.messages[-1].text


@pytest.mark.anyio
async def test_generation_timeout_becomes_failed_message():
    orchestrator = TurnOrchestrator(PromptBuilder(), GatedGenerator(), timeout_sec=0.01)
    session = new_session("Alice")

    assert await orchestrator.submit_user_message(session, "hello")

    assert session.messages[-1].state is MessageState.FAILED
    assert "timed out" in session.messages[-1].text
    assert session.turn_state is TurnState.IDLE


@pytest.mark.anyio
async def test_blank_text_is_rejected_without_mutation():
    generator = ScriptedGenerator()
    orchestrator = TurnOrchestrator(PromptBuilder(), generator)
    session = new_session("Alice")

    assert await orchestrator.submit_user_message(session, "   \n") is False

    assert session.messages == []
    assert generator.calls == []


@pytest.mark.anyio
async def test_zero_characters_only_records_user_message_and_compresses():
    generator = ScriptedGenerator()
    engine = CompressionEngine(StubSummarizer(), window_size=1, tier_bounds=(10, 10))
    orchestrator = TurnOrchestrator(PromptBuilder(), generator, engine)
    session = new_session()

    assert await orchestrator.submit_user_message(session, "anyone here?")
    await session.wait_idle()

    assert [item.text for item in session.messages] == ["anyone here?"]
    assert generator.calls == []
    assert session.memory.tier1 == ["S1"]


@pytest.mark.anyio
async def test_successful_reply_is_observed_and_persisted():
    visual = RecordingVisualTrigger()
    store = ChatStore(InMemoryKeyValueStore())
    orchestrator = TurnOrchestrator(
        PromptBuilder(), ScriptedGenerator(), visual_trigger=visual, store=store
    )
    session = new_session("Alice")

    await orchestrator.submit_user_message(session, "hello")

    assert [item.text for item in visual.observed] == ["*smiles* Hello."]
    stored = await store.load_messages(session.scenario_id)
    assert [item.id for item in stored] == [item.id for item in session.messages]
    scenario = await store.get_scenario(session.scenario_id)
    assert scenario.memory.raw_counter == 2


@pytest.mark.anyio
async def test_failed_reply_is_not_observed():
    visual = RecordingVisualTrigger()
    error = ProviderError("PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True)
    orchestrator = TurnOrchestrator(PromptBuilder(), ScriptedGenerator(error=error), visual_trigger=visual)
    session = new_session("Alice")

    await orchestrator.submit_user_message(session, "hello")

    assert visual.observed == []


@pytest.mark.anyio
async def test_regenerate_replaces_last_reply_from_same_speaker():
    generator = ScriptedGenerator(reply="first take")
    orchestrator = TurnOrchestrator(PromptBuilder(), generator)
    session = new_session("Alice", "Bob")
    await orchestrator.submit_user_message(session, "hello")
    old_reply = session.messages[-1]
    assert session.turn_index == 1

    generator.reply = "second take"
    assert await orchestrator.regenerate_last(session)

    messages = session.messages
    assert [item.text for item in messages] == ["hello", "second take"]
    assert messages[-1].id != old_reply.id
    assert messages[-1].character_id == "char_alice"
    assert session.turn_index == 1
    assert generator.calls[1][-1] == {"role": "user", "content": "hello"}


@pytest.mark.anyio
async def test_regenerate_without_reply_is_rejected():
    orchestrator = TurnOrchestrator(PromptBuilder(), ScriptedGenerator())
    session = new_session("Alice")

    assert await orchestrator.regenerate_last(session) is False


@pytest.mark.anyio
async def test_regenerate_skips_trailing_image_message():
    generator = ScriptedGenerator(reply="first take")
    orchestrator = TurnOrchestrator(PromptBuilder(), generator)
    session = new_session("Alice")
    await orchestrator.submit_user_message(session, "hello")
    session.append_message(Message(sender=MessageSender.SYSTEM, image_url="data:image/png;base64,AAAA"))

    generator.reply = "second take"
    assert await orchestrator.regenerate_last(session)

    messages = session.messages
    assert [item.sender for item in messages] == [
        MessageSender.USER,
        MessageSender.SYSTEM,
        MessageSender.CHARACTER,
    ]
    assert messages[-1].text == "second take"
    assert session.memory.raw_counter == 3
