from __future__ import annotations

import random

import pytest

from conftest import StubSummarizer, make_character, make_scenario
from roleplay_core.schemas.chat import Message, MessageSender
from roleplay_core.services.chat_session import TurnState
from roleplay_core.services.chat_store import ChatStore, InMemoryKeyValueStore
from roleplay_core.services.compression_service import CompressionEngine
from roleplay_core.services.session_manager import SessionManager
from roleplay_core.services.visual_service import VisualTrigger


class NoImages:
    def is_configured(self, scenario) -> bool:
        return False

    async def synthesize(self, scenario, description):
        return ""

    async def describe_scene(self, scenario, characters, history):
        return ""


async def build_manager(window_size: int = 20, max_live_sessions: int = 32):
    store = ChatStore(InMemoryKeyValueStore())
    alice = make_character("Alice")
    await store.upsert_character(alice)
    await store.save_scenario(make_scenario(alice))
    engine = CompressionEngine(StubSummarizer(), window_size=window_size, store=store)
    trigger = VisualTrigger(NoImages(), NoImages(), rng=random.Random(1))
    return SessionManager(store, engine, trigger, max_live_sessions=max_live_sessions), store


@pytest.mark.anyio
async def test_session_is_loaded_once_with_participants():
    manager, _ = await build_manager()

    session = await manager.get_session("scen_test")

    assert session is await manager.get_session("scen_test")
    assert [item.name for item in session.characters] == ["Alice"]
    assert session.next_image_threshold in {3, 4, 5}
    assert await manager.get_session("scen_missing") is None


@pytest.mark.anyio
async def test_due_windows_are_compressed_when_a_session_opens():
    manager, store = await build_manager(window_size=2)
    scenario = await store.get_scenario("scen_test")
    scenario.memory.raw_counter = 2
    await store.save_scenario(scenario)
    await store.save_messages(
        "scen_test",
        [
            Message(sender=MessageSender.USER, text="one"),
            Message(sender=MessageSender.CHARACTER, character_id="char_alice", text="two"),
        ],
    )

    session = await manager.get_session("scen_test")
    await session.wait_idle()

    assert session.memory.tier1 == ["S1"]
    assert (await store.get_scenario("scen_test")).memory.tier1 == ["S1"]


@pytest.mark.anyio
async def test_update_keeps_live_memory_object():
    manager, store = await build_manager()
    session = await manager.get_session("scen_test")
    memory = session.memory
    memory.main_memory = "They met at dawn."

    edit = make_scenario(name="Renamed", id="scen_test")
    edit.memory.main_memory = "overwritten"
    updated = await manager.update_scenario("scen_test", edit)

    assert updated.name == "Renamed"
    assert session.scenario is updated
    assert session.memory is memory
    assert session.characters == []
    assert (await store.get_scenario("scen_test")).memory.main_memory == "They met at dawn."


@pytest.mark.anyio
async def test_character_edits_reach_live_sessions():
    manager, _ = await build_manager()
    session = await manager.get_session("scen_test")

    await manager.refresh_character(make_character("Alice", persona="Bolder now."))

    assert session.characters[0].persona == "Bolder now."


@pytest.mark.anyio
async def test_shutdown_forgets_sessions():
    manager, _ = await build_manager()
    await manager.get_session("scen_test")

    await manager.shutdown()

    assert manager.live_session("scen_test") is None


@pytest.mark.anyio
async def test_least_recently_used_idle_session_is_evicted():
    manager, store = await build_manager(max_live_sessions=2)
    for scenario_id in ("scen_b", "scen_c"):
        await store.save_scenario(make_scenario(make_character("Alice"), id=scenario_id))

    first = await manager.get_session("scen_test")
    await manager.get_session("scen_b")
    await manager.get_session("scen_test")
    await manager.get_session("scen_c")

    assert manager.live_session("scen_b") is None
    assert manager.live_session("scen_test") is first
    assert manager.live_session("scen_c") is not None


@pytest.mark.anyio
async def test_busy_sessions_are_not_evicted():
    manager, store = await build_manager(max_live_sessions=1)
    await store.save_scenario(make_scenario(make_character("Alice"), id="scen_b"))

    busy = await manager.get_session("scen_test")
    busy.turn_state = TurnState.AWAITING_RESPONSE
    await manager.get_session("scen_b")

    assert manager.live_session("scen_test") is busy
    assert manager.live_session("scen_b") is not None
