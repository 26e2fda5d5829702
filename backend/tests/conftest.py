import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from roleplay_core.core.config import get_settings
from roleplay_core.db.base import init_db
from roleplay_core.main import create_app
from roleplay_core.providers.base import GenerationOptions, ImageRequest, LLMResult, ProviderRuntimeConfig
from roleplay_core.schemas.chat import Character, Scenario


@pytest.fixture
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test_roleplay.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_SECRET_KEY", "test-secret")
    monkeypatch.setenv("PROVIDER_MODE", "http")
    monkeypatch.setenv("DEFAULT_CHAT_BASE_URL", "http://llm.test")
    monkeypatch.setenv("DEFAULT_IMAGE_BASE_URL", "http://image.test")
    get_settings.cache_clear()
    app = create_app()
    app.state.provider_service.set_adapters(StubAdapter(), StubImageAdapter())
    return app


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.session_manager.shutdown()
    await app.state.engine.dispose()


@pytest.fixture
def anyio_backend():
    return "asyncio"


class StubAdapter:
    """Adapter stub used to avoid external API calls in tests."""

    def __init__(self) -> None:
        self.calls: list[list[dict]] = []

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        return [cfg.model_name or "stub-model"]

    async def check_connection(self, base_url: str) -> bool:
        return base_url.startswith("http://llm.test")

    async def generate(
        self,
        cfg: ProviderRuntimeConfig,
        messages: list[dict],
        options: GenerationOptions | None = None,
    ) -> LLMResult:
        self.calls.append(messages)
        return LLMResult(
            content=f"*nods* stub reply {len(self.calls)}",
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=1,
            token_out=1,
        )


class StubImageAdapter:
    async def generate_image(self, cfg: ProviderRuntimeConfig, request: ImageRequest) -> str:
        return "data:image/png;base64,AAAA"


class StubSummarizer:
    """Summarizer returning S1, S2, ... and recording every source it saw."""

    def __init__(self, fail_on: set[int] | None = None, empty_on: set[int] | None = None) -> None:
        self.sources: list[str] = []
        self.instructions: list[str] = []
        self.fail_on = fail_on or set()
        self.empty_on = empty_on or set()

    async def summarize(self, scenario: Scenario, instruction: str, source: str) -> str:
        self.instructions.append(instruction)
        self.sources.append(source)
        call = len(self.sources)
        if call in self.fail_on:
            raise RuntimeError("summarizer unavailable")
        if call in self.empty_on:
            return "   "
        return f"S{call}"


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def broadcast(self, session_id: str, payload: dict) -> None:
        self.events.append((session_id, payload))

    def names(self) -> list[str]:
        return [payload["event"] for _, payload in self.events]


def make_character(name: str, **kwargs) -> Character:
    return Character(id=f"char_{name.lower()}", name=name, **kwargs)


def make_scenario(*characters: Character, **kwargs) -> Scenario:
    return Scenario(
        id=kwargs.pop("id", "scen_test"),
        name=kwargs.pop("name", "Test scenario"),
        character_ids=[character.id for character in characters],
        **kwargs,
    )
