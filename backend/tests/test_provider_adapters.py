from __future__ import annotations

import json

import httpx
import pytest

from conftest import make_character, make_scenario
from roleplay_core.core.config import Settings
from roleplay_core.providers.base import (
    GenerationOptions,
    ImageRequest,
    MockAdapter,
    ProviderError,
    ProviderRuntimeConfig,
    join_endpoint,
)
from roleplay_core.providers.image_adapter import ImageEndpointAdapter
from roleplay_core.providers.openai_adapter import OpenAICompatAdapter
from roleplay_core.schemas.chat import ImageParameters, Message, MessageSender
from roleplay_core.services.provider_service import ProviderService


def make_cfg(**kwargs) -> ProviderRuntimeConfig:
    return ProviderRuntimeConfig(
        provider="http",
        model_name=kwargs.pop("model_name", "llama-3"),
        base_url=kwargs.pop("base_url", "https://tunnel.test"),
        api_key=kwargs.pop("api_key", None),
    )


@pytest.mark.anyio
async def test_openai_compat_adapter_list_and_generate():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": [{"id": "llama-3"}]})
        if request.url.path == "/v1/chat/completions":
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "*grins* hello"}}],
                    "usage": {"prompt_tokens": 5, "completion_tokens": 7},
                },
            )
        return httpx.Response(404, json={"error": "not found"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = OpenAICompatAdapter(http_client=client)
        cfg = make_cfg(api_key="hunter2")

        assert await adapter.list_models(cfg) == ["llama-3"]

        result = await adapter.generate(
            cfg,
            [{"role": "user", "content": "hi"}],
            GenerationOptions(temperature=0.5, top_k=20, max_tokens=64),
        )

    assert result.content == "*grins* hello"
    assert result.token_in == 5
    assert result.token_out == 7

    request = seen[-1]
    assert request.headers["bypass-tunnel-reminder"] == "true"
    assert request.headers["authorization"] == "Bearer hunter2"
    body = json.loads(request.content)
    assert body["model"] == "llama-3"
    assert body["temperature"] == 0.5
    assert body["top_k"] == 20
    assert body["max_tokens"] == 64
    assert body["stream"] is False
    assert "User:" in body["stop"]


@pytest.mark.anyio
async def test_openai_compat_adapter_maps_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/chat/completions":
            return httpx.Response(200, json={"choices": [{"message": {"content": "  "}}]})
        return httpx.Response(503, json={"error": {"message": "warming up"}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = OpenAICompatAdapter(http_client=client)

        with pytest.raises(ProviderError) as empty:
            await adapter.generate(make_cfg(), [{"role": "user", "content": "hi"}])
        assert empty.value.code == "PROVIDER_EMPTY_OUTPUT"

        with pytest.raises(ProviderError) as upstream:
            await adapter.list_models(make_cfg())
        assert upstream.value.code == "PROVIDER_UPSTREAM"
        assert upstream.value.retryable is True

        assert await adapter.check_connection("https://tunnel.test") is False


@pytest.mark.anyio
async def test_connection_errors_are_normalized():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = OpenAICompatAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await adapter.generate(make_cfg(), [{"role": "user", "content": "hi"}])

    assert excinfo.value.code == "PROVIDER_CONNECTION_ERROR"


def test_join_endpoint_accepts_common_url_shapes():
    assert join_endpoint("https://t.test", "/v1/models") == "https://t.test/v1/models"
    assert join_endpoint("https://t.test/v1/", "/v1/models") == "https://t.test/v1/models"
    assert join_endpoint("https://t.test/v1/models", "/v1/models") == "https://t.test/v1/models"
    with pytest.raises(ProviderError):
        join_endpoint("  ", "/v1/models")


@pytest.mark.anyio
async def test_image_adapter_wraps_base64_payload():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/generate"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"image": "iVBORw0KGgo="})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = ImageEndpointAdapter(http_client=client)
        url = await adapter.generate_image(
            make_cfg(base_url="https://images.test/"),
            ImageRequest(prompt="A rooftop at dusk.", steps=12, extra={"width": 512}),
        )

    assert url == "data:image/png;base64,iVBORw0KGgo="
    assert seen[0]["prompt"] == "A rooftop at dusk."
    assert seen[0]["steps"] == 12
    assert seen[0]["width"] == 512
    assert "extra" not in seen[0]


@pytest.mark.anyio
async def test_image_adapter_rejects_payload_without_image():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ok"}))
    async with httpx.AsyncClient(transport=transport) as client:
        adapter = ImageEndpointAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await adapter.generate_image(make_cfg(), ImageRequest(prompt="x"))

    assert excinfo.value.code == "PROVIDER_PARSE_ERROR"


class RecordingLLM:
    def __init__(self, reply: str = "A quiet harbor at dawn.") -> None:
        self.reply = reply
        self.calls: list[tuple[ProviderRuntimeConfig, list[dict], GenerationOptions]] = []

    async def list_models(self, cfg):
        return ["llama-3"]

    async def generate(self, cfg, messages, options=None):
        self.calls.append((cfg, messages, options))
        return await MockAdapter().generate(cfg, [{"role": "user", "content": self.reply}])


@pytest.mark.anyio
async def test_provider_service_uses_scenario_endpoint_and_parameters():
    llm = RecordingLLM()
    service = ProviderService(Settings(PROVIDER_MODE="http"), llm_adapter=llm)
    scenario = make_scenario(chat_endpoint_url="https://tunnel.test", tunnel_password="pw", model_id="mistral")
    scenario.chat_parameters.temperature = 0.3

    await service.generate_reply(scenario, [{"role": "user", "content": "hi"}])

    cfg, _, options = llm.calls[0]
    assert cfg.base_url == "https://tunnel.test"
    assert cfg.api_key == "pw"
    assert cfg.model_name == "mistral"
    assert options.temperature == 0.3


@pytest.mark.anyio
async def test_provider_service_requires_endpoint_in_http_mode():
    service = ProviderService(Settings(PROVIDER_MODE="http"), llm_adapter=RecordingLLM())
    scenario = make_scenario()

    with pytest.raises(ProviderError) as excinfo:
        await service.summarize(scenario, "Summarize.", "User: hi")
    assert excinfo.value.code == "PROVIDER_NOT_READY"
    assert service.is_configured(scenario) is False


@pytest.mark.anyio
async def test_scene_description_without_llm_is_deterministic():
    llm = RecordingLLM()
    service = ProviderService(Settings(PROVIDER_MODE="http"), llm_adapter=llm)
    eve = make_character("Eve", visual_description="Dark hair, grey hoodie.")
    scenario = make_scenario(eve, image_parameters=ImageParameters(use_llm=False))
    history = [Message(sender=MessageSender.CHARACTER, character_id=eve.id, text="*stretches*")]

    description = await service.describe_scene(scenario, [eve], history)

    assert description == "- Eve: Dark hair, grey hoodie. *stretches*"
    assert llm.calls == []


@pytest.mark.anyio
async def test_mock_mode_works_offline():
    service = ProviderService(Settings(PROVIDER_MODE="mock"))
    scenario = make_scenario()

    reply = await service.generate_reply(scenario, [{"role": "user", "content": "hello"}])
    image = await service.synthesize(scenario, "A cat.")

    assert "hello" in reply
    assert image.startswith("data:image/png;base64,")
    assert service.is_configured(scenario) is True
