from __future__ import annotations

import logging
from typing import Optional, Sequence

from fastapi import Request

from roleplay_core.core.config import Settings, get_settings
from roleplay_core.providers.base import (
    GenerationOptions,
    ImageAdapter,
    ImageRequest,
    LLMAdapter,
    MockAdapter,
    MockImageAdapter,
    ProviderError,
    ProviderRuntimeConfig,
)
from roleplay_core.providers.image_adapter import ImageEndpointAdapter
from roleplay_core.providers.openai_adapter import OpenAICompatAdapter
from roleplay_core.schemas.chat import Character, Message, MessageSender, Scenario

logger = logging.getLogger(__name__)

SUPPORTED_MODES = ("http", "mock")
SCENE_INSTRUCTION = (
    "You write prompts for an image generator. Describe the current moment of this roleplay "
    "as ONE vivid visual sentence: who is present, their appearance, pose, expression, and "
    "the setting and lighting. No dialogue, no names of real people, no intro/outro."
)
VISUAL_PERSONA_LIMIT = 400


class ProviderService:
    """Resolve per-scenario endpoints and expose the text/summary/image collaborators."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm_adapter: Optional[LLMAdapter] = None,
        image_adapter: Optional[ImageAdapter] = None,
    ) -> None:
        self._settings = settings or get_settings()
        mode = self._settings.provider_mode.strip().lower()
        if mode not in SUPPORTED_MODES:
            logger.warning("Unknown PROVIDER_MODE=%s; fallback to http", mode)
            mode = "http"
        self._mode = mode
        if mode == "mock":
            self._llm_adapter: LLMAdapter = llm_adapter or MockAdapter()
            self._image_adapter: ImageAdapter = image_adapter or MockImageAdapter()
        else:
            self._llm_adapter = llm_adapter or OpenAICompatAdapter(
                timeout_sec=self._settings.generation_timeout_sec
            )
            self._image_adapter = image_adapter or ImageEndpointAdapter(
                timeout_sec=self._settings.image_timeout_sec
            )

    def set_adapters(
        self,
        llm_adapter: Optional[LLMAdapter] = None,
        image_adapter: Optional[ImageAdapter] = None,
    ) -> None:
        """Override adapters (useful for tests)."""

        if llm_adapter is not None:
            self._llm_adapter = llm_adapter
        if image_adapter is not None:
            self._image_adapter = image_adapter

    def text_config(self, scenario: Scenario) -> ProviderRuntimeConfig:
        base_url = (scenario.chat_endpoint_url or self._settings.default_chat_base_url).strip()
        if not base_url and self._mode != "mock":
            raise ProviderError(
                "PROVIDER_NOT_READY", "Chat endpoint URL must be configured for this scenario."
            )
        return ProviderRuntimeConfig(
            provider=self._mode,
            model_name=(scenario.model_id or self._settings.default_model_id).strip(),
            base_url=base_url or None,
            api_key=scenario.tunnel_password or None,
        )

    def image_config(self, scenario: Scenario) -> ProviderRuntimeConfig:
        base_url = (scenario.image_endpoint_url or self._settings.default_image_base_url).strip()
        if not base_url and self._mode != "mock":
            raise ProviderError(
                "PROVIDER_NOT_READY", "Image endpoint URL must be configured for this scenario."
            )
        return ProviderRuntimeConfig(
            provider=self._mode,
            model_name="image",
            base_url=base_url or None,
            api_key=scenario.tunnel_password or None,
        )

    def is_configured(self, scenario: Scenario) -> bool:
        """Return True when the scenario can reach an image endpoint."""

        if self._mode == "mock":
            return True
        return bool((scenario.image_endpoint_url or self._settings.default_image_base_url).strip())

    async def generate_reply(self, scenario: Scenario, messages: list[dict]) -> str:
        params = scenario.chat_parameters
        options = GenerationOptions(
            temperature=params.temperature,
            top_p=params.top_p,
            top_k=params.top_k,
            max_tokens=params.max_tokens,
            repetition_penalty=params.repetition_penalty,
        )
        result = await self._llm_adapter.generate(self.text_config(scenario), messages, options)
        return result.content

    async def summarize(self, scenario: Scenario, instruction: str, source: str) -> str:
        messages = [
            {"role": "system", "content": instruction},
            {"role": "user", "content": source},
        ]
        options = GenerationOptions(temperature=0.2, top_p=1.0, max_tokens=600, stop=())
        result = await self._llm_adapter.generate(self.text_config(scenario), messages, options)
        return result.content.strip()

    async def describe_scene(
        self,
        scenario: Scenario,
        characters: Sequence[Character],
        history: Sequence[Message],
    ) -> str:
        visuals = self._visual_lines(characters)
        if not scenario.image_parameters.use_llm:
            last_text = next(
                (item.text.strip() for item in reversed(history) if item.text and item.text.strip()),
                "",
            )
            return " ".join(part for part in (visuals.replace("\n", " "), last_text[:300]) if part)

        transcript = "\n".join(
            f"{self._speaker(item, characters)}: {item.text.strip()}"
            for item in history
            if item.text and item.text.strip()
        )
        source = (
            f"Characters:\n{visuals or '(none)'}\n\n"
            f"Setting: {scenario.description.strip() or scenario.system_instruction.strip() or '(unspecified)'}\n\n"
            f"Recent conversation:\n{transcript or '(none)'}"
        )
        messages = [
            {"role": "system", "content": SCENE_INSTRUCTION},
            {"role": "user", "content": source},
        ]
        options = GenerationOptions(
            temperature=scenario.image_parameters.llm_temperature,
            top_p=1.0,
            max_tokens=120,
            stop=(),
        )
        result = await self._llm_adapter.generate(self.text_config(scenario), messages, options)
        return result.content.strip()

    async def synthesize(self, scenario: Scenario, description: str) -> str:
        params = scenario.image_parameters
        request = ImageRequest(
            prompt=description,
            negative_prompt=params.negative_prompt,
            ip_scale=params.ip_scale,
            guidance_scale=params.guidance_scale,
            steps=params.steps,
            seed=params.seed,
            randomize_seed=params.randomize_seed,
            use_llm=params.use_llm,
            llm_temperature=params.llm_temperature,
            use_embedding=params.use_embedding,
        )
        return await self._image_adapter.generate_image(self.image_config(scenario), request)

    async def check_connection(self, url: str) -> bool:
        """Probe an OpenAI-compatible endpoint the way the settings screen does."""

        if not url or not url.strip():
            return False
        checker = getattr(self._llm_adapter, "check_connection", None)
        if checker is None:
            return self._mode == "mock"
        return await checker(url)

    @staticmethod
    def _visual_lines(characters: Sequence[Character]) -> str:
        lines = []
        for character in characters:
            visual = (character.visual_description or character.persona).strip()
            if len(visual) > VISUAL_PERSONA_LIMIT:
                visual = visual[:VISUAL_PERSONA_LIMIT].rstrip() + "..."
            lines.append(f"- {character.name}: {visual}" if visual else f"- {character.name}")
        return "\n".join(lines)

    @staticmethod
    def _speaker(message: Message, characters: Sequence[Character]) -> str:
        if message.sender is MessageSender.USER:
            return "User"
        for character in characters:
            if character.id == message.character_id:
                return character.name
        return "Narrator"


def get_provider_service(request: Request) -> ProviderService:
    """Dependency to access the provider service from app state."""

    return request.app.state.provider_service
