from __future__ import annotations

from typing import Any, Optional

from roleplay_core.providers.base import (
    GenerationOptions,
    HTTPProviderAdapter,
    LLMResult,
    ProviderError,
    ProviderRuntimeConfig,
    join_endpoint,
)


class OpenAICompatAdapter(HTTPProviderAdapter):
    """Adapter for OpenAI-compatible chat completion servers (llama.cpp, vLLM, tunnels)."""

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        url = join_endpoint(cfg.base_url, "/v1/models")
        data = await self._request_json("GET", url, headers=self._auth_headers(cfg.api_key))
        models = [item.get("id") for item in data.get("data", []) if isinstance(item, dict) and item.get("id")]
        if not models:
            raise ProviderError("PROVIDER_NO_MODELS", "No models returned by provider.")
        return models

    async def generate(
        self,
        cfg: ProviderRuntimeConfig,
        messages: list[dict],
        options: Optional[GenerationOptions] = None,
    ) -> LLMResult:
        options = options or GenerationOptions()
        url = join_endpoint(cfg.base_url, "/v1/chat/completions")
        payload: dict[str, Any] = {
            "model": cfg.model_name,
            "messages": messages,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "max_tokens": options.max_tokens,
            "repetition_penalty": options.repetition_penalty,
            "stream": False,
        }
        if options.stop:
            payload["stop"] = list(options.stop)
        data = await self._request_json(
            "POST", url, headers=self._auth_headers(cfg.api_key), json=payload
        )
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("PROVIDER_EMPTY_OUTPUT", "Provider returned empty content.")
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_usage_int(data, "prompt_tokens"),
            token_out=self._get_usage_int(data, "completion_tokens"),
        )

    async def check_connection(self, base_url: str) -> bool:
        """Return True when the models endpoint answers with a 2xx status."""

        try:
            url = join_endpoint(base_url, "/v1/models")
            await self._request("GET", url)
        except ProviderError:
            return False
        return True

    @staticmethod
    def _get_usage_int(data: dict[str, Any], key: str) -> Optional[int]:
        usage = data.get("usage") or {}
        value = usage.get(key) if isinstance(usage, dict) else None
        return int(value) if isinstance(value, int) else None
