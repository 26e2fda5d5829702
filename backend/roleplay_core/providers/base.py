from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

TUNNEL_HEADERS = {"bypass-tunnel-reminder": "true"}
DEFAULT_STOP_SEQUENCES = ("User:", "###", "<|eot_id|>", "[SYSTEM")
# 1x1 transparent PNG, returned by the offline image adapter.
PLACEHOLDER_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


@dataclass
class ProviderRuntimeConfig:
    """Endpoint configuration resolved for one scenario."""

    provider: str
    model_name: str
    base_url: str | None = None
    api_key: str | None = None


@dataclass
class GenerationOptions:
    """Sampling knobs forwarded verbatim to the chat endpoint."""

    temperature: float = 0.9
    top_p: float = 1.0
    top_k: int = 40
    max_tokens: int = 1200
    repetition_penalty: float = 1.1
    stop: tuple[str, ...] = DEFAULT_STOP_SEQUENCES


@dataclass
class LLMResult:
    """Result returned from an LLM generation call."""

    content: str
    model_provider: str
    model_name: str
    token_in: int | None = None
    token_out: int | None = None


@dataclass
class ImageRequest:
    """Payload sent to the image synthesis endpoint."""

    prompt: str
    negative_prompt: str = ""
    ip_scale: float = 0.6
    guidance_scale: float = 5.0
    steps: int = 30
    seed: int = 42
    randomize_seed: bool = True
    use_llm: bool = True
    llm_temperature: float = 0.7
    use_embedding: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


class LLMAdapter(Protocol):
    """Adapter interface for chat-completion providers."""

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        """List available models for the provider."""

    async def generate(
        self,
        cfg: ProviderRuntimeConfig,
        messages: list[dict],
        options: Optional[GenerationOptions] = None,
    ) -> LLMResult:
        """Generate a response from the provider."""


class ImageAdapter(Protocol):
    """Adapter interface for image synthesis endpoints."""

    async def generate_image(self, cfg: ProviderRuntimeConfig, request: ImageRequest) -> str:
        """Return an image reference (URL or data URI)."""


class ProviderError(RuntimeError):
    """Raised when a provider operation fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


def build_status_error(response: httpx.Response) -> ProviderError:
    """Build a normalized provider error from an HTTP response."""

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Provider returned {status}: {message}"
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return ProviderError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return ProviderError(
            "PROVIDER_UPSTREAM",
            formatted,
            retryable=True,
            status_code=status,
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        for key in ("message", "detail"):
            message = payload.get(key)
            if isinstance(message, str) and message.strip():
                return message.strip()
    return (response.text or "Unknown error from provider.").strip()


def join_endpoint(base_url: Optional[str], path: str) -> str:
    """Join an OpenAI-compatible base URL with a ``/v1/...`` path.

    Accepts bare hosts, hosts ending in ``/v1``, and full endpoint URLs that
    already contain the requested path.
    """

    if not base_url or not base_url.strip():
        raise ProviderError("PROVIDER_BASE_URL_MISSING", "Endpoint URL is not configured.")
    base = base_url.strip().rstrip("/")
    if base.endswith(path):
        return base
    if base.endswith("/v1") and path.startswith("/v1/"):
        return base + path[3:]
    return base + path


class HTTPProviderAdapter:
    """Shared HTTP behavior for provider adapters."""

    def __init__(
        self, timeout_sec: float = 90, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout_sec
        self._client = http_client

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, headers=headers, json=json)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        return payload

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        merged_headers = {**TUNNEL_HEADERS, **(headers or {})}
        try:
            if self._client:
                response = await self._client.request(
                    method, url, headers=merged_headers, json=json, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=merged_headers, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection failed.",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response

    @staticmethod
    def _auth_headers(api_key: Optional[str]) -> dict[str, str]:
        if not api_key:
            return {}
        return {"Authorization": f"Bearer {api_key}"}


class MockAdapter:
    """Offline chat adapter used when PROVIDER_MODE=mock."""

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        return [cfg.model_name or "mock-1"]

    async def generate(
        self,
        cfg: ProviderRuntimeConfig,
        messages: list[dict],
        options: Optional[GenerationOptions] = None,
    ) -> LLMResult:
        last_user = ""
        for message in reversed(messages):
            if message.get("role") == "user":
                last_user = str(message.get("content", "")).strip()
                break
        content = f"*tilts head thoughtfully* You said: {last_user or '...'}"
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=None,
            token_out=None,
        )


class MockImageAdapter:
    """Offline image adapter returning a placeholder data URI."""

    async def generate_image(self, cfg: ProviderRuntimeConfig, request: ImageRequest) -> str:
        return f"data:image/png;base64,{PLACEHOLDER_PNG_B64}"
