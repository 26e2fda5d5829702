from __future__ import annotations

from dataclasses import asdict

from roleplay_core.providers.base import (
    HTTPProviderAdapter,
    ImageRequest,
    ProviderError,
    ProviderRuntimeConfig,
)


class ImageEndpointAdapter(HTTPProviderAdapter):
    """Adapter for a self-hosted image server: ``POST {base}/generate``.

    The server answers ``{"image": "<base64 png>"}`` or ``{"image_url": "..."}``.
    """

    def __init__(self, timeout_sec: float = 180, http_client=None) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)

    async def generate_image(self, cfg: ProviderRuntimeConfig, request: ImageRequest) -> str:
        if not cfg.base_url or not cfg.base_url.strip():
            raise ProviderError("PROVIDER_BASE_URL_MISSING", "Image endpoint URL is not configured.")
        url = cfg.base_url.strip().rstrip("/")
        if not url.endswith("/generate"):
            url += "/generate"

        payload = asdict(request)
        extra = payload.pop("extra", {}) or {}
        payload.update(extra)
        data = await self._request_json(
            "POST", url, headers=self._auth_headers(cfg.api_key), json=payload
        )

        image_url = data.get("image_url")
        if isinstance(image_url, str) and image_url.strip():
            return image_url.strip()
        image = data.get("image")
        if isinstance(image, str) and image.strip():
            image = image.strip()
            if image.startswith("data:"):
                return image
            return f"data:image/png;base64,{image}"
        raise ProviderError("PROVIDER_PARSE_ERROR", "Image endpoint returned no image.")
