from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://127.0.0.1:5173,http://localhost:5173",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./roleplay.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    app_secret_key: str = Field(default="", alias="APP_SECRET_KEY")
    seed_presets: bool = Field(default=True, alias="SEED_PRESETS")

    provider_mode: str = Field(default="http", alias="PROVIDER_MODE")
    default_chat_base_url: str = Field(default="", alias="DEFAULT_CHAT_BASE_URL")
    default_image_base_url: str = Field(default="", alias="DEFAULT_IMAGE_BASE_URL")
    default_model_id: str = Field(default="llama-3", alias="DEFAULT_MODEL_ID")

    memory_window_size: int = Field(default=20, ge=1, alias="MEMORY_WINDOW_SIZE")
    # Comma-delimited bounds, one per tier. "10,10" = base -> core -> main memory.
    memory_tier_bounds: str = Field(default="10,10", alias="MEMORY_TIER_BOUNDS")
    prompt_history_window: int = Field(default=20, ge=1, alias="PROMPT_HISTORY_WINDOW")
    # Opt-in: trim the oldest window turns to fit context_size - max_tokens.
    prompt_context_budget: bool = Field(default=False, alias="PROMPT_CONTEXT_BUDGET")
    scene_history_window: int = Field(default=6, ge=1, alias="SCENE_HISTORY_WINDOW")
    max_live_sessions: int = Field(default=32, ge=1, alias="MAX_LIVE_SESSIONS")

    image_threshold_min: int = Field(default=3, ge=1, alias="IMAGE_THRESHOLD_MIN")
    image_threshold_max: int = Field(default=5, ge=1, alias="IMAGE_THRESHOLD_MAX")

    generation_timeout_sec: float = Field(default=60, gt=0, alias="GENERATION_TIMEOUT_SEC")
    summary_timeout_sec: float = Field(default=60, gt=0, alias="SUMMARY_TIMEOUT_SEC")
    image_timeout_sec: float = Field(default=120, gt=0, alias="IMAGE_TIMEOUT_SEC")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                import json

                value: Any = json.loads(raw)
                if isinstance(value, list):
                    items = [str(item).strip() for item in value]
                    return [item for item in items if item]
            except Exception:  # noqa: BLE001
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    def parsed_tier_bounds(self) -> List[int]:
        """Return memory tier bounds; invalid entries are clamped to 2."""

        bounds: list[int] = []
        for item in (self.memory_tier_bounds or "").split(","):
            item = item.strip()
            if not item:
                continue
            try:
                bounds.append(max(2, int(item)))
            except ValueError:
                continue
        return bounds or [10, 10]

    def image_threshold_range(self) -> tuple[int, int]:
        low = min(self.image_threshold_min, self.image_threshold_max)
        high = max(self.image_threshold_min, self.image_threshold_max)
        return low, high


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
