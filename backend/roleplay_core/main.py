from __future__ import annotations

import logging
import random
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roleplay_core.api import characters as characters_api
from roleplay_core.api import chat as chat_api
from roleplay_core.api import provider as provider_api
from roleplay_core.api import scenarios as scenarios_api
from roleplay_core.api import websocket as websocket_api
from roleplay_core.core.config import Settings, get_settings
from roleplay_core.core.logging import setup_logging
from roleplay_core.db.base import create_engine, create_sessionmaker, init_db
from roleplay_core.services.chat_store import ChatStore, SQLKeyValueStore
from roleplay_core.services.compression_service import CompressionEngine
from roleplay_core.services.presets import preset_characters, preset_scenarios
from roleplay_core.services.prompt_builder import PromptBuilder
from roleplay_core.services.provider_service import ProviderService
from roleplay_core.services.session_manager import SessionManager
from roleplay_core.services.turn_service import TurnOrchestrator
from roleplay_core.services.visual_service import VisualTrigger

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    provider_service: Optional[ProviderService] = None,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        if settings.seed_presets:
            seeded = await app.state.chat_store.seed(preset_characters(), preset_scenarios())
            if seeded:
                logger.info("Seeded preset characters and scenarios")
        yield
        await app.state.session_manager.shutdown()
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.ws_manager = websocket_api.WebSocketManager()
    app.state.chat_store = ChatStore(SQLKeyValueStore(sessionmaker), settings.app_secret_key)
    app.state.provider_service = provider_service or ProviderService(settings)
    app.state.compression_engine = CompressionEngine(
        app.state.provider_service,
        window_size=settings.memory_window_size,
        tier_bounds=settings.parsed_tier_bounds(),
        timeout_sec=settings.summary_timeout_sec,
        store=app.state.chat_store,
        broadcaster=app.state.ws_manager,
    )
    app.state.visual_trigger = VisualTrigger(
        app.state.provider_service,
        app.state.provider_service,
        threshold_range=settings.image_threshold_range(),
        history_window=settings.scene_history_window,
        timeout_sec=settings.image_timeout_sec,
        rng=rng,
        store=app.state.chat_store,
        broadcaster=app.state.ws_manager,
    )
    app.state.turn_orchestrator = TurnOrchestrator(
        PromptBuilder(
            max_history=settings.prompt_history_window,
            enforce_context_budget=settings.prompt_context_budget,
        ),
        app.state.provider_service,
        app.state.compression_engine,
        app.state.visual_trigger,
        timeout_sec=settings.generation_timeout_sec,
        store=app.state.chat_store,
        broadcaster=app.state.ws_manager,
    )
    app.state.session_manager = SessionManager(
        app.state.chat_store,
        app.state.compression_engine,
        app.state.visual_trigger,
        max_live_sessions=settings.max_live_sessions,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(characters_api.router)
    app.include_router(scenarios_api.router)
    app.include_router(chat_api.router)
    app.include_router(provider_api.router)
    app.include_router(websocket_api.router)

    return app


app = create_app()
