from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from roleplay_core.services.session_manager import SessionManager

router = APIRouter()
logger = logging.getLogger(__name__)


class WebSocketManager:
    """Manage active WebSocket connections per scenario."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, scenario_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(scenario_id, set()).add(websocket)

    async def disconnect(self, scenario_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            connections = self._connections.get(scenario_id)
            if not connections:
                return
            connections.discard(websocket)
            if not connections:
                self._connections.pop(scenario_id, None)

    async def broadcast(self, scenario_id: str, payload: dict) -> None:
        async with self._lock:
            connections = list(self._connections.get(scenario_id, set()))
        if not connections:
            return
        stale: list[WebSocket] = []
        for websocket in connections:
            try:
                await websocket.send_json(payload)
            except Exception:  # noqa: BLE001
                stale.append(websocket)
        for websocket in stale:
            logger.debug("Dropping stale socket for scenario %s", scenario_id)
            await self.disconnect(scenario_id, websocket)


def get_ws_manager(websocket: WebSocket) -> WebSocketManager:
    """Dependency to access the WebSocket manager from app state."""

    return websocket.app.state.ws_manager


def get_ws_session_manager(websocket: WebSocket) -> SessionManager:
    return websocket.app.state.session_manager


@router.websocket("/ws/{scenario_id}")
async def ws_scenario(
    websocket: WebSocket,
    scenario_id: str,
    manager: WebSocketManager = Depends(get_ws_manager),
    sessions: SessionManager = Depends(get_ws_session_manager),
) -> None:
    """WebSocket endpoint for chat updates of one scenario."""

    await manager.connect(scenario_id, websocket)
    session = await sessions.get_session(scenario_id)
    if session:
        await websocket.send_json(
            {
                "event": "chat_state",
                "turn_state": session.turn_state.value,
                "compression_state": session.compression_state.value,
                "image_state": session.image_state.value,
            }
        )
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(scenario_id, websocket)
