from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from roleplay_core.providers.base import ProviderError
from roleplay_core.schemas.chat import ConnectionCheckRequest, ConnectionCheckResponse
from roleplay_core.services.provider_service import ProviderService, get_provider_service

router = APIRouter(prefix="/api/provider", tags=["provider"])
logger = logging.getLogger(__name__)


@router.post("/check", response_model=ConnectionCheckResponse)
async def check_connection(
    payload: ConnectionCheckRequest,
    provider_service: ProviderService = Depends(get_provider_service),
) -> ConnectionCheckResponse:
    """Test whether a chat endpoint answers its models listing."""

    if not payload.url.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Endpoint URL is required")
    try:
        ok = await provider_service.check_connection(payload.url)
    except ProviderError as exc:
        logger.info("Connection check failed: %s %s", exc.code, exc.message)
        ok = False
    return ConnectionCheckResponse(ok=ok)
