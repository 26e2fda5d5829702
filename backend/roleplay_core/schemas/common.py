from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class APIModel(BaseModel):
    """Base model for API payloads and stored JSON blobs."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=(), populate_by_name=True)


class ErrorResponse(APIModel):
    """Standard error response payload."""

    code: str
    message: str
