"""API Pydantic models."""

from .responses import (
    ErrorCodes,
    ErrorResponse,
    HealthResponse,
    SettingsResponse,
    SettingsUpdate,
    SyncRequestBody,
)

__all__ = [
    "HealthResponse",
    "ErrorResponse",
    "ErrorCodes",
    "SyncRequestBody",
    "SettingsUpdate",
    "SettingsResponse",
]
