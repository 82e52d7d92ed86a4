"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str  # "healthy" or "unhealthy"
    version: str
    database_available: bool
    timestamp: str  # ISO 8601 UTC
    error: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    code: str
    details: list[str] = []


class SyncRequestBody(BaseModel):
    """Trigger for one person's sync."""

    person: str | None = None
    credential: str | None = None
    force: bool = False
    verify: bool = False
    limit: int | None = Field(default=None, ge=0)


class SettingsUpdate(BaseModel):
    """Per-user sync settings."""

    sync_interval_minutes: int | None = None
    calendar_mailbox: str | None = None


class SettingsResponse(BaseModel):
    username: str
    display_name: str | None = None
    sync_interval_minutes: int
    last_sync_at: str | None = None
    calendar_linked: bool
    calendar_id: str | None = None


class ErrorCodes:
    """Error code constants."""

    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UPSTREAM_RATE_LIMITED = "UPSTREAM_RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
