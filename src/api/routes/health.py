"""Health check endpoint."""

import sqlite3
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from api.dependencies import open_connection
from api.models.responses import HealthResponse
from core.config import API_VERSION

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns 200 if healthy, 503 if unhealthy.
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        conn = open_connection()
        try:
            conn.execute("SELECT COUNT(*) FROM users").fetchone()
        finally:
            conn.close()
    except sqlite3.Error as e:
        return JSONResponse(
            status_code=503,
            content=HealthResponse(
                status="unhealthy",
                version=API_VERSION,
                database_available=False,
                timestamp=timestamp,
                error=f"Database unavailable: {e}",
            ).model_dump(),
        )

    return HealthResponse(
        status="healthy",
        version=API_VERSION,
        database_available=True,
        timestamp=timestamp,
    )
