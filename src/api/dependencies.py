"""FastAPI dependencies for authentication and shared resources."""

import secrets
import sqlite3
from collections.abc import Iterator

from fastapi import BackgroundTasks, Header, HTTPException, status

from core.config import CRON_SECRET, DB_PATH, ROSTER_API_KEY
from core.crypto import CredentialCipher
from core.database import RosterStore, UserDirectory, get_connection
from services.sync import Job, SyncOrchestrator


def _check_secret(supplied: str, expected: str, what: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": f"{what} not configured on server",
                "code": "INTERNAL_ERROR",
                "details": [],
            },
        )

    # Use constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": f"Invalid or missing {what}",
                "code": "UNAUTHORIZED",
                "details": [],
            },
        )


async def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """
    Verify API key from X-API-Key header.

    Raises:
        HTTPException: 401 if key is missing or invalid
    """
    _check_secret(x_api_key, ROSTER_API_KEY, "API key")
    return x_api_key


async def verify_cron_secret(x_cron_secret: str = Header(..., alias="X-Cron-Secret")) -> str:
    """Verify the scheduler's shared secret for batch runs."""
    _check_secret(x_cron_secret, CRON_SECRET, "cron secret")
    return x_cron_secret


def open_connection() -> sqlite3.Connection:
    return get_connection(DB_PATH)


def get_db() -> Iterator[sqlite3.Connection]:
    """Request-scoped connection for routes that schedule no background work."""
    conn = open_connection()
    try:
        yield conn
    finally:
        conn.close()


class BackgroundTasksRunner:
    """Defers jobs until after the response using FastAPI BackgroundTasks."""

    deferred = True

    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks

    async def run(self, job: Job) -> None:
        self.background_tasks.add_task(job)


def build_orchestrator(conn: sqlite3.Connection, runner=None) -> SyncOrchestrator:
    """Orchestrator wired to the application database and MS Graph."""
    return SyncOrchestrator(
        RosterStore(conn),
        UserDirectory(conn, CredentialCipher()),
        runner=runner,
    )
