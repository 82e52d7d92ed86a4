"""Per-user settings, calendar link and account reset."""

import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_db, verify_api_key
from api.models.responses import ErrorCodes, SettingsResponse, SettingsUpdate
from core.config import DEFAULT_SYNC_INTERVAL_MINUTES, MIN_SYNC_INTERVAL_MINUTES
from core.crypto import CredentialCipher
from core.database import UserDirectory
from models.roster import UserRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/users", dependencies=[Depends(verify_api_key)])


def _directory(conn: sqlite3.Connection) -> UserDirectory:
    return UserDirectory(conn, CredentialCipher())


def _require_user(users: UserDirectory, username: str) -> UserRecord:
    user = users.find(username)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": f"Unknown user: {username}",
                "code": ErrorCodes.NOT_FOUND,
                "details": [],
            },
        )
    return user


def _settings(user: UserRecord) -> SettingsResponse:
    return SettingsResponse(
        username=user.username,
        display_name=user.display_name,
        sync_interval_minutes=user.sync_interval_minutes or DEFAULT_SYNC_INTERVAL_MINUTES,
        last_sync_at=user.last_sync_at.isoformat() if user.last_sync_at else None,
        calendar_linked=bool(user.calendar_mailbox),
        calendar_id=user.calendar_id,
    )


@router.get("/{username}/settings", response_model=SettingsResponse)
def get_settings(username: str, conn: sqlite3.Connection = Depends(get_db)):
    return _settings(_require_user(_directory(conn), username))


@router.put("/{username}/settings", response_model=SettingsResponse)
def update_settings(username: str, body: SettingsUpdate, conn: sqlite3.Connection = Depends(get_db)):
    """
    Change the sync interval and/or link a calendar mailbox.

    Linking a different mailbox forgets the stored calendar id so the next
    sync resolves the dedicated calendar in the new mailbox.
    """
    users = _directory(conn)
    user = _require_user(users, username)

    patch = {}
    if body.sync_interval_minutes is not None:
        if body.sync_interval_minutes < MIN_SYNC_INTERVAL_MINUTES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": f"Interval must be at least {MIN_SYNC_INTERVAL_MINUTES} minutes",
                    "code": ErrorCodes.VALIDATION_ERROR,
                    "details": [f"Received: {body.sync_interval_minutes}"],
                },
            )
        patch["sync_interval_minutes"] = body.sync_interval_minutes
    if body.calendar_mailbox is not None:
        mailbox = body.calendar_mailbox.strip() or None
        patch["calendar_mailbox"] = mailbox
        if mailbox != user.calendar_mailbox:
            patch["calendar_id"] = None

    users.update_sync_state(user.id, **patch)
    return _settings(users.get(user.id))


@router.delete("/{username}/calendar", response_model=SettingsResponse)
def unlink_calendar(username: str, conn: sqlite3.Connection = Depends(get_db)):
    """Stop reconciling; events already in the calendar are left alone."""
    users = _directory(conn)
    user = _require_user(users, username)
    users.update_sync_state(user.id, calendar_mailbox=None, calendar_id=None)
    logger.info("Calendar unlinked for %s", user.username)
    return _settings(users.get(user.id))


@router.post("/{username}/reset")
def reset_user(username: str, conn: sqlite3.Connection = Depends(get_db)):
    """Delete the user's stored roster and the user record itself."""
    entries_deleted, users_deleted = _directory(conn).reset(username)
    if not users_deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": f"Unknown user: {username}",
                "code": ErrorCodes.NOT_FOUND,
                "details": [],
            },
        )
    return {"success": True, "entries_deleted": entries_deleted, "users_deleted": users_deleted}
