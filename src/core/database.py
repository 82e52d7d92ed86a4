"""
SQLite persistence for roster entries and users.
"""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import date, datetime, timezone
from pathlib import Path

from core.canonical import is_pending_type, strip_pending_suffix
from core.config import DB_PATH
from core.crypto import CredentialCipher
from core.errors import MissingCredential, PersistenceFailed
from models.roster import RosterEntry, UserRecord

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL COLLATE NOCASE,
        password TEXT,
        display_name TEXT,
        calendar_mailbox TEXT,
        calendar_id TEXT,
        sync_interval_minutes INTEGER,
        last_sync_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS roster_entries (
        identity TEXT PRIMARY KEY,
        person TEXT NOT NULL,
        date TEXT NOT NULL,
        start_at TEXT NOT NULL,
        end_at TEXT NOT NULL,
        entry_type TEXT NOT NULL,
        function TEXT,
        department TEXT,
        vessel TEXT,
        last_scraped_at TEXT NOT NULL,
        UNIQUE (person, start_at, end_at, entry_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_roster_entries_person_date ON roster_entries(person, date)",
    """
    CREATE TABLE IF NOT EXISTS api_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT UNIQUE NOT NULL,
        timestamp TEXT NOT NULL,
        endpoint TEXT NOT NULL,
        method TEXT NOT NULL,
        client_ip TEXT,
        person TEXT,
        status_code INTEGER NOT NULL,
        error_code TEXT,
        error_message TEXT,
        processing_time_ms INTEGER NOT NULL,
        entries_returned INTEGER,
        is_live INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_request_details (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL,
        detail_type TEXT NOT NULL CHECK(detail_type IN ('diagnostic', 'warning', 'error')),
        message TEXT NOT NULL,
        FOREIGN KEY (request_id) REFERENCES api_requests(request_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_api_requests_timestamp ON api_requests(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_api_request_details_request ON api_request_details(request_id)",
]


def get_connection(path: Path | str = DB_PATH) -> sqlite3.Connection:
    """Get a database connection."""
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def create_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    for statement in SCHEMA:
        conn.execute(statement)
    conn.commit()


def _iso(value: datetime, timespec: str = "auto") -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec=timespec)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# ROSTER STORE
# =============================================================================


class RosterStore:
    """Roster entries keyed by identity, scoped per person."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def upsert(self, entries: Iterable[RosterEntry], scraped_at: datetime | None = None) -> int:
        """
        Insert or update entries. Returns the number written.

        A pending leave request supersedes the plain leave entry at the same
        start time: the plain row is removed before the pending one is written.
        """
        entries = list(entries)
        scraped = _iso(scraped_at or datetime.now(timezone.utc), "microseconds")
        try:
            for entry in entries:
                if is_pending_type(entry.entry_type):
                    deleted = self.conn.execute(
                        "DELETE FROM roster_entries WHERE person = ? AND start_at = ? AND entry_type = ?",
                        (entry.person, _iso(entry.start_at), strip_pending_suffix(entry.entry_type)),
                    ).rowcount
                    if deleted:
                        logger.info(
                            "Pending request supersedes %d entry(ies) for %s on %s",
                            deleted, entry.person, entry.date,
                        )

            self.conn.executemany(
                """
                INSERT INTO roster_entries (
                    identity, person, date, start_at, end_at, entry_type,
                    function, department, vessel, last_scraped_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    end_at = excluded.end_at,
                    function = excluded.function,
                    department = excluded.department,
                    vessel = excluded.vessel,
                    last_scraped_at = excluded.last_scraped_at
                """,
                [
                    (
                        e.identity, e.person, e.date.isoformat(), _iso(e.start_at), _iso(e.end_at),
                        e.entry_type, e.function, e.department, e.vessel, scraped,
                    )
                    for e in entries
                ],
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceFailed(f"Failed to save roster entries: {e}") from e
        return len(entries)

    def query(self, person: str, date_from: date | None = None, date_to: date | None = None) -> list[RosterEntry]:
        """All entries for a person, ordered by start time."""
        sql = "SELECT * FROM roster_entries WHERE person = ?"
        params: list = [person]
        if date_from:
            sql += " AND date >= ?"
            params.append(date_from.isoformat())
        if date_to:
            sql += " AND date <= ?"
            params.append(date_to.isoformat())
        sql += " ORDER BY start_at, entry_type"

        rows = self.conn.execute(sql, params).fetchall()
        return [
            RosterEntry(
                identity=row["identity"],
                person=row["person"],
                date=date.fromisoformat(row["date"]),
                start_at=_parse_ts(row["start_at"]),
                end_at=_parse_ts(row["end_at"]),
                entry_type=row["entry_type"],
                function=row["function"] or "",
                department=row["department"] or "",
                vessel=row["vessel"] or "",
            )
            for row in rows
        ]

    def first_date(self, person: str) -> date | None:
        """Earliest date we hold data for."""
        row = self.conn.execute(
            "SELECT MIN(date) AS first FROM roster_entries WHERE person = ?", (person,)
        ).fetchone()
        return date.fromisoformat(row["first"]) if row and row["first"] else None

    def _delete(self, sql: str, params: tuple) -> int:
        try:
            count = self.conn.execute(sql, params).rowcount
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceFailed(f"Cleanup failed: {e}") from e
        return count

    def delete_older_than(self, person: str, cutoff: date) -> int:
        """Retention: drop entries dated before `cutoff`."""
        count = self._delete(
            "DELETE FROM roster_entries WHERE person = ? AND date < ?",
            (person, cutoff.isoformat()),
        )
        logger.info("Deleted %d entries older than %s for %s", count, cutoff, person)
        return count

    def delete_stale_active(self, person: str, watermark: datetime, today: date) -> int:
        """
        Drop today-or-future entries the latest scrape did not refresh.

        These were removed or changed on the portal since an earlier scrape.
        """
        count = self._delete(
            "DELETE FROM roster_entries WHERE person = ? AND date >= ? AND last_scraped_at < ?",
            (person, today.isoformat(), _iso(watermark, "microseconds")),
        )
        if count:
            logger.info("Deleted %d stale entries for %s", count, person)
        return count

    def delete_all(self, person: str) -> int:
        return self._delete("DELETE FROM roster_entries WHERE person = ?", (person,))


# =============================================================================
# USER DIRECTORY
# =============================================================================

_SYNC_STATE_FIELDS = {
    "display_name",
    "calendar_mailbox",
    "calendar_id",
    "sync_interval_minutes",
    "last_sync_at",
}


class UserDirectory:
    """Portal users with encrypted credentials and sync state."""

    def __init__(self, conn: sqlite3.Connection, cipher: CredentialCipher):
        self.conn = conn
        self.cipher = cipher

    @staticmethod
    def _to_record(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            username=row["username"],
            password=row["password"],
            display_name=row["display_name"],
            calendar_mailbox=row["calendar_mailbox"],
            calendar_id=row["calendar_id"],
            sync_interval_minutes=row["sync_interval_minutes"],
            last_sync_at=_parse_ts(row["last_sync_at"]),
            created_at=row["created_at"],
        )

    def find(self, username: str) -> UserRecord | None:
        """Case-insensitive lookup."""
        row = self.conn.execute(
            "SELECT * FROM users WHERE username = ? COLLATE NOCASE", (username.strip(),)
        ).fetchone()
        return self._to_record(row) if row else None

    def get(self, user_id: int) -> UserRecord | None:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._to_record(row) if row else None

    def list_users(self) -> list[UserRecord]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._to_record(row) for row in rows]

    def find_or_create(self, username: str, password: str | None = None) -> UserRecord:
        """
        Return the user, creating it on first sight.

        A supplied password replaces the stored one. Creating a user requires
        a password.
        """
        existing = self.find(username)
        try:
            if existing:
                if password:
                    self.conn.execute(
                        "UPDATE users SET password = ? WHERE id = ?",
                        (self.cipher.encrypt(password), existing.id),
                    )
                    self.conn.commit()
                    return self.get(existing.id)
                return existing

            if not password:
                raise MissingCredential("Password required for first-time login")

            cursor = self.conn.execute(
                "INSERT INTO users (username, password, display_name) VALUES (?, ?, ?)",
                (username.strip(), self.cipher.encrypt(password), username.strip()),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceFailed(f"Failed to save user {username}: {e}") from e
        logger.info("Created user %s", username)
        return self.get(cursor.lastrowid)

    def update_sync_state(self, user_id: int, **patch) -> None:
        unknown = set(patch) - _SYNC_STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync state fields: {', '.join(sorted(unknown))}")
        if not patch:
            return
        values = [_iso(v) if isinstance(v, datetime) else v for v in patch.values()]
        assignments = ", ".join(f"{name} = ?" for name in patch)
        try:
            self.conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", (*values, user_id))
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceFailed(f"Failed to update sync state: {e}") from e

    def decrypt_password(self, user: UserRecord) -> str | None:
        if not user.password:
            return None
        return self.cipher.decrypt(user.password)

    def reset(self, username: str) -> tuple[int, int]:
        """
        Account reset: delete the user's roster entries and the user itself.

        Returns (entries_deleted, users_deleted).
        """
        user = self.find(username)
        if not user:
            return 0, 0
        try:
            entries = self.conn.execute(
                "DELETE FROM roster_entries WHERE person = ?", (user.username,)
            ).rowcount
            users = self.conn.execute("DELETE FROM users WHERE id = ?", (user.id,)).rowcount
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceFailed(f"Failed to reset {username}: {e}") from e
        logger.info("Reset %s: %d entries, %d user rows deleted", username, entries, users)
        return entries, users
