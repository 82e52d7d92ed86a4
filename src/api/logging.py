"""SQLite request logging for API."""

import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from core.config import DB_PATH


@dataclass
class RequestLog:
    """One API call: who asked for what, how it ended, and the sync's diagnostic trail."""

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    endpoint: str = ""
    method: str = ""
    client_ip: str | None = None
    person: str | None = None
    status_code: int = 0
    error_code: str | None = None
    error_message: str | None = None
    processing_time_ms: int = 0
    entries_returned: int | None = None
    is_live: bool | None = None
    details: list[tuple[str, str]] = field(default_factory=list)  # (diagnostic|warning|error, message)
    _started: float = field(default_factory=time.monotonic, repr=False)

    def finish(self, status_code: int, error_code: str | None = None, error_message: str | None = None) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.error_message = error_message
        self.processing_time_ms = int((time.monotonic() - self._started) * 1000)


def log_request(log: RequestLog, db_path=DB_PATH) -> None:
    """Write request log to SQLite database."""
    row = asdict(log)
    details = row.pop("details")
    row.pop("_started")
    if row["is_live"] is not None:
        row["is_live"] = int(row["is_live"])

    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    conn = sqlite3.connect(db_path)
    try:
        with conn:
            conn.execute(
                f"INSERT INTO api_requests ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            conn.executemany(
                "INSERT INTO api_request_details (request_id, detail_type, message) VALUES (?, ?, ?)",
                [(log.request_id, detail_type, message) for detail_type, message in details],
            )
    finally:
        conn.close()
