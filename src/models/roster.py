"""
Data models for roster entries, mirrored calendar events and sync state.

Scraped rows stay plain dictionaries (they are raw portal text); everything
downstream of normalization is a dataclass.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TypedDict


class RawRosterRow(TypedDict):
    """One roster row exactly as read from the portal table."""
    date: str          # DD/MM/YYYY
    entry_type: str    # may carry the pending suffix
    start: str         # DD/MM/YYYY[ HH:MM]
    end: str           # DD/MM/YYYY[ HH:MM]
    person: str
    function: str
    department: str
    vessel: str


@dataclass(frozen=True)
class RosterEntry:
    """Normalized roster entry. `identity` is derived once and never changes."""

    identity: str
    person: str
    date: date
    start_at: datetime  # UTC
    end_at: datetime    # UTC
    entry_type: str
    function: str = ""
    department: str = ""
    vessel: str = ""

    def __post_init__(self):
        if self.start_at > self.end_at:
            raise ValueError(
                f"Entry {self.identity} ends before it starts "
                f"({self.start_at.isoformat()} > {self.end_at.isoformat()})"
            )

    def to_dict(self) -> dict:
        return {
            "id": self.identity,
            "person": self.person,
            "date": self.date.isoformat(),
            "start": self.start_at.isoformat(),
            "end": self.end_at.isoformat(),
            "entry_type": self.entry_type,
            "function": self.function,
            "department": self.department,
            "vessel": self.vessel,
        }


def _normalize_body(body: str) -> str:
    return "\n".join(line.rstrip() for line in body.strip().splitlines())


@dataclass
class CalendarEvent:
    """
    Event as the reconciler sees it.

    `external_id` is our deterministic id, not the provider's. All-day events
    use `start_date`/`end_date` (end exclusive); timed events (the change
    report) use `start_at`/`end_at`.
    """

    external_id: str
    title: str
    body: str = ""
    start_date: date | None = None
    end_date: date | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    reminder_minutes: int | None = None
    provider_id: str | None = None

    @property
    def is_all_day(self) -> bool:
        return self.start_date is not None

    def same_content(self, other: "CalendarEvent") -> bool:
        """True when nothing the user can see differs."""
        return (
            self.title == other.title
            and _normalize_body(self.body) == _normalize_body(other.body)
            and self.start_date == other.start_date
            and self.end_date == other.end_date
        )


@dataclass
class UserRecord:
    """A portal user and their per-person sync state."""

    id: int
    username: str
    password: str | None = None  # encrypted at rest
    display_name: str | None = None
    calendar_mailbox: str | None = None
    calendar_id: str | None = None
    sync_interval_minutes: int | None = None
    last_sync_at: datetime | None = None
    created_at: str | None = None


@dataclass
class ScrapeResult:
    """Outcome of one extraction run. Raw markup never leaves the engine."""

    success: bool
    entries: list[RawRosterRow] = field(default_factory=list)
    diagnostic_log: list[str] = field(default_factory=list)
    display_name: str | None = None
    error: str | None = None
    error_code: str | None = None
    partial: bool = False  # result table not confirmed complete


@dataclass
class ReconcileSummary:
    """What one reconciliation pass did to the calendar."""

    success: bool = True
    calendar_id: str | None = None
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: int = 0
    excluded: int = 0
    failed: int = 0
    truncated: bool = False
    report_event_id: str | None = None
    error: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.modified or self.removed)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "calendar_id": self.calendar_id,
            "added": len(self.added),
            "modified": len(self.modified),
            "removed": len(self.removed),
            "unchanged": self.unchanged,
            "excluded": self.excluded,
            "failed": self.failed,
            "truncated": self.truncated,
            "report_event_id": self.report_event_id,
            "error": self.error,
        }
