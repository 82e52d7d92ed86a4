"""
Canonical forms for roster data: timestamps, identities and deduplication.

Pure functions only. Portal times are Central European wall-clock strings;
everything stored or compared downstream is a UTC instant.
"""

import hashlib
import re
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta, timezone

from core.config import (
    EXCLUDED_ENTRY_TYPES,
    LEAVE_MARKER,
    PENDING_ROW_COLORS,
    PENDING_SUFFIX,
    REPORT_ID_PREFIX,
)
from models.roster import RawRosterRow, RosterEntry

PORTAL_DATE_PATTERN = re.compile(r"\d{1,2}/\d{1,2}/\d{4}")
_PORTAL_DATETIME = re.compile(
    r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(\d{1,2}):(\d{2}))?\s*$"
)
_OWNED_EVENT_ID = re.compile(r"[0-9a-f]{64}")

STANDARD_OFFSET = timedelta(hours=1)
DAYLIGHT_OFFSET = timedelta(hours=2)

ZoneRules = Callable[[datetime], timedelta]


# =============================================================================
# DATE / TIME
# =============================================================================


def last_sunday(year: int, month: int) -> date:
    """Last Sunday of a month (month < 12)."""
    last_day = date(year, month + 1, 1) - timedelta(days=1)
    # Monday=0 .. Sunday=6
    return last_day - timedelta(days=(last_day.weekday() + 1) % 7)


def central_european_offset(instant: datetime) -> timedelta:
    """
    UTC offset in force at `instant` (aware, or naive meaning UTC).

    Daylight time runs from 01:00 UTC on the last Sunday of March until
    01:00 UTC on the last Sunday of October.
    """
    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc).replace(tzinfo=None)
    year = instant.year
    dst_start = datetime.combine(last_sunday(year, 3), datetime.min.time()) + timedelta(hours=1)
    dst_end = datetime.combine(last_sunday(year, 10), datetime.min.time()) + timedelta(hours=1)
    if dst_start <= instant < dst_end:
        return DAYLIGHT_OFFSET
    return STANDARD_OFFSET


def parse_portal_date(value: str) -> date:
    """'DD/MM/YYYY[ HH:MM]' -> date. ISO dates are accepted as-is."""
    value = value.strip()
    match = _PORTAL_DATETIME.match(value)
    if match:
        day, month, year = (int(match.group(i)) for i in (1, 2, 3))
        return date(year, month, day)
    return date.fromisoformat(value[:10])


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_utc_instant(value: str | datetime, zone_rules: ZoneRules = central_european_offset) -> datetime:
    """
    Convert a portal wall-clock string to an aware UTC datetime.

    Time defaults to 00:00. Values that are already instants (aware datetimes
    or ISO-8601 strings) are returned unchanged, normalized to UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    match = _PORTAL_DATETIME.match(value)
    if not match:
        return _parse_iso(value)

    day, month, year = (int(match.group(i)) for i in (1, 2, 3))
    hour = int(match.group(4) or 0)
    minute = int(match.group(5) or 0)
    local = datetime(year, month, day, hour, minute)

    # The rule is stated in UTC, so resolve it against the standard-time reading
    offset = zone_rules(local - STANDARD_OFFSET)
    return (local - offset).replace(tzinfo=timezone.utc)


def to_local(instant: datetime, zone_rules: ZoneRules = central_european_offset) -> datetime:
    """Naive wall-clock time in the source zone for a UTC instant."""
    utc = to_utc_instant(instant)
    return (utc + zone_rules(utc)).replace(tzinfo=None)


def format_portal_date(d: date) -> str:
    """Format date as DD/MM/YYYY, the portal's filter format."""
    return f"{d.day:02d}/{d.month:02d}/{d.year}"


# =============================================================================
# IDENTITY
# =============================================================================


def derive_identity(person: str, day: date | str, start: datetime | str, entry_type: str) -> str:
    """
    Deterministic identity of a roster entry.

    Built only from the entry's defining fields, so an unchanged row scraped
    twice always yields the same key.
    """
    day_text = day.isoformat() if isinstance(day, date) else parse_portal_date(day).isoformat()
    start_text = to_utc_instant(start).isoformat()
    material = "|".join([person.strip(), day_text, start_text, entry_type.strip()])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def event_id_for(identity: str) -> str:
    """Calendar-side id for an entry identity."""
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


def is_owned_event_id(external_id: str | None) -> bool:
    return bool(external_id) and _OWNED_EVENT_ID.fullmatch(external_id) is not None


def is_report_event_id(external_id: str | None) -> bool:
    return bool(external_id) and external_id.startswith(REPORT_ID_PREFIX)


def normalize_row(row: RawRosterRow) -> RosterEntry:
    """Turn a scraped row into a RosterEntry. Raises ValueError on bad data."""
    day = parse_portal_date(row["date"])
    start_at = to_utc_instant(row["start"])
    end_at = to_utc_instant(row["end"])
    entry_type = row["entry_type"].strip()
    person = row["person"].strip()
    return RosterEntry(
        identity=derive_identity(person, day, start_at, entry_type),
        person=person,
        date=day,
        start_at=start_at,
        end_at=end_at,
        entry_type=entry_type,
        function=row.get("function", "").strip(),
        department=row.get("department", "").strip(),
        vessel=row.get("vessel", "").strip(),
    )


def normalize_rows(rows: Iterable[RawRosterRow]) -> tuple[list[RosterEntry], list[str]]:
    """
    Normalize a scrape. Returns (entries, rejection messages).

    Rows sharing an identity collapse into one; the later row's descriptive
    fields win but the first row's position is kept.
    """
    by_identity: dict[str, RosterEntry] = {}
    rejected = []
    for row in rows:
        try:
            entry = normalize_row(row)
        except (KeyError, ValueError) as e:
            rejected.append(f"Skipped row {row!r}: {e}")
            continue
        by_identity[entry.identity] = entry
    return list(by_identity.values()), rejected


def dedupe_entries(entries: Iterable[RosterEntry]) -> list[RosterEntry]:
    """Keep the first entry per (start, end, type), preserving order."""
    seen = set()
    result = []
    for entry in entries:
        key = (entry.start_at, entry.end_at, entry.entry_type)
        if key in seen:
            continue
        seen.add(key)
        result.append(entry)
    return result


# =============================================================================
# BUSINESS RULES
# =============================================================================


def infer_pending_qualifier(row_style: str, has_cancel_affordance: bool, entry_type: str) -> bool:
    """
    Whether a leave row is an unapproved request.

    The portal has no explicit status column: a pending request is shown
    with a highlight colour or with a cancel button on the row.
    """
    style = (row_style or "").lower()
    highlighted = any(color in style for color in PENDING_ROW_COLORS)
    return (highlighted or has_cancel_affordance) and LEAVE_MARKER in entry_type


def apply_pending_qualifier(entry_type: str) -> str:
    if entry_type.endswith(PENDING_SUFFIX):
        return entry_type
    return entry_type + PENDING_SUFFIX


def is_pending_type(entry_type: str) -> bool:
    return entry_type.endswith(PENDING_SUFFIX)


def strip_pending_suffix(entry_type: str) -> str:
    if is_pending_type(entry_type):
        return entry_type[: -len(PENDING_SUFFIX)]
    return entry_type


def is_excluded_type(entry_type: str) -> bool:
    """Rest periods and standby shifts are never mirrored."""
    return any(marker in entry_type for marker in EXCLUDED_ENTRY_TYPES)


def _is_caps_word(word: str) -> bool:
    letters = [c for c in word if c.isalpha()]
    return len(letters) > 1 and all(c.isupper() for c in letters)


def _title_word(word: str) -> str:
    return "-".join(part.capitalize() for part in word.split("-"))


def format_display_name(raw: str) -> str:
    """
    'JANSSENS Jan' -> 'Jan Janssens'.

    Leading all-caps words are the surname, the rest the given names. Anything
    that does not split cleanly that way is returned unchanged.
    """
    words = raw.split()
    surname = []
    index = 0
    while index < len(words) and _is_caps_word(words[index]):
        surname.append(words[index])
        index += 1
    given = words[index:]

    if not surname or not given or any(_is_caps_word(w) for w in given):
        return raw.strip()
    return " ".join(_title_word(w) for w in given + surname)
