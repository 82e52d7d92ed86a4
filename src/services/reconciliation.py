"""
Mirror a person's roster into their dedicated calendar.

One pass resolves the calendar, diffs the wanted events against the events we
own there, applies the minimal set of inserts/updates/deletes and, when
anything changed, drops a short-lived report event so the calendar's own
notifications tell the user what moved.
"""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import date, datetime, time, timedelta, timezone

from core.canonical import event_id_for, is_excluded_type, is_owned_event_id, is_report_event_id, to_local
from core.config import (
    CALENDAR_FETCH_LIMIT,
    CALENDAR_NAME,
    DEFAULT_MUTATION_LIMIT,
    MUTATION_DELAY_SECONDS,
    PRIORITY_DAYS_AHEAD,
    PRIORITY_DAYS_BACK,
    REPORT_DURATION_MINUTES,
    REPORT_ID_PREFIX,
    REPORT_LEAD_MINUTES,
)
from core.database import UserDirectory
from core.errors import CalendarContainerUnresolved, CalendarMutationFailed
from models.roster import CalendarEvent, ReconcileSummary, RosterEntry, UserRecord
from services.calendar import CalendarClient

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# =============================================================================
# TARGET REPRESENTATION
# =============================================================================


def _hhmm(value: datetime) -> str:
    return value.strftime("%H:%M")


def build_event(entry: RosterEntry) -> CalendarEvent:
    """
    The all-day event an entry should appear as.

    Entries with specific hours get the vessel (or function) and the local
    time range in the title, e.g. "Dagdienst - Zeeschelde (07:00 - 19:00)".
    """
    local_start = to_local(entry.start_at)
    local_end = to_local(entry.end_at)
    has_hours = local_start.time() != time.min or local_end.time() != time.min

    title = entry.entry_type
    if has_hours:
        time_range = f"{_hhmm(local_start)} - {_hhmm(local_end)}"
        where = entry.vessel or entry.function
        title = f"{entry.entry_type} - {where} ({time_range})" if where else f"{entry.entry_type} ({time_range})"

    start_date = entry.date
    end_date = local_end.date()
    if end_date <= start_date:
        end_date = start_date + timedelta(days=1)
    elif local_end.time() != time.min:
        # Ends partway through a later day; the exclusive end must cover it
        end_date += timedelta(days=1)

    body = "\n".join([
        f"Vessel: {entry.vessel}",
        f"Function: {entry.function}",
        f"Department: {entry.department}",
        f"Type: {entry.entry_type}",
    ])
    return CalendarEvent(
        external_id=event_id_for(entry.identity),
        title=title,
        body=body,
        start_date=start_date,
        end_date=end_date,
    )


def prioritize(entries: Iterable[RosterEntry], today: date) -> list[RosterEntry]:
    """Recent-past to near-future entries first, each group by start time."""
    window_start = today - timedelta(days=PRIORITY_DAYS_BACK)
    window_end = today + timedelta(days=PRIORITY_DAYS_AHEAD)

    def key(entry: RosterEntry):
        in_window = window_start <= entry.date <= window_end
        return (0 if in_window else 1, entry.start_at)

    return sorted(entries, key=key)


def build_report_event(summary: ReconcileSummary, person: str, now: datetime) -> CalendarEvent:
    """Transient event listing what this pass changed."""
    digest = hashlib.sha256(f"{person}|{now.isoformat()}".encode("utf-8")).hexdigest()[:32]
    title = (
        f"Roster updated: {len(summary.added)} added, "
        f"{len(summary.modified)} changed, {len(summary.removed)} removed"
    )
    lines = []
    for heading, items in (("Added", summary.added), ("Changed", summary.modified), ("Removed", summary.removed)):
        if items:
            lines.append(f"{heading}:")
            lines.extend(f"  - {item}" for item in items)
            lines.append("")
    start_at = now + timedelta(minutes=REPORT_LEAD_MINUTES)
    return CalendarEvent(
        external_id=f"{REPORT_ID_PREFIX}{digest}",
        title=title,
        body="\n".join(lines).strip(),
        start_at=start_at,
        end_at=start_at + timedelta(minutes=REPORT_DURATION_MINUTES),
        reminder_minutes=0,
    )


def _describe(event: CalendarEvent) -> str:
    return f"{event.start_date.isoformat() if event.start_date else '?'} {event.title}"


# =============================================================================
# CALENDAR RESOLUTION
# =============================================================================


async def resolve_calendar(user: UserRecord, client: CalendarClient, users: UserDirectory) -> str:
    """
    Find or create the user's dedicated calendar and remember its id.

    The id is saved as soon as it is known so an interrupted run cannot lead
    to a second calendar being created next time.
    """
    try:
        if user.calendar_id and await client.container_exists(user.calendar_id):
            return user.calendar_id
        if user.calendar_id:
            logger.warning("Stored calendar %s for %s is gone, resolving again", user.calendar_id, user.username)

        calendar_id = None
        for container in await client.list_containers():
            if container["name"] == CALENDAR_NAME:
                calendar_id = container["id"]
                break
        if calendar_id is None:
            calendar_id = await client.create_container(CALENDAR_NAME)
    except Exception as e:
        raise CalendarContainerUnresolved(f"Could not resolve calendar for {user.username}: {e}") from e

    if not calendar_id:
        raise CalendarContainerUnresolved(f"Calendar service returned no id for {user.username}")

    users.update_sync_state(user.id, calendar_id=calendar_id)
    user.calendar_id = calendar_id
    logger.info("Using calendar %s for %s", calendar_id, user.username)
    return calendar_id


# =============================================================================
# RECONCILIATION
# =============================================================================


class _Mutator:
    """Applies calendar mutations with a per-call delay and a run-wide cap."""

    def __init__(self, client: CalendarClient, calendar_id: str, limit: int | None, delay: float, sleep: Sleep):
        self.client = client
        self.calendar_id = calendar_id
        self.limit = limit
        self.delay = delay
        self.sleep = sleep
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.count >= self.limit

    async def apply(self, action: str, event: CalendarEvent, counted: bool = True) -> None:
        if self.delay:
            await self.sleep(self.delay)
        if counted:
            self.count += 1
        try:
            if action == "insert":
                await self.client.insert_event(self.calendar_id, event)
            elif action == "update":
                await self.client.update_event(self.calendar_id, event)
            else:
                await self.client.delete_event(self.calendar_id, event)
        except Exception as e:
            raise CalendarMutationFailed(f"{action} of {event.title!r} failed: {e}", event.external_id) from e


async def reconcile(
    user: UserRecord,
    entries: Iterable[RosterEntry],
    client: CalendarClient,
    users: UserDirectory,
    mutation_limit: int | None = DEFAULT_MUTATION_LIMIT,
    now: datetime | None = None,
    delay: float = MUTATION_DELAY_SECONDS,
    sleep: Sleep = asyncio.sleep,
) -> ReconcileSummary:
    """
    Bring the user's calendar in line with `entries` (their full current set).

    Raises CalendarContainerUnresolved before any mutation when the calendar
    cannot be found or created. Individual event failures are logged, counted
    and skipped.
    """
    now = now or datetime.now(timezone.utc)
    summary = ReconcileSummary()
    summary.calendar_id = await resolve_calendar(user, client, users)
    mutator = _Mutator(client, summary.calendar_id, mutation_limit, delay, sleep)

    try:
        existing_events = await client.list_events(summary.calendar_id, limit=CALENDAR_FETCH_LIMIT)
    except Exception as e:
        logger.error("Could not list events for %s: %s", user.username, e)
        summary.success = False
        summary.error = f"Could not list calendar events: {e}"
        return summary

    # Last run's change report goes first; it is not part of the diff
    owned: dict[str, CalendarEvent] = {}
    for event in existing_events:
        if is_report_event_id(event.external_id):
            try:
                await mutator.apply("delete", event, counted=False)
            except CalendarMutationFailed as e:
                logger.warning("Could not remove old report event: %s", e)
        elif is_owned_event_id(event.external_id):
            owned[event.external_id] = event

    targets: dict[str, CalendarEvent] = {}
    ordered = []
    for entry in prioritize(entries, to_local(now).date()):
        if is_excluded_type(entry.entry_type):
            summary.excluded += 1
            continue
        event = build_event(entry)
        if event.external_id in targets:
            continue
        targets[event.external_id] = event
        ordered.append(event)

    for event in ordered:
        current = owned.get(event.external_id)
        if current is not None and current.same_content(event):
            summary.unchanged += 1
            continue
        if mutator.exhausted:
            summary.truncated = True
            continue
        try:
            if current is None:
                await mutator.apply("insert", event)
                summary.added.append(_describe(event))
            else:
                event.provider_id = current.provider_id
                await mutator.apply("update", event)
                summary.modified.append(_describe(event))
        except CalendarMutationFailed as e:
            summary.failed += 1
            logger.error("Skipping event for %s: %s", user.username, e)

    for external_id, event in owned.items():
        if external_id in targets:
            continue
        if mutator.exhausted:
            summary.truncated = True
            break
        try:
            await mutator.apply("delete", event)
            summary.removed.append(_describe(event))
        except CalendarMutationFailed as e:
            summary.failed += 1
            logger.error("Could not delete event for %s: %s", user.username, e)

    logger.info(
        "Reconciled %s: %d added, %d changed, %d removed, %d unchanged, %d excluded, %d failed%s",
        user.username, len(summary.added), len(summary.modified), len(summary.removed),
        summary.unchanged, summary.excluded, summary.failed,
        " (truncated)" if summary.truncated else "",
    )

    if summary.changed:
        report = build_report_event(summary, user.username, now)
        try:
            await mutator.apply("insert", report, counted=False)
            summary.report_event_id = report.external_id
        except CalendarMutationFailed as e:
            logger.warning("Could not create change report for %s: %s", user.username, e)

    return summary
