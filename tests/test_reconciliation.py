"""Tests for calendar reconciliation against an in-memory calendar."""

from datetime import date, timedelta

import pytest

from conftest import FakeCalendarClient, make_row
from core.canonical import event_id_for, normalize_row
from core.config import CALENDAR_NAME
from core.errors import CalendarContainerUnresolved
from models.roster import CalendarEvent, ReconcileSummary
from services.reconciliation import build_event, build_report_event, prioritize, reconcile


def entry(**overrides):
    return normalize_row(make_row(**overrides))


def shift_on(day: int, month: int = 7, **overrides):
    text = f"{day:02d}/{month:02d}/2025"
    return entry(date=text, start=f"{text} 07:00", end=f"{text} 19:00", **overrides)


@pytest.fixture
def linked_user(users):
    user = users.find_or_create("jdoe", "secret")
    users.update_sync_state(user.id, calendar_mailbox="jdoe@example.org")
    return users.get(user.id)


@pytest.fixture
def entries(sample_rows):
    return [normalize_row(row) for row in sample_rows]


def owned_mutations(client: FakeCalendarClient):
    return [c for c in client.mutations() if not c[1].startswith("syncreport")]


async def run(user, entries, client, users, now, **kwargs):
    return await reconcile(user, entries, client, users, now=now, delay=0, **kwargs)


# =============================================================================
# TARGET REPRESENTATION
# =============================================================================


class TestBuildEvent:
    def test_timed_shift(self):
        event = build_event(entry())
        assert event.title == "Dagdienst - Zeeschelde (07:00 - 19:00)"
        assert event.start_date == date(2025, 7, 15)
        assert event.end_date == date(2025, 7, 16)
        assert event.is_all_day
        assert "Vessel: Zeeschelde" in event.body
        assert "Department: Loodswezen" in event.body
        assert event.external_id == event_id_for(entry().identity)

    def test_whole_day_leave(self):
        event = build_event(entry(entry_type="Verlof", start="20/07/2025", end="21/07/2025", date="20/07/2025"))
        assert event.title == "Verlof"
        assert event.start_date == date(2025, 7, 20)
        assert event.end_date == date(2025, 7, 21)

    def test_overnight_shift_covers_both_days(self):
        event = build_event(entry(entry_type="Nachtdienst", start="15/07/2025 19:00", end="16/07/2025 07:00"))
        assert event.title == "Nachtdienst - Zeeschelde (19:00 - 07:00)"
        assert event.end_date == date(2025, 7, 17)

    def test_function_used_without_vessel(self):
        assert build_event(entry(vessel="")).title == "Dagdienst - Matroos (07:00 - 19:00)"
        assert build_event(entry(vessel="", function="")).title == "Dagdienst (07:00 - 19:00)"


def test_prioritize_puts_the_near_window_first():
    today = date(2025, 7, 10)
    far = shift_on(30, 8)
    past = shift_on(1)
    near = shift_on(15)
    recent = shift_on(4)

    assert prioritize([far, past, near, recent], today) == [recent, near, past, far]


def test_report_event(now):
    summary = ReconcileSummary(added=["2025-07-15 Dagdienst"], removed=["2025-07-20 Verlof"])
    report = build_report_event(summary, "jdoe", now)

    assert report.external_id.startswith("syncreport")
    assert report.title == "Roster updated: 1 added, 0 changed, 1 removed"
    assert "Added:" in report.body and "Removed:" in report.body
    assert "Changed:" not in report.body
    assert report.start_at == now + timedelta(minutes=2)
    assert report.end_at - report.start_at == timedelta(minutes=15)
    assert report.reminder_minutes == 0
    assert not report.is_all_day


# =============================================================================
# RECONCILE
# =============================================================================


class TestReconcile:
    async def test_first_pass_inserts_all_but_excluded(self, linked_user, entries, calendar, users, now):
        summary = await run(linked_user, entries, calendar, users, now)

        assert summary.success
        assert len(summary.added) == 2
        assert summary.excluded == 1
        assert summary.report_event_id.startswith("syncreport")
        titles = {e.title for e in calendar.stored(summary.calendar_id)}
        assert "Verlof" in titles
        assert not any("Rust" in t for t in titles)
        assert len(calendar.stored(summary.calendar_id)) == 3

    async def test_second_identical_pass_changes_nothing(self, linked_user, entries, calendar, users, now):
        first = await run(linked_user, entries, calendar, users, now)
        calendar.calls.clear()

        second = await run(linked_user, entries, calendar, users, now + timedelta(hours=1))

        assert owned_mutations(calendar) == []
        assert not second.changed
        assert second.unchanged == 2
        assert second.report_event_id is None
        # The previous run's report was cleaned up
        assert calendar.mutations() == [("delete", first.report_event_id)]
        assert len(calendar.stored(second.calendar_id)) == 2

    async def test_crlf_bodies_from_the_calendar_count_as_unchanged(self, linked_user, entries, calendar, users, now):
        first = await run(linked_user, entries, calendar, users, now)
        for event in calendar.stored(first.calendar_id):
            event.body = event.body.replace("\n", "\r\n") + "\r\n"
        calendar.calls.clear()

        second = await run(linked_user, entries, calendar, users, now + timedelta(hours=1))

        assert owned_mutations(calendar) == []
        assert second.unchanged == 2

    async def test_removed_entry_is_deleted_and_reported(self, linked_user, entries, calendar, users, now):
        await run(linked_user, entries, calendar, users, now)
        calendar.calls.clear()
        remaining = [e for e in entries if e.entry_type != "Verlof"]
        removed_id = event_id_for(next(e for e in entries if e.entry_type == "Verlof").identity)

        summary = await run(linked_user, remaining, calendar, users, now + timedelta(hours=1))

        assert owned_mutations(calendar) == [("delete", removed_id)]
        assert summary.removed == ["2025-07-20 Verlof"]
        report = next(e for e in calendar.stored(summary.calendar_id) if e.external_id == summary.report_event_id)
        assert "Removed:" in report.body
        assert "2025-07-20 Verlof" in report.body

    async def test_changed_content_is_updated(self, linked_user, calendar, users, now):
        await run(linked_user, [entry()], calendar, users, now)
        calendar.calls.clear()

        summary = await run(linked_user, [entry(vessel="Westerschelde")], calendar, users, now)

        assert owned_mutations(calendar) == [("update", event_id_for(entry().identity))]
        assert len(summary.modified) == 1
        stored = [e for e in calendar.stored(summary.calendar_id) if not e.external_id.startswith("syncreport")]
        assert stored[0].title == "Dagdienst - Westerschelde (07:00 - 19:00)"

    async def test_foreign_events_are_left_alone(self, linked_user, calendar, users, now):
        calendar.containers.append({"id": "cal-roster", "name": CALENDAR_NAME})
        calendar.events["cal-roster"] = {
            "manual-1": CalendarEvent(external_id="dentist", title="Dentist", provider_id="manual-1")
        }
        # Graph never returns events without our property, but the id check must hold anyway
        summary = await run(linked_user, [entry()], calendar, users, now)

        assert summary.calendar_id == "cal-roster"
        assert ("delete", "dentist") not in calendar.calls
        assert "manual-1" in calendar.events["cal-roster"]

    async def test_mutation_cap_truncates_without_deleting(self, linked_user, calendar, users, now):
        shifts = [shift_on(day) for day in range(11, 16)]
        await run(linked_user, shifts[:1], calendar, users, now)
        calendar.calls.clear()

        summary = await run(linked_user, shifts[1:], calendar, users, now, mutation_limit=2)

        assert summary.truncated
        assert len(summary.added) == 2
        assert [c for c in owned_mutations(calendar) if c[0] == "delete"] == []

        finished = await run(linked_user, shifts[1:], calendar, users, now)
        assert len(finished.added) == 2
        assert len(finished.removed) == 1
        assert not finished.truncated

    async def test_failed_insert_is_skipped(self, linked_user, calendar, users, now):
        calendar.fail_on.add("Dagdienst - Zeeschelde (07:00 - 19:00)")
        summary = await run(linked_user, [entry(), shift_on(16, vessel="Schelde")], calendar, users, now)

        assert summary.success
        assert summary.failed == 1
        assert summary.added == ["2025-07-16 Dagdienst - Schelde (07:00 - 19:00)"]

    async def test_listing_failure_fails_the_pass(self, linked_user, calendar, users, now):
        calendar.fail_list = True
        summary = await run(linked_user, [entry()], calendar, users, now)

        assert not summary.success
        assert "listing failed" in summary.error
        assert calendar.mutations() == []


class TestCalendarResolution:
    async def test_created_calendar_is_persisted(self, linked_user, calendar, users, now):
        summary = await run(linked_user, [entry()], calendar, users, now)

        assert calendar.calls[0] == ("create_container", CALENDAR_NAME)
        assert users.get(linked_user.id).calendar_id == summary.calendar_id

        await run(users.get(linked_user.id), [entry()], calendar, users, now)
        assert [c for c in calendar.calls if c[0] == "create_container"] == [("create_container", CALENDAR_NAME)]

    async def test_missing_stored_calendar_is_resolved_again(self, linked_user, calendar, users, now):
        users.update_sync_state(linked_user.id, calendar_id="cal-deleted")
        user = users.get(linked_user.id)

        summary = await run(user, [entry()], calendar, users, now)

        assert summary.calendar_id != "cal-deleted"
        assert users.get(user.id).calendar_id == summary.calendar_id

    async def test_unresolvable_calendar_aborts_before_mutating(self, linked_user, calendar, users, now):
        calendar.fail_containers = True

        with pytest.raises(CalendarContainerUnresolved):
            await run(linked_user, [entry()], calendar, users, now)
        assert calendar.mutations() == []
        assert users.get(linked_user.id).calendar_id is None
