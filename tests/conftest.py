"""
Pytest configuration and shared fixtures.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from core.crypto import CredentialCipher
from core.database import RosterStore, UserDirectory, create_schema, get_connection
from core.errors import AuthenticationFailed, MissingCredential
from models.roster import CalendarEvent, RawRosterRow, ScrapeResult

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


def make_row(**overrides) -> RawRosterRow:
    row = {
        "date": "15/07/2025",
        "entry_type": "Dagdienst",
        "start": "15/07/2025 07:00",
        "end": "15/07/2025 19:00",
        "person": "jdoe",
        "function": "Matroos",
        "department": "Loodswezen",
        "vessel": "Zeeschelde",
    }
    row.update(overrides)
    return RawRosterRow(**row)


class FakeCalendarClient:
    """In-memory calendar keyed by provider id."""

    def __init__(self, containers: list[dict] | None = None):
        self.containers = list(containers or [])
        self.events: dict[str, dict[str, CalendarEvent]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()  # titles whose insert/update raises
        self.fail_list = False
        self.fail_containers = False
        self._next_id = 0

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    async def list_containers(self) -> list[dict]:
        if self.fail_containers:
            raise RuntimeError("calendar service unavailable")
        return list(self.containers)

    async def create_container(self, name: str) -> str:
        calendar_id = self._new_id("cal")
        self.containers.append({"id": calendar_id, "name": name})
        self.calls.append(("create_container", name))
        return calendar_id

    async def container_exists(self, calendar_id: str) -> bool:
        return any(c["id"] == calendar_id for c in self.containers)

    async def list_events(self, calendar_id: str, limit: int = 2500) -> list[CalendarEvent]:
        if self.fail_list:
            raise RuntimeError("listing failed")
        stored = self.events.get(calendar_id, {})
        return [CalendarEvent(**vars(e)) for e in list(stored.values())[:limit]]

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        self.calls.append(("insert", event.external_id))
        if event.title in self.fail_on:
            raise RuntimeError("insert rejected")
        event.provider_id = self._new_id("evt")
        self.events.setdefault(calendar_id, {})[event.provider_id] = CalendarEvent(**vars(event))
        return event

    async def update_event(self, calendar_id: str, event: CalendarEvent) -> None:
        self.calls.append(("update", event.external_id))
        if event.title in self.fail_on:
            raise RuntimeError("update rejected")
        self.events[calendar_id][event.provider_id] = CalendarEvent(**vars(event))

    async def delete_event(self, calendar_id: str, event: CalendarEvent) -> None:
        self.calls.append(("delete", event.external_id))
        self.events.get(calendar_id, {}).pop(event.provider_id, None)

    def stored(self, calendar_id: str) -> list[CalendarEvent]:
        return list(self.events.get(calendar_id, {}).values())

    def mutations(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("insert", "update", "delete")]


class FakeScraper:
    """Accepts one password; returns the configured rows for whoever logs in."""

    def __init__(self, rows, password="secret", error_code=None, display_name="Jan Janssens"):
        self.rows = rows
        self.password = password
        self.error_code = error_code
        self.display_name = display_name
        self.partial = False
        self.calls = []

    async def __call__(self, username, password):
        self.calls.append((username, password))
        if not password:
            return ScrapeResult(
                success=False,
                diagnostic_log=["[t] Missing portal credentials"],
                error="Missing portal credentials",
                error_code=MissingCredential.code,
            )
        if password != self.password:
            return ScrapeResult(
                success=False,
                diagnostic_log=["[t] Redirected to the login page"],
                error="Login failed or session expired",
                error_code=AuthenticationFailed.code,
            )
        if self.error_code:
            return ScrapeResult(
                success=False,
                diagnostic_log=["[t] Scrape failed: boom"],
                error="boom",
                error_code=self.error_code,
            )
        return ScrapeResult(
            success=True,
            entries=[{**row, "person": username} for row in self.rows],
            diagnostic_log=["[t] Extracted rows"],
            display_name=self.display_name,
            partial=self.partial,
        )


@pytest.fixture
def conn():
    """In-memory database with the full schema."""
    connection = get_connection(":memory:")
    create_schema(connection)
    yield connection
    connection.close()


@pytest.fixture
def cipher():
    return CredentialCipher(TEST_KEY)


@pytest.fixture
def store(conn):
    return RosterStore(conn)


@pytest.fixture
def users(conn, cipher):
    return UserDirectory(conn, cipher)


@pytest.fixture
def calendar():
    return FakeCalendarClient()


@pytest.fixture
def now():
    return datetime(2025, 7, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_rows():
    """Three scraped rows: a shift, a leave day and a rest day."""
    return [
        make_row(),
        make_row(
            date="20/07/2025",
            entry_type="Verlof",
            start="20/07/2025",
            end="21/07/2025",
            vessel="",
        ),
        make_row(
            date="16/07/2025",
            entry_type="Rust",
            start="16/07/2025",
            end="17/07/2025",
            vessel="",
        ),
    ]


def _portal_row(department, function, vessel, start, end, entry_type, style="", cancel=""):
    attrs = f' style="{style}"' if style else ""
    return (
        f"<tr{attrs}>"
        f"<td><input type='checkbox'></td>"
        f"<td>{department}</td><td>{function}</td><td>{vessel}</td>"
        f"<td>{start}</td><td>{end}</td><td>{entry_type}</td>"
        f"<td></td><td>{cancel}</td>"
        f"</tr>"
    )


@pytest.fixture
def portal_html():
    """Rendered planning page with one row of each kind the parser meets."""
    rows = "".join([
        "<tr><th>Afdeling</th><th>Functie</th><th>Schip</th><th>Van</th><th>Tot</th><th>Soort</th></tr>",
        _portal_row("Loodswezen", "Matroos", "Zeeschelde", "15/07/2025 07:00", "15/07/2025 19:00", "Dagdienst"),
        _portal_row("Loodswezen", "Matroos", "", "20/07/2025", "21/07/2025", "Verlof"),
        _portal_row(
            "Loodswezen", "Matroos", "", "25/07/2025", "26/07/2025", "Verlof",
            style="background-color: #80FFFF",
        ),
        _portal_row(
            "Loodswezen", "Matroos", "", "28/07/2025", "29/07/2025", "Verlof",
            cancel='<a class="del" href="#">x</a>',
        ),
        _portal_row("Loodswezen", "Matroos", "", "16/07/2025", "17/07/2025", "Rust"),
        _portal_row("Loodswezen", "Matroos", "", "geen", "datum", "Dagdienst"),
    ])
    return f"""
    <html><head><title>Planning</title></head><body>
    <form>
      <input type="text" name="ctl00$Main$Medewerker" value="JANSSENS Jan">
      <table id="layout"><tr><td>
        <table id="results">{rows}</table>
      </td></tr></table>
    </form>
    </body></html>
    """
