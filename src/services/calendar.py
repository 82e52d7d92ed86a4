"""
Calendar access for mirrored roster events, backed by MS Graph.

Graph assigns its own event ids, so our deterministic id travels in a
single-value extended property. Events without that property are not ours
and never come back from `list_events`.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Protocol

from msgraph import GraphServiceClient
from msgraph.generated.models.body_type import BodyType
from msgraph.generated.models.calendar import Calendar
from msgraph.generated.models.date_time_time_zone import DateTimeTimeZone
from msgraph.generated.models.event import Event
from msgraph.generated.models.item_body import ItemBody
from msgraph.generated.models.o_data_errors.o_data_error import ODataError
from msgraph.generated.models.single_value_legacy_extended_property import (
    SingleValueLegacyExtendedProperty,
)
from msgraph.generated.users.item.calendars.item.events.events_request_builder import (
    EventsRequestBuilder,
)

from core.config import CALENDAR_FETCH_LIMIT, EVENT_ID_PROPERTY, SOURCE_TIMEZONE
from core.graph_client import get_graph_client
from models.roster import CalendarEvent, UserRecord

logger = logging.getLogger(__name__)

PAGE_SIZE = 250


class CalendarClient(Protocol):
    """What the reconciler needs from a calendar service."""

    async def list_containers(self) -> list[dict]: ...

    async def create_container(self, name: str) -> str: ...

    async def container_exists(self, calendar_id: str) -> bool: ...

    async def list_events(self, calendar_id: str, limit: int = CALENDAR_FETCH_LIMIT) -> list[CalendarEvent]: ...

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent: ...

    async def update_event(self, calendar_id: str, event: CalendarEvent) -> None: ...

    async def delete_event(self, calendar_id: str, event: CalendarEvent) -> None: ...


def _graph_date(value: date) -> DateTimeTimeZone:
    return DateTimeTimeZone(
        date_time=datetime.combine(value, time.min).strftime("%Y-%m-%dT%H:%M:%S"),
        time_zone=SOURCE_TIMEZONE,
    )


def _graph_instant(value: datetime) -> DateTimeTimeZone:
    return DateTimeTimeZone(
        date_time=value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
        time_zone="UTC",
    )


def to_graph_event(event: CalendarEvent) -> Event:
    """Convert our event to an MS Graph Event object."""
    graph_event = Event(
        subject=event.title,
        body=ItemBody(content_type=BodyType.Text, content=event.body),
        single_value_extended_properties=[
            SingleValueLegacyExtendedProperty(id=EVENT_ID_PROPERTY, value=event.external_id)
        ],
    )
    if event.is_all_day:
        graph_event.is_all_day = True
        graph_event.start = _graph_date(event.start_date)
        graph_event.end = _graph_date(event.end_date)
    else:
        graph_event.is_all_day = False
        graph_event.start = _graph_instant(event.start_at)
        graph_event.end = _graph_instant(event.end_at)

    if event.reminder_minutes is not None:
        graph_event.is_reminder_on = True
        graph_event.reminder_minutes_before_start = event.reminder_minutes
    return graph_event


def from_graph_event(graph_event: Event) -> CalendarEvent | None:
    """Parse a Graph event into our format. None when it isn't ours."""
    external_id = None
    for prop in graph_event.single_value_extended_properties or []:
        if prop.id and prop.id.lower() == EVENT_ID_PROPERTY.lower():
            external_id = prop.value
    if not external_id:
        return None

    body = ""
    if graph_event.body and graph_event.body.content:
        body = graph_event.body.content.strip()

    event = CalendarEvent(
        external_id=external_id,
        title=graph_event.subject or "",
        body=body,
        provider_id=graph_event.id,
    )
    start = graph_event.start.date_time if graph_event.start else None
    end = graph_event.end.date_time if graph_event.end else None
    if graph_event.is_all_day:
        event.start_date = date.fromisoformat(start[:10]) if start else None
        event.end_date = date.fromisoformat(end[:10]) if end else None
    else:
        # Graph returns up to 7 fractional digits, which fromisoformat rejects
        event.start_at = datetime.fromisoformat(start[:19]).replace(tzinfo=timezone.utc) if start else None
        event.end_at = datetime.fromisoformat(end[:19]).replace(tzinfo=timezone.utc) if end else None
    return event


class GraphCalendarClient:
    """CalendarClient for one user's mailbox."""

    def __init__(self, graph: GraphServiceClient, mailbox: str):
        self.graph = graph
        self.mailbox = mailbox

    def _user(self):
        return self.graph.users.by_user_id(self.mailbox)

    def _events(self, calendar_id: str):
        return self._user().calendars.by_calendar_id(calendar_id).events

    async def list_containers(self) -> list[dict]:
        response = await self._user().calendars.get()
        calendars = response.value if response and response.value else []
        return [{"id": c.id, "name": c.name} for c in calendars]

    async def create_container(self, name: str) -> str:
        created = await self._user().calendars.post(Calendar(name=name))
        logger.info("Created calendar %r for %s", name, self.mailbox)
        return created.id

    async def container_exists(self, calendar_id: str) -> bool:
        try:
            await self._user().calendars.by_calendar_id(calendar_id).get()
        except ODataError as e:
            if e.response_status_code == 404:
                return False
            raise
        return True

    async def list_events(self, calendar_id: str, limit: int = CALENDAR_FETCH_LIMIT) -> list[CalendarEvent]:
        """Fetch our events from a calendar (handles pagination)."""
        query_params = EventsRequestBuilder.EventsRequestBuilderGetQueryParameters(
            top=min(PAGE_SIZE, limit),
            select=["id", "subject", "body", "start", "end", "isAllDay"],
            expand=[f"singleValueExtendedProperties($filter=id eq '{EVENT_ID_PROPERTY}')"],
        )
        config = EventsRequestBuilder.EventsRequestBuilderGetRequestConfiguration(
            query_parameters=query_params
        )
        config.headers.add("Prefer", 'outlook.body-content-type="text"')

        events = []
        seen = 0
        response = await self._events(calendar_id).get(request_configuration=config)
        while response:
            for graph_event in response.value or []:
                seen += 1
                parsed = from_graph_event(graph_event)
                if parsed:
                    events.append(parsed)
            if seen >= limit or not response.odata_next_link:
                break
            response = await self._events(calendar_id).with_url(response.odata_next_link).get(
                request_configuration=config
            )

        logger.info("Fetched %d owned events (%d scanned) from %s", len(events), seen, calendar_id)
        return events

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        created = await self._events(calendar_id).post(to_graph_event(event))
        event.provider_id = created.id
        return event

    async def update_event(self, calendar_id: str, event: CalendarEvent) -> None:
        await self._events(calendar_id).by_event_id(event.provider_id).patch(to_graph_event(event))

    async def delete_event(self, calendar_id: str, event: CalendarEvent) -> None:
        try:
            await self._events(calendar_id).by_event_id(event.provider_id).delete()
        except ODataError as e:
            # Already gone
            if e.response_status_code != 404:
                raise


def graph_calendar_client(user: UserRecord) -> GraphCalendarClient:
    """Default client factory: the user's linked mailbox on the shared Graph client."""
    return GraphCalendarClient(get_graph_client(), user.calendar_mailbox)
