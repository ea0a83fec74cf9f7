from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any
from urllib.parse import quote

from curious_sync.errors import ProviderError, SyncTokenExpiredError
from curious_sync.models import NormalizedCalendarEvent, parse_iso_datetime
from curious_sync.provider import CalendarProvider, EventPage


logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/calendar/v3"
LOCAL_ID_PROPERTY = "local_id"
PAGE_SIZE = 250


def _parse_google_time(payload: dict[str, Any] | None) -> tuple[datetime | None, bool, str]:
    payload = payload or {}
    tz_name = str(payload.get("timeZone") or "")
    if payload.get("date"):
        day = date.fromisoformat(str(payload["date"]))
        return datetime.combine(day, time.min, tzinfo=timezone.utc), True, tz_name
    return parse_iso_datetime(payload.get("dateTime")), False, tz_name


def _first_popup_minutes(reminders: dict[str, Any]) -> int | None:
    for override in reminders.get("overrides") or []:
        if str(override.get("method", "")) == "popup" and override.get("minutes") is not None:
            return int(override["minutes"])
    return None


def from_google(item: dict[str, Any], calendar_id: str) -> NormalizedCalendarEvent:
    start, start_is_date, start_tz = _parse_google_time(item.get("start"))
    end, _, end_tz = _parse_google_time(item.get("end"))
    reminders = item.get("reminders") or {}
    private = (item.get("extendedProperties") or {}).get("private") or {}
    return NormalizedCalendarEvent(
        id=str(item.get("id", "")),
        provider=GoogleCalendarProvider.name,
        calendar_id=calendar_id,
        title=str(item.get("summary", "") or ""),
        description=str(item.get("description", "") or ""),
        start=start,
        end=end,
        timezone=start_tz or end_tz or "UTC",
        location=str(item.get("location", "") or ""),
        is_all_day=start_is_date,
        last_modified=parse_iso_datetime(item.get("updated")),
        cancelled=str(item.get("status", "")) == "cancelled",
        reminder_minutes=_first_popup_minutes(reminders),
        uses_default_reminder=bool(reminders.get("useDefault", False)),
        recurrence=[str(line) for line in item.get("recurrence") or []],
        color=str(item["colorId"]) if item.get("colorId") else None,
        etag=str(item.get("etag", "") or ""),
        local_id=str(private.get(LOCAL_ID_PROPERTY, "") or ""),
        metadata={"html_link": item.get("htmlLink", ""), "recurring_event_id": item.get("recurringEventId", "")},
    )


def to_google(event: NormalizedCalendarEvent) -> dict[str, Any]:
    if event.start is None or event.end is None:
        raise ValueError(f"event {event.id or event.local_id} has no start/end")
    if event.is_all_day:
        start = {"date": event.start.date().isoformat()}
        end = {"date": event.end.date().isoformat()}
    else:
        start = {"dateTime": event.start.isoformat(), "timeZone": event.timezone or "UTC"}
        end = {"dateTime": event.end.isoformat(), "timeZone": event.timezone or "UTC"}
    body: dict[str, Any] = {
        "summary": event.title,
        "description": event.description,
        "location": event.location,
        "start": start,
        "end": end,
    }
    if event.uses_default_reminder or event.reminder_minutes is None:
        body["reminders"] = {"useDefault": True}
    else:
        body["reminders"] = {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": int(event.reminder_minutes)}],
        }
    if event.color:
        body["colorId"] = event.color
    if event.recurrence:
        body["recurrence"] = list(event.recurrence)
    if event.local_id:
        body["extendedProperties"] = {"private": {LOCAL_ID_PROPERTY: event.local_id}}
    return body


class GoogleCalendarProvider(CalendarProvider):
    name = "google"
    token_url = "https://oauth2.googleapis.com/token"

    def _events_url(self, calendar_id: str, event_id: str = "") -> str:
        url = f"{API_BASE}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
    ) -> EventPage:
        base_params: dict[str, Any] = {"maxResults": PAGE_SIZE, "showDeleted": "true"}
        if sync_token:
            base_params["syncToken"] = sync_token
        else:
            base_params["timeMin"] = start.astimezone(timezone.utc).isoformat()
            base_params["timeMax"] = end.astimezone(timezone.utc).isoformat()

        page = EventPage()
        page_token: str | None = None
        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            try:
                payload = self._request("GET", self._events_url(calendar_id), params=params) or {}
            except ProviderError as exc:
                if sync_token and exc.status_code == 410:
                    raise SyncTokenExpiredError("google: sync token expired", status_code=410) from exc
                raise
            for item in payload.get("items") or []:
                page.events.append(from_google(item, calendar_id))
            page_token = payload.get("nextPageToken")
            if not page_token:
                page.next_sync_token = payload.get("nextSyncToken")
                break
        logger.debug("Listed %d google events from %s", len(page.events), calendar_id)
        return page

    def get_event(self, calendar_id: str, event_id: str) -> NormalizedCalendarEvent | None:
        try:
            payload = self._request("GET", self._events_url(calendar_id, event_id))
        except ProviderError as exc:
            if exc.is_not_found:
                return None
            raise
        if not payload:
            return None
        return from_google(payload, calendar_id)

    def find_events_by_local_id(self, calendar_id: str, local_id: str) -> list[NormalizedCalendarEvent]:
        payload = self._request(
            "GET",
            self._events_url(calendar_id),
            params={"privateExtendedProperty": f"{LOCAL_ID_PROPERTY}={local_id}", "maxResults": PAGE_SIZE},
        ) or {}
        events = [from_google(item, calendar_id) for item in payload.get("items") or []]
        return [event for event in events if not event.cancelled]

    def create_event(self, calendar_id: str, event: NormalizedCalendarEvent) -> NormalizedCalendarEvent:
        payload = self._request("POST", self._events_url(calendar_id), json_body=to_google(event)) or {}
        created = from_google(payload, calendar_id)
        logger.info("Created google event %s for local %s", created.id, event.local_id)
        return created

    def update_event(self, calendar_id: str, event: NormalizedCalendarEvent) -> NormalizedCalendarEvent:
        if not event.id:
            raise ProviderError("google: cannot update an event without an id")
        payload = self._request("PUT", self._events_url(calendar_id, event.id), json_body=to_google(event)) or {}
        return from_google(payload, calendar_id)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        try:
            self._request("DELETE", self._events_url(calendar_id, event_id))
        except ProviderError as exc:
            if exc.is_not_found:
                return False
            raise
        return True

    def _calendar_name(self, calendar_id: str) -> str:
        payload = self._request("GET", f"{API_BASE}/calendars/{quote(calendar_id, safe='')}") or {}
        return str(payload.get("summary", calendar_id))
