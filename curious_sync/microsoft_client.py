from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timezone
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo

from icalendar.prop import vRecur

from curious_sync.errors import ProviderError, SyncTokenExpiredError
from curious_sync.event_mapping import MICROSOFT_CATEGORY_COLORS, is_valid_timezone
from curious_sync.models import NormalizedCalendarEvent, parse_iso_datetime
from curious_sync.provider import CalendarProvider, EventPage


logger = logging.getLogger(__name__)

API_BASE = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/Calendars.ReadWrite offline_access"
DEFAULT_CALENDAR_IDS = {"", "calendar", "primary"}
FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")

GRAPH_DAYS = {
    "sunday": "SU",
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
}
DAY_NAMES = {code: name for name, code in GRAPH_DAYS.items()}
WEEK_INDEXES = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}
INDEX_NAMES = {value: name for name, value in WEEK_INDEXES.items()}
GRAPH_FREQUENCIES = {
    "daily": "DAILY",
    "weekly": "WEEKLY",
    "absoluteMonthly": "MONTHLY",
    "relativeMonthly": "MONTHLY",
    "absoluteYearly": "YEARLY",
    "relativeYearly": "YEARLY",
}
WEEKDAY_WITH_INDEX = re.compile(r"^([+-]?\d)?([A-Z]{2})$")


def _parse_graph_datetime(payload: dict[str, Any] | None) -> datetime | None:
    payload = payload or {}
    text = str(payload.get("dateTime") or "").strip()
    if not text:
        return None
    text = FRACTION_PATTERN.sub(r"\1", text)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        tz_name = str(payload.get("timeZone") or "UTC")
        zone = ZoneInfo(tz_name) if is_valid_timezone(tz_name) else timezone.utc
        parsed = parsed.replace(tzinfo=zone)
    return parsed


def graph_recurrence_to_rrule(recurrence: dict[str, Any] | None) -> str | None:
    if not recurrence:
        return None
    pattern = recurrence.get("pattern") or {}
    graph_range = recurrence.get("range") or {}
    pattern_type = str(pattern.get("type", ""))
    freq = GRAPH_FREQUENCIES.get(pattern_type)
    if freq is None:
        logger.warning("Unsupported Graph recurrence pattern type %r", pattern_type)
        return None

    parts: dict[str, Any] = {"FREQ": freq}
    interval = int(pattern.get("interval") or 1)
    if interval > 1:
        parts["INTERVAL"] = interval
    days = [GRAPH_DAYS[d] for d in pattern.get("daysOfWeek") or [] if d in GRAPH_DAYS]
    if pattern_type.startswith("relative") and days:
        index = WEEK_INDEXES.get(str(pattern.get("index") or "first"), 1)
        parts["BYDAY"] = [f"{index}{code}" for code in days]
    elif days:
        parts["BYDAY"] = days
    if pattern_type.startswith("absolute") and pattern.get("dayOfMonth"):
        parts["BYMONTHDAY"] = [int(pattern["dayOfMonth"])]
    if pattern_type.endswith("Yearly") and pattern.get("month"):
        parts["BYMONTH"] = [int(pattern["month"])]

    range_type = str(graph_range.get("type", "noEnd"))
    if range_type == "numbered" and graph_range.get("numberOfOccurrences"):
        parts["COUNT"] = int(graph_range["numberOfOccurrences"])
    elif range_type == "endDate" and graph_range.get("endDate"):
        parts["UNTIL"] = date.fromisoformat(str(graph_range["endDate"]))
    return "RRULE:" + vRecur(parts).to_ical().decode("utf-8")


def rrule_to_graph_recurrence(line: str, start_date: date) -> dict[str, Any] | None:
    text = str(line or "").strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:") :]
    try:
        rule = vRecur.from_ical(text)
    except ValueError:
        logger.warning("Cannot convert RRULE %r to a Graph recurrence", line)
        return None
    freq = str((rule.get("FREQ") or [""])[0]).upper()
    interval = rule.get("INTERVAL")
    pattern: dict[str, Any] = {"interval": int(interval[0]) if interval else 1}

    days: list[str] = []
    index: int | None = None
    for raw_day in rule.get("BYDAY", []):
        match = WEEKDAY_WITH_INDEX.match(str(raw_day).upper())
        if not match or match.group(2) not in DAY_NAMES:
            continue
        if match.group(1):
            index = int(match.group(1))
        days.append(DAY_NAMES[match.group(2)])
    month_days = [int(x) for x in rule.get("BYMONTHDAY", [])]
    months = [int(x) for x in rule.get("BYMONTH", [])]

    if freq == "DAILY":
        pattern["type"] = "daily"
    elif freq == "WEEKLY":
        pattern["type"] = "weekly"
        pattern["daysOfWeek"] = days or [DAY_NAMES[("MO", "TU", "WE", "TH", "FR", "SA", "SU")[start_date.weekday()]]]
    elif freq in {"MONTHLY", "YEARLY"}:
        prefix = "Monthly" if freq == "MONTHLY" else "Yearly"
        if index is not None and days:
            pattern["type"] = f"relative{prefix}"
            pattern["daysOfWeek"] = days
            pattern["index"] = INDEX_NAMES.get(index, "first")
        else:
            pattern["type"] = f"absolute{prefix}"
            pattern["dayOfMonth"] = month_days[0] if month_days else start_date.day
        if freq == "YEARLY":
            pattern["month"] = months[0] if months else start_date.month
    else:
        logger.warning("Unsupported RRULE frequency %r for Graph", freq)
        return None

    graph_range: dict[str, Any] = {"type": "noEnd", "startDate": start_date.isoformat()}
    count = rule.get("COUNT")
    until = rule.get("UNTIL")
    if count:
        graph_range.update({"type": "numbered", "numberOfOccurrences": int(count[0])})
    elif until:
        value = until[0]
        end_date = value.date() if isinstance(value, datetime) else value
        graph_range.update({"type": "endDate", "endDate": end_date.isoformat()})
    return {"pattern": pattern, "range": graph_range}


def _color_token(categories: list[str]) -> str | None:
    for category in categories:
        if category in MICROSOFT_CATEGORY_COLORS:
            return category
    return categories[0] if categories else None


def from_graph(item: dict[str, Any], calendar_id: str) -> NormalizedCalendarEvent:
    event_id = str(item.get("id", ""))
    if "@removed" in item:
        return NormalizedCalendarEvent(id=event_id, provider=MicrosoftCalendarProvider.name, calendar_id=calendar_id, cancelled=True)

    is_all_day = bool(item.get("isAllDay", False))
    start = _parse_graph_datetime(item.get("start"))
    end = _parse_graph_datetime(item.get("end"))
    if is_all_day and start is not None and end is not None:
        start = datetime.combine(start.date(), time.min, tzinfo=timezone.utc)
        end = datetime.combine(end.date(), time.min, tzinfo=timezone.utc)
    original_tz = str(item.get("originalStartTimeZone") or "")
    rrule = graph_recurrence_to_rrule(item.get("recurrence"))
    body = item.get("body") or {}
    return NormalizedCalendarEvent(
        id=event_id,
        provider=MicrosoftCalendarProvider.name,
        calendar_id=calendar_id,
        title=str(item.get("subject", "") or ""),
        description=str(body.get("content", "") or ""),
        start=start,
        end=end,
        timezone=original_tz if is_valid_timezone(original_tz) else "UTC",
        location=str((item.get("location") or {}).get("displayName", "") or ""),
        is_all_day=is_all_day,
        last_modified=parse_iso_datetime(item.get("lastModifiedDateTime")),
        cancelled=bool(item.get("isCancelled", False)),
        reminder_minutes=int(item.get("reminderMinutesBeforeStart") or 0) if item.get("isReminderOn") else None,
        recurrence=[rrule] if rrule else [],
        color=_color_token([str(x) for x in item.get("categories") or []]),
        etag=str(item.get("changeKey", "") or item.get("@odata.etag", "") or ""),
        local_id=str(item.get("transactionId", "") or ""),
        metadata={"web_link": item.get("webLink", ""), "series_master_id": item.get("seriesMasterId", "")},
    )


def _graph_time(value: datetime, tz_name: str) -> dict[str, str]:
    zone = ZoneInfo(tz_name) if is_valid_timezone(tz_name) else timezone.utc
    local = value.astimezone(zone).replace(tzinfo=None)
    return {"dateTime": local.isoformat(), "timeZone": tz_name if is_valid_timezone(tz_name) else "UTC"}


def to_graph(event: NormalizedCalendarEvent, *, include_transaction_id: bool = False) -> dict[str, Any]:
    if event.start is None or event.end is None:
        raise ValueError(f"event {event.id or event.local_id} has no start/end")
    if event.is_all_day:
        tz_name = event.timezone if is_valid_timezone(event.timezone) else "UTC"
        start = {"dateTime": f"{event.start.date().isoformat()}T00:00:00", "timeZone": tz_name}
        end = {"dateTime": f"{event.end.date().isoformat()}T00:00:00", "timeZone": tz_name}
    else:
        start = _graph_time(event.start, event.timezone)
        end = _graph_time(event.end, event.timezone)
    body: dict[str, Any] = {
        "subject": event.title,
        "body": {"contentType": "text", "content": event.description},
        "start": start,
        "end": end,
        "isAllDay": event.is_all_day,
        "location": {"displayName": event.location},
        "showAs": "busy",
    }
    if event.reminder_minutes is not None:
        body["isReminderOn"] = True
        body["reminderMinutesBeforeStart"] = int(event.reminder_minutes)
    else:
        body["isReminderOn"] = False
    if event.color:
        body["categories"] = [event.color]
    if event.recurrence:
        recurrence = rrule_to_graph_recurrence(event.recurrence[0], event.start.date())
        if recurrence:
            body["recurrence"] = recurrence
    if include_transaction_id and event.local_id:
        body["transactionId"] = event.local_id
    return body


class MicrosoftCalendarProvider(CalendarProvider):
    name = "microsoft"

    def _token_endpoint(self) -> str:
        tenant = self.config.tenant_id or "common"
        return f"https://login.microsoftonline.com/{quote(tenant, safe='')}/oauth2/v2.0/token"

    def _refresh_payload(self) -> dict[str, str]:
        payload = super()._refresh_payload()
        payload["scope"] = GRAPH_SCOPE
        return payload

    def _calendar_url(self, calendar_id: str) -> str:
        if calendar_id in DEFAULT_CALENDAR_IDS:
            return f"{API_BASE}/me/calendar"
        return f"{API_BASE}/me/calendars/{quote(calendar_id, safe='')}"

    def _event_url(self, event_id: str) -> str:
        return f"{API_BASE}/me/events/{quote(event_id, safe='')}"

    def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
    ) -> EventPage:
        headers = {"Prefer": 'outlook.timezone="UTC", odata.maxpagesize=250'}
        if sync_token:
            url: str | None = sync_token
            params: dict[str, Any] | None = None
        else:
            url = f"{self._calendar_url(calendar_id)}/calendarView/delta"
            params = {
                "startDateTime": start.astimezone(timezone.utc).isoformat(),
                "endDateTime": end.astimezone(timezone.utc).isoformat(),
            }

        page = EventPage()
        while url:
            try:
                payload = self._request("GET", url, params=params, extra_headers=headers) or {}
            except ProviderError as exc:
                if sync_token and exc.status_code == 410:
                    raise SyncTokenExpiredError("microsoft: delta token expired", status_code=410) from exc
                raise
            for item in payload.get("value") or []:
                page.events.append(from_graph(item, calendar_id))
            url = payload.get("@odata.nextLink")
            # Next and delta links already carry the query string.
            params = None
            if not url:
                page.next_sync_token = payload.get("@odata.deltaLink")
        logger.debug("Listed %d microsoft events from %s", len(page.events), calendar_id)
        return page

    def get_event(self, calendar_id: str, event_id: str) -> NormalizedCalendarEvent | None:
        try:
            payload = self._request("GET", self._event_url(event_id))
        except ProviderError as exc:
            if exc.is_not_found:
                return None
            raise
        if not payload:
            return None
        return from_graph(payload, calendar_id)

    def find_events_by_local_id(self, calendar_id: str, local_id: str) -> list[NormalizedCalendarEvent]:
        escaped = local_id.replace("'", "''")
        payload = self._request(
            "GET",
            f"{self._calendar_url(calendar_id)}/events",
            params={"$filter": f"transactionId eq '{escaped}'"},
        ) or {}
        events = [from_graph(item, calendar_id) for item in payload.get("value") or []]
        return [event for event in events if not event.cancelled]

    def create_event(self, calendar_id: str, event: NormalizedCalendarEvent) -> NormalizedCalendarEvent:
        payload = self._request(
            "POST",
            f"{self._calendar_url(calendar_id)}/events",
            json_body=to_graph(event, include_transaction_id=True),
        ) or {}
        created = from_graph(payload, calendar_id)
        logger.info("Created microsoft event %s for local %s", created.id, event.local_id)
        return created

    def update_event(self, calendar_id: str, event: NormalizedCalendarEvent) -> NormalizedCalendarEvent:
        if not event.id:
            raise ProviderError("microsoft: cannot update an event without an id")
        payload = self._request("PATCH", self._event_url(event.id), json_body=to_graph(event)) or {}
        return from_graph(payload, calendar_id)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        try:
            self._request("DELETE", self._event_url(event_id))
        except ProviderError as exc:
            if exc.is_not_found:
                return False
            raise
        return True

    def _calendar_name(self, calendar_id: str) -> str:
        payload = self._request("GET", self._calendar_url(calendar_id)) or {}
        return str(payload.get("name", calendar_id))
