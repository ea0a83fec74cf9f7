from __future__ import annotations

import hashlib
import html
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar.prop import vRecur

from curious_sync.errors import MappingConflictError
from curious_sync.models import (
    CalendarEventMapping,
    LocalEvent,
    NormalizedCalendarEvent,
    RecurrencePattern,
    serialize_datetime,
    utc_now,
)
from curious_sync.state_store import StateStore


logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"
END_OF_DAY = time(23, 59, 59)
TAG_PATTERN = re.compile(r"<[^>]*>")

GOOGLE_COLORS = {
    "1": "#3174ad",
    "2": "#16a765",
    "3": "#7627bb",
    "4": "#b1365f",
    "5": "#ff7537",
    "6": "#ffad46",
    "7": "#42d692",
    "8": "#9fc6e7",
    "9": "#9a9cff",
    "10": "#cab2d6",
    "11": "#ddd1da",
}
DEFAULT_GOOGLE_COLOR_ID = "1"

MICROSOFT_CATEGORY_COLORS = {
    "Red category": "#d32f2f",
    "Orange category": "#f57c00",
    "Yellow category": "#fbc02d",
    "Green category": "#388e3c",
    "Blue category": "#1976d2",
    "Purple category": "#7b1fa2",
    "Important": "#d32f2f",
    "Business": "#1976d2",
    "Personal": "#388e3c",
    "Vacation": "#fbc02d",
    "Must attend": "#d32f2f",
}
DEFAULT_MICROSOFT_COLOR = "#1976d2"
MICROSOFT_COLOR_CATEGORIES = {
    "#d32f2f": "Red category",
    "#f57c00": "Orange category",
    "#fbc02d": "Yellow category",
    "#388e3c": "Green category",
    "#1976d2": "Blue category",
    "#7b1fa2": "Purple category",
}

WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
FREQUENCIES = {"DAILY": "daily", "WEEKLY": "weekly", "MONTHLY": "monthly", "YEARLY": "yearly"}
SUPPORTED_RRULE_PARTS = {"FREQ", "INTERVAL", "UNTIL", "COUNT", "BYDAY", "BYMONTHDAY", "BYMONTH", "WKST"}


def sanitize_text(text: str | None) -> str:
    if not text:
        return ""
    return html.unescape(TAG_PATTERN.sub("", str(text))).strip()


def is_valid_timezone(name: str | None) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _zone(name: str | None) -> ZoneInfo:
    if is_valid_timezone(name):
        return ZoneInfo(str(name))
    return ZoneInfo("UTC")


def content_hash(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()  # nosec B324


def _utc_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return serialize_datetime(value.astimezone(timezone.utc))


def color_to_hex(provider: str, token: str | None) -> str | None:
    if not token:
        return None
    if provider == "google":
        return GOOGLE_COLORS.get(str(token))
    if provider == "microsoft":
        return MICROSOFT_CATEGORY_COLORS.get(str(token), DEFAULT_MICROSOFT_COLOR)
    return None


def hex_to_color(provider: str, color: str | None) -> str | None:
    if not color:
        return None
    color = str(color).lower()
    if provider == "google":
        for color_id, value in GOOGLE_COLORS.items():
            if value == color:
                return color_id
        return DEFAULT_GOOGLE_COLOR_ID
    if provider == "microsoft":
        return MICROSOFT_COLOR_CATEGORIES.get(color)
    return None


@dataclass
class RecurrenceConversion:
    pattern: RecurrencePattern | None = None
    supported: bool = True
    message: str = ""


def parse_rrule(line: str) -> RecurrenceConversion:
    text = str(line or "").strip()
    if not text:
        return RecurrenceConversion()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:") :]
    elif ":" in text:
        return RecurrenceConversion(supported=False, message=f"not an RRULE line: {line}")
    try:
        rule = vRecur.from_ical(text)
    except ValueError as exc:
        return RecurrenceConversion(supported=False, message=f"unparseable RRULE {text!r}: {exc}")

    unsupported = sorted(set(rule.keys()) - SUPPORTED_RRULE_PARTS)
    if unsupported:
        return RecurrenceConversion(supported=False, message=f"unsupported RRULE parts: {', '.join(unsupported)}")
    freq = str((rule.get("FREQ") or [""])[0]).upper()
    if freq not in FREQUENCIES:
        return RecurrenceConversion(supported=False, message=f"unsupported frequency: {freq or 'missing'}")

    by_week_day: list[int] = []
    for raw_day in rule.get("BYDAY", []):
        code = str(raw_day).upper()
        if code not in WEEKDAY_CODES:
            return RecurrenceConversion(supported=False, message=f"unsupported BYDAY value: {code}")
        by_week_day.append(WEEKDAY_CODES.index(code))

    end_date: date | None = None
    until = rule.get("UNTIL")
    if until:
        value = until[0]
        end_date = value.date() if isinstance(value, datetime) else value

    count = rule.get("COUNT")
    interval = rule.get("INTERVAL")
    pattern = RecurrencePattern(
        type=FREQUENCIES[freq],
        interval=max(1, int(interval[0])) if interval else 1,
        end_date=end_date,
        count=int(count[0]) if count else None,
        by_week_day=by_week_day,
        by_month_day=[int(x) for x in rule.get("BYMONTHDAY", [])],
        by_month=[int(x) for x in rule.get("BYMONTH", [])],
    )
    return RecurrenceConversion(pattern=pattern)


def build_rrule(pattern: RecurrencePattern) -> str:
    parts: dict[str, Any] = {"FREQ": pattern.type.upper()}
    if pattern.interval and pattern.interval > 1:
        parts["INTERVAL"] = int(pattern.interval)
    if pattern.count:
        parts["COUNT"] = int(pattern.count)
    elif pattern.end_date:
        parts["UNTIL"] = pattern.end_date
    if pattern.by_week_day:
        parts["BYDAY"] = [WEEKDAY_CODES[day % 7] for day in pattern.by_week_day]
    if pattern.by_month_day:
        parts["BYMONTHDAY"] = list(pattern.by_month_day)
    if pattern.by_month:
        parts["BYMONTH"] = list(pattern.by_month)
    return "RRULE:" + vRecur(parts).to_ical().decode("utf-8")


def convert_recurrence(lines: list[str]) -> RecurrenceConversion:
    rrules = [line for line in lines if str(line).upper().startswith("RRULE:")]
    if not rrules:
        return RecurrenceConversion()
    result = parse_rrule(rrules[0])
    if result.supported and len(lines) > 1:
        # EXDATE/RDATE lines are kept on the remote side only.
        result.message = f"ignored {len(lines) - 1} additional recurrence line(s)"
    return result


def is_all_day_span(start: datetime, end: datetime) -> bool:
    start_time = start.timetz().replace(tzinfo=None)
    end_time = end.timetz().replace(tzinfo=None)
    return start_time == time.min and end_time in {END_OF_DAY, time.min} and end > start


def local_fingerprint(event: LocalEvent) -> str:
    return content_hash(
        {
            "title": event.title,
            "description": event.description,
            "start": _utc_iso(event.start),
            "end": _utc_iso(event.end),
            "location": event.location,
            "is_all_day": event.is_all_day,
            "reminder_minutes": event.reminder_minutes,
            "color": (event.color or "").lower() or None,
            "recurrence": event.recurrence.to_dict() if event.recurrence else None,
        }
    )


def remote_fingerprint(event: NormalizedCalendarEvent) -> str:
    return content_hash(
        {
            "title": event.title,
            "description": event.description,
            "start": _utc_iso(event.start),
            "end": _utc_iso(event.end),
            "location": event.location,
            "is_all_day": event.is_all_day,
            "reminder_minutes": event.reminder_minutes,
            "uses_default_reminder": event.uses_default_reminder,
            "recurrence": list(event.recurrence),
            "color": event.color,
            "cancelled": event.cancelled,
        }
    )


def validate_local_event(event: LocalEvent) -> list[str]:
    errors: list[str] = []
    if not event.title.strip():
        errors.append("Title is required")
    if event.start is None:
        errors.append("Start time is required")
    if event.end is None:
        errors.append("End time is required")
    if event.start is not None and event.end is not None and event.end <= event.start:
        errors.append("End time must be after start time")
    if not event.timezone:
        errors.append("Timezone is required")
    elif not is_valid_timezone(event.timezone):
        errors.append("Invalid timezone")
    return errors


def validate_remote_event(event: NormalizedCalendarEvent) -> list[str]:
    errors: list[str] = []
    if not event.id:
        errors.append("Event ID is required")
    if event.cancelled:
        return errors
    if event.start is None:
        errors.append("Start time is required")
    if event.end is None:
        errors.append("End time is required")
    if event.start is not None and event.end is not None and event.end < event.start:
        errors.append("End time must be after start time")
    return errors


class EventMappingService:
    """Field conversion between local events and provider events, plus the
    persisted local <-> external key."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    # field conversion

    def to_local(
        self,
        remote: NormalizedCalendarEvent,
        *,
        user_id: str,
        user_timezone: str = "UTC",
        default_reminder: int = 15,
        preserve_timezone: bool = False,
        existing: LocalEvent | None = None,
    ) -> LocalEvent:
        if remote.start is None or remote.end is None:
            raise ValueError(f"remote event {remote.id} has no start/end")
        source_zone = _zone(remote.timezone)
        target_name = remote.timezone if preserve_timezone and is_valid_timezone(remote.timezone) else user_timezone
        target_zone = _zone(target_name)

        source_start = remote.start.astimezone(source_zone)
        source_end = remote.end.astimezone(source_zone)
        all_day = remote.is_all_day or is_all_day_span(source_start, source_end)
        if all_day:
            if remote.is_all_day:
                # Provider all-day dates are exclusive at the end.
                first_day = remote.start.astimezone(timezone.utc).date()
                last_day = remote.end.astimezone(timezone.utc).date() - timedelta(days=1)
            else:
                first_day = source_start.date()
                last_day = source_end.date() if source_end.timetz().replace(tzinfo=None) == END_OF_DAY else source_end.date() - timedelta(days=1)
            last_day = max(first_day, last_day)
            start = datetime.combine(first_day, time.min, tzinfo=target_zone)
            end = datetime.combine(last_day, END_OF_DAY, tzinfo=target_zone)
        else:
            start = remote.start.astimezone(target_zone)
            end = remote.end.astimezone(target_zone)

        recurrence = convert_recurrence(remote.recurrence)
        if not recurrence.supported:
            logger.warning("Recurrence of %s:%s not converted: %s", remote.provider, remote.id, recurrence.message)

        if remote.uses_default_reminder or remote.reminder_minutes is None:
            reminder = default_reminder
        else:
            reminder = remote.reminder_minutes

        fields = {
            "title": sanitize_text(remote.title) or UNTITLED_EVENT,
            "description": sanitize_text(remote.description),
            "start": start,
            "end": end,
            "timezone": str(target_zone.key),
            "location": sanitize_text(remote.location),
            "is_all_day": all_day,
            "reminder_minutes": reminder,
            "color": color_to_hex(remote.provider, remote.color),
            "external_calendar_id": remote.calendar_id,
            "external_event_id": remote.id,
            "sync_status": "synced",
            "last_synced_at": utc_now(),
            "external_last_modified": remote.last_modified,
            "recurrence": recurrence.pattern,
            "updated_at": utc_now(),
        }
        if existing is not None:
            return existing.with_updates(**fields)
        local_id = remote.local_id or f"{remote.provider}-{remote.id}"
        return LocalEvent(id=local_id, user_id=user_id, **fields)

    def to_remote(
        self,
        local: LocalEvent,
        *,
        provider: str,
        calendar_id: str,
        preserve_timezone: bool = False,
        external_event_id: str = "",
    ) -> NormalizedCalendarEvent:
        if local.start is None or local.end is None:
            raise ValueError(f"local event {local.id} has no start/end")
        local_zone = _zone(local.timezone)
        if local.is_all_day:
            first_day = local.start.astimezone(local_zone).date()
            local_end = local.end.astimezone(local_zone)
            if local_end.timetz().replace(tzinfo=None) == time.min and local_end.date() > first_day:
                end_exclusive = local_end.date()
            else:
                end_exclusive = local_end.date() + timedelta(days=1)
            start = datetime.combine(first_day, time.min, tzinfo=timezone.utc)
            end = datetime.combine(max(end_exclusive, first_day + timedelta(days=1)), time.min, tzinfo=timezone.utc)
            tz_name = str(local_zone.key)
        else:
            tz_name = str(local_zone.key) if preserve_timezone else "UTC"
            target_zone = _zone(tz_name)
            start = local.start.astimezone(target_zone)
            end = local.end.astimezone(target_zone)

        return NormalizedCalendarEvent(
            id=external_event_id or local.external_event_id,
            provider=provider,
            calendar_id=calendar_id,
            title=local.title,
            description=local.description,
            start=start,
            end=end,
            timezone=tz_name,
            location=local.location,
            is_all_day=local.is_all_day,
            reminder_minutes=local.reminder_minutes,
            uses_default_reminder=local.reminder_minutes is None,
            recurrence=[build_rrule(local.recurrence)] if local.recurrence else [],
            color=hex_to_color(provider, local.color),
            local_id=local.id,
        )

    # mapping keys

    def get_by_local(self, local_kind: str, local_id: str, provider: str) -> CalendarEventMapping | None:
        return self.state_store.find_mapping_by_local(local_kind, local_id, provider)

    def get_by_external(
        self,
        provider: str,
        external_event_id: str,
        local_kind: str | None = None,
    ) -> CalendarEventMapping | None:
        return self.state_store.find_mapping_by_external(provider, external_event_id, local_kind)

    def link(
        self,
        *,
        local_kind: str,
        local_id: str,
        provider: str,
        external_event_id: str,
        calendar_id: str = "",
        local_hash: str = "",
        remote_hash: str = "",
        sync_direction: str = "bidirectional",
        metadata: dict[str, Any] | None = None,
    ) -> CalendarEventMapping:
        by_local = self.get_by_local(local_kind, local_id, provider)
        by_external = self.get_by_external(provider, external_event_id, local_kind)
        if by_local is not None and by_local.external_event_id != external_event_id:
            raise MappingConflictError(
                f"{local_kind} {local_id} is already mapped to {provider} event {by_local.external_event_id}"
            )
        if by_external is not None and by_external.local_id != local_id:
            raise MappingConflictError(
                f"{provider} event {external_event_id} is already mapped to "
                f"{by_external.local_kind} {by_external.local_id}"
            )
        mapping = by_local or CalendarEventMapping(
            local_kind=local_kind,
            local_id=local_id,
            provider=provider,
            external_event_id=external_event_id,
        )
        mapping.calendar_id = calendar_id or mapping.calendar_id
        mapping.sync_direction = sync_direction
        mapping.sync_status = "synced"
        mapping.last_synced_at = utc_now()
        mapping.local_hash = local_hash or mapping.local_hash
        mapping.remote_hash = remote_hash or mapping.remote_hash
        if metadata:
            mapping.metadata = {**mapping.metadata, **metadata}
        return self.state_store.save_mapping(mapping)

    def touch(
        self,
        mapping: CalendarEventMapping,
        *,
        local_hash: str | None = None,
        remote_hash: str | None = None,
        sync_status: str = "synced",
    ) -> CalendarEventMapping:
        if local_hash is not None:
            mapping.local_hash = local_hash
        if remote_hash is not None:
            mapping.remote_hash = remote_hash
        mapping.sync_status = sync_status
        mapping.last_synced_at = utc_now()
        return self.state_store.save_mapping(mapping)

    def unlink(self, mapping: CalendarEventMapping) -> bool:
        if mapping.id is None:
            return False
        logger.debug(
            "Unlinking %s %s from %s event %s",
            mapping.local_kind,
            mapping.local_id,
            mapping.provider,
            mapping.external_event_id,
        )
        return self.state_store.delete_mapping(mapping.id)

