from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


PROVIDERS = ("google", "microsoft")
LOCAL_SYNC_STATUSES = {"local", "synced", "conflict", "deleted", "error"}
SYNC_DIRECTIONS = {"import_only", "export_only", "bidirectional"}
ASSIGNMENT_SYNC_DIRECTIONS = {"assignment_to_calendar", "calendar_to_assignment", "bidirectional"}
CONFLICT_TYPES = {
    "time_mismatch",
    "content_mismatch",
    "deletion_conflict",
    "creation_conflict",
    "duplicate_mapping",
    "duplicate_event",
}
RESOLUTION_STATUSES = {"pending", "resolved", "ignored"}
RESOLUTION_CHOICES = {"keep_local", "keep_external", "merge", "ignore"}
CONFLICT_POLICIES = {"manual", "calendar_wins", "assignment_wins", "newest_wins", "longest_wins"}
ASSIGNMENT_TYPES = (
    "assignment",
    "exam",
    "project",
    "quiz",
    "presentation",
    "lab",
    "homework",
    "paper",
    "discussion",
)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _clean_choice(value: Any, allowed: set[str] | tuple[str, ...], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


@dataclass
class ProviderConfig:
    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = "common"
    calendar_id: str = "primary"
    access_token: str = ""
    refresh_token: str = ""
    token_expires_at: str = ""
    sync_direction: str = "bidirectional"
    webhook_token: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, default_calendar: str = "primary") -> "ProviderConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            tenant_id=str(data.get("tenant_id", "common")).strip() or "common",
            calendar_id=str(data.get("calendar_id", default_calendar)).strip() or default_calendar,
            access_token=str(data.get("access_token", "") or "").strip(),
            refresh_token=str(data.get("refresh_token", "") or "").strip(),
            token_expires_at=str(data.get("token_expires_at", "") or "").strip(),
            sync_direction=_clean_choice(data.get("sync_direction"), SYNC_DIRECTIONS, "bidirectional"),
            webhook_token=str(data.get("webhook_token", "") or "").strip(),
        )

    def is_configured(self) -> bool:
        return bool(self.enabled and (self.access_token or self.refresh_token))


@dataclass
class SyncConfig:
    past_days: int = 30
    future_days: int = 365
    interval_seconds: int = 300
    user_timezone: str = "UTC"
    default_reminder_minutes: int = 15
    preserve_timezone: bool = False
    conflict_policy: str = "manual"
    stale_after_days: int = 7

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            past_days=max(0, int(data.get("past_days", 30))),
            future_days=max(1, int(data.get("future_days", 365))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            user_timezone=str(data.get("user_timezone", "UTC")).strip() or "UTC",
            default_reminder_minutes=max(0, int(data.get("default_reminder_minutes", 15))),
            preserve_timezone=bool(data.get("preserve_timezone", False)),
            conflict_policy=_clean_choice(data.get("conflict_policy"), CONFLICT_POLICIES, "manual"),
            stale_after_days=max(1, int(data.get("stale_after_days", 7))),
        )


@dataclass
class StorageConfig:
    state_db_path: str = "data/state.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(state_db_path=str(data.get("state_db_path", "data/state.db")).strip() or "data/state.db")


@dataclass
class AppConfig:
    google: ProviderConfig = field(default_factory=ProviderConfig)
    microsoft: ProviderConfig = field(default_factory=lambda: ProviderConfig(calendar_id="calendar"))
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=ProviderConfig.from_dict(data.get("google"), default_calendar="primary"),
            microsoft=ProviderConfig.from_dict(data.get("microsoft"), default_calendar="calendar"),
            sync=SyncConfig.from_dict(data.get("sync")),
            storage=StorageConfig.from_dict(data.get("storage")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def provider(self, name: str) -> ProviderConfig:
        if name == "google":
            return self.google
        if name == "microsoft":
            return self.microsoft
        raise KeyError(name)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class RecurrencePattern:
    type: str = "daily"
    interval: int = 1
    end_date: date | None = None
    count: int | None = None
    by_week_day: list[int] = field(default_factory=list)
    by_month_day: list[int] = field(default_factory=list)
    by_month: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["end_date"] = self.end_date.isoformat() if self.end_date else None
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RecurrencePattern | None":
        if not data:
            return None
        end_date = data.get("end_date")
        return cls(
            type=_clean_choice(data.get("type"), {"daily", "weekly", "monthly", "yearly"}, "daily"),
            interval=max(1, int(data.get("interval") or 1)),
            end_date=date.fromisoformat(end_date) if end_date else None,
            count=int(data["count"]) if data.get("count") else None,
            by_week_day=[int(x) for x in data.get("by_week_day") or []],
            by_month_day=[int(x) for x in data.get("by_month_day") or []],
            by_month=[int(x) for x in data.get("by_month") or []],
        )


@dataclass
class LocalEvent:
    id: str
    user_id: str = ""
    title: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    timezone: str = "UTC"
    location: str = ""
    is_all_day: bool = False
    reminder_minutes: int | None = None
    color: str | None = None
    external_calendar_id: str = ""
    external_event_id: str = ""
    sync_status: str = "local"
    last_synced_at: datetime | None = None
    external_last_modified: datetime | None = None
    recurrence: RecurrencePattern | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start", "end", "last_synced_at", "external_last_modified", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        payload["recurrence"] = self.recurrence.to_dict() if self.recurrence else None
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocalEvent":
        reminder = data.get("reminder_minutes")
        return cls(
            id=str(data.get("id", "")).strip(),
            user_id=str(data.get("user_id", "") or ""),
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            start=parse_iso_datetime(data.get("start")),
            end=parse_iso_datetime(data.get("end")),
            timezone=str(data.get("timezone", "UTC") or "UTC"),
            location=str(data.get("location", "") or ""),
            is_all_day=bool(data.get("is_all_day", False)),
            reminder_minutes=int(reminder) if reminder is not None else None,
            color=data.get("color") or None,
            external_calendar_id=str(data.get("external_calendar_id", "") or ""),
            external_event_id=str(data.get("external_event_id", "") or ""),
            sync_status=_clean_choice(data.get("sync_status"), LOCAL_SYNC_STATUSES, "local"),
            last_synced_at=parse_iso_datetime(data.get("last_synced_at")),
            external_last_modified=parse_iso_datetime(data.get("external_last_modified")),
            recurrence=RecurrencePattern.from_dict(data.get("recurrence")),
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_iso_datetime(data.get("updated_at")) or utc_now(),
        )

    def with_updates(self, **kwargs: Any) -> "LocalEvent":
        return replace(self, **kwargs)


@dataclass
class Assignment:
    id: str
    user_id: str = ""
    title: str = ""
    description: str = ""
    due_date: datetime | None = None
    assignment_type: str = "assignment"
    priority: str = "medium"
    status: str = "not_started"
    submission_type: str = "online"
    progress_percentage: int | None = None
    submission_url: str = ""
    subject_id: str = ""
    external_calendar_event_id: str = ""
    is_auto_detected: bool = False
    detection_confidence: float | None = None
    academic_metadata: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("due_date", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Assignment":
        progress = data.get("progress_percentage")
        confidence = data.get("detection_confidence")
        return cls(
            id=str(data.get("id", "")).strip(),
            user_id=str(data.get("user_id", "") or ""),
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            due_date=parse_iso_datetime(data.get("due_date")),
            assignment_type=_clean_choice(data.get("assignment_type"), ASSIGNMENT_TYPES, "assignment"),
            priority=str(data.get("priority", "medium") or "medium").lower(),
            status=str(data.get("status", "not_started") or "not_started"),
            submission_type=str(data.get("submission_type", "online") or "online"),
            progress_percentage=int(progress) if progress is not None else None,
            submission_url=str(data.get("submission_url", "") or ""),
            subject_id=str(data.get("subject_id", "") or ""),
            external_calendar_event_id=str(data.get("external_calendar_event_id", "") or ""),
            is_auto_detected=bool(data.get("is_auto_detected", False)),
            detection_confidence=float(confidence) if confidence is not None else None,
            academic_metadata=dict(data.get("academic_metadata") or {}),
            deleted=bool(data.get("deleted", False)),
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_iso_datetime(data.get("updated_at")) or utc_now(),
        )

    def with_updates(self, **kwargs: Any) -> "Assignment":
        return replace(self, **kwargs)


@dataclass
class NormalizedCalendarEvent:
    id: str
    provider: str
    calendar_id: str = ""
    title: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    timezone: str = "UTC"
    location: str = ""
    is_all_day: bool = False
    last_modified: datetime | None = None
    cancelled: bool = False
    reminder_minutes: int | None = None
    uses_default_reminder: bool = False
    recurrence: list[str] = field(default_factory=list)
    color: str | None = None
    etag: str = ""
    local_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start", "end", "last_modified"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizedCalendarEvent":
        reminder = data.get("reminder_minutes")
        return cls(
            id=str(data.get("id", "") or ""),
            provider=str(data.get("provider", "") or ""),
            calendar_id=str(data.get("calendar_id", "") or ""),
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            start=parse_iso_datetime(data.get("start")),
            end=parse_iso_datetime(data.get("end")),
            timezone=str(data.get("timezone", "UTC") or "UTC"),
            location=str(data.get("location", "") or ""),
            is_all_day=bool(data.get("is_all_day", False)),
            last_modified=parse_iso_datetime(data.get("last_modified")),
            cancelled=bool(data.get("cancelled", False)),
            reminder_minutes=int(reminder) if reminder is not None else None,
            uses_default_reminder=bool(data.get("uses_default_reminder", False)),
            recurrence=[str(x) for x in data.get("recurrence") or []],
            color=data.get("color") or None,
            etag=str(data.get("etag", "") or ""),
            local_id=str(data.get("local_id", "") or ""),
            metadata=dict(data.get("metadata") or {}),
        )

    def with_updates(self, **kwargs: Any) -> "NormalizedCalendarEvent":
        return replace(self, **kwargs)


@dataclass
class CalendarEventMapping:
    local_kind: str
    local_id: str
    provider: str
    external_event_id: str
    calendar_id: str = ""
    sync_direction: str = "bidirectional"
    sync_status: str = "synced"
    last_synced_at: datetime = field(default_factory=utc_now)
    local_hash: str = ""
    remote_hash: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_synced_at"] = serialize_datetime(self.last_synced_at)
        return payload

    @classmethod
    def from_row(cls, row: dict[str, Any], metadata: dict[str, Any]) -> "CalendarEventMapping":
        return cls(
            id=int(row["id"]),
            local_kind=str(row["local_kind"]),
            local_id=str(row["local_id"]),
            provider=str(row["provider"]),
            external_event_id=str(row["external_event_id"]),
            calendar_id=str(row["calendar_id"] or ""),
            sync_direction=str(row["sync_direction"] or "bidirectional"),
            sync_status=str(row["sync_status"] or "synced"),
            last_synced_at=parse_iso_datetime(row["last_synced_at"]) or utc_now(),
            local_hash=str(row["local_hash"] or ""),
            remote_hash=str(row["remote_hash"] or ""),
            metadata=metadata,
        )


@dataclass
class SyncConflict:
    conflict_type: str
    local_kind: str = "event"
    local_id: str = ""
    external_event_id: str = ""
    provider: str = ""
    user_id: str = ""
    mapping_id: int | None = None
    description: str = ""
    severity: str = "low"
    affected_fields: list[str] = field(default_factory=list)
    local_snapshot: dict[str, Any] = field(default_factory=dict)
    external_snapshot: dict[str, Any] = field(default_factory=dict)
    resolution_status: str = "pending"
    resolution_choice: str = ""
    resolved_by: str = ""
    resolved_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["resolved_at"] = serialize_datetime(self.resolved_at)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class SyncConfiguration:
    provider: str = "google"
    calendar_id: str = "primary"
    enabled: bool = True
    sync_direction: str = "bidirectional"
    auto_create_events: bool = True
    auto_update_assignments: bool = True
    conflict_resolution: str = "manual"
    sync_categories: list[str] = field(default_factory=lambda: list(ASSIGNMENT_TYPES))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfiguration":
        data = data or {}
        categories = data.get("sync_categories", ASSIGNMENT_TYPES)
        return cls(
            provider=_clean_choice(data.get("provider"), PROVIDERS, "google"),
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            enabled=bool(data.get("enabled", True)),
            sync_direction=_clean_choice(data.get("sync_direction"), ASSIGNMENT_SYNC_DIRECTIONS, "bidirectional"),
            auto_create_events=bool(data.get("auto_create_events", True)),
            auto_update_assignments=bool(data.get("auto_update_assignments", True)),
            conflict_resolution=_clean_choice(
                data.get("conflict_resolution"),
                {"manual", "calendar_wins", "assignment_wins", "newest_wins"},
                "manual",
            ),
            sync_categories=[str(x).strip().lower() for x in categories if str(x).strip()],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    trigger: str
    direction: str = "bidirectional"
    provider: str = ""
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    message: str = ""
    run_at: datetime = field(default_factory=utc_now)

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def changes_applied(self) -> int:
        return self.events_created + self.events_updated + self.events_deleted

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["run_at"] = serialize_datetime(self.run_at)
        payload["changes_applied"] = self.changes_applied
        return payload


def sync_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start = datetime.combine(now_utc.date() - timedelta(days=max(0, past_days)), time.min, tzinfo=timezone.utc)
    end = datetime.combine(now_utc.date() + timedelta(days=max(1, future_days)), time.max, tzinfo=timezone.utc)
    return start, end
