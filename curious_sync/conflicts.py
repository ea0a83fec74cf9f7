from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

import requests

from curious_sync.errors import CalendarSyncError, ConflictNotFoundError, ValidationError
from curious_sync.models import (
    RESOLUTION_CHOICES,
    LocalEvent,
    SyncConflict,
    parse_iso_datetime,
    utc_now,
)
from curious_sync.state_store import StateStore


logger = logging.getLogger(__name__)

COMPARED_FIELDS = ("title", "description", "time", "location")
PROVIDER_LABELS = {"google": "Google Calendar", "microsoft": "Outlook Calendar"}
POLICY_CHOICES = {
    "calendar_wins": "keep_external",
    "external_wins": "keep_external",
    "assignment_wins": "keep_local",
    "local_wins": "keep_local",
}
FIELD_SOURCES = {"local", "external", "newest"}


@dataclass
class ConflictAnalysis:
    conflict_type: str
    description: str
    affected_fields: list[str]
    severity: str
    auto_resolvable: bool
    suggested_resolution: str

    @property
    def has_conflict(self) -> bool:
        return bool(self.affected_fields)


@dataclass
class ResolutionOutcome:
    conflict: SyncConflict
    choice: str
    merged: dict[str, Any] = field(default_factory=dict)

    @property
    def winner(self) -> str:
        if self.choice == "keep_local":
            return "local"
        if self.choice == "keep_external":
            return "external"
        if self.choice == "merge":
            return "merged"
        return "none"


ApplyResolution = Callable[[ResolutionOutcome], Any]


def _text(value: Any) -> str:
    return str(value or "")


def _instant(value: Any) -> datetime | None:
    return parse_iso_datetime(value) if value else None


def _updated_at(snapshot: dict[str, Any]) -> datetime | None:
    for key in ("updated_at", "last_modified", "external_last_modified", "start", "due_date"):
        value = _instant(snapshot.get(key))
        if value is not None:
            return value
    return None


def newest_side(local: dict[str, Any], external: dict[str, Any]) -> str:
    local_updated = _updated_at(local)
    external_updated = _updated_at(external)
    if local_updated is None:
        return "external"
    if external_updated is None:
        return "local"
    return "local" if local_updated > external_updated else "external"


def _duration_seconds(snapshot: dict[str, Any]) -> float:
    start = _instant(snapshot.get("start"))
    end = _instant(snapshot.get("end"))
    if start is None or end is None:
        return 0.0
    return (end - start).total_seconds()


def longest_side(local: dict[str, Any], external: dict[str, Any]) -> str:
    return "local" if _duration_seconds(local) >= _duration_seconds(external) else "external"


def describe_fields(affected_fields: list[str], conflict_type: str, provider: str = "") -> str:
    label = PROVIDER_LABELS.get(provider, "the remote calendar")
    if conflict_type == "time_mismatch":
        return f"Event times differ between local and {label}"
    if len(affected_fields) == 1:
        return f"Event {affected_fields[0]} differs between local and {label}"
    return f"Multiple fields differ: {', '.join(affected_fields)}"


def analyze_snapshots(local: dict[str, Any], external: dict[str, Any], provider: str = "") -> ConflictAnalysis:
    affected: list[str] = []
    conflict_type = "content_mismatch"
    severity = "low"

    if _text(local.get("title")) != _text(external.get("title")):
        affected.append("title")
    if _text(local.get("description")) != _text(external.get("description")):
        affected.append("description")
    if _instant(local.get("start")) != _instant(external.get("start")) or _instant(local.get("end")) != _instant(
        external.get("end")
    ):
        affected.append("time")
        conflict_type = "time_mismatch"
        severity = "high"
    if _text(local.get("location")) != _text(external.get("location")):
        affected.append("location")

    if len(affected) > 3:
        severity = "high"
    elif severity != "high" and len(affected) > 1:
        severity = "medium"
    auto_resolvable = severity != "high" and len(affected) <= 2

    if conflict_type == "time_mismatch" or len(affected) != 1:
        suggested = "keep_local" if newest_side(local, external) == "local" else "keep_external"
    else:
        suggested = "merge"

    return ConflictAnalysis(
        conflict_type=conflict_type,
        description=describe_fields(affected, conflict_type, provider) if affected else "No differences",
        affected_fields=affected,
        severity=severity,
        auto_resolvable=auto_resolvable,
        suggested_resolution=suggested,
    )


def is_auto_resolvable(conflict: SyncConflict) -> bool:
    if conflict.conflict_type in {"deletion_conflict", "duplicate_mapping"}:
        return False
    return conflict.severity != "high" and len(conflict.affected_fields) <= 2


class ConflictResolutionService:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def analyze(self, local: LocalEvent, external: LocalEvent, provider: str = "") -> ConflictAnalysis:
        """Compare a local event with the remote event converted to local shape.

        ``external.updated_at`` is expected to carry the remote last-modified
        time so that newest-wins decisions see both sides on the same clock.
        """
        return analyze_snapshots(local.to_dict(), external.to_dict(), provider)

    def create_conflict(self, conflict: SyncConflict) -> SyncConflict:
        existing = self.state_store.find_pending_conflict(
            conflict_type=conflict.conflict_type,
            local_kind=conflict.local_kind,
            local_id=conflict.local_id,
            external_event_id=conflict.external_event_id,
            provider=conflict.provider,
        )
        if existing is not None:
            existing.local_snapshot = conflict.local_snapshot
            existing.external_snapshot = conflict.external_snapshot
            existing.affected_fields = conflict.affected_fields
            existing.severity = conflict.severity
            existing.description = conflict.description
            return self.state_store.save_conflict(existing)
        saved = self.state_store.save_conflict(conflict)
        logger.warning(
            "Recorded %s conflict #%s for %s %s <-> %s:%s",
            saved.conflict_type,
            saved.id,
            saved.local_kind,
            saved.local_id,
            saved.provider,
            saved.external_event_id,
        )
        return saved

    def get_conflict(self, conflict_id: int) -> SyncConflict:
        conflict = self.state_store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"conflict {conflict_id} not found")
        return conflict

    def pending_conflicts(self, user_id: str | None = None, provider: str | None = None) -> list[SyncConflict]:
        return self.state_store.list_conflicts(user_id=user_id, status="pending", provider=provider)

    def resolve_manually(
        self,
        conflict_id: int,
        choice: str,
        merged: dict[str, Any] | None = None,
        resolved_by: str = "user",
        apply: ApplyResolution | None = None,
    ) -> ResolutionOutcome:
        """Validate a decision, run ``apply`` with it and only then store it.

        When ``apply`` raises, the conflict stays pending so the same
        resolution can be retried.
        """
        conflict = self.get_conflict(conflict_id)
        if choice not in RESOLUTION_CHOICES:
            raise ValidationError([f"unknown resolution choice: {choice}"])
        if conflict.resolution_status != "pending":
            raise ValidationError([f"conflict {conflict_id} is already {conflict.resolution_status}"])
        if choice == "merge" and not merged:
            raise ValidationError(["merged data is required for a merge resolution"])

        outcome = ResolutionOutcome(conflict=conflict, choice=choice, merged=dict(merged or {}))
        if apply is not None:
            apply(outcome)

        conflict.resolution_status = "ignored" if choice == "ignore" else "resolved"
        conflict.resolution_choice = choice
        conflict.resolved_by = resolved_by
        conflict.resolved_at = utc_now()
        self.state_store.save_conflict(conflict)
        self.state_store.record_audit_event(
            calendar_id=conflict.provider,
            item_id=conflict.local_id or conflict.external_event_id,
            action="conflict_resolved",
            details={
                "conflict_id": conflict.id,
                "conflict_type": conflict.conflict_type,
                "choice": choice,
                "resolved_by": resolved_by,
            },
        )
        logger.info("Conflict #%s resolved with %s by %s", conflict.id, choice, resolved_by)
        return outcome

    def choice_for_policy(self, conflict: SyncConflict, policy: str) -> str | None:
        if policy in POLICY_CHOICES:
            return POLICY_CHOICES[policy]
        if policy == "newest_wins":
            side = newest_side(conflict.local_snapshot, conflict.external_snapshot)
            return "keep_local" if side == "local" else "keep_external"
        if policy == "longest_wins":
            side = longest_side(conflict.local_snapshot, conflict.external_snapshot)
            return "keep_local" if side == "local" else "keep_external"
        return None

    def resolve_automatically(
        self,
        conflict: SyncConflict,
        policy: str,
        apply: ApplyResolution | None = None,
    ) -> ResolutionOutcome | None:
        if policy == "manual" or not is_auto_resolvable(conflict):
            return None
        choice = self.choice_for_policy(conflict, policy)
        if choice is None:
            raise ValidationError([f"unknown automatic resolution policy: {policy}"])
        return self.resolve_manually(int(conflict.id), choice, resolved_by=f"auto:{policy}", apply=apply)

    def resolve_with_field_priorities(
        self,
        conflict: SyncConflict,
        priorities: dict[str, str],
        apply: ApplyResolution | None = None,
    ) -> ResolutionOutcome:
        unknown = sorted(k for k, v in priorities.items() if k not in COMPARED_FIELDS or v not in FIELD_SOURCES)
        if unknown:
            raise ValidationError([f"invalid field priority for: {', '.join(unknown)}"])
        local = conflict.local_snapshot
        external = conflict.external_snapshot
        newest = newest_side(local, external)
        merged: dict[str, Any] = {}
        for name in COMPARED_FIELDS:
            source = priorities.get(name, "local")
            use_external = source == "external" or (source == "newest" and newest == "external")
            keys = ("start", "end") if name == "time" else (name,)
            for key in keys:
                merged[key] = (external if use_external else local).get(key)
        return self.resolve_manually(
            int(conflict.id), "merge", merged=merged, resolved_by="auto:field_priorities", apply=apply
        )

    def batch_resolve(
        self,
        conflict_ids: Iterable[int],
        *,
        policy: str | None = None,
        priorities: dict[str, str] | None = None,
        apply: ApplyResolution | None = None,
    ) -> dict[str, Any]:
        resolved = 0
        failed = 0
        errors: list[str] = []
        outcomes: list[ResolutionOutcome] = []
        for conflict_id in conflict_ids:
            try:
                conflict = self.get_conflict(conflict_id)
                if policy:
                    outcome = self.resolve_automatically(conflict, policy, apply=apply)
                elif priorities:
                    outcome = self.resolve_with_field_priorities(conflict, priorities, apply=apply)
                else:
                    raise ValidationError(["a policy or field priorities are required"])
            except (CalendarSyncError, requests.RequestException) as exc:
                failed += 1
                errors.append(f"conflict {conflict_id}: {exc}")
                continue
            if outcome is None:
                failed += 1
                errors.append(f"conflict {conflict_id}: not auto-resolvable")
                continue
            resolved += 1
            outcomes.append(outcome)
        return {"resolved": resolved, "failed": failed, "errors": errors, "outcomes": outcomes}

    def statistics(self, user_id: str | None = None) -> dict[str, Any]:
        conflicts = self.state_store.list_conflicts(user_id=user_id, limit=100000)
        stats: dict[str, Any] = {"total": len(conflicts), "pending": 0, "resolved": 0, "ignored": 0, "by_type": {}}
        for conflict in conflicts:
            if conflict.resolution_status in {"pending", "resolved", "ignored"}:
                stats[conflict.resolution_status] += 1
            stats["by_type"][conflict.conflict_type] = stats["by_type"].get(conflict.conflict_type, 0) + 1
        return stats
