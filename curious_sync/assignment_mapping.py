from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable

import requests

from curious_sync.errors import (
    CalendarSyncError,
    ConflictNotFoundError,
    MappingConflictError,
    MappingNotFoundError,
    ValidationError,
)
from curious_sync.models import (
    PROVIDERS,
    Assignment,
    CalendarEventMapping,
    serialize_datetime,
    utc_now,
)

if TYPE_CHECKING:
    from curious_sync.assignment_sync import AssignmentCalendarSyncService


logger = logging.getLogger(__name__)

DETECTION_METHOD_BONUS = {"manual": 0.3, "ai_suggestion": 0.2, "keyword": 0.15, "pattern": 0.1}
DEFAULT_SYNC_CONFIDENCE = 0.8
MAPPING_RESOLUTIONS = {"merge", "keep_assignment", "keep_calendar", "delete_mapping"}
BATCH_OPERATIONS = {"validate", "delete", "resolve_conflicts"}
MAPPING_UPDATE_FIELDS = ("external_event_id", "calendar_id", "sync_status", "sync_direction")
BATCH_ERRORS = (CalendarSyncError, requests.RequestException, ValueError)


def sync_quality_score(assignment: Assignment, detection_method: str = "manual", confidence: float | None = None) -> float:
    score = 0.5 + DETECTION_METHOD_BONUS.get(detection_method, 0.0)
    if confidence:
        score += confidence * 0.2
    completeness = 0.25 * sum(
        1
        for value in (assignment.title, assignment.description, assignment.assignment_type, assignment.subject_id)
        if value
    )
    score += completeness * 0.2
    return round(min(1.0, max(0.0, score)), 4)


def mapping_metadata(
    assignment: Assignment,
    *,
    origin: str,
    detection_method: str = "manual",
    confidence: float | None = None,
    auto_created: bool = False,
) -> dict[str, Any]:
    return {
        "origin": origin,
        "assignment_title": assignment.title,
        "assignment_type": assignment.assignment_type,
        "auto_created": auto_created,
        "detection_method": detection_method,
        "sync_confidence": DEFAULT_SYNC_CONFIDENCE if confidence is None else round(confidence, 4),
        "sync_quality_score": sync_quality_score(assignment, detection_method, confidence),
        "last_validation": serialize_datetime(utc_now()),
    }


@dataclass
class ValidationIssue:
    type: str
    severity: str
    description: str
    suggested_fix: str = ""


@dataclass
class MappingValidationResult:
    is_valid: bool
    confidence_score: float
    issues: list[ValidationIssue] = field(default_factory=list)
    last_validated: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence_score": self.confidence_score,
            "issues": [issue.__dict__.copy() for issue in self.issues],
            "last_validated": serialize_datetime(self.last_validated),
        }


@dataclass
class MappingConflict:
    id: str
    type: str
    assignment_id: str = ""
    external_event_id: str = ""
    provider: str = ""
    suggested_resolution: str = "manual_review"
    confidence: float = 0.9
    auto_resolvable: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.__dict__)
        payload["details"] = dict(self.details)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


class AssignmentEventMappingService:
    """Bookkeeping for assignment <-> calendar event mappings.

    Mappings live in the shared ``event_mappings`` table with
    ``local_kind='assignment'``; mapping conflicts found by
    :meth:`detect_mapping_conflicts` are kept in memory until resolved or
    until the next full scan replaces them.
    """

    def __init__(self, sync_service: AssignmentCalendarSyncService) -> None:
        self.sync_service = sync_service
        self.state_store = sync_service.state_store
        self.local_store = sync_service.local_store
        self.mapping = sync_service.mapping
        self._conflicts: dict[str, MappingConflict] = {}

    def _stale_after(self) -> timedelta:
        return timedelta(days=self.sync_service.engine.config_manager.load().sync.stale_after_days)

    # lookups

    def all_mappings(self, user_id: str | None = None, provider: str | None = None) -> list[CalendarEventMapping]:
        mappings = self.state_store.list_mappings(local_kind="assignment", provider=provider)
        if user_id is None:
            return mappings
        owned = {item.id for item in self.local_store.list_assignments(user_id=user_id, include_deleted=True)}
        return [mapping for mapping in mappings if mapping.local_id in owned]

    def _mappings_for(self, assignment_id: str, provider: str | None = None) -> list[CalendarEventMapping]:
        if provider:
            mapping = self.mapping.get_by_local("assignment", assignment_id, provider)
            return [mapping] if mapping is not None else []
        return [m for m in self.state_store.list_mappings(local_kind="assignment") if m.local_id == assignment_id]

    def get_mapping_by_assignment(self, assignment_id: str, provider: str | None = None) -> CalendarEventMapping | None:
        mappings = self._mappings_for(assignment_id, provider)
        return mappings[0] if mappings else None

    def get_mapping_by_calendar_event(self, external_event_id: str, provider: str) -> CalendarEventMapping | None:
        return self.mapping.get_by_external(provider, external_event_id, "assignment")

    # CRUD

    def create_mapping(
        self,
        assignment_id: str,
        external_event_id: str,
        provider: str,
        calendar_id: str,
        *,
        auto_created: bool = False,
        detection_method: str = "manual",
        confidence: float | None = None,
    ) -> CalendarEventMapping:
        if provider not in PROVIDERS:
            raise ValidationError([f"unknown calendar provider: {provider}"])
        if not external_event_id:
            raise ValidationError(["external event id is required"])
        assignment = self.local_store.get_assignment(assignment_id)
        if assignment is None or assignment.deleted:
            raise ValidationError([f"assignment {assignment_id} not found"])
        if self.get_mapping_by_assignment(assignment_id) is not None:
            raise MappingConflictError(f"assignment {assignment_id} already has a calendar event mapping")

        metadata = mapping_metadata(
            assignment,
            origin="manual",
            detection_method=detection_method,
            confidence=confidence,
            auto_created=auto_created,
        )
        mapping = self.mapping.link(
            local_kind="assignment",
            local_id=assignment_id,
            provider=provider,
            external_event_id=external_event_id,
            calendar_id=calendar_id,
            local_hash=self.sync_service.fingerprint(assignment),
            metadata=metadata,
        )
        if assignment.external_calendar_event_id != external_event_id:
            self.local_store.save_assignment(assignment.with_updates(external_calendar_event_id=external_event_id))
        logger.info("Mapped assignment %s to %s event %s", assignment_id, provider, external_event_id)
        return mapping

    def update_mapping(
        self,
        assignment_id: str,
        updates: dict[str, Any],
        provider: str | None = None,
    ) -> CalendarEventMapping:
        mapping = self.get_mapping_by_assignment(assignment_id, provider)
        if mapping is None:
            raise MappingNotFoundError(f"no calendar mapping for assignment {assignment_id}")
        for key in MAPPING_UPDATE_FIELDS:
            if key in updates and updates[key] is not None:
                setattr(mapping, key, str(updates[key]))
        mapping.metadata = {
            **mapping.metadata,
            **dict(updates.get("metadata") or {}),
            "last_validation": serialize_datetime(utc_now()),
        }
        mapping.last_synced_at = utc_now()
        return self.state_store.save_mapping(mapping)

    def delete_mapping(self, assignment_id: str, provider: str | None = None) -> bool:
        removed = False
        for mapping in self._mappings_for(assignment_id, provider):
            removed = self.mapping.unlink(mapping) or removed
        return removed

    # validation

    def validate_mapping(self, assignment_id: str, provider: str | None = None) -> MappingValidationResult:
        mapping = self.get_mapping_by_assignment(assignment_id, provider)
        if mapping is None:
            return MappingValidationResult(
                is_valid=False,
                confidence_score=0.0,
                issues=[ValidationIssue("stale_mapping", "high", "Mapping not found")],
            )

        issues: list[ValidationIssue] = []
        score = 1.0
        assignment = self.local_store.get_assignment(assignment_id)
        if assignment is None or assignment.deleted:
            issues.append(ValidationIssue("stale_mapping", "high", "Assignment no longer exists", "Delete mapping"))
            score -= 0.5
        else:
            recorded_title = mapping.metadata.get("assignment_title")
            if recorded_title is not None and recorded_title != assignment.title:
                issues.append(
                    ValidationIssue("data_mismatch", "medium", "Assignment title has changed", "Update mapping metadata")
                )
                score -= 0.2
            recorded_type = mapping.metadata.get("assignment_type")
            if recorded_type is not None and recorded_type != assignment.assignment_type:
                issues.append(
                    ValidationIssue("data_mismatch", "low", "Assignment type has changed", "Update mapping metadata")
                )
                score -= 0.1

        try:
            remote = self.sync_service.fetch_event(mapping)
        except (CalendarSyncError, requests.RequestException) as exc:
            issues.append(
                ValidationIssue("provider_error", "medium", f"Validation error: {exc}", "Retry validation later")
            )
            score -= 0.3
        else:
            if remote is None or remote.cancelled:
                issues.append(
                    ValidationIssue(
                        "stale_mapping",
                        "high",
                        "Calendar event no longer exists",
                        "Delete mapping or recreate event",
                    )
                )
                score -= 0.4

        if utc_now() - mapping.last_synced_at > self._stale_after():
            issues.append(ValidationIssue("stale_mapping", "low", "Mapping hasn't been synced recently", "Trigger sync"))
            score -= 0.1

        mapping.metadata["last_validation"] = serialize_datetime(utc_now())
        self.state_store.save_mapping(mapping)
        return MappingValidationResult(
            is_valid=all(issue.severity == "low" for issue in issues),
            confidence_score=round(max(0.0, score), 4),
            issues=issues,
        )

    # mapping conflicts

    def detect_mapping_conflicts(self, user_id: str | None = None) -> list[MappingConflict]:
        assignments = self.local_store.list_assignments(user_id=user_id, include_deleted=True)
        live = [item for item in assignments if not item.deleted]
        mappings = self.state_store.list_mappings(local_kind="assignment")
        mapped_ids = {mapping.local_id for mapping in mappings}
        found: list[MappingConflict] = []

        pointers: dict[str, list[str]] = {}
        for assignment in live:
            if assignment.external_calendar_event_id:
                pointers.setdefault(assignment.external_calendar_event_id, []).append(assignment.id)
        for event_id, assignment_ids in sorted(pointers.items()):
            if len(assignment_ids) < 2:
                continue
            owner = self._event_owner(event_id)
            found.append(
                MappingConflict(
                    id=f"duplicate_mapping:{event_id}",
                    type="duplicate_mapping",
                    assignment_id=owner.local_id if owner else "",
                    external_event_id=event_id,
                    provider=owner.provider if owner else "",
                    details={"assignment_ids": sorted(assignment_ids)},
                )
            )

        for mapping in mappings:
            assignment = self.local_store.get_assignment(mapping.local_id)
            if assignment is not None and user_id is not None and assignment.user_id != user_id:
                continue
            if assignment is None or assignment.deleted:
                found.append(
                    MappingConflict(
                        id=f"orphaned_event:{mapping.provider}:{mapping.external_event_id}",
                        type="orphaned_event",
                        assignment_id=mapping.local_id,
                        external_event_id=mapping.external_event_id,
                        provider=mapping.provider,
                        suggested_resolution="delete_mapping",
                        confidence=0.8,
                        auto_resolvable=True,
                    )
                )

        for assignment in live:
            if assignment.external_calendar_event_id and assignment.id not in mapped_ids:
                found.append(
                    MappingConflict(
                        id=f"orphaned_assignment:{assignment.id}",
                        type="orphaned_assignment",
                        assignment_id=assignment.id,
                        external_event_id=assignment.external_calendar_event_id,
                        suggested_resolution="delete_mapping",
                        confidence=0.7,
                        auto_resolvable=True,
                    )
                )

        if user_id is None:
            self._conflicts = {}
        # Later scans replace earlier findings for the same id.
        self._conflicts.update((conflict.id, conflict) for conflict in found)
        if found:
            logger.info("Detected %d mapping conflicts", len(found))
        return found

    def _event_owner(self, external_event_id: str) -> CalendarEventMapping | None:
        for provider in PROVIDERS:
            mapping = self.get_mapping_by_calendar_event(external_event_id, provider)
            if mapping is not None:
                return mapping
        return None

    def _clear_pointer(self, assignment_id: str) -> None:
        assignment = self.local_store.get_assignment(assignment_id)
        if assignment is not None and assignment.external_calendar_event_id:
            self.local_store.save_assignment(assignment.with_updates(external_calendar_event_id=""))

    def _merge_choice(self, conflict: MappingConflict) -> str:
        if conflict.type != "duplicate_mapping":
            return "delete_mapping"
        assignment = self.local_store.get_assignment(conflict.assignment_id)
        mapping = self.get_mapping_by_assignment(conflict.assignment_id)
        if assignment is None or mapping is None:
            return "delete_mapping"
        remote = self.sync_service.fetch_event(mapping)
        if remote is None or remote.last_modified is None:
            return "keep_assignment"
        return "keep_assignment" if assignment.updated_at >= remote.last_modified else "keep_calendar"

    def resolve_mapping_conflict(self, conflict_id: str, resolution: str) -> None:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"mapping conflict {conflict_id} not found")
        if resolution not in MAPPING_RESOLUTIONS:
            raise ValidationError([f"unknown mapping resolution: {resolution}"])
        if resolution == "merge":
            resolution = self._merge_choice(conflict)

        if resolution == "delete_mapping":
            if conflict.type == "orphaned_event":
                self.delete_mapping(conflict.assignment_id, conflict.provider or None)
            elif conflict.type == "orphaned_assignment":
                self._clear_pointer(conflict.assignment_id)
            else:
                for assignment_id in conflict.details.get("assignment_ids", []):
                    if assignment_id != conflict.assignment_id:
                        self._clear_pointer(assignment_id)
        elif resolution == "keep_assignment":
            assignment = self.local_store.get_assignment(conflict.assignment_id)
            if assignment is None or assignment.deleted:
                raise ValidationError([f"assignment {conflict.assignment_id} no longer exists"])
            if conflict.type == "orphaned_assignment":
                self._clear_pointer(assignment.id)
                assignment = assignment.with_updates(external_calendar_event_id="")
            outcome = self.sync_service.sync_assignment_to_calendar(assignment, assignment.user_id, force_create=True)
            if not outcome.success:
                raise ValidationError([outcome.error or "assignment could not be synced"])
        else:
            mapping = self.get_mapping_by_assignment(conflict.assignment_id)
            if mapping is None:
                raise MappingNotFoundError(f"no calendar mapping for assignment {conflict.assignment_id}")
            remote = self.sync_service.fetch_event(mapping)
            if remote is None or remote.cancelled:
                raise ValidationError([f"calendar event {mapping.external_event_id} no longer exists"])
            self.sync_service.pull_event_into_assignment(mapping, remote)

        self._conflicts.pop(conflict_id, None)
        logger.info("Mapping conflict %s resolved with %s", conflict_id, resolution)

    def batch_process(
        self,
        operation: str,
        assignment_ids: Iterable[str],
        *,
        resolve_automatically: bool = False,
    ) -> dict[str, Any]:
        if operation not in BATCH_OPERATIONS:
            raise ValidationError([f"unknown batch operation: {operation}"])
        results: dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        ids = list(assignment_ids)
        conflicts = self.detect_mapping_conflicts() if operation == "resolve_conflicts" else []
        for assignment_id in ids:
            try:
                if operation == "validate":
                    self.validate_mapping(assignment_id)
                elif operation == "delete":
                    self.delete_mapping(assignment_id)
                else:
                    for conflict in conflicts:
                        if conflict.assignment_id != assignment_id:
                            continue
                        if resolve_automatically and conflict.auto_resolvable:
                            self.resolve_mapping_conflict(conflict.id, conflict.suggested_resolution)
            except BATCH_ERRORS as exc:
                results["failed"] += 1
                results["errors"].append(f"{assignment_id}: {exc}")
                continue
            results["success"] += 1
        return results

    def statistics(self, user_id: str | None = None) -> dict[str, Any]:
        mappings = self.all_mappings(user_id)
        conflicts = self.detect_mapping_conflicts(user_id)
        stats: dict[str, Any] = {
            "total_mappings": len(mappings),
            "active_mappings": 0,
            "stale_mappings": 0,
            "conflicted_mappings": len(conflicts),
            "avg_sync_quality": 0.0,
            "providers_distribution": {},
            "detection_methods": {},
        }
        stale_after = self._stale_after()
        now = utc_now()
        total_quality = 0.0
        for mapping in mappings:
            if now - mapping.last_synced_at > stale_after:
                stats["stale_mappings"] += 1
            else:
                stats["active_mappings"] += 1
            providers = stats["providers_distribution"]
            providers[mapping.provider] = providers.get(mapping.provider, 0) + 1
            method = str(mapping.metadata.get("detection_method") or "unknown")
            stats["detection_methods"][method] = stats["detection_methods"].get(method, 0) + 1
            total_quality += float(mapping.metadata.get("sync_quality_score") or 0.0)
        if mappings:
            stats["avg_sync_quality"] = round(total_quality / len(mappings), 4)
        return stats
