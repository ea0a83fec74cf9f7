from __future__ import annotations

import logging
import re
import traceback
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from curious_sync.assignment_mapping import mapping_metadata
from curious_sync.conflicts import ResolutionOutcome, analyze_snapshots
from curious_sync.detection import AssignmentDetector, DetectionResult, KeywordAssignmentDetector, clean_title
from curious_sync.errors import ValidationError
from curious_sync.event_mapping import content_hash, remote_fingerprint
from curious_sync.models import (
    ASSIGNMENT_TYPES,
    Assignment,
    CalendarEventMapping,
    NormalizedCalendarEvent,
    SyncConfiguration,
    SyncConflict,
    SyncResult,
    parse_iso_datetime,
    serialize_datetime,
    sync_window,
    utc_now,
)
from curious_sync.provider import CalendarProvider
from curious_sync.sync_engine import ASSIGNMENT_MARKER_PREFIX, ITEM_ERRORS, CalendarSyncEngine


logger = logging.getLogger(__name__)

EVENT_DURATION_MINUTES = {
    "assignment": 60,
    "exam": 180,
    "project": 240,
    "quiz": 30,
    "presentation": 120,
    "lab": 180,
    "homework": 60,
    "paper": 120,
    "discussion": 30,
}
DEFAULT_DURATION_MINUTES = 60
DETAILS_HEADER = "--- Assignment Details ---"
DETAILS_FOOTER = "Created by Curious Dashboard"
TITLE_PREFIX = re.compile(r"^(%s):\s*" % "|".join(t.upper() for t in ASSIGNMENT_TYPES))

NOT_CONFIGURED = "Sync not configured or disabled"
NOT_DETECTED = "Event not detected as academic assignment"
CATEGORY_EXCLUDED = "Assignment type not configured for sync"


def assignment_marker(assignment_id: str) -> str:
    return f"{ASSIGNMENT_MARKER_PREFIX}{assignment_id}"


def event_title(assignment: Assignment) -> str:
    return f"{(assignment.assignment_type or 'assignment').upper()}: {assignment.title}"


def event_description(assignment: Assignment) -> str:
    lines = [
        f"Type: {assignment.assignment_type}",
        f"Priority: {assignment.priority}",
        f"Status: {assignment.status}",
    ]
    if assignment.progress_percentage is not None:
        lines.append(f"Progress: {assignment.progress_percentage}%")
    if assignment.submission_url:
        lines.append(f"Submission: {assignment.submission_url}")
    details = "\n".join(lines)
    return f"{assignment.description or ''}\n\n{DETAILS_HEADER}\n{details}\n\n{DETAILS_FOOTER}"


def strip_event_title(title: str) -> str:
    return TITLE_PREFIX.sub("", title.strip()).strip()


def strip_event_description(description: str) -> str:
    return description.split(DETAILS_HEADER, 1)[0].rstrip()


def event_duration(assignment_type: str) -> timedelta:
    return timedelta(minutes=EVENT_DURATION_MINUTES.get(assignment_type, DEFAULT_DURATION_MINUTES))


def calendar_id_for(mapping: CalendarEventMapping, configuration: SyncConfiguration) -> str:
    return mapping.calendar_id or configuration.calendar_id


def build_assignment_event(
    assignment: Assignment,
    *,
    provider: str,
    calendar_id: str,
    external_event_id: str = "",
) -> NormalizedCalendarEvent:
    """Calendar block for an assignment: it ends at the due date and lasts
    as long as the assignment type usually takes."""
    if assignment.due_date is None:
        raise ValidationError([f"assignment {assignment.id} has no due date"])
    end = assignment.due_date.astimezone(timezone.utc)
    return NormalizedCalendarEvent(
        id=external_event_id,
        provider=provider,
        calendar_id=calendar_id,
        title=event_title(assignment),
        description=event_description(assignment),
        start=end - event_duration(assignment.assignment_type),
        end=end,
        timezone="UTC",
        location="Classroom" if assignment.submission_type == "in_person" else "",
        uses_default_reminder=True,
        local_id=assignment_marker(assignment.id),
        metadata={
            "assignment_id": assignment.id,
            "assignment_type": assignment.assignment_type,
            "priority": assignment.priority,
            "progress": assignment.progress_percentage or 0,
        },
    )


def assignment_fingerprint(assignment: Assignment) -> str:
    due = assignment.due_date.astimezone(timezone.utc) if assignment.due_date else None
    return content_hash(
        {
            "title": assignment.title,
            "description": assignment.description,
            "due_date": serialize_datetime(due),
            "assignment_type": assignment.assignment_type,
            "priority": assignment.priority,
            "status": assignment.status,
            "submission_type": assignment.submission_type,
            "progress_percentage": assignment.progress_percentage,
            "submission_url": assignment.submission_url,
        }
    )


def assignment_from_event(
    event: NormalizedCalendarEvent,
    detection: DetectionResult,
    *,
    user_id: str,
    assignment_id: str,
) -> Assignment:
    suggested = detection.suggested_data
    return Assignment(
        id=assignment_id,
        user_id=user_id,
        title=suggested.get("title") or event.title,
        description=event.description,
        due_date=event.start,
        assignment_type=suggested.get("assignment_type") or "assignment",
        priority=suggested.get("priority") or "medium",
        status="not_started",
        submission_type=suggested.get("submission_type") or "online",
        external_calendar_event_id=event.id,
        is_auto_detected=True,
        detection_confidence=round(detection.confidence, 4),
        academic_metadata={
            "source_calendar": event.provider,
            "calendar_id": event.calendar_id,
            "detection_reasons": list(detection.detection_reasons),
            "original_title": event.title,
            "tags": list(suggested.get("tags") or []),
        },
    )


def _event_view(event: NormalizedCalendarEvent, updated_at: datetime | None) -> dict[str, Any]:
    return {
        "title": event.title,
        "description": event.description,
        "start": serialize_datetime(event.start),
        "end": serialize_datetime(event.end),
        "location": event.location,
        "updated_at": serialize_datetime(updated_at),
    }


@dataclass
class ItemSyncResult:
    success: bool
    action: str = "unchanged"
    item_id: str = ""
    error: str = ""


@dataclass
class AssignmentSyncReport:
    success: bool = True
    created_events: int = 0
    updated_events: int = 0
    created_assignments: int = 0
    updated_assignments: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "created_events": self.created_events,
            "updated_events": self.updated_events,
            "created_assignments": self.created_assignments,
            "updated_assignments": self.updated_assignments,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "errors": list(self.errors),
        }


class AssignmentCalendarSyncService:
    """Keeps assignments and calendar events in step for one user at a time.

    Assignment -> calendar events carry an ``assignment:<id>`` marker so the
    plain event sync leaves them alone; calendar -> assignment goes through
    the detector. Both directions store an ``assignment`` mapping whose
    hashes drive change detection, exactly like the event engine.
    """

    def __init__(self, engine: CalendarSyncEngine, *, detector: AssignmentDetector | None = None) -> None:
        self.engine = engine
        self.state_store = engine.state_store
        self.local_store = engine.local_store
        self.mapping = engine.mapping
        self.conflicts = engine.conflicts
        self.detector = detector or KeywordAssignmentDetector()

    # configuration

    def configure(self, user_id: str, configuration: SyncConfiguration) -> SyncConfiguration:
        self.state_store.save_sync_configuration(user_id, configuration)
        logger.info(
            "Assignment sync for %s: %s via %s (%s)",
            user_id,
            "enabled" if configuration.enabled else "disabled",
            configuration.provider,
            configuration.sync_direction,
        )
        return configuration

    def configuration(self, user_id: str) -> SyncConfiguration | None:
        return self.state_store.get_sync_configuration(user_id)

    def _active_configuration(self, user_id: str) -> SyncConfiguration | None:
        configuration = self.configuration(user_id)
        if configuration is None or not configuration.enabled:
            return None
        return configuration

    def _provider(self, name: str) -> CalendarProvider:
        return self.engine.provider(name)

    @staticmethod
    def fingerprint(assignment: Assignment) -> str:
        return assignment_fingerprint(assignment)

    def fetch_event(self, mapping: CalendarEventMapping) -> NormalizedCalendarEvent | None:
        calendar_id = mapping.calendar_id or self.engine.config_manager.load().provider(mapping.provider).calendar_id
        return self._provider(mapping.provider).get_event(calendar_id, mapping.external_event_id)

    def _has_pending_conflict(self, assignment_id: str, provider: str) -> bool:
        return any(
            conflict.local_kind == "assignment" and conflict.local_id == assignment_id
            for conflict in self.conflicts.pending_conflicts(provider=provider)
        )

    def _remember_event_id(self, assignment: Assignment, event_id: str) -> Assignment:
        if assignment.external_calendar_event_id == event_id:
            return assignment
        updated = assignment.with_updates(external_calendar_event_id=event_id)
        self.local_store.save_assignment(updated)
        return updated

    def _audit(self, provider: str, calendar_id: str, item_id: str, action: str, details: dict[str, Any]) -> None:
        self.state_store.record_audit_event(
            calendar_id=f"{provider}:{calendar_id}",
            item_id=item_id,
            action=action,
            details=details,
        )

    # assignment -> calendar

    def sync_assignment_to_calendar(
        self,
        assignment: Assignment,
        user_id: str,
        force_create: bool = False,
    ) -> ItemSyncResult:
        configuration = self._active_configuration(user_id)
        if configuration is None:
            return ItemSyncResult(success=False, action="skipped", item_id=assignment.id, error=NOT_CONFIGURED)
        if assignment.assignment_type not in configuration.sync_categories:
            return ItemSyncResult(success=False, action="skipped", item_id=assignment.id, error=CATEGORY_EXCLUDED)
        try:
            return self._push_assignment(configuration, assignment, force_create=force_create)
        except ITEM_ERRORS as exc:
            logger.warning("Sync of assignment %s to %s failed: %s", assignment.id, configuration.provider, exc)
            return ItemSyncResult(success=False, action="error", item_id=assignment.id, error=str(exc))

    def _push_assignment(
        self,
        configuration: SyncConfiguration,
        assignment: Assignment,
        *,
        force_create: bool = False,
        force_update: bool = False,
    ) -> ItemSyncResult:
        if assignment.deleted:
            raise ValidationError([f"assignment {assignment.id} is deleted"])
        provider_name = configuration.provider
        provider = self._provider(provider_name)
        local_hash = assignment_fingerprint(assignment)
        mapping = self.mapping.get_by_local("assignment", assignment.id, provider_name)

        if mapping is not None and force_create:
            provider.delete_event(mapping.calendar_id or configuration.calendar_id, mapping.external_event_id)
            self.mapping.unlink(mapping)
            mapping = None

        if mapping is not None:
            if mapping.local_hash == local_hash and not force_update:
                self._remember_event_id(assignment, mapping.external_event_id)
                return ItemSyncResult(success=True, action="unchanged", item_id=mapping.external_event_id)
            if not force_update and self._has_pending_conflict(assignment.id, provider_name):
                return ItemSyncResult(success=True, action="conflict", item_id=mapping.external_event_id)

            calendar_id = mapping.calendar_id or configuration.calendar_id
            current = provider.get_event(calendar_id, mapping.external_event_id)
            if current is not None and not current.cancelled:
                if not force_update and remote_fingerprint(current) != mapping.remote_hash:
                    # Changed on both sides since the last sync.
                    return ItemSyncResult(success=True, action="conflict", item_id=mapping.external_event_id)
                payload = build_assignment_event(
                    assignment,
                    provider=provider_name,
                    calendar_id=calendar_id,
                    external_event_id=mapping.external_event_id,
                )
                remote = provider.update_event(calendar_id, payload)
                mapping.metadata.update(
                    origin="assignment",
                    assignment_title=assignment.title,
                    assignment_type=assignment.assignment_type,
                )
                self.mapping.touch(mapping, local_hash=local_hash, remote_hash=remote_fingerprint(remote))
                self._remember_event_id(assignment, remote.id)
                self._audit(provider_name, calendar_id, assignment.id, "assignment_event_update", {"external_event_id": remote.id})
                return ItemSyncResult(success=True, action="updated", item_id=remote.id)
            if not force_update:
                return ItemSyncResult(success=True, action="conflict", item_id=mapping.external_event_id)
            self.mapping.unlink(mapping)

        return self._create_assignment_event(configuration, assignment, provider, local_hash, adopt=not force_create)

    def _create_assignment_event(
        self,
        configuration: SyncConfiguration,
        assignment: Assignment,
        provider: CalendarProvider,
        local_hash: str,
        *,
        adopt: bool = True,
    ) -> ItemSyncResult:
        calendar_id = configuration.calendar_id
        payload = build_assignment_event(assignment, provider=configuration.provider, calendar_id=calendar_id)
        existing = provider.find_events_by_local_id(calendar_id, assignment_marker(assignment.id)) if adopt else []
        if existing:
            # An earlier pass created the event but never stored the mapping.
            remote = provider.update_event(calendar_id, payload.with_updates(id=existing[0].id))
            action = "adopted"
        else:
            remote = provider.create_event(calendar_id, payload)
            action = "created"
        self.mapping.link(
            local_kind="assignment",
            local_id=assignment.id,
            provider=configuration.provider,
            external_event_id=remote.id,
            calendar_id=calendar_id,
            local_hash=local_hash,
            remote_hash=remote_fingerprint(remote),
            sync_direction=configuration.sync_direction,
            metadata=mapping_metadata(assignment, origin="assignment"),
        )
        self._remember_event_id(assignment, remote.id)
        self._audit(configuration.provider, calendar_id, assignment.id, f"assignment_event_{action}", {"external_event_id": remote.id})
        return ItemSyncResult(success=True, action=action, item_id=remote.id)

    # calendar -> assignment

    def sync_calendar_event_to_assignment(self, event: NormalizedCalendarEvent, user_id: str) -> ItemSyncResult:
        configuration = self._active_configuration(user_id)
        if configuration is None:
            return ItemSyncResult(success=False, action="skipped", item_id=event.id, error=NOT_CONFIGURED)
        if event.cancelled or event.local_id.startswith(ASSIGNMENT_MARKER_PREFIX):
            return ItemSyncResult(success=True, action="skipped", item_id=event.id)
        try:
            return self._pull_event(configuration, event, user_id)
        except ITEM_ERRORS as exc:
            logger.warning("Sync of %s event %s to an assignment failed: %s", event.provider, event.id, exc)
            return ItemSyncResult(success=False, action="error", item_id=event.id, error=str(exc))

    def _pull_event(self, configuration: SyncConfiguration, event: NormalizedCalendarEvent, user_id: str) -> ItemSyncResult:
        provider_name = event.provider or configuration.provider
        # The event engine may track the same event as a plain local event.
        mapping = self.mapping.get_by_external(provider_name, event.id, "assignment")

        detection = self.detector.detect(event)
        if not detection.detected:
            return ItemSyncResult(success=False, action="skipped", item_id=event.id, error=NOT_DETECTED)
        remote_hash = remote_fingerprint(event)

        if mapping is not None:
            if mapping.remote_hash == remote_hash:
                return ItemSyncResult(success=True, action="unchanged", item_id=mapping.local_id)
            assignment = self.local_store.get_assignment(mapping.local_id)
            if (
                assignment is None
                or assignment.deleted
                or assignment_fingerprint(assignment) != mapping.local_hash
                or self._has_pending_conflict(mapping.local_id, provider_name)
            ):
                return ItemSyncResult(success=True, action="conflict", item_id=mapping.local_id)
            updated = self.pull_event_into_assignment(mapping, event, assignment, detection=detection)
            return ItemSyncResult(success=True, action="updated", item_id=updated.id)

        assignment_id = f"{provider_name}-{event.id}"
        existing = self.local_store.get_assignment(assignment_id)
        if existing is not None and existing.deleted:
            return ItemSyncResult(success=True, action="skipped", item_id=assignment_id)
        if existing is not None:
            assignment = self._updated_from_event(existing, event, detection)
        else:
            assignment = assignment_from_event(event, detection, user_id=user_id, assignment_id=assignment_id)
        self.local_store.save_assignment(assignment)
        self.mapping.link(
            local_kind="assignment",
            local_id=assignment.id,
            provider=provider_name,
            external_event_id=event.id,
            calendar_id=event.calendar_id or configuration.calendar_id,
            local_hash=assignment_fingerprint(assignment),
            remote_hash=remote_hash,
            sync_direction=configuration.sync_direction,
            metadata=mapping_metadata(
                assignment,
                origin="calendar",
                detection_method="keyword",
                confidence=detection.confidence,
                auto_created=True,
            ),
        )
        self._audit(
            provider_name,
            event.calendar_id,
            assignment.id,
            "assignment_detected",
            {"external_event_id": event.id, "confidence": round(detection.confidence, 4)},
        )
        return ItemSyncResult(success=True, action="updated" if existing else "created", item_id=assignment.id)

    def _updated_from_event(
        self,
        assignment: Assignment,
        event: NormalizedCalendarEvent,
        detection: DetectionResult,
    ) -> Assignment:
        return assignment.with_updates(
            title=detection.suggested_data.get("title") or event.title,
            description=event.description,
            due_date=event.start,
            external_calendar_event_id=event.id,
            updated_at=utc_now(),
            academic_metadata={
                **assignment.academic_metadata,
                "last_calendar_sync": serialize_datetime(utc_now()),
                "sync_source": event.provider,
            },
        )

    def pull_event_into_assignment(
        self,
        mapping: CalendarEventMapping,
        remote: NormalizedCalendarEvent,
        assignment: Assignment | None = None,
        *,
        detection: DetectionResult | None = None,
    ) -> Assignment:
        """Overwrite the mapped assignment with the calendar side and mark the pair synced."""
        assignment = assignment or self.local_store.get_assignment(mapping.local_id)
        if assignment is None:
            raise ValidationError([f"assignment {mapping.local_id} no longer exists"])
        if mapping.metadata.get("origin") == "assignment":
            updated = assignment.with_updates(
                title=strip_event_title(remote.title) or assignment.title,
                description=strip_event_description(remote.description),
                due_date=remote.end,
                deleted=False,
                updated_at=utc_now(),
            )
        else:
            detection = detection or self.detector.detect(remote)
            updated = self._updated_from_event(assignment.with_updates(deleted=False), remote, detection)
            if not detection.suggested_data.get("title"):
                updated = updated.with_updates(title=clean_title(remote.title))
        self.local_store.save_assignment(updated)
        mapping.metadata.update(assignment_title=updated.title, assignment_type=updated.assignment_type)
        self.mapping.touch(mapping, local_hash=assignment_fingerprint(updated), remote_hash=remote_fingerprint(remote))
        self._audit(mapping.provider, mapping.calendar_id, updated.id, "assignment_update_from_calendar", {"external_event_id": remote.id})
        return updated

    # full sync

    def _calendar_events(self, configuration: SyncConfiguration) -> list[NormalizedCalendarEvent]:
        settings = self.engine.config_manager.load().sync
        start, end = sync_window(utc_now(), settings.past_days, settings.future_days)
        page = self._provider(configuration.provider).list_events(configuration.calendar_id, start, end)
        return page.events

    def perform_full_sync(self, user_id: str, trigger: str = "manual") -> AssignmentSyncReport:
        report = AssignmentSyncReport()
        configuration = self._active_configuration(user_id)
        if configuration is None:
            report.success = False
            report.errors.append(NOT_CONFIGURED)
            return report

        started_at = datetime.now(timezone.utc)
        direction = configuration.sync_direction
        run_id = self.state_store.start_sync_run(
            trigger=f"assignments:{trigger}",
            provider=configuration.provider,
            direction=direction,
        )
        processed = 0
        try:
            if direction in {"assignment_to_calendar", "bidirectional"}:
                for assignment in self.local_store.list_assignments(user_id=user_id):
                    if assignment.assignment_type not in configuration.sync_categories:
                        continue
                    processed += 1
                    outcome = self.sync_assignment_to_calendar(assignment, user_id)
                    if not outcome.success:
                        report.errors.append(f"assignment {assignment.id}: {outcome.error}")
                    elif outcome.action == "created":
                        report.created_events += 1
                    elif outcome.action in {"updated", "adopted"}:
                        report.updated_events += 1

            # Listed after the push so the pull sees this pass's own writes.
            events = self._calendar_events(configuration)
            if direction in {"calendar_to_assignment", "bidirectional"}:
                for event in events:
                    processed += 1
                    outcome = self.sync_calendar_event_to_assignment(event, user_id)
                    if not outcome.success:
                        if outcome.error != NOT_DETECTED:
                            report.errors.append(f"event {event.id}: {outcome.error}")
                    elif outcome.action == "created":
                        report.created_assignments += 1
                    elif outcome.action == "updated":
                        report.updated_assignments += 1

            report.conflicts = self.detect_sync_conflicts(user_id, events)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Assignment sync for %s failed", user_id)
            report.success = False
            report.errors.append(error_message)
            self.state_store.record_audit_event(
                calendar_id=configuration.provider,
                item_id="assignment_sync",
                action="run_error",
                run_id=run_id,
                details={"user_id": user_id, "error": error_message, "traceback": traceback.format_exc(limit=5)},
            )

        if not report.success:
            status = "error"
        else:
            status = "partial" if report.errors else "success"
        result = SyncResult(
            status=status,
            trigger=f"assignments:{trigger}",
            direction=direction,
            provider=configuration.provider,
            events_processed=processed,
            events_created=report.created_events + report.created_assignments,
            events_updated=report.updated_events + report.updated_assignments,
            conflicts_detected=sum(1 for c in report.conflicts if c.resolution_status == "pending"),
            conflicts_resolved=sum(1 for c in report.conflicts if c.resolution_status != "pending"),
            errors=list(report.errors),
            duration_ms=int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000),
            message=(
                f"{report.created_events} events created, {report.updated_events} updated; "
                f"{report.created_assignments} assignments created, {report.updated_assignments} updated."
            ),
        )
        self.state_store.finish_sync_run(run_id=run_id, result=result)
        logger.info("Assignment sync for %s finished: %s (%s)", user_id, status, result.message)
        return report

    # conflicts

    def detect_sync_conflicts(
        self,
        user_id: str,
        events: list[NormalizedCalendarEvent] | None = None,
    ) -> list[SyncConflict]:
        """Compare every mapped assignment with its calendar event.

        Pairs where only one side moved since the last sync are left to the
        regular passes; everything else becomes a conflict and the user's
        policy is applied to it.
        """
        configuration = self._active_configuration(user_id)
        if configuration is None:
            return []
        listed = {event.id: event for event in events or []}
        detected: list[SyncConflict] = []
        for mapping in self.state_store.list_mappings(local_kind="assignment", provider=configuration.provider):
            assignment = self.local_store.get_assignment(mapping.local_id)
            if assignment is not None and assignment.user_id and assignment.user_id != user_id:
                continue
            try:
                conflict = self._check_pair(configuration, user_id, mapping, assignment, listed)
                if conflict is None:
                    continue
                detected.append(self._apply_policy(configuration, conflict))
            except ITEM_ERRORS as exc:
                logger.warning("Conflict check for assignment %s failed: %s", mapping.local_id, exc)
        return detected

    def _views(
        self,
        mapping: CalendarEventMapping,
        assignment: Assignment,
        remote: NormalizedCalendarEvent,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        if mapping.metadata.get("origin") == "assignment":
            expected = build_assignment_event(assignment, provider=mapping.provider, calendar_id=mapping.calendar_id)
            local_view = _event_view(expected, assignment.updated_at)
            external_view = _event_view(remote, remote.last_modified)
        else:
            due = serialize_datetime(assignment.due_date)
            local_view = {
                "title": assignment.title,
                "description": assignment.description,
                "start": due,
                "end": due,
                "location": "",
                "updated_at": serialize_datetime(assignment.updated_at),
            }
            start = serialize_datetime(remote.start)
            external_view = {
                "title": self.detector.detect(remote).suggested_data.get("title") or clean_title(remote.title),
                "description": remote.description,
                "start": start,
                "end": start,
                "location": "",
                "updated_at": serialize_datetime(remote.last_modified),
            }
        local_view["assignment"] = assignment.to_dict()
        return local_view, external_view

    def _check_pair(
        self,
        configuration: SyncConfiguration,
        user_id: str,
        mapping: CalendarEventMapping,
        assignment: Assignment | None,
        listed: dict[str, NormalizedCalendarEvent],
    ) -> SyncConflict | None:
        remote = listed.get(mapping.external_event_id)
        if remote is None:
            remote = self.fetch_event(mapping)
        local_gone = assignment is None or assignment.deleted
        remote_gone = remote is None or remote.cancelled

        if local_gone and remote_gone:
            self.mapping.unlink(mapping)
            return None
        if remote_gone:
            return self._record(
                configuration,
                user_id,
                "deletion_conflict",
                mapping,
                local_view={"assignment": assignment.to_dict()},
                external_view={},
                remote=remote,
                description="Calendar event was deleted but the assignment still exists",
                deleted_side="external",
            )

        remote_hash = remote_fingerprint(remote)
        if local_gone:
            if remote_hash == mapping.remote_hash:
                # Deleted here and untouched in the calendar: finish the deletion.
                self._provider(mapping.provider).delete_event(
                    mapping.calendar_id or configuration.calendar_id, mapping.external_event_id
                )
                self.mapping.unlink(mapping)
                return None
            return self._record(
                configuration,
                user_id,
                "deletion_conflict",
                mapping,
                local_view={"assignment": assignment.to_dict() if assignment else {}},
                external_view=_event_view(remote, remote.last_modified),
                remote=remote,
                description="Assignment was deleted but its calendar event changed",
                deleted_side="local",
            )

        if remote_hash == mapping.remote_hash:
            return None
        if (
            configuration.sync_direction != "assignment_to_calendar"
            and assignment_fingerprint(assignment) == mapping.local_hash
            and not self._has_pending_conflict(assignment.id, mapping.provider)
        ):
            # Only the calendar side moved.
            self.pull_event_into_assignment(mapping, remote, assignment)
            return None
        local_view, external_view = self._views(mapping, assignment, remote)
        analysis = analyze_snapshots(local_view, external_view, mapping.provider)
        if not analysis.has_conflict:
            self.mapping.touch(mapping, local_hash=assignment_fingerprint(assignment), remote_hash=remote_hash)
            return None
        return self._record(
            configuration,
            user_id,
            analysis.conflict_type,
            mapping,
            local_view=local_view,
            external_view=external_view,
            remote=remote,
            description=analysis.description,
            severity=analysis.severity,
            affected_fields=analysis.affected_fields,
        )

    def _record(
        self,
        configuration: SyncConfiguration,
        user_id: str,
        conflict_type: str,
        mapping: CalendarEventMapping,
        *,
        local_view: dict[str, Any],
        external_view: dict[str, Any],
        remote: NormalizedCalendarEvent | None,
        description: str,
        severity: str = "high",
        affected_fields: list[str] | None = None,
        deleted_side: str = "",
    ) -> SyncConflict:
        external_snapshot = {**external_view, "remote": remote.to_dict() if remote is not None else {}}
        if deleted_side:
            external_snapshot["deleted_side"] = deleted_side
        conflict = self.conflicts.create_conflict(
            SyncConflict(
                conflict_type=conflict_type,
                local_kind="assignment",
                local_id=mapping.local_id,
                external_event_id=mapping.external_event_id,
                provider=mapping.provider,
                user_id=user_id,
                mapping_id=mapping.id,
                description=description,
                severity=severity,
                affected_fields=list(affected_fields or []),
                local_snapshot=local_view,
                external_snapshot=external_snapshot,
            )
        )
        self.mapping.touch(mapping, sync_status="conflict")
        self._audit(
            mapping.provider,
            mapping.calendar_id or configuration.calendar_id,
            mapping.local_id,
            "conflict_detected",
            {"conflict_id": conflict.id, "conflict_type": conflict_type},
        )
        return conflict

    def _apply_policy(self, configuration: SyncConfiguration, conflict: SyncConflict) -> SyncConflict:
        policy = configuration.conflict_resolution
        try:
            outcome = self.conflicts.resolve_automatically(conflict, policy, apply=self.apply_resolution)
        except ITEM_ERRORS as exc:
            logger.warning("Automatic resolution of conflict %s with %s failed: %s", conflict.id, policy, exc)
            return conflict
        return conflict if outcome is None else outcome.conflict

    def resolve_conflict(
        self,
        conflict_id: int,
        choice: str,
        merged: dict[str, Any] | None = None,
        resolved_by: str = "user",
    ) -> ResolutionOutcome:
        return self.conflicts.resolve_manually(
            conflict_id, choice, merged=merged, resolved_by=resolved_by, apply=self.apply_resolution
        )

    def apply_resolution(self, outcome: ResolutionOutcome) -> None:
        conflict = outcome.conflict
        if conflict.local_kind != "assignment":
            raise ValidationError([f"conflict {conflict.id} does not belong to an assignment"])
        mapping = self.state_store.get_mapping(conflict.mapping_id) if conflict.mapping_id else None
        if mapping is None:
            mapping = self.mapping.get_by_local("assignment", conflict.local_id, conflict.provider)
        stored = self.configuration(conflict.user_id) or SyncConfiguration()
        calendar_id = mapping.calendar_id if mapping and mapping.calendar_id else stored.calendar_id
        configuration = replace(stored, provider=conflict.provider, calendar_id=calendar_id)
        assignment = self.local_store.get_assignment(conflict.local_id)
        remote_data = conflict.external_snapshot.get("remote") or {}
        remote = NormalizedCalendarEvent.from_dict(remote_data) if remote_data else None
        choice = outcome.choice

        if conflict.conflict_type == "deletion_conflict":
            self._apply_deletion(configuration, conflict, choice, assignment, remote, mapping)
        elif choice == "ignore":
            if mapping is not None and assignment is not None:
                self.mapping.touch(
                    mapping,
                    local_hash=assignment_fingerprint(assignment),
                    remote_hash=remote_fingerprint(remote) if remote is not None else None,
                )
        elif choice == "keep_external":
            if mapping is None or remote is None:
                raise ValidationError([f"conflict {conflict.id} has no calendar side to keep"])
            self.pull_event_into_assignment(mapping, remote, assignment)
        else:
            if assignment is None:
                raise ValidationError([f"assignment {conflict.local_id} no longer exists"])
            if choice == "merge":
                assignment = self._merge_assignment(assignment, outcome.merged, mapping)
                self.local_store.save_assignment(assignment)
            self._push_assignment(configuration, assignment, force_update=True)
        self._audit(
            conflict.provider,
            calendar_id,
            conflict.local_id,
            "conflict_applied",
            {"conflict_id": conflict.id, "choice": choice},
        )

    @staticmethod
    def _merge_assignment(
        assignment: Assignment,
        merged: dict[str, Any],
        mapping: CalendarEventMapping | None,
    ) -> Assignment:
        from_event = mapping is not None and mapping.metadata.get("origin") == "assignment"
        updates: dict[str, Any] = {}
        if "title" in merged:
            title = str(merged["title"] or "")
            updates["title"] = strip_event_title(title) if from_event else title
        if "description" in merged:
            description = str(merged["description"] or "")
            updates["description"] = strip_event_description(description) if from_event else description
        due_key = "end" if from_event else "start"
        if merged.get(due_key):
            updates["due_date"] = parse_iso_datetime(merged[due_key])
        return assignment.with_updates(**updates, updated_at=utc_now())

    def _apply_deletion(
        self,
        configuration: SyncConfiguration,
        conflict: SyncConflict,
        choice: str,
        assignment: Assignment | None,
        remote: NormalizedCalendarEvent | None,
        mapping: CalendarEventMapping | None,
    ) -> None:
        deleted_side = str(conflict.external_snapshot.get("deleted_side") or "external")
        if choice == "ignore":
            # Stop tracking the pair; both sides stay as they are.
            if mapping is not None:
                self.mapping.unlink(mapping)
            if assignment is not None and assignment.external_calendar_event_id == conflict.external_event_id:
                self.local_store.save_assignment(assignment.with_updates(external_calendar_event_id=""))
            return
        if deleted_side == "external":
            if choice == "keep_external":
                if assignment is not None:
                    self.local_store.save_assignment(
                        assignment.with_updates(deleted=True, external_calendar_event_id="", updated_at=utc_now())
                    )
                if mapping is not None:
                    self.mapping.unlink(mapping)
                return
            if assignment is None:
                raise ValidationError([f"assignment {conflict.local_id} no longer exists"])
            if mapping is not None:
                self.mapping.unlink(mapping)
            self._push_assignment(configuration, assignment, force_create=True)
            return
        if choice == "keep_local":
            if mapping is not None:
                self._provider(mapping.provider).delete_event(calendar_id_for(mapping, configuration), mapping.external_event_id)
                self.mapping.unlink(mapping)
            return
        if mapping is None or remote is None or assignment is None:
            if mapping is not None:
                self.mapping.unlink(mapping)
            return
        self.pull_event_into_assignment(mapping, remote, assignment)

    # event hooks

    def handle_assignment_update(self, assignment: Assignment, user_id: str) -> ItemSyncResult | None:
        configuration = self._active_configuration(user_id)
        if configuration is None or not configuration.auto_create_events:
            return None
        if assignment.assignment_type not in configuration.sync_categories:
            return None
        return self.sync_assignment_to_calendar(assignment, user_id)

    def handle_calendar_event_update(self, event: NormalizedCalendarEvent, user_id: str) -> ItemSyncResult | None:
        configuration = self._active_configuration(user_id)
        if configuration is None or not configuration.auto_update_assignments:
            return None
        return self.sync_calendar_event_to_assignment(event, user_id)

    def handle_assignment_deletion(self, assignment_id: str, user_id: str) -> bool:
        configuration = self._active_configuration(user_id)
        if configuration is None:
            return False
        removed = False
        for mapping in self.state_store.list_mappings(local_kind="assignment"):
            if mapping.local_id != assignment_id:
                continue
            self._provider(mapping.provider).delete_event(
                calendar_id_for(mapping, configuration), mapping.external_event_id
            )
            self.mapping.unlink(mapping)
            self._audit(mapping.provider, mapping.calendar_id, assignment_id, "assignment_event_delete", {"external_event_id": mapping.external_event_id})
            removed = True
        assignment = self.local_store.get_assignment(assignment_id)
        if assignment is not None and assignment.deleted:
            # Soft-deleted rows are only kept until the calendar side is gone.
            self.local_store.delete_assignment(assignment_id)
        return removed

