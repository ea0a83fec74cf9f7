from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from curious_sync.conflicts import ResolutionOutcome, analyze_snapshots, newest_side
from curious_sync.errors import ValidationError
from curious_sync.event_mapping import local_fingerprint
from curious_sync.models import LocalEvent, SyncConflict, serialize_datetime
from curious_sync.sync_engine import ITEM_ERRORS, CalendarSyncEngine


logger = logging.getLogger(__name__)

LOCAL_KIND = "cross_provider"
SLOT_SECONDS = 15 * 60
SAME_TIME_TOLERANCE = timedelta(minutes=5)
TITLE_SIMILARITY = 0.8
DESCRIPTION_SIMILARITY = 0.6
SEVERITIES = {"duplicate_event": "medium", "time_mismatch": "high", "content_mismatch": "low"}
SIDE_CHOICES = {"google": "keep_local", "microsoft": "keep_external"}
STRATEGY_CHOICES = {
    "default_provider": ("google", "microsoft", "manual"),
    "duplicate_handling": ("merge", "separate", "priority_based"),
    "conflict_strategy": ("auto_resolve", "manual_review", "smart_merge"),
    "time_conflict_resolution": ("google_wins", "microsoft_wins", "newest_wins", "manual"),
    "content_merge_strategy": ("combine_descriptions", "keep_longest", "manual_merge"),
}


def levenshtein_distance(first: str, second: str) -> int:
    if len(first) < len(second):
        first, second = second, first
    previous = list(range(len(second) + 1))
    for i, left in enumerate(first, start=1):
        current = [i]
        for j, right in enumerate(second, start=1):
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + (left != right)))
        previous = current
    return previous[-1]


def string_similarity(first: str, second: str) -> float:
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(first, second)) / longest


def classify_pair(google: LocalEvent, microsoft: LocalEvent) -> str:
    if (
        abs(google.start - microsoft.start) > SAME_TIME_TOLERANCE
        or abs(google.end - microsoft.end) > SAME_TIME_TOLERANCE
    ):
        return "time_mismatch"
    if (
        string_similarity(google.title, microsoft.title) > TITLE_SIMILARITY
        and string_similarity(google.description, microsoft.description) > DESCRIPTION_SIMILARITY
    ):
        return "duplicate_event"
    return "content_mismatch"


def describe_pair(conflict_type: str, title: str) -> str:
    if conflict_type == "duplicate_event":
        return f'Similar events found in both Google Calendar and Outlook Calendar: "{title}"'
    if conflict_type == "time_mismatch":
        return f'Events with the same title have different times across providers: "{title}"'
    return "Events at the same time have different content across providers"


def _slot_key(event: LocalEvent) -> tuple[str, int]:
    return event.title.strip().casefold(), round(event.start.timestamp() / SLOT_SECONDS)


def _snapshot(event: LocalEvent, provider: str) -> dict[str, Any]:
    snapshot = event.to_dict()
    snapshot["provider"] = provider
    # Compare copies by when their calendars last changed them, not by import time.
    snapshot["updated_at"] = serialize_datetime(event.external_last_modified or event.updated_at)
    return snapshot


def _values(snapshot: dict[str, Any]) -> dict[str, Any]:
    return {key: snapshot.get(key) for key in ("title", "description", "start", "end", "location")}


def _newest(google: dict[str, Any], microsoft: dict[str, Any]) -> dict[str, Any]:
    return google if newest_side(google, microsoft) == "local" else microsoft


def combine_descriptions(google: dict[str, Any], microsoft: dict[str, Any]) -> dict[str, Any]:
    merged = _values(_newest(google, microsoft))
    parts: list[str] = []
    for side in (google, microsoft):
        text = str(side.get("description") or "").strip()
        if text and text not in parts:
            parts.append(text)
    merged["description"] = "\n\n".join(parts)
    return merged


def keep_longest_description(google: dict[str, Any], microsoft: dict[str, Any]) -> dict[str, Any]:
    merged = _values(_newest(google, microsoft))
    descriptions = [str(side.get("description") or "") for side in (google, microsoft)]
    merged["description"] = max(descriptions, key=len)
    return merged


@dataclass
class CrossProviderStrategy:
    default_provider: str = "manual"
    duplicate_handling: str = "merge"
    conflict_strategy: str = "smart_merge"
    time_conflict_resolution: str = "newest_wins"
    content_merge_strategy: str = "combine_descriptions"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CrossProviderStrategy":
        data = data or {}
        errors = [
            f"invalid {name}: {data[name]}"
            for name, allowed in STRATEGY_CHOICES.items()
            if name in data and data[name] not in allowed
        ]
        if errors:
            raise ValidationError(errors)
        return cls(**{name: data[name] for name in STRATEGY_CHOICES if name in data})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CrossProviderSyncResult:
    conflicts_detected: int = 0
    auto_resolved: int = 0
    manual_review_required: int = 0
    duplicates_merged: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CrossProviderConflictResolver:
    """Finds one real event that was imported from both Google and Outlook.

    Conflicts go through :class:`ConflictResolutionService` with
    ``local_kind='cross_provider'``. The local side is the Google copy and the
    external side the Microsoft copy, so ``keep_local`` means the Google values
    win and ``keep_external`` the Microsoft ones. Every resolution except
    ``ignore`` writes the chosen values to both copies; ``ignore`` keeps the
    two events apart and stops the pair from being reported as a duplicate.
    """

    def __init__(self, engine: CalendarSyncEngine) -> None:
        self.engine = engine
        self.state_store = engine.state_store
        self.local_store = engine.local_store
        self.conflicts = engine.conflicts

    def _copies(self, user_id: str | None) -> dict[str, list[LocalEvent]]:
        copies: dict[str, list[LocalEvent]] = {"google": [], "microsoft": []}
        for mapping in self.state_store.list_mappings(local_kind="event"):
            if mapping.provider not in copies:
                continue
            local = self.local_store.get_event(mapping.local_id)
            if local is None or local.sync_status == "deleted" or local.start is None or local.end is None:
                continue
            if user_id is not None and local.user_id != user_id:
                continue
            copies[mapping.provider].append(local)
        return copies

    def _settled_pairs(self) -> set[tuple[str, str]]:
        return {
            (conflict.local_id, str(conflict.external_snapshot.get("id") or ""))
            for conflict in self.state_store.list_conflicts(limit=100000)
            if conflict.local_kind == LOCAL_KIND and conflict.resolution_status != "pending"
        }

    def detect_conflicts(self, user_id: str | None = None) -> list[SyncConflict]:
        groups: dict[tuple[str, int], dict[str, list[LocalEvent]]] = {}
        for provider_name, events in self._copies(user_id).items():
            for event in events:
                groups.setdefault(_slot_key(event), {}).setdefault(provider_name, []).append(event)

        settled = self._settled_pairs()
        detected: list[SyncConflict] = []
        for key in sorted(groups):
            group = groups[key]
            if not group.get("google") or not group.get("microsoft"):
                continue
            google, microsoft = group["google"][0], group["microsoft"][0]
            if google.id == microsoft.id:
                continue
            conflict = self._check_pair(google, microsoft, settled)
            if conflict is not None:
                detected.append(conflict)
        if detected:
            logger.info("Detected %d cross-provider conflicts", len(detected))
        return detected

    def _check_pair(
        self,
        google: LocalEvent,
        microsoft: LocalEvent,
        settled: set[tuple[str, str]],
    ) -> SyncConflict | None:
        google_view = _snapshot(google, "google")
        microsoft_view = _snapshot(microsoft, "microsoft")
        analysis = analyze_snapshots(google_view, microsoft_view)
        conflict_type = classify_pair(google, microsoft)
        if (google.id, microsoft.id) in settled:
            if not analysis.has_conflict:
                return None
            if conflict_type == "duplicate_event":
                # A settled pair only comes back once its copies drift apart.
                conflict_type = "time_mismatch" if "time" in analysis.affected_fields else "content_mismatch"
        return self.conflicts.create_conflict(
            SyncConflict(
                conflict_type=conflict_type,
                local_kind=LOCAL_KIND,
                local_id=google.id,
                external_event_id=microsoft.external_event_id,
                provider="microsoft",
                user_id=google.user_id,
                description=describe_pair(conflict_type, google.title),
                severity=SEVERITIES[conflict_type],
                affected_fields=analysis.affected_fields,
                local_snapshot=google_view,
                external_snapshot=microsoft_view,
            )
        )

    def pending_conflicts(self, user_id: str | None = None) -> list[SyncConflict]:
        return [c for c in self.conflicts.pending_conflicts(user_id=user_id) if c.local_kind == LOCAL_KIND]

    def choice_for_strategy(
        self,
        conflict: SyncConflict,
        strategy: CrossProviderStrategy,
    ) -> tuple[str | None, dict[str, Any], str]:
        """Pick ``(choice, merged, rule)`` for a conflict; ``None`` leaves it to the user."""
        google = conflict.local_snapshot
        microsoft = conflict.external_snapshot
        if conflict.conflict_type == "duplicate_event":
            if strategy.duplicate_handling == "separate":
                return "ignore", {}, "separate"
            if strategy.duplicate_handling == "priority_based":
                return SIDE_CHOICES.get(strategy.default_provider), {}, f"{strategy.default_provider}_priority"
            return "merge", combine_descriptions(google, microsoft), "merge"
        if conflict.conflict_type == "time_mismatch":
            rule = strategy.time_conflict_resolution
            if rule == "newest_wins":
                return self.conflicts.choice_for_policy(conflict, "newest_wins"), {}, rule
            return SIDE_CHOICES.get(rule.removesuffix("_wins")), {}, rule
        rule = strategy.content_merge_strategy
        if rule == "combine_descriptions":
            return "merge", combine_descriptions(google, microsoft), rule
        if rule == "keep_longest":
            return "merge", keep_longest_description(google, microsoft), rule
        return None, {}, rule

    def resolve_conflicts(
        self,
        user_id: str | None = None,
        strategy: CrossProviderStrategy | None = None,
    ) -> CrossProviderSyncResult:
        strategy = strategy or self.recommended_strategy()
        detected = self.detect_conflicts(user_id)
        result = CrossProviderSyncResult(conflicts_detected=len(detected))
        for conflict in detected:
            choice, merged, rule = None, {}, "manual_review"
            if strategy.conflict_strategy != "manual_review":
                choice, merged, rule = self.choice_for_strategy(conflict, strategy)
            if choice is None:
                result.manual_review_required += 1
                continue
            try:
                self.conflicts.resolve_manually(
                    int(conflict.id),
                    choice,
                    merged=merged,
                    resolved_by=f"auto:{rule}",
                    apply=self.apply_resolution,
                )
            except ITEM_ERRORS as exc:
                result.errors.append(f"conflict {conflict.id}: {exc}")
                logger.warning("Cross-provider conflict %s could not be resolved: %s", conflict.id, exc)
                continue
            result.auto_resolved += 1
            if conflict.conflict_type == "duplicate_event":
                result.duplicates_merged += 1
        logger.info(
            "Cross-provider pass: %d detected, %d resolved, %d left for review",
            result.conflicts_detected,
            result.auto_resolved,
            result.manual_review_required,
        )
        return result

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
        if conflict.local_kind != LOCAL_KIND:
            raise ValidationError([f"conflict {conflict.id} is not a cross-provider conflict"])
        if outcome.choice == "ignore":
            return
        google = self.local_store.get_event(conflict.local_id)
        microsoft = self.local_store.get_event(str(conflict.external_snapshot.get("id") or ""))
        if google is None or microsoft is None:
            raise ValidationError([f"conflict {conflict.id} refers to an event that no longer exists"])

        if outcome.choice == "keep_local":
            values = _values(google.to_dict())
        elif outcome.choice == "keep_external":
            values = _values(microsoft.to_dict())
        else:
            values = {**_values(google.to_dict()), **outcome.merged}

        # Retrying after a failed push skips the copy that already matches.
        for provider_name, copy in (("google", google), ("microsoft", microsoft)):
            updated = self.engine.merge_into(copy, values)
            if local_fingerprint(updated) == local_fingerprint(copy):
                continue
            self.engine.push_event(provider_name, updated)
        self.state_store.record_audit_event(
            calendar_id=LOCAL_KIND,
            item_id=conflict.local_id,
            action="conflict_applied",
            details={"conflict_id": conflict.id, "choice": outcome.choice, "microsoft_local_id": microsoft.id},
        )

    def statistics(self, user_id: str | None = None) -> dict[str, int]:
        conflicts = [
            c for c in self.state_store.list_conflicts(user_id=user_id, limit=100000) if c.local_kind == LOCAL_KIND
        ]
        return {
            "total": len(conflicts),
            "duplicates": sum(1 for c in conflicts if c.conflict_type == "duplicate_event"),
            "time_mismatches": sum(1 for c in conflicts if c.conflict_type == "time_mismatch"),
            "content_mismatches": sum(1 for c in conflicts if c.conflict_type == "content_mismatch"),
            "pending": sum(1 for c in conflicts if c.resolution_status == "pending"),
            "resolved": sum(1 for c in conflicts if c.resolution_status == "resolved"),
            "ignored": sum(1 for c in conflicts if c.resolution_status == "ignored"),
        }

    @staticmethod
    def recommended_strategy() -> CrossProviderStrategy:
        return CrossProviderStrategy()
