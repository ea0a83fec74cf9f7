from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable

import requests

from curious_sync.config_manager import ConfigManager
from curious_sync.conflicts import ConflictResolutionService, ResolutionOutcome
from curious_sync.errors import (
    CalendarSyncError,
    MappingNotFoundError,
    ProviderError,
    SyncTokenExpiredError,
    ValidationError,
)
from curious_sync.event_mapping import (
    EventMappingService,
    local_fingerprint,
    remote_fingerprint,
    validate_local_event,
    validate_remote_event,
)
from curious_sync.local_store import LocalStore
from curious_sync.models import (
    PROVIDERS,
    SYNC_DIRECTIONS,
    AppConfig,
    CalendarEventMapping,
    LocalEvent,
    NormalizedCalendarEvent,
    SyncConflict,
    SyncResult,
    parse_iso_datetime,
    serialize_datetime,
    sync_window,
    utc_now,
)
from curious_sync.provider import CalendarProvider, OAuthToken, build_provider
from curious_sync.state_store import StateStore


logger = logging.getLogger(__name__)

ASSIGNMENT_MARKER_PREFIX = "assignment:"
EXPORT_STATUSES = {"local", "conflict", "deleted", "error"}
ITEM_ERRORS = (CalendarSyncError, requests.RequestException, ValueError)

ProviderFactory = Callable[..., CalendarProvider]


def _sync_token_key(provider: str, calendar_id: str) -> str:
    return f"sync_token:{provider}:{calendar_id}"


def _status_key(provider: str, name: str) -> str:
    return f"integration:{provider}:{name}"


@dataclass
class _PassContext:
    provider_name: str
    provider: CalendarProvider
    calendar_id: str
    config: AppConfig
    result: SyncResult
    trigger: str
    run_id: int | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    pending_local_ids: set[str] = field(default_factory=set)
    pending_remote_ids: set[str] = field(default_factory=set)


class CalendarSyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        local_store: LocalStore,
        *,
        provider_factory: ProviderFactory = build_provider,
        user_id: str = "default",
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.local_store = local_store
        self.provider_factory = provider_factory
        self.user_id = user_id
        self.mapping = EventMappingService(state_store)
        self.conflicts = ConflictResolutionService(state_store)
        self._providers: dict[str, CalendarProvider] = {}
        self._pass_lock = threading.Lock()

    # providers

    def _persist_token(self, provider_name: str, token: OAuthToken) -> None:
        self.config_manager.store_tokens(
            provider_name,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=serialize_datetime(token.expires_at) or "",
        )

    def provider(self, name: str, config: AppConfig | None = None) -> CalendarProvider:
        if name not in self._providers:
            config = config or self.config_manager.load()
            self._providers[name] = self.provider_factory(
                name,
                config.provider(name),
                on_token_refresh=self._persist_token,
            )
        return self._providers[name]

    def reset_providers(self) -> None:
        # Providers hold config and tokens; rebuild them after a config change.
        self._providers.clear()

    def integration_status(self, provider_name: str) -> dict[str, Any]:
        calendar_id = self.config_manager.load().provider(provider_name).calendar_id
        return {
            "provider": provider_name,
            "status": self.state_store.get_meta(_status_key(provider_name, "status")) or "idle",
            "last_error": self.state_store.get_meta(_status_key(provider_name, "last_error")) or "",
            "last_success_at": self.state_store.get_meta(_status_key(provider_name, "last_success_at")),
            "has_sync_token": bool(
                self.state_store.get_meta(_sync_token_key(provider_name, calendar_id))
            ),
        }

    # passes

    def run_once(self, trigger: str = "manual") -> list[SyncResult]:
        config = self.config_manager.load()
        results: list[SyncResult] = []
        for name in PROVIDERS:
            provider_config = config.provider(name)
            if not provider_config.is_configured():
                continue
            results.append(
                self.sync_calendar(
                    name,
                    provider_config.sync_direction,
                    incremental=trigger == "scheduled",
                    trigger=trigger,
                )
            )
        if not results:
            message = "No calendar provider is enabled with credentials. Sync skipped."
            skipped = SyncResult(status="skipped", trigger=trigger, message=message)
            run_id = self.state_store.start_sync_run(trigger=trigger, provider="none", direction="none")
            self.state_store.finish_sync_run(run_id=run_id, result=skipped)
            logger.info(message)
            results.append(skipped)
        return results

    def sync_calendar(
        self,
        provider_name: str,
        direction: str = "bidirectional",
        window: tuple[datetime, datetime] | None = None,
        incremental: bool = False,
        trigger: str = "manual",
    ) -> SyncResult:
        if provider_name not in PROVIDERS:
            raise ValidationError([f"unknown calendar provider: {provider_name}"])
        if direction not in SYNC_DIRECTIONS:
            raise ValidationError([f"unknown sync direction: {direction}"])
        if window is not None and window[1] < window[0]:
            raise ValidationError(["window end must be later than window start"])

        with self._pass_lock:
            started_at = datetime.now(timezone.utc)
            result = SyncResult(status="running", trigger=trigger, direction=direction, provider=provider_name)
            config = self.config_manager.load()
            provider_config = config.provider(provider_name)
            if not provider_config.is_configured():
                result.status = "skipped"
                result.message = f"{provider_name} is not enabled or has no credentials. Sync skipped."
                run_id = self.state_store.start_sync_run(
                    trigger=trigger, provider=provider_name, direction=direction
                )
                self.state_store.finish_sync_run(run_id=run_id, result=result)
                return result

            run_id = self.state_store.start_sync_run(trigger=trigger, provider=provider_name, direction=direction)
            self.state_store.set_meta(_status_key(provider_name, "status"), "syncing")
            logger.info("Starting %s sync with %s (trigger=%s)", direction, provider_name, trigger)
            try:
                if window is None:
                    window = sync_window(started_at, config.sync.past_days, config.sync.future_days)
                ctx = _PassContext(
                    provider_name=provider_name,
                    provider=self.provider(provider_name, config),
                    calendar_id=provider_config.calendar_id,
                    config=config,
                    result=result,
                    trigger=trigger,
                    run_id=run_id,
                    window_start=window[0],
                    window_end=window[1],
                )
                if direction in {"import_only", "bidirectional"}:
                    self._import(ctx, incremental=incremental)
                if direction in {"export_only", "bidirectional"}:
                    self._export(ctx)
                if direction == "bidirectional":
                    self._auto_resolve(ctx)
                result.status = "partial" if result.errors else "success"
            except Exception as exc:
                error_message = f"{type(exc).__name__}: {exc}"
                logger.exception("%s sync with %s failed", direction, provider_name)
                result.status = "error"
                result.errors.append(error_message)
                self.state_store.record_audit_event(
                    calendar_id=provider_name,
                    item_id="sync",
                    action="run_error",
                    run_id=run_id,
                    details={
                        "trigger": trigger,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                )

            result.duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            result.message = (
                f"Processed {result.events_processed} events: {result.events_created} created, "
                f"{result.events_updated} updated, {result.events_deleted} deleted, "
                f"{result.conflicts_detected} conflicts."
            )
            self.state_store.finish_sync_run(run_id=run_id, result=result)
            if result.status == "error":
                self.state_store.set_meta(_status_key(provider_name, "status"), "error")
                self.state_store.set_meta(_status_key(provider_name, "last_error"), result.errors[-1])
            else:
                self.state_store.set_meta(_status_key(provider_name, "status"), "success")
                self.state_store.set_meta(_status_key(provider_name, "last_error"), "")
                self.state_store.set_meta(
                    _status_key(provider_name, "last_success_at"), serialize_datetime(utc_now()) or ""
                )
            logger.info("Finished %s sync with %s: %s (%s)", direction, provider_name, result.status, result.message)
            return result

    # import

    def _list_remote(self, ctx: _PassContext, incremental: bool) -> tuple[list[NormalizedCalendarEvent], str | None]:
        token_key = _sync_token_key(ctx.provider_name, ctx.calendar_id)
        sync_token = self.state_store.get_meta(token_key) if incremental else None
        try:
            page = ctx.provider.list_events(ctx.calendar_id, ctx.window_start, ctx.window_end, sync_token or None)
        except SyncTokenExpiredError:
            logger.info("Sync token for %s expired, falling back to a full window sync", ctx.provider_name)
            self.state_store.delete_meta(token_key)
            page = ctx.provider.list_events(ctx.calendar_id, ctx.window_start, ctx.window_end)
        return page.events, page.next_sync_token

    def _import(self, ctx: _PassContext, *, incremental: bool) -> None:
        events, next_token = self._list_remote(ctx, incremental)
        self._load_pending(ctx)
        skipped = self._detect_duplicates(ctx, events)
        errors_before = len(ctx.result.errors)
        for remote in events:
            if remote.local_id.startswith(ASSIGNMENT_MARKER_PREFIX):
                continue
            ctx.result.events_processed += 1
            if remote.id in skipped:
                continue
            try:
                self._import_one(ctx, remote)
            except ITEM_ERRORS as exc:
                ctx.result.errors.append(f"import {ctx.provider_name}:{remote.id}: {exc}")
                logger.warning("Import of %s event %s failed: %s", ctx.provider_name, remote.id, exc)
        if next_token and len(ctx.result.errors) == errors_before:
            self.state_store.set_meta(_sync_token_key(ctx.provider_name, ctx.calendar_id), next_token)

    def _detect_duplicates(self, ctx: _PassContext, events: list[NormalizedCalendarEvent]) -> set[str]:
        by_marker: dict[str, list[NormalizedCalendarEvent]] = {}
        for remote in events:
            if remote.cancelled or not remote.local_id or remote.local_id.startswith(ASSIGNMENT_MARKER_PREFIX):
                continue
            by_marker.setdefault(remote.local_id, []).append(remote)

        skipped: set[str] = set()
        for marker, group in by_marker.items():
            existing = self.mapping.get_by_local("event", marker, ctx.provider_name)
            if existing is not None:
                keep_id = existing.external_event_id
            elif len(group) > 1:
                keep_id = group[0].id
            else:
                continue
            for remote in group:
                if remote.id == keep_id or self.mapping.get_by_external(ctx.provider_name, remote.id, "event") is not None:
                    continue
                skipped.add(remote.id)
                self._record_conflict(
                    ctx,
                    "duplicate_mapping",
                    local=self.local_store.get_event(marker),
                    remote=remote,
                    local_id=marker,
                    mapping=existing,
                    severity="high",
                    affected_fields=[],
                    description=f"Remote event {remote.id} duplicates the event already kept as {keep_id}",
                    mark_local=False,
                )
        return skipped

    def _find_creation_candidate(self, ctx: _PassContext, remote: NormalizedCalendarEvent) -> LocalEvent | None:
        title = remote.title.strip().casefold()
        if not title or remote.start is None:
            return None
        for local in self.local_store.list_events(user_id=self.user_id, statuses={"local", "error"}):
            if local.external_event_id or local.start is None:
                continue
            if local.title.strip().casefold() != title or local.start != remote.start:
                continue
            if self.mapping.get_by_local("event", local.id, ctx.provider_name) is None:
                return local
        return None

    def _to_local(self, ctx: _PassContext, remote: NormalizedCalendarEvent, existing: LocalEvent | None) -> LocalEvent:
        return self.mapping.to_local(
            remote,
            user_id=self.user_id,
            user_timezone=ctx.config.sync.user_timezone,
            default_reminder=ctx.config.sync.default_reminder_minutes,
            preserve_timezone=ctx.config.sync.preserve_timezone,
            existing=existing,
        )

    def _import_one(self, ctx: _PassContext, remote: NormalizedCalendarEvent) -> None:
        mapping = self.mapping.get_by_external(ctx.provider_name, remote.id, "event")

        if remote.cancelled:
            self._import_deletion(ctx, remote, mapping)
            return

        errors = validate_remote_event(remote)
        if errors:
            raise ValidationError(errors)
        remote_hash = remote_fingerprint(remote)

        if mapping is None:
            self._import_new(ctx, remote, remote_hash)
            return

        local = self.local_store.get_event(mapping.local_id)
        remote_changed = remote_hash != mapping.remote_hash
        if not remote_changed:
            return
        if local is None or local.sync_status == "deleted":
            self._record_conflict(
                ctx,
                "deletion_conflict",
                local=local,
                remote=remote,
                local_id=mapping.local_id,
                mapping=mapping,
                severity="high",
                affected_fields=[],
                description="Event was deleted locally but changed in the remote calendar",
                deleted_side="local",
                mark_local=False,
            )
            return

        local_changed = local_fingerprint(local) != mapping.local_hash
        if not local_changed:
            updated = self._to_local(ctx, remote, local)
            self.local_store.save_event(updated)
            self.mapping.touch(mapping, local_hash=local_fingerprint(updated), remote_hash=remote_hash)
            ctx.result.events_updated += 1
            self._audit(ctx, updated.id, "import_update", {"external_event_id": remote.id, "title": updated.title})
            return

        external_view = self._to_local(ctx, remote, local).with_updates(
            updated_at=remote.last_modified or utc_now()
        )
        analysis = self.conflicts.analyze(local, external_view, ctx.provider_name)
        if not analysis.has_conflict:
            converged = local.with_updates(sync_status="synced", last_synced_at=utc_now())
            self.local_store.save_event(converged)
            self.mapping.touch(mapping, local_hash=local_fingerprint(converged), remote_hash=remote_hash)
            return
        self._record_conflict(
            ctx,
            analysis.conflict_type,
            local=local,
            remote=remote,
            local_id=local.id,
            mapping=mapping,
            severity=analysis.severity,
            affected_fields=analysis.affected_fields,
            description=analysis.description,
        )

    def _import_deletion(
        self,
        ctx: _PassContext,
        remote: NormalizedCalendarEvent,
        mapping: CalendarEventMapping | None,
    ) -> None:
        if mapping is None:
            return
        local = self.local_store.get_event(mapping.local_id)
        if (
            local is not None
            and local.sync_status != "deleted"
            and mapping.local_hash
            and local_fingerprint(local) != mapping.local_hash
        ):
            self._record_conflict(
                ctx,
                "deletion_conflict",
                local=local,
                remote=remote,
                local_id=local.id,
                mapping=mapping,
                severity="high",
                affected_fields=[],
                description="Event was deleted in the remote calendar but changed locally",
                deleted_side="external",
            )
            return
        if local is not None:
            self.local_store.delete_event(local.id)
            ctx.result.events_deleted += 1
        self.mapping.unlink(mapping)
        self._audit(ctx, mapping.local_id, "import_delete", {"external_event_id": remote.id})

    def _import_new(self, ctx: _PassContext, remote: NormalizedCalendarEvent, remote_hash: str) -> None:
        if remote.id in ctx.pending_remote_ids:
            return
        if remote.local_id:
            marked = self.local_store.get_event(remote.local_id)
            if marked is not None:
                # A previous export created this event but never stored the mapping.
                adopted = marked.with_updates(
                    external_event_id=remote.id,
                    external_calendar_id=ctx.calendar_id,
                    sync_status="synced",
                    last_synced_at=utc_now(),
                    external_last_modified=remote.last_modified,
                )
                self.local_store.save_event(adopted)
                self.mapping.link(
                    local_kind="event",
                    local_id=adopted.id,
                    provider=ctx.provider_name,
                    external_event_id=remote.id,
                    calendar_id=ctx.calendar_id,
                    local_hash=local_fingerprint(adopted),
                    remote_hash=remote_hash,
                )
                self._audit(ctx, adopted.id, "adopt_remote", {"external_event_id": remote.id})
                return

        candidate = self._find_creation_candidate(ctx, remote)
        if candidate is not None:
            self._record_conflict(
                ctx,
                "creation_conflict",
                local=candidate,
                remote=remote,
                local_id=candidate.id,
                mapping=None,
                severity="medium",
                affected_fields=[],
                description="An unsynced local event with the same title and start already exists",
            )
            return

        existing = self.local_store.get_event(remote.local_id or f"{ctx.provider_name}-{remote.id}")
        local = self._to_local(ctx, remote, existing)
        self.local_store.save_event(local)
        self.mapping.link(
            local_kind="event",
            local_id=local.id,
            provider=ctx.provider_name,
            external_event_id=remote.id,
            calendar_id=ctx.calendar_id,
            local_hash=local_fingerprint(local),
            remote_hash=remote_hash,
        )
        ctx.result.events_created += 1
        self._audit(ctx, local.id, "import_create", {"external_event_id": remote.id, "title": local.title})

    # export

    def _export(self, ctx: _PassContext) -> None:
        self._load_pending(ctx)
        candidates = self.local_store.list_events(
            user_id=self.user_id,
            statuses=EXPORT_STATUSES,
            start=ctx.window_start,
            end=ctx.window_end,
        )
        for local in candidates:
            ctx.result.events_processed += 1
            if local.id in ctx.pending_local_ids:
                continue
            try:
                self._export_one(ctx, local)
            except ITEM_ERRORS as exc:
                ctx.result.errors.append(f"export {local.id}: {exc}")
                logger.warning("Export of local event %s to %s failed: %s", local.id, ctx.provider_name, exc)
                self.local_store.save_event(local.with_updates(sync_status="error"))

    def _load_pending(self, ctx: _PassContext) -> None:
        pending = [c for c in self.conflicts.pending_conflicts(provider=ctx.provider_name) if c.local_kind == "event"]
        ctx.pending_local_ids = {c.local_id for c in pending if c.local_id}
        ctx.pending_remote_ids = {c.external_event_id for c in pending if c.external_event_id}

    def _export_one(self, ctx: _PassContext, local: LocalEvent) -> None:
        mapping = self.mapping.get_by_local("event", local.id, ctx.provider_name)

        if local.sync_status == "deleted":
            if mapping is not None:
                ctx.provider.delete_event(ctx.calendar_id, mapping.external_event_id)
                self.mapping.unlink(mapping)
            self.local_store.delete_event(local.id)
            ctx.result.events_deleted += 1
            self._audit(ctx, local.id, "export_delete", {"external_event_id": mapping.external_event_id if mapping else ""})
            return

        errors = validate_local_event(local)
        if errors:
            raise ValidationError(errors)

        if mapping is None:
            self._export_new(ctx, local)
            return

        if local_fingerprint(local) == mapping.local_hash:
            if local.sync_status != "synced":
                self.local_store.save_event(local.with_updates(sync_status="synced"))
            return

        payload = self.mapping.to_remote(
            local,
            provider=ctx.provider_name,
            calendar_id=ctx.calendar_id,
            preserve_timezone=ctx.config.sync.preserve_timezone,
            external_event_id=mapping.external_event_id,
        )
        try:
            remote = ctx.provider.update_event(ctx.calendar_id, payload)
        except ProviderError as exc:
            if not exc.is_not_found:
                raise
            self._record_conflict(
                ctx,
                "deletion_conflict",
                local=local,
                remote=payload.with_updates(cancelled=True),
                local_id=local.id,
                mapping=mapping,
                severity="high",
                affected_fields=[],
                description="Event was deleted in the remote calendar but changed locally",
                deleted_side="external",
            )
            return
        synced = local.with_updates(
            sync_status="synced",
            last_synced_at=utc_now(),
            external_last_modified=remote.last_modified,
        )
        self.local_store.save_event(synced)
        self.mapping.touch(mapping, local_hash=local_fingerprint(synced), remote_hash=remote_fingerprint(remote))
        ctx.result.events_updated += 1
        self._audit(ctx, local.id, "export_update", {"external_event_id": remote.id, "title": local.title})

    def _export_new(self, ctx: _PassContext, local: LocalEvent) -> None:
        existing = ctx.provider.find_events_by_local_id(ctx.calendar_id, local.id)
        if existing:
            remote = existing[0]
            action = "adopt_remote"
        else:
            payload = self.mapping.to_remote(
                local,
                provider=ctx.provider_name,
                calendar_id=ctx.calendar_id,
                preserve_timezone=ctx.config.sync.preserve_timezone,
            )
            remote = ctx.provider.create_event(ctx.calendar_id, payload)
            ctx.result.events_created += 1
            action = "export_create"
        synced = local.with_updates(
            external_event_id=remote.id,
            external_calendar_id=ctx.calendar_id,
            sync_status="synced",
            last_synced_at=utc_now(),
            external_last_modified=remote.last_modified,
        )
        self.local_store.save_event(synced)
        self.mapping.link(
            local_kind="event",
            local_id=synced.id,
            provider=ctx.provider_name,
            external_event_id=remote.id,
            calendar_id=ctx.calendar_id,
            local_hash=local_fingerprint(synced),
            remote_hash=remote_fingerprint(remote),
        )
        self._audit(ctx, local.id, action, {"external_event_id": remote.id, "title": local.title})

    # conflicts

    def _record_conflict(
        self,
        ctx: _PassContext,
        conflict_type: str,
        *,
        local: LocalEvent | None,
        remote: NormalizedCalendarEvent,
        local_id: str,
        mapping: CalendarEventMapping | None,
        severity: str,
        affected_fields: list[str],
        description: str,
        deleted_side: str = "",
        mark_local: bool = True,
    ) -> SyncConflict:
        external_snapshot: dict[str, Any] = {"remote": remote.to_dict()}
        if not remote.cancelled and remote.start is not None and remote.end is not None:
            view = self._to_local(ctx, remote, local).with_updates(updated_at=remote.last_modified or utc_now())
            external_snapshot.update(view.to_dict())
        if deleted_side:
            external_snapshot["deleted_side"] = deleted_side
        conflict = SyncConflict(
            conflict_type=conflict_type,
            local_kind="event",
            local_id=local_id,
            external_event_id=remote.id,
            provider=ctx.provider_name,
            user_id=self.user_id,
            mapping_id=mapping.id if mapping else None,
            description=description,
            severity=severity,
            affected_fields=list(affected_fields),
            local_snapshot=local.to_dict() if local else {},
            external_snapshot=external_snapshot,
        )
        already_pending = self.state_store.find_pending_conflict(
            conflict_type=conflict_type,
            local_kind="event",
            local_id=local_id,
            external_event_id=remote.id,
            provider=ctx.provider_name,
        )
        saved = self.conflicts.create_conflict(conflict)
        if already_pending is None:
            ctx.result.conflicts_detected += 1
            self._audit(
                ctx,
                local_id,
                "conflict_detected",
                {"conflict_id": saved.id, "conflict_type": conflict_type, "external_event_id": remote.id},
            )
        if mark_local and local is not None and local.sync_status != "conflict":
            self.local_store.save_event(local.with_updates(sync_status="conflict"))
        if mapping is not None:
            self.mapping.touch(mapping, sync_status="conflict")
        return saved

    def _auto_resolve(self, ctx: _PassContext) -> None:
        policy = ctx.config.sync.conflict_policy
        if policy == "manual":
            return
        for conflict in self.conflicts.pending_conflicts(provider=ctx.provider_name):
            if conflict.local_kind != "event":
                continue
            try:
                outcome = self.conflicts.resolve_automatically(conflict, policy, apply=partial(self._apply, ctx))
            except ITEM_ERRORS as exc:
                ctx.result.errors.append(f"resolve conflict {conflict.id}: {exc}")
                logger.warning("Automatic resolution of conflict %s failed: %s", conflict.id, exc)
                continue
            if outcome is not None:
                ctx.result.conflicts_resolved += 1

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

    def apply_resolution(self, outcome: ResolutionOutcome) -> SyncResult:
        """Write a resolution decision back to both sides so the pair converges."""
        conflict = outcome.conflict
        result = SyncResult(status="success", trigger="resolution", provider=conflict.provider)
        if conflict.local_kind != "event":
            return result
        with self._pass_lock:
            self._apply(self._resolution_context(conflict.provider, result), outcome)
        return result

    def push_event(self, provider_name: str, local: LocalEvent) -> LocalEvent:
        """Write one mapped local event to its remote copy outside a pass."""
        mapping = self.mapping.get_by_local("event", local.id, provider_name)
        if mapping is None:
            raise MappingNotFoundError(f"event {local.id} is not mapped to {provider_name}")
        result = SyncResult(status="success", trigger="resolution", provider=provider_name)
        with self._pass_lock:
            return self._push(self._resolution_context(provider_name, result), local, mapping.external_event_id)

    def _resolution_context(self, provider_name: str, result: SyncResult) -> _PassContext:
        config = self.config_manager.load()
        return _PassContext(
            provider_name=provider_name,
            provider=self.provider(provider_name, config),
            calendar_id=config.provider(provider_name).calendar_id,
            config=config,
            result=result,
            trigger="resolution",
        )

    def _apply(self, ctx: _PassContext, outcome: ResolutionOutcome) -> None:
        conflict = outcome.conflict
        choice = outcome.choice
        local = self.local_store.get_event(conflict.local_id)
        remote_data = conflict.external_snapshot.get("remote") or {}
        remote = NormalizedCalendarEvent.from_dict(remote_data) if remote_data else None
        mapping = self.mapping.get_by_local("event", conflict.local_id, ctx.provider_name)
        if mapping is None and conflict.external_event_id:
            mapping = self.mapping.get_by_external(ctx.provider_name, conflict.external_event_id, "event")

        if conflict.conflict_type == "duplicate_mapping":
            self._apply_duplicate(ctx, conflict, choice, mapping)
        elif conflict.conflict_type == "deletion_conflict":
            self._apply_deletion(ctx, conflict, choice, local, remote, mapping)
        elif choice == "ignore":
            self._apply_ignore(ctx, conflict, local, remote, mapping)
        elif choice == "keep_external":
            if remote is None:
                raise ValidationError([f"conflict {conflict.id} has no remote snapshot"])
            self._pull(ctx, remote, local, mapping)
        else:
            if local is None:
                raise ValidationError([f"local event {conflict.local_id} no longer exists"])
            if choice == "merge":
                local = self.merge_into(local, outcome.merged)
            self._push(ctx, local, conflict.external_event_id)
        self._audit(ctx, conflict.local_id, "conflict_applied", {"conflict_id": conflict.id, "choice": choice})

    @staticmethod
    def merge_into(local: LocalEvent, merged: dict[str, Any]) -> LocalEvent:
        updates: dict[str, Any] = {}
        for key in ("title", "description", "location"):
            if key in merged:
                updates[key] = str(merged[key] or "")
        for key in ("start", "end"):
            if merged.get(key):
                updates[key] = parse_iso_datetime(merged[key])
        return local.with_updates(**updates, updated_at=utc_now())

    def _pull(
        self,
        ctx: _PassContext,
        remote: NormalizedCalendarEvent,
        local: LocalEvent | None,
        mapping: CalendarEventMapping | None,
    ) -> LocalEvent:
        updated = self._to_local(ctx, remote, local)
        self.local_store.save_event(updated)
        remote_hash = remote_fingerprint(remote)
        if mapping is not None and mapping.local_id != updated.id:
            self.mapping.unlink(mapping)
            mapping = None
        self.mapping.link(
            local_kind="event",
            local_id=updated.id,
            provider=ctx.provider_name,
            external_event_id=remote.id,
            calendar_id=ctx.calendar_id,
            local_hash=local_fingerprint(updated),
            remote_hash=remote_hash,
        )
        ctx.result.events_updated += 1
        return updated

    def _push(self, ctx: _PassContext, local: LocalEvent, external_event_id: str) -> LocalEvent:
        payload = self.mapping.to_remote(
            local,
            provider=ctx.provider_name,
            calendar_id=ctx.calendar_id,
            preserve_timezone=ctx.config.sync.preserve_timezone,
            external_event_id=external_event_id,
        )
        remote = ctx.provider.update_event(ctx.calendar_id, payload)
        synced = local.with_updates(
            external_event_id=remote.id,
            external_calendar_id=ctx.calendar_id,
            sync_status="synced",
            last_synced_at=utc_now(),
            external_last_modified=remote.last_modified,
        )
        self.local_store.save_event(synced)
        self.mapping.link(
            local_kind="event",
            local_id=synced.id,
            provider=ctx.provider_name,
            external_event_id=remote.id,
            calendar_id=ctx.calendar_id,
            local_hash=local_fingerprint(synced),
            remote_hash=remote_fingerprint(remote),
        )
        ctx.result.events_updated += 1
        return synced

    def _apply_ignore(
        self,
        ctx: _PassContext,
        conflict: SyncConflict,
        local: LocalEvent | None,
        remote: NormalizedCalendarEvent | None,
        mapping: CalendarEventMapping | None,
    ) -> None:
        if conflict.conflict_type == "creation_conflict":
            # Keep both: the remote event becomes its own local event.
            if remote is not None:
                self._pull(ctx, remote.with_updates(local_id=""), None, None)
            if local is not None:
                self.local_store.save_event(local.with_updates(sync_status="local"))
            return
        if local is None:
            return
        accepted = local.with_updates(sync_status="synced")
        self.local_store.save_event(accepted)
        if mapping is not None:
            self.mapping.touch(
                mapping,
                local_hash=local_fingerprint(accepted),
                remote_hash=remote_fingerprint(remote) if remote is not None else None,
            )

    def _apply_deletion(
        self,
        ctx: _PassContext,
        conflict: SyncConflict,
        choice: str,
        local: LocalEvent | None,
        remote: NormalizedCalendarEvent | None,
        mapping: CalendarEventMapping | None,
    ) -> None:
        deleted_side = str(conflict.external_snapshot.get("deleted_side") or "external")
        if choice == "ignore":
            # Let the deletion proceed on a later pass without raising the conflict again.
            if mapping is not None:
                self.mapping.touch(
                    mapping,
                    local_hash=local_fingerprint(local) if local is not None else None,
                    remote_hash=remote_fingerprint(remote) if remote is not None and not remote.cancelled else None,
                )
            return
        if deleted_side == "external":
            if choice == "keep_external":
                if local is not None:
                    self.local_store.delete_event(local.id)
                    ctx.result.events_deleted += 1
                if mapping is not None:
                    self.mapping.unlink(mapping)
                return
            # keep_local or merge: recreate the remote copy.
            if mapping is not None:
                self.mapping.unlink(mapping)
            if local is not None:
                restored = local.with_updates(external_event_id="", sync_status="local")
                self.local_store.save_event(restored)
                self._export_new(ctx, restored)
            return
        # deleted locally, changed remotely
        if choice == "keep_local":
            if mapping is not None:
                ctx.provider.delete_event(ctx.calendar_id, mapping.external_event_id)
                self.mapping.unlink(mapping)
            if local is not None:
                self.local_store.delete_event(local.id)
            ctx.result.events_deleted += 1
            return
        if remote is not None:
            self._pull(ctx, remote, local, mapping)

    def _apply_duplicate(
        self,
        ctx: _PassContext,
        conflict: SyncConflict,
        choice: str,
        mapping: CalendarEventMapping | None,
    ) -> None:
        if choice == "ignore":
            return
        duplicate_id = conflict.external_event_id
        if choice == "keep_external" and mapping is not None and mapping.external_event_id != duplicate_id:
            # Re-point the local event at the duplicate and drop the previously kept copy.
            ctx.provider.delete_event(ctx.calendar_id, mapping.external_event_id)
            mapping.external_event_id = duplicate_id
            self.mapping.touch(mapping, remote_hash="")
            local = self.local_store.get_event(mapping.local_id)
            if local is not None:
                self.local_store.save_event(local.with_updates(external_event_id=duplicate_id))
        else:
            ctx.provider.delete_event(ctx.calendar_id, duplicate_id)
        ctx.result.events_deleted += 1

    def _audit(self, ctx: _PassContext, item_id: str, action: str, details: dict[str, Any]) -> None:
        self.state_store.record_audit_event(
            calendar_id=f"{ctx.provider_name}:{ctx.calendar_id}",
            item_id=item_id,
            action=action,
            run_id=ctx.run_id,
            details={"trigger": ctx.trigger, **details},
        )
