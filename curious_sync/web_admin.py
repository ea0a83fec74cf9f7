from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Literal

import requests
from fastapi import Body, FastAPI, Header, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from curious_sync.assignment_mapping import AssignmentEventMappingService
from curious_sync.assignment_sync import AssignmentCalendarSyncService
from curious_sync.config_manager import ConfigManager
from curious_sync.conflicts import ResolutionOutcome
from curious_sync.cross_provider import LOCAL_KIND as CROSS_PROVIDER_KIND
from curious_sync.cross_provider import CrossProviderConflictResolver, CrossProviderStrategy
from curious_sync.errors import (
    CalendarSyncError,
    ConflictNotFoundError,
    MappingConflictError,
    MappingNotFoundError,
    ProviderError,
    ValidationError,
)
from curious_sync.local_store import LocalStore
from curious_sync.models import PROVIDERS, SyncConfiguration, parse_iso_datetime
from curious_sync.scheduler import SyncScheduler
from curious_sync.state_store import StateStore
from curious_sync.sync_engine import CalendarSyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class WindowSyncRequest(BaseModel):
    provider: Literal["google", "microsoft"]
    direction: Literal["import_only", "export_only", "bidirectional"] = "bidirectional"
    start: str | None = None
    end: str | None = None
    incremental: bool = False


class ConflictResolveRequest(BaseModel):
    choice: Literal["keep_local", "keep_external", "merge", "ignore"]
    merged: dict[str, Any] = Field(default_factory=dict)


class ConflictBatchRequest(BaseModel):
    conflict_ids: list[int] = Field(default_factory=list)
    policy: str | None = None
    priorities: dict[str, str] = Field(default_factory=dict)


class CrossProviderStrategyRequest(BaseModel):
    default_provider: Literal["google", "microsoft", "manual"] = "manual"
    duplicate_handling: Literal["merge", "separate", "priority_based"] = "merge"
    conflict_strategy: Literal["auto_resolve", "manual_review", "smart_merge"] = "smart_merge"
    time_conflict_resolution: Literal["google_wins", "microsoft_wins", "newest_wins", "manual"] = "newest_wins"
    content_merge_strategy: Literal["combine_descriptions", "keep_longest", "manual_merge"] = "combine_descriptions"


class AssignmentSyncConfigRequest(BaseModel):
    provider: Literal["google", "microsoft"] = "google"
    calendar_id: str = "primary"
    enabled: bool = True
    sync_direction: Literal["assignment_to_calendar", "calendar_to_assignment", "bidirectional"] = "bidirectional"
    auto_create_events: bool = True
    auto_update_assignments: bool = True
    conflict_resolution: Literal["manual", "calendar_wins", "assignment_wins", "newest_wins"] = "manual"
    sync_categories: list[str] | None = None


class MappingCreateRequest(BaseModel):
    assignment_id: str = Field(min_length=1)
    external_event_id: str = Field(min_length=1)
    provider: Literal["google", "microsoft"]
    calendar_id: str = ""


class MappingConflictResolveRequest(BaseModel):
    resolution: Literal["merge", "keep_assignment", "keep_calendar", "delete_mapping"]


class MappingBatchRequest(BaseModel):
    operation: Literal["validate", "delete", "resolve_conflicts"]
    assignment_ids: list[str] = Field(default_factory=list)
    resolve_automatically: bool = False


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.local_store = LocalStore(state_path)
        self.sync_engine = CalendarSyncEngine(self.config_manager, self.state_store, self.local_store)
        self.assignment_sync = AssignmentCalendarSyncService(self.sync_engine)
        self.assignment_mappings = AssignmentEventMappingService(self.assignment_sync)
        self.cross_provider = CrossProviderConflictResolver(self.sync_engine)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager, self.assignment_sync)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ConflictNotFoundError, MappingNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MappingConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.errors)
    if isinstance(exc, (ProviderError, requests.RequestException)):
        return HTTPException(status_code=502, detail=f"calendar provider error: {exc}")
    return HTTPException(status_code=400, detail=str(exc))


def _parse_window(start: str | None, end: str | None) -> tuple[datetime, datetime] | None:
    if start is None and end is None:
        return None
    try:
        start_dt = parse_iso_datetime(start)
        end_dt = parse_iso_datetime(end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
    if start_dt is None or end_dt is None:
        raise HTTPException(status_code=400, detail="Invalid start/end datetime")
    if end_dt < start_dt:
        raise HTTPException(status_code=400, detail="end must be later than start")
    return start_dt, end_dt


def create_app() -> FastAPI:
    config_path = os.getenv("CURIOUS_SYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CURIOUS_SYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Curious Sync Admin", version="0.1.0")
    app.state.context = context

    def resolver_for(conflict_kind: str) -> Any:
        context = app.state.context
        if conflict_kind == "assignment":
            return context.assignment_sync
        if conflict_kind == CROSS_PROVIDER_KIND:
            return context.cross_provider
        return context.sync_engine

    def apply_outcome(outcome: ResolutionOutcome) -> None:
        resolver_for(outcome.conflict.local_kind).apply_resolution(outcome)

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        app.state.context.sync_engine.reset_providers()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
            "sync": updated.sync.__dict__,
        }

    # sync passes

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-window")
    def run_window_sync(request: WindowSyncRequest) -> dict[str, Any]:
        window = _parse_window(request.start, request.end)
        try:
            result = app.state.context.sync_engine.sync_calendar(
                request.provider,
                request.direction,
                window=window,
                incremental=request.incremental,
                trigger="manual-window",
            )
        except ValidationError as exc:
            raise _http_error(exc) from exc
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/webhooks/{provider}", response_model=None)
    def calendar_webhook(
        provider: str,
        validation_token: str | None = Query(default=None, alias="validationToken"),
        x_goog_resource_state: str | None = Header(default=None),
        x_goog_channel_token: str | None = Header(default=None),
        notification: dict[str, Any] | None = Body(default=None),
    ) -> Any:
        if provider not in PROVIDERS:
            raise HTTPException(status_code=404, detail=f"unknown calendar provider: {provider}")
        if validation_token is not None:
            # Graph confirms a new subscription by expecting its token echoed back.
            return PlainTextResponse(validation_token)
        provider_config = app.state.context.config_manager.load().provider(provider)
        if provider == "google":
            tokens = [x_goog_channel_token or ""]
        else:
            tokens = [str(item.get("clientState") or "") for item in (notification or {}).get("value", [])] or [""]
        if provider_config.webhook_token and any(token != provider_config.webhook_token for token in tokens):
            raise HTTPException(status_code=403, detail="invalid webhook token")
        if x_goog_resource_state == "sync":
            return {"message": "channel acknowledged"}
        if not provider_config.is_configured():
            return {"message": f"{provider} is not enabled; notification ignored"}
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, provider: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, provider=provider)}

    @app.get("/api/integrations")
    def integrations() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        return {"integrations": [engine.integration_status(name) for name in PROVIDERS]}

    @app.post("/api/integrations/{provider}/test")
    def test_integration(provider: str) -> dict[str, Any]:
        if provider not in PROVIDERS:
            raise HTTPException(status_code=404, detail=f"unknown calendar provider: {provider}")
        ok, message = app.state.context.sync_engine.provider(provider).test_connection()
        return {"ok": ok, "message": message}

    # conflicts

    @app.get("/api/conflicts")
    def list_conflicts(status: str | None = "pending", provider: str | None = None, limit: int = 100) -> dict[str, Any]:
        conflicts = app.state.context.state_store.list_conflicts(status=status or None, provider=provider, limit=limit)
        return {"conflicts": [conflict.to_dict() for conflict in conflicts]}

    @app.get("/api/conflicts/statistics")
    def conflict_statistics() -> dict[str, Any]:
        return app.state.context.sync_engine.conflicts.statistics()

    @app.get("/api/conflicts/{conflict_id}")
    def get_conflict(conflict_id: int) -> dict[str, Any]:
        try:
            conflict = app.state.context.sync_engine.conflicts.get_conflict(conflict_id)
        except ConflictNotFoundError as exc:
            raise _http_error(exc) from exc
        return {"conflict": conflict.to_dict()}

    @app.post("/api/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: int, request: ConflictResolveRequest) -> dict[str, Any]:
        try:
            conflict = app.state.context.sync_engine.conflicts.get_conflict(conflict_id)
            outcome = resolver_for(conflict.local_kind).resolve_conflict(
                conflict_id, request.choice, merged=request.merged or None
            )
        except (CalendarSyncError, requests.RequestException) as exc:
            raise _http_error(exc) from exc
        return {"message": "conflict resolved", "conflict": outcome.conflict.to_dict(), "winner": outcome.winner}

    @app.post("/api/conflicts/batch")
    def batch_resolve(request: ConflictBatchRequest) -> dict[str, Any]:
        if not request.policy and not request.priorities:
            raise HTTPException(status_code=400, detail="a policy or field priorities are required")
        summary = app.state.context.sync_engine.conflicts.batch_resolve(
            request.conflict_ids,
            policy=request.policy,
            priorities=request.priorities or None,
            apply=apply_outcome,
        )
        return {"resolved": summary["resolved"], "failed": summary["failed"], "errors": summary["errors"]}

    # cross-provider duplicates

    @app.get("/api/cross-provider/conflicts")
    def cross_provider_conflicts() -> dict[str, Any]:
        context = app.state.context
        conflicts = context.cross_provider.detect_conflicts(context.sync_engine.user_id)
        return {"conflicts": [conflict.to_dict() for conflict in conflicts]}

    @app.get("/api/cross-provider/strategy")
    def cross_provider_strategy() -> dict[str, Any]:
        return {"strategy": app.state.context.cross_provider.recommended_strategy().to_dict()}

    @app.post("/api/cross-provider/resolve")
    def resolve_cross_provider(request: CrossProviderStrategyRequest) -> dict[str, Any]:
        context = app.state.context
        strategy = CrossProviderStrategy.from_dict(request.model_dump())
        result = context.cross_provider.resolve_conflicts(context.sync_engine.user_id, strategy)
        return {"message": "cross-provider conflicts processed", "result": result.to_dict()}

    @app.get("/api/cross-provider/statistics")
    def cross_provider_statistics() -> dict[str, Any]:
        return app.state.context.cross_provider.statistics()

    # mappings

    @app.get("/api/mappings")
    def list_mappings(local_kind: str | None = None, provider: str | None = None) -> dict[str, Any]:
        mappings = app.state.context.state_store.list_mappings(local_kind=local_kind, provider=provider)
        return {"mappings": [mapping.to_dict() for mapping in mappings]}

    @app.post("/api/mappings")
    def create_mapping(request: MappingCreateRequest) -> dict[str, Any]:
        try:
            mapping = app.state.context.assignment_mappings.create_mapping(
                request.assignment_id,
                request.external_event_id,
                request.provider,
                request.calendar_id,
            )
        except CalendarSyncError as exc:
            raise _http_error(exc) from exc
        return {"message": "mapping created", "mapping": mapping.to_dict()}

    @app.get("/api/mappings/statistics")
    def mapping_statistics() -> dict[str, Any]:
        return app.state.context.assignment_mappings.statistics()

    @app.get("/api/mappings/conflicts")
    def mapping_conflicts() -> dict[str, Any]:
        conflicts = app.state.context.assignment_mappings.detect_mapping_conflicts()
        return {"conflicts": [conflict.to_dict() for conflict in conflicts]}

    @app.post("/api/mappings/conflicts/{conflict_id}/resolve")
    def resolve_mapping_conflict(conflict_id: str, request: MappingConflictResolveRequest) -> dict[str, str]:
        try:
            app.state.context.assignment_mappings.resolve_mapping_conflict(conflict_id, request.resolution)
        except (CalendarSyncError, requests.RequestException) as exc:
            raise _http_error(exc) from exc
        return {"message": "mapping conflict resolved"}

    @app.post("/api/mappings/batch")
    def batch_mappings(request: MappingBatchRequest) -> dict[str, Any]:
        return app.state.context.assignment_mappings.batch_process(
            request.operation,
            request.assignment_ids,
            resolve_automatically=request.resolve_automatically,
        )

    @app.get("/api/mappings/assignments/{assignment_id}/validate")
    def validate_mapping(assignment_id: str, provider: str | None = None) -> dict[str, Any]:
        try:
            result = app.state.context.assignment_mappings.validate_mapping(assignment_id, provider)
        except CalendarSyncError as exc:
            raise _http_error(exc) from exc
        return {"validation": result.to_dict()}

    @app.delete("/api/mappings/assignments/{assignment_id}")
    def delete_mapping(assignment_id: str, provider: str | None = None) -> dict[str, Any]:
        deleted = app.state.context.assignment_mappings.delete_mapping(assignment_id, provider)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"no calendar mapping for assignment {assignment_id}")
        return {"message": "mapping deleted"}

    # assignment sync

    @app.get("/api/assignments/sync-config")
    def get_assignment_sync_config() -> dict[str, Any]:
        context = app.state.context
        configuration = context.assignment_sync.configuration(context.sync_engine.user_id)
        return {"configuration": configuration.to_dict() if configuration else None}

    @app.put("/api/assignments/sync-config")
    def put_assignment_sync_config(request: AssignmentSyncConfigRequest) -> dict[str, Any]:
        context = app.state.context
        payload: dict[str, Any] = {
            "provider": request.provider,
            "calendar_id": request.calendar_id,
            "enabled": request.enabled,
            "sync_direction": request.sync_direction,
            "auto_create_events": request.auto_create_events,
            "auto_update_assignments": request.auto_update_assignments,
            "conflict_resolution": request.conflict_resolution,
        }
        if request.sync_categories is not None:
            payload["sync_categories"] = request.sync_categories
        configuration = context.assignment_sync.configure(
            context.sync_engine.user_id,
            SyncConfiguration.from_dict(payload),
        )
        return {"message": "assignment sync configured", "configuration": configuration.to_dict()}

    @app.post("/api/assignments/sync")
    def run_assignment_sync() -> dict[str, Any]:
        context = app.state.context
        report = context.assignment_sync.perform_full_sync(context.sync_engine.user_id)
        return {"message": "assignment sync completed", "report": report.to_dict()}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app


app = create_app()
