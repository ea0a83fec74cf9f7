from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from curious_sync.errors import MappingConflictError
from curious_sync.models import (
    CalendarEventMapping,
    SyncConfiguration,
    SyncConflict,
    SyncResult,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _conflict_from_row(row: sqlite3.Row) -> SyncConflict:
    return SyncConflict(
        id=int(row["id"]),
        user_id=str(row["user_id"] or ""),
        mapping_id=int(row["mapping_id"]) if row["mapping_id"] is not None else None,
        local_kind=str(row["local_kind"]),
        local_id=str(row["local_id"] or ""),
        external_event_id=str(row["external_event_id"] or ""),
        provider=str(row["provider"] or ""),
        conflict_type=str(row["conflict_type"]),
        description=str(row["description"] or ""),
        severity=str(row["severity"]),
        affected_fields=json.loads(row["affected_fields_json"] or "[]"),
        local_snapshot=json.loads(row["local_snapshot_json"] or "{}"),
        external_snapshot=json.loads(row["external_snapshot_json"] or "{}"),
        resolution_status=str(row["resolution_status"]),
        resolution_choice=str(row["resolution_choice"] or ""),
        resolved_by=str(row["resolved_by"] or ""),
        resolved_at=parse_iso_datetime(row["resolved_at"]),
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            provider TEXT NOT NULL,
            direction TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            events_processed INTEGER NOT NULL,
            events_created INTEGER NOT NULL,
            events_updated INTEGER NOT NULL,
            events_deleted INTEGER NOT NULL,
            conflicts_detected INTEGER NOT NULL,
            conflicts_resolved INTEGER NOT NULL,
            errors_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            local_kind TEXT NOT NULL,
            local_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            external_event_id TEXT NOT NULL,
            calendar_id TEXT,
            sync_direction TEXT,
            sync_status TEXT,
            last_synced_at TEXT NOT NULL,
            local_hash TEXT,
            remote_hash TEXT,
            metadata_json TEXT NOT NULL,
            UNIQUE (local_kind, provider, external_event_id),
            UNIQUE (local_kind, local_id, provider)
        );

        CREATE TABLE IF NOT EXISTS sync_conflicts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            mapping_id INTEGER,
            local_kind TEXT NOT NULL,
            local_id TEXT,
            external_event_id TEXT,
            provider TEXT,
            conflict_type TEXT NOT NULL,
            description TEXT,
            severity TEXT NOT NULL,
            affected_fields_json TEXT NOT NULL,
            local_snapshot_json TEXT NOT NULL,
            external_snapshot_json TEXT NOT NULL,
            resolution_status TEXT NOT NULL,
            resolution_choice TEXT,
            resolved_by TEXT,
            resolved_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_configurations (
            user_id TEXT PRIMARY KEY,
            config_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                legacy = self._has_legacy_mapping_key(conn)
                if legacy:
                    conn.execute("ALTER TABLE event_mappings RENAME TO event_mappings_legacy")
                conn.executescript(schema_sql)
                if legacy:
                    # An event may be tracked as a calendar event and as an assignment at once.
                    conn.executescript(
                        """
                        INSERT INTO event_mappings SELECT * FROM event_mappings_legacy;
                        DROP TABLE event_mappings_legacy;
                        """
                    )

    @staticmethod
    def _has_legacy_mapping_key(conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = 'event_mappings'"
        ).fetchone()
        return row is not None and "UNIQUE (provider, external_event_id)" in str(row["sql"])

    # sync history

    def start_sync_run(self, *, trigger: str, provider: str, direction: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, trigger, provider, direction, status, message, duration_ms,
                        events_processed, events_created, events_updated, events_deleted,
                        conflicts_detected, conflicts_resolved, errors_json
                    )
                    VALUES (?, ?, ?, ?, 'running', ?, 0, 0, 0, 0, 0, 0, 0, '[]')
                    """,
                    (_utc_now(), trigger, provider, direction, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(self, *, run_id: int, result: SyncResult) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, events_processed = ?,
                        events_created = ?, events_updated = ?, events_deleted = ?,
                        conflicts_detected = ?, conflicts_resolved = ?, errors_json = ?
                    WHERE id = ?
                    """,
                    (
                        str(result.status),
                        str(result.message),
                        int(result.duration_ms),
                        int(result.events_processed),
                        int(result.events_created),
                        int(result.events_updated),
                        int(result.events_deleted),
                        int(result.conflicts_detected),
                        int(result.conflicts_resolved),
                        json.dumps(result.errors, ensure_ascii=False),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, provider: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM sync_runs"
        params: list[Any] = []
        if provider:
            query += " WHERE provider = ?"
            params.append(provider)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["errors"] = json.loads(item.pop("errors_json") or "[]")
            output.append(item)
        return output

    # audit trail

    def record_audit_event(
        self,
        *,
        calendar_id: str,
        item_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, calendar_id, item_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), calendar_id, item_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, item_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, item_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # mappings

    def save_mapping(self, mapping: CalendarEventMapping) -> CalendarEventMapping:
        values = (
            mapping.local_kind,
            mapping.local_id,
            mapping.provider,
            mapping.external_event_id,
            mapping.calendar_id,
            mapping.sync_direction,
            mapping.sync_status,
            serialize_datetime(mapping.last_synced_at),
            mapping.local_hash,
            mapping.remote_hash,
            json.dumps(mapping.metadata, ensure_ascii=False),
        )
        with self._lock:
            try:
                with self._connect() as conn:
                    if mapping.id is None:
                        cursor = conn.execute(
                            """
                            INSERT INTO event_mappings(
                                local_kind, local_id, provider, external_event_id, calendar_id,
                                sync_direction, sync_status, last_synced_at, local_hash, remote_hash,
                                metadata_json
                            )
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            values,
                        )
                        mapping.id = int(cursor.lastrowid)
                    else:
                        conn.execute(
                            """
                            UPDATE event_mappings
                            SET local_kind = ?, local_id = ?, provider = ?, external_event_id = ?,
                                calendar_id = ?, sync_direction = ?, sync_status = ?, last_synced_at = ?,
                                local_hash = ?, remote_hash = ?, metadata_json = ?
                            WHERE id = ?
                            """,
                            values + (int(mapping.id),),
                        )
                    conn.commit()
            except sqlite3.IntegrityError as exc:
                raise MappingConflictError(
                    f"mapping {mapping.local_kind}:{mapping.local_id} <-> "
                    f"{mapping.provider}:{mapping.external_event_id} collides with an existing mapping"
                ) from exc
        return mapping

    def _mapping_rows(self, where: str, params: tuple[Any, ...]) -> list[CalendarEventMapping]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(f"SELECT * FROM event_mappings {where} ORDER BY id", params).fetchall()
        return [
            CalendarEventMapping.from_row(dict(row), json.loads(row["metadata_json"] or "{}"))
            for row in rows
        ]

    def get_mapping(self, mapping_id: int) -> CalendarEventMapping | None:
        rows = self._mapping_rows("WHERE id = ?", (int(mapping_id),))
        return rows[0] if rows else None

    def find_mapping_by_local(self, local_kind: str, local_id: str, provider: str) -> CalendarEventMapping | None:
        rows = self._mapping_rows(
            "WHERE local_kind = ? AND local_id = ? AND provider = ?",
            (local_kind, local_id, provider),
        )
        return rows[0] if rows else None

    def find_mapping_by_external(
        self,
        provider: str,
        external_event_id: str,
        local_kind: str | None = None,
    ) -> CalendarEventMapping | None:
        if local_kind is None:
            rows = self._mapping_rows(
                "WHERE provider = ? AND external_event_id = ?",
                (provider, external_event_id),
            )
        else:
            rows = self._mapping_rows(
                "WHERE local_kind = ? AND provider = ? AND external_event_id = ?",
                (local_kind, provider, external_event_id),
            )
        return rows[0] if rows else None

    def list_mappings(self, *, local_kind: str | None = None, provider: str | None = None) -> list[CalendarEventMapping]:
        clauses: list[str] = []
        params: list[Any] = []
        if local_kind:
            clauses.append("local_kind = ?")
            params.append(local_kind)
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        return self._mapping_rows(where, tuple(params))

    def delete_mapping(self, mapping_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM event_mappings WHERE id = ?", (int(mapping_id),))
                conn.commit()
                return cursor.rowcount > 0

    # conflicts

    def save_conflict(self, conflict: SyncConflict) -> SyncConflict:
        values = (
            conflict.user_id,
            conflict.mapping_id,
            conflict.local_kind,
            conflict.local_id,
            conflict.external_event_id,
            conflict.provider,
            conflict.conflict_type,
            conflict.description,
            conflict.severity,
            json.dumps(conflict.affected_fields),
            json.dumps(conflict.local_snapshot, ensure_ascii=False),
            json.dumps(conflict.external_snapshot, ensure_ascii=False),
            conflict.resolution_status,
            conflict.resolution_choice,
            conflict.resolved_by,
            serialize_datetime(conflict.resolved_at),
            serialize_datetime(conflict.created_at),
        )
        with self._lock:
            with self._connect() as conn:
                if conflict.id is None:
                    cursor = conn.execute(
                        """
                        INSERT INTO sync_conflicts(
                            user_id, mapping_id, local_kind, local_id, external_event_id, provider,
                            conflict_type, description, severity, affected_fields_json,
                            local_snapshot_json, external_snapshot_json, resolution_status,
                            resolution_choice, resolved_by, resolved_at, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        values,
                    )
                    conflict.id = int(cursor.lastrowid)
                else:
                    conn.execute(
                        """
                        UPDATE sync_conflicts
                        SET user_id = ?, mapping_id = ?, local_kind = ?, local_id = ?, external_event_id = ?,
                            provider = ?, conflict_type = ?, description = ?, severity = ?,
                            affected_fields_json = ?, local_snapshot_json = ?, external_snapshot_json = ?,
                            resolution_status = ?, resolution_choice = ?, resolved_by = ?, resolved_at = ?,
                            created_at = ?
                        WHERE id = ?
                        """,
                        values + (int(conflict.id),),
                    )
                conn.commit()
        return conflict

    def get_conflict(self, conflict_id: int) -> SyncConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_conflicts WHERE id = ?", (int(conflict_id),)).fetchone()
        return _conflict_from_row(row) if row else None

    def list_conflicts(
        self,
        *,
        user_id: str | None = None,
        status: str | None = None,
        provider: str | None = None,
        limit: int = 500,
    ) -> list[SyncConflict]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status:
            clauses.append("resolution_status = ?")
            params.append(status)
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM sync_conflicts {where} ORDER BY id DESC LIMIT ?",
                    params,
                ).fetchall()
        return [_conflict_from_row(row) for row in rows]

    def find_pending_conflict(
        self,
        *,
        conflict_type: str,
        local_kind: str,
        local_id: str,
        external_event_id: str,
        provider: str,
    ) -> SyncConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM sync_conflicts
                    WHERE resolution_status = 'pending' AND conflict_type = ? AND local_kind = ?
                        AND local_id = ? AND external_event_id = ? AND provider = ?
                    ORDER BY id DESC
                    LIMIT 1
                    """,
                    (conflict_type, local_kind, local_id, external_event_id, provider),
                ).fetchone()
        return _conflict_from_row(row) if row else None

    # per-user assignment sync configuration

    def save_sync_configuration(self, user_id: str, config: SyncConfiguration) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_configurations(user_id, config_json, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        config_json = excluded.config_json,
                        updated_at = excluded.updated_at
                    """,
                    (str(user_id), json.dumps(config.to_dict()), _utc_now()),
                )
                conn.commit()

    def get_sync_configuration(self, user_id: str) -> SyncConfiguration | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT config_json FROM sync_configurations WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        if row is None:
            return None
        return SyncConfiguration.from_dict(json.loads(row["config_json"] or "{}"))

    # key/value metadata

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                conn.commit()
