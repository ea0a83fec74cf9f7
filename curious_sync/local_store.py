from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable

from curious_sync.models import Assignment, LocalEvent, serialize_datetime


class LocalStore:
    """Dashboard-side storage for calendar events and assignments.

    Records are kept as JSON payloads next to a few indexed columns so that
    window and status queries stay cheap.
    """

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
        CREATE TABLE IF NOT EXISTS local_events (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            sync_status TEXT NOT NULL,
            start_at TEXT,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS assignments (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            due_at TEXT,
            payload_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # events

    def save_event(self, event: LocalEvent) -> LocalEvent:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO local_events(id, user_id, sync_status, start_at, payload_json)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        user_id = excluded.user_id,
                        sync_status = excluded.sync_status,
                        start_at = excluded.start_at,
                        payload_json = excluded.payload_json
                    """,
                    (
                        event.id,
                        event.user_id,
                        event.sync_status,
                        serialize_datetime(event.start),
                        json.dumps(event.to_dict(), ensure_ascii=False),
                    ),
                )
                conn.commit()
        return event

    def get_event(self, event_id: str) -> LocalEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT payload_json FROM local_events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            return None
        return LocalEvent.from_dict(json.loads(row["payload_json"]))

    def list_events(
        self,
        *,
        user_id: str | None = None,
        statuses: Iterable[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LocalEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT payload_json FROM local_events ORDER BY start_at, id").fetchall()
        wanted = set(statuses) if statuses is not None else None
        events: list[LocalEvent] = []
        for row in rows:
            event = LocalEvent.from_dict(json.loads(row["payload_json"]))
            if user_id is not None and event.user_id != user_id:
                continue
            if wanted is not None and event.sync_status not in wanted:
                continue
            if start is not None and event.end is not None and event.end < start:
                continue
            if end is not None and event.start is not None and event.start > end:
                continue
            events.append(event)
        return events

    def delete_event(self, event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM local_events WHERE id = ?", (event_id,))
                conn.commit()
                return cursor.rowcount > 0

    # assignments

    def save_assignment(self, assignment: Assignment) -> Assignment:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO assignments(id, user_id, due_at, payload_json)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        user_id = excluded.user_id,
                        due_at = excluded.due_at,
                        payload_json = excluded.payload_json
                    """,
                    (
                        assignment.id,
                        assignment.user_id,
                        serialize_datetime(assignment.due_date),
                        json.dumps(assignment.to_dict(), ensure_ascii=False),
                    ),
                )
                conn.commit()
        return assignment

    def get_assignment(self, assignment_id: str) -> Assignment | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM assignments WHERE id = ?",
                    (assignment_id,),
                ).fetchone()
        if row is None:
            return None
        return Assignment.from_dict(json.loads(row["payload_json"]))

    def list_assignments(self, *, user_id: str | None = None, include_deleted: bool = False) -> list[Assignment]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute("SELECT payload_json FROM assignments ORDER BY due_at, id").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT payload_json FROM assignments WHERE user_id = ? ORDER BY due_at, id",
                        (user_id,),
                    ).fetchall()
        assignments = [Assignment.from_dict(json.loads(row["payload_json"])) for row in rows]
        if include_deleted:
            return assignments
        return [item for item in assignments if not item.deleted]

    def delete_assignment(self, assignment_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM assignments WHERE id = ?", (assignment_id,))
                conn.commit()
                return cursor.rowcount > 0
