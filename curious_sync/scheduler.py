from __future__ import annotations

import logging
import threading
from typing import Optional

from curious_sync.assignment_sync import AssignmentCalendarSyncService
from curious_sync.config_manager import ConfigManager
from curious_sync.sync_engine import CalendarSyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        sync_engine: CalendarSyncEngine,
        config_manager: ConfigManager,
        assignment_sync: AssignmentCalendarSyncService | None = None,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.assignment_sync = assignment_sync
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="curious-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_pass(self, trigger: str) -> None:
        self.sync_engine.run_once(trigger=trigger)
        if self.assignment_sync is None:
            return
        user_id = self.sync_engine.user_id
        configuration = self.assignment_sync.configuration(user_id)
        if configuration is None or not configuration.enabled:
            return
        report = self.assignment_sync.perform_full_sync(user_id, trigger=trigger)
        if not report.success:
            logger.warning("Assignment sync for %s finished with %d errors", user_id, len(report.errors))

    def _loop(self) -> None:
        # First pass at startup so integration status is populated quickly.
        self.run_pass("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_pass("manual" if manual else "scheduled")
