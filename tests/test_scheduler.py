import tempfile
import unittest
from pathlib import Path
from unittest import TestCase, mock

from curious_sync.assignment_sync import AssignmentCalendarSyncService, AssignmentSyncReport
from curious_sync.config_manager import ConfigManager
from curious_sync.local_store import LocalStore
from curious_sync.models import SyncConfiguration
from curious_sync.scheduler import SyncScheduler
from curious_sync.state_store import StateStore
from curious_sync.sync_engine import CalendarSyncEngine
from tests.fakes import FakeCalendarProvider, at


class SyncSchedulerTests(TestCase):
    def setUp(self) -> None:
        self.engine = mock.Mock()
        self.engine.user_id = "default"
        self.assignment_sync = mock.Mock()
        self.scheduler = SyncScheduler(self.engine, mock.Mock(), self.assignment_sync)

    def test_run_pass_syncs_events_then_assignments(self) -> None:
        self.assignment_sync.configuration.return_value = SyncConfiguration()
        self.assignment_sync.perform_full_sync.return_value = AssignmentSyncReport()

        self.scheduler.run_pass("scheduled")

        self.engine.run_once.assert_called_once_with(trigger="scheduled")
        self.assignment_sync.perform_full_sync.assert_called_once_with("default", trigger="scheduled")

    def test_disabled_assignment_sync_is_skipped(self) -> None:
        self.assignment_sync.configuration.return_value = SyncConfiguration(enabled=False)

        self.scheduler.run_pass("manual")

        self.engine.run_once.assert_called_once_with(trigger="manual")
        self.assignment_sync.perform_full_sync.assert_not_called()

    def test_failed_assignment_pass_is_logged(self) -> None:
        self.assignment_sync.configuration.return_value = SyncConfiguration()
        self.assignment_sync.perform_full_sync.return_value = AssignmentSyncReport(success=False, errors=["boom"])

        with self.assertLogs("curious_sync.scheduler", level="WARNING") as logs:
            self.scheduler.run_pass("manual")

        self.assertIn("1 errors", logs.output[0])

    def test_event_only_scheduler(self) -> None:
        scheduler = SyncScheduler(self.engine, mock.Mock())

        scheduler.run_pass("startup")

        self.engine.run_once.assert_called_once_with(trigger="startup")


class SchedulerPassTests(TestCase):
    """Both passes against one store, the way the service runs them."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        config_manager = ConfigManager(root / "config.yaml")
        config_manager.update({"google": {"enabled": True, "access_token": "token"}})
        self.state_store = StateStore(str(root / "state.db"))
        self.local_store = LocalStore(str(root / "state.db"))
        self.provider = FakeCalendarProvider("google")
        self.engine = CalendarSyncEngine(
            config_manager,
            self.state_store,
            self.local_store,
            provider_factory=lambda name, config, **kwargs: self.provider,
        )
        self.service = AssignmentCalendarSyncService(self.engine)
        self.scheduler = SyncScheduler(self.engine, config_manager, self.service)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_event_imported_by_engine_still_becomes_assignment(self) -> None:
        self.service.configure(
            "default",
            SyncConfiguration(provider="google", calendar_id="primary", sync_direction="calendar_to_assignment"),
        )
        event = self.provider.add(
            title="Homework 3 due",
            description="Submit on Canvas, 10 points",
            start=at(6, 23, 59),
            end=at(7, 0, 29),
            calendar_id="primary",
        )

        self.scheduler.run_pass("manual")

        local = self.local_store.get_event(f"google-{event.id}")
        self.assertIsNotNone(local)
        assignment = self.local_store.get_assignment(f"google-{event.id}")
        self.assertIsNotNone(assignment)
        self.assertEqual(assignment.external_calendar_event_id, event.id)
        self.assertEqual(self.engine.mapping.get_by_external("google", event.id, "event").local_id, local.id)
        self.assertEqual(self.engine.mapping.get_by_external("google", event.id, "assignment").local_id, assignment.id)

        self.scheduler.run_pass("manual")

        self.assertEqual(len(self.local_store.list_assignments()), 1)
        self.assertEqual(len(self.state_store.list_mappings()), 2)
        self.assertEqual(self.engine.conflicts.pending_conflicts(), [])
        runs = self.state_store.recent_sync_runs(limit=1)
        self.assertEqual(runs[0]["status"], "success")


if __name__ == "__main__":
    unittest.main()
