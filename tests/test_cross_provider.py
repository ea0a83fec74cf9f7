import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from unittest import TestCase, mock

from curious_sync.config_manager import ConfigManager
from curious_sync.conflicts import ResolutionOutcome
from curious_sync.cross_provider import (
    CrossProviderConflictResolver,
    CrossProviderStrategy,
    levenshtein_distance,
    string_similarity,
)
from curious_sync.errors import ProviderError, ValidationError
from curious_sync.local_store import LocalStore
from curious_sync.models import utc_now
from curious_sync.state_store import StateStore
from curious_sync.sync_engine import CalendarSyncEngine
from tests.fakes import FakeCalendarProvider, at


class SimilarityTests(TestCase):
    def test_levenshtein_distance(self) -> None:
        self.assertEqual(levenshtein_distance("kitten", "sitting"), 3)
        self.assertEqual(levenshtein_distance("", "abc"), 3)
        self.assertEqual(levenshtein_distance("same", "same"), 0)

    def test_string_similarity(self) -> None:
        self.assertEqual(string_similarity("", ""), 1.0)
        self.assertAlmostEqual(string_similarity("kitten", "sitting"), 4 / 7)
        self.assertEqual(string_similarity("Planning", "Planning"), 1.0)

    def test_strategy_rejects_unknown_choices(self) -> None:
        strategy = CrossProviderStrategy.from_dict({"duplicate_handling": "separate"})

        self.assertEqual(strategy.duplicate_handling, "separate")
        self.assertEqual(strategy.time_conflict_resolution, "newest_wins")
        with self.assertRaises(ValidationError):
            CrossProviderStrategy.from_dict({"default_provider": "yahoo"})


class CrossProviderConflictResolverTests(TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        config_manager = ConfigManager(root / "config.yaml")
        config_manager.update(
            {
                "google": {"enabled": True, "access_token": "token"},
                "microsoft": {"enabled": True, "access_token": "token"},
            }
        )
        self.state_store = StateStore(str(root / "state.db"))
        self.local_store = LocalStore(str(root / "state.db"))
        self.google = FakeCalendarProvider("google")
        self.microsoft = FakeCalendarProvider("microsoft")
        providers = {"google": self.google, "microsoft": self.microsoft}
        self.engine = CalendarSyncEngine(
            config_manager,
            self.state_store,
            self.local_store,
            provider_factory=lambda name, config, **kwargs: providers[name],
        )
        self.resolver = CrossProviderConflictResolver(self.engine)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _import(self, google: dict, microsoft: dict):
        google_event = self.google.add(**{"title": "Planning", "start": at(2, 10), "end": at(2, 11), **google})
        microsoft_event = self.microsoft.add(**{"title": "Planning", "start": at(2, 10), "end": at(2, 11), **microsoft})
        self.engine.sync_calendar("google", "import_only")
        self.engine.sync_calendar("microsoft", "import_only")
        return google_event, microsoft_event

    def test_same_event_in_both_calendars_is_a_duplicate(self) -> None:
        google_event, microsoft_event = self._import({}, {})

        conflicts = self.resolver.detect_conflicts("default")

        self.assertEqual(len(conflicts), 1)
        conflict = conflicts[0]
        self.assertEqual(conflict.conflict_type, "duplicate_event")
        self.assertEqual(conflict.local_kind, "cross_provider")
        self.assertEqual(conflict.severity, "medium")
        self.assertEqual(conflict.local_id, f"google-{google_event.id}")
        self.assertEqual(conflict.external_event_id, microsoft_event.id)
        self.assertEqual(conflict.external_snapshot["id"], f"microsoft-{microsoft_event.id}")
        self.assertEqual(conflict.affected_fields, [])
        self.assertEqual([c.id for c in self.resolver.detect_conflicts("default")], [conflict.id])

    def test_events_from_one_provider_or_other_slots_are_not_paired(self) -> None:
        self.google.add(title="Planning", start=at(2, 10), end=at(2, 11))
        self.google.add(title="Planning", start=at(2, 10), end=at(2, 11))
        self.microsoft.add(title="Planning", start=at(3, 10), end=at(3, 11))
        self.microsoft.add(title="Retro", start=at(2, 10), end=at(2, 11))
        self.engine.sync_calendar("google", "import_only")
        self.engine.sync_calendar("microsoft", "import_only")

        self.assertEqual(self.resolver.detect_conflicts(), [])

    def test_keeping_duplicates_apart_stops_reporting_them(self) -> None:
        self._import({}, {})

        result = self.resolver.resolve_conflicts("default", CrossProviderStrategy(duplicate_handling="separate"))

        self.assertEqual(result.conflicts_detected, 1)
        self.assertEqual(result.auto_resolved, 1)
        self.assertEqual(result.duplicates_merged, 1)
        self.assertEqual(self.google.updated + self.microsoft.updated, [])
        self.assertEqual(self.resolver.detect_conflicts("default"), [])
        self.assertEqual(self.resolver.statistics()["ignored"], 1)

    def test_newest_copy_wins_a_time_mismatch(self) -> None:
        google_event, microsoft_event = self._import(
            {},
            {"end": at(2, 11, 30), "last_modified": utc_now() - timedelta(minutes=10)},
        )

        result = self.resolver.resolve_conflicts("default")

        self.assertEqual(result.auto_resolved, 1)
        stored = self.state_store.list_conflicts()[0]
        self.assertEqual(stored.conflict_type, "time_mismatch")
        self.assertEqual(stored.severity, "high")
        self.assertEqual(stored.resolution_choice, "keep_external")
        self.assertEqual(stored.resolved_by, "auto:newest_wins")
        self.assertEqual(self.google.events[google_event.id].end, at(2, 11, 30))
        self.assertEqual(self.microsoft.updated, [])
        self.assertEqual(self.resolver.detect_conflicts("default"), [])

    def test_content_mismatch_combines_descriptions(self) -> None:
        google_event, microsoft_event = self._import({"description": "Bring slides"}, {"description": "Room 4 booked"})

        result = self.resolver.resolve_conflicts("default")

        self.assertEqual(result.auto_resolved, 1)
        combined = "Bring slides\n\nRoom 4 booked"
        self.assertEqual(self.local_store.get_event(f"google-{google_event.id}").description, combined)
        self.assertEqual(self.local_store.get_event(f"microsoft-{microsoft_event.id}").description, combined)
        self.assertIn("Room 4 booked", self.google.events[google_event.id].description)
        self.assertIn("Bring slides", self.microsoft.events[microsoft_event.id].description)
        stats = self.resolver.statistics("default")
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["content_mismatches"], 1)
        self.assertEqual(stats["resolved"], 1)
        self.assertEqual(self.resolver.detect_conflicts("default"), [])

    def test_manual_review_leaves_conflicts_pending(self) -> None:
        self._import({"description": "Bring slides"}, {"description": "Room 4 booked"})

        result = self.resolver.resolve_conflicts("default", CrossProviderStrategy(conflict_strategy="manual_review"))

        self.assertEqual(result.manual_review_required, 1)
        self.assertEqual(result.auto_resolved, 0)
        self.assertEqual(len(self.resolver.pending_conflicts()), 1)
        self.assertEqual(self.state_store.list_conflicts()[0].resolution_status, "pending")

    def test_failed_push_keeps_cross_provider_conflict_pending(self) -> None:
        google_event, microsoft_event = self._import({"description": "Bring slides"}, {})
        conflict = self.resolver.detect_conflicts("default")[0]
        unavailable = ProviderError("microsoft: backend unavailable", status_code=503)

        with mock.patch.object(self.microsoft, "update_event", side_effect=unavailable):
            with self.assertRaises(ProviderError):
                self.resolver.resolve_conflict(int(conflict.id), "keep_local")

        self.assertEqual(len(self.resolver.pending_conflicts()), 1)

        outcome = self.resolver.resolve_conflict(int(conflict.id), "keep_local")

        self.assertEqual(outcome.conflict.resolution_status, "resolved")
        self.assertEqual(self.microsoft.events[microsoft_event.id].description, "Bring slides")
        self.assertEqual(self.google.updated, [])

    def test_engine_conflicts_are_not_applied_here(self) -> None:
        self._import({"description": "Bring slides"}, {})
        conflict = self.resolver.detect_conflicts("default")[0]
        conflict.local_kind = "event"

        with self.assertRaises(ValidationError):
            self.resolver.apply_resolution(ResolutionOutcome(conflict=conflict, choice="keep_local"))


if __name__ == "__main__":
    unittest.main()
