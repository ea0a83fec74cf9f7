import unittest
from datetime import date, datetime, timezone

from curious_sync.models import (
    Assignment,
    LocalEvent,
    NormalizedCalendarEvent,
    RecurrencePattern,
    SyncConfiguration,
    SyncResult,
    parse_iso_datetime,
    sync_window,
)


class ModelsTests(unittest.TestCase):
    def test_parse_iso_datetime_assumes_utc(self) -> None:
        self.assertEqual(parse_iso_datetime("2026-03-02T10:00:00Z"), datetime(2026, 3, 2, 10, tzinfo=timezone.utc))
        self.assertEqual(parse_iso_datetime("2026-03-02T10:00:00").tzinfo, timezone.utc)
        self.assertEqual(parse_iso_datetime(date(2026, 3, 2)), datetime(2026, 3, 2, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso_datetime(""))

    def test_sync_window_covers_whole_days(self) -> None:
        start, end = sync_window(datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc), 30, 365)

        self.assertEqual(start, datetime(2026, 2, 8, tzinfo=timezone.utc))
        self.assertEqual(end.date(), date(2027, 3, 10))
        self.assertEqual((end.hour, end.minute), (23, 59))

    def test_local_event_round_trip_through_dict(self) -> None:
        event = LocalEvent(
            id="local-1",
            title="Standup",
            start=datetime(2026, 3, 2, 9, tzinfo=timezone.utc),
            end=datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc),
            recurrence=RecurrencePattern(type="weekly", by_week_day=[1, 3], end_date=date(2026, 6, 1)),
        )

        payload = event.to_dict()
        restored = LocalEvent.from_dict(payload)

        self.assertEqual(payload["start"], "2026-03-02T09:00:00+00:00")
        self.assertEqual(payload["recurrence"]["end_date"], "2026-06-01")
        self.assertEqual(restored.recurrence, event.recurrence)
        self.assertEqual(restored.start, event.start)

    def test_local_event_from_dict_normalizes_unknown_status(self) -> None:
        event = LocalEvent.from_dict({"id": " local-2 ", "sync_status": "weird"})

        self.assertEqual(event.id, "local-2")
        self.assertEqual(event.sync_status, "local")
        self.assertIsNone(event.recurrence)

    def test_assignment_from_dict_defaults(self) -> None:
        assignment = Assignment.from_dict(
            {"id": "a1", "title": "Essay", "assignment_type": "Novel", "priority": "HIGH", "due_date": "2026-03-09T23:59:00Z"}
        )

        self.assertEqual(assignment.assignment_type, "assignment")
        self.assertEqual(assignment.priority, "high")
        self.assertEqual(assignment.due_date, datetime(2026, 3, 9, 23, 59, tzinfo=timezone.utc))
        self.assertIsNone(assignment.progress_percentage)

    def test_normalized_event_from_dict(self) -> None:
        event = NormalizedCalendarEvent.from_dict(
            {"id": "evt-1", "provider": "google", "start": "2026-03-02T09:00:00+00:00", "recurrence": ["RRULE:FREQ=DAILY"]}
        )

        self.assertEqual(event.recurrence, ["RRULE:FREQ=DAILY"])
        self.assertIsNone(event.end)
        self.assertEqual(event.to_dict()["start"], "2026-03-02T09:00:00+00:00")

    def test_sync_configuration_from_dict(self) -> None:
        configuration = SyncConfiguration.from_dict(
            {
                "provider": "Microsoft",
                "calendar_id": " ",
                "sync_direction": "sideways",
                "conflict_resolution": "assignment_wins",
                "sync_categories": ["Exam", " ", "quiz"],
            }
        )

        self.assertEqual(configuration.provider, "microsoft")
        self.assertEqual(configuration.calendar_id, "primary")
        self.assertEqual(configuration.sync_direction, "bidirectional")
        self.assertEqual(configuration.conflict_resolution, "assignment_wins")
        self.assertEqual(configuration.sync_categories, ["exam", "quiz"])
        self.assertIn("paper", SyncConfiguration().sync_categories)

    def test_sync_result_counts_changes(self) -> None:
        result = SyncResult(status="partial", trigger="manual", events_created=2, events_deleted=1)

        self.assertFalse(result.success)
        self.assertEqual(result.changes_applied, 3)
        self.assertEqual(result.to_dict()["changes_applied"], 3)


if __name__ == "__main__":
    unittest.main()
