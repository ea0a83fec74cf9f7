import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from unittest import TestCase
from zoneinfo import ZoneInfo

from curious_sync.errors import MappingConflictError
from curious_sync.event_mapping import (
    UNTITLED_EVENT,
    EventMappingService,
    build_rrule,
    color_to_hex,
    content_hash,
    convert_recurrence,
    hex_to_color,
    is_all_day_span,
    local_fingerprint,
    parse_rrule,
    sanitize_text,
    validate_local_event,
    validate_remote_event,
)
from curious_sync.models import LocalEvent, NormalizedCalendarEvent, RecurrencePattern
from curious_sync.state_store import StateStore


BERLIN = ZoneInfo("Europe/Berlin")


def _remote(**changes) -> NormalizedCalendarEvent:
    event = NormalizedCalendarEvent(
        id="evt-1",
        provider="google",
        calendar_id="primary",
        title="Team sync",
        start=datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc),
        end=datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc),
        timezone="America/New_York",
    )
    return event.with_updates(**changes)


class FieldHelperTests(TestCase):
    def test_sanitize_text_strips_markup(self) -> None:
        self.assertEqual(sanitize_text("<b>Review</b> &amp; plan "), "Review & plan")
        self.assertEqual(sanitize_text(None), "")

    def test_content_hash_ignores_key_order(self) -> None:
        self.assertEqual(content_hash({"a": 1, "b": 2}), content_hash({"b": 2, "a": 1}))
        self.assertNotEqual(content_hash({"a": 1}), content_hash({"a": 2}))

    def test_colors(self) -> None:
        self.assertEqual(color_to_hex("google", "5"), "#ff7537")
        self.assertEqual(color_to_hex("microsoft", "Green category"), "#388e3c")
        self.assertEqual(color_to_hex("microsoft", "Something custom"), "#1976d2")
        self.assertIsNone(color_to_hex("google", None))
        self.assertEqual(hex_to_color("google", "#FF7537"), "5")
        self.assertEqual(hex_to_color("google", "#123456"), "1")
        self.assertEqual(hex_to_color("microsoft", "#388e3c"), "Green category")
        self.assertIsNone(hex_to_color("microsoft", "#123456"))

    def test_parse_supported_rrule(self) -> None:
        result = parse_rrule("RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;UNTIL=20260401T000000Z")

        self.assertTrue(result.supported)
        self.assertEqual(result.pattern.type, "weekly")
        self.assertEqual(result.pattern.interval, 2)
        self.assertEqual(result.pattern.by_week_day, [1, 3])
        self.assertEqual(result.pattern.end_date, date(2026, 4, 1))
        self.assertIsNone(result.pattern.count)

    def test_parse_rejects_rules_that_cannot_be_represented(self) -> None:
        self.assertFalse(parse_rrule("RRULE:FREQ=MONTHLY;BYDAY=MO;BYSETPOS=1").supported)
        self.assertFalse(parse_rrule("RRULE:FREQ=HOURLY").supported)
        self.assertFalse(parse_rrule("EXDATE:20260301T000000Z").supported)
        self.assertIsNone(parse_rrule("").pattern)

    def test_build_rrule_is_readable_by_parse_rrule(self) -> None:
        pattern = RecurrencePattern(type="monthly", interval=1, count=6, by_month_day=[15])

        line = build_rrule(pattern)

        self.assertTrue(line.startswith("RRULE:"))
        self.assertIn("FREQ=MONTHLY", line)
        self.assertIn("COUNT=6", line)
        self.assertEqual(parse_rrule(line).pattern, pattern)

    def test_convert_recurrence_uses_first_rrule(self) -> None:
        result = convert_recurrence(["EXDATE:20260310T100000Z", "RRULE:FREQ=DAILY;COUNT=3"])

        self.assertEqual(result.pattern.type, "daily")
        self.assertEqual(result.pattern.count, 3)
        self.assertIn("additional recurrence", result.message)
        self.assertIsNone(convert_recurrence([]).pattern)

    def test_all_day_span(self) -> None:
        start = datetime(2026, 3, 2, 0, 0, tzinfo=BERLIN)
        self.assertTrue(is_all_day_span(start, datetime(2026, 3, 2, 23, 59, 59, tzinfo=BERLIN)))
        self.assertTrue(is_all_day_span(start, datetime(2026, 3, 4, 0, 0, tzinfo=BERLIN)))
        self.assertFalse(is_all_day_span(start, datetime(2026, 3, 2, 12, 0, tzinfo=BERLIN)))

    def test_validate_local_event(self) -> None:
        event = LocalEvent(
            id="local-1",
            title=" ",
            start=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
            end=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
            timezone="Mars/Olympus",
        )

        self.assertEqual(
            validate_local_event(event),
            ["Title is required", "End time must be after start time", "Invalid timezone"],
        )

    def test_validate_remote_event(self) -> None:
        self.assertEqual(validate_remote_event(_remote()), [])
        self.assertEqual(validate_remote_event(_remote(start=None, end=None, cancelled=True)), [])
        self.assertEqual(validate_remote_event(_remote(start=None)), ["Start time is required"])
        self.assertEqual(validate_remote_event(_remote(id="")), ["Event ID is required"])


class EventMappingServiceTests(TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.service = EventMappingService(self.state_store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_to_local_converts_into_user_timezone(self) -> None:
        local = self.service.to_local(
            _remote(title="<i>Team</i> sync", uses_default_reminder=True, color="5"),
            user_id="default",
            user_timezone="Europe/Berlin",
        )

        self.assertEqual(local.id, "google-evt-1")
        self.assertEqual(local.title, "Team sync")
        self.assertEqual(local.timezone, "Europe/Berlin")
        self.assertEqual(local.start, datetime(2026, 3, 2, 16, 0, tzinfo=BERLIN))
        self.assertEqual(local.start.utcoffset().total_seconds(), 3600)
        self.assertEqual(local.reminder_minutes, 15)
        self.assertEqual(local.color, "#ff7537")
        self.assertEqual(local.external_event_id, "evt-1")
        self.assertEqual(local.sync_status, "synced")

    def test_to_local_can_keep_event_timezone(self) -> None:
        local = self.service.to_local(
            _remote(reminder_minutes=30),
            user_id="default",
            user_timezone="Europe/Berlin",
            preserve_timezone=True,
        )

        self.assertEqual(local.timezone, "America/New_York")
        self.assertEqual(local.start.hour, 10)
        self.assertEqual(local.reminder_minutes, 30)

    def test_to_local_all_day_event_ends_at_end_of_last_day(self) -> None:
        local = self.service.to_local(
            _remote(
                is_all_day=True,
                start=datetime(2026, 3, 2, tzinfo=timezone.utc),
                end=datetime(2026, 3, 4, tzinfo=timezone.utc),
            ),
            user_id="default",
            user_timezone="Europe/Berlin",
        )

        self.assertTrue(local.is_all_day)
        self.assertEqual(local.start, datetime(2026, 3, 2, 0, 0, tzinfo=BERLIN))
        self.assertEqual(local.end, datetime(2026, 3, 3, 23, 59, 59, tzinfo=BERLIN))

    def test_to_local_keeps_marker_id_and_existing_record(self) -> None:
        marked = self.service.to_local(_remote(local_id="local-7"), user_id="default")
        existing = LocalEvent(id="mine", user_id="someone", title="Old")
        updated = self.service.to_local(_remote(title=""), user_id="default", existing=existing)

        self.assertEqual(marked.id, "local-7")
        self.assertEqual(updated.id, "mine")
        self.assertEqual(updated.user_id, "someone")
        self.assertEqual(updated.title, UNTITLED_EVENT)

    def test_unsupported_recurrence_is_dropped(self) -> None:
        with self.assertLogs("curious_sync.event_mapping", level="WARNING"):
            local = self.service.to_local(
                _remote(recurrence=["RRULE:FREQ=MONTHLY;BYDAY=MO;BYSETPOS=1"]),
                user_id="default",
            )

        self.assertIsNone(local.recurrence)

    def test_to_remote_timed_event_is_sent_in_utc(self) -> None:
        local = LocalEvent(
            id="local-1",
            title="Study group",
            start=datetime(2026, 3, 2, 14, 0, tzinfo=BERLIN),
            end=datetime(2026, 3, 2, 15, 0, tzinfo=BERLIN),
            timezone="Europe/Berlin",
            color="#388e3c",
            recurrence=RecurrencePattern(type="daily", count=3),
        )

        remote = self.service.to_remote(local, provider="microsoft", calendar_id="calendar")

        self.assertEqual(remote.timezone, "UTC")
        self.assertEqual(remote.start, datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc))
        self.assertEqual(remote.local_id, "local-1")
        self.assertTrue(remote.uses_default_reminder)
        self.assertEqual(remote.color, "Green category")
        self.assertEqual(len(remote.recurrence), 1)
        self.assertEqual(parse_rrule(remote.recurrence[0]).pattern, local.recurrence)

    def test_to_remote_all_day_event_uses_exclusive_end(self) -> None:
        local = LocalEvent(
            id="local-2",
            title="Conference",
            start=datetime(2026, 3, 2, 0, 0, tzinfo=BERLIN),
            end=datetime(2026, 3, 3, 23, 59, 59, tzinfo=BERLIN),
            timezone="Europe/Berlin",
            is_all_day=True,
            reminder_minutes=10,
        )

        remote = self.service.to_remote(local, provider="google", calendar_id="primary")

        self.assertTrue(remote.is_all_day)
        self.assertEqual(remote.start, datetime(2026, 3, 2, tzinfo=timezone.utc))
        self.assertEqual(remote.end, datetime(2026, 3, 4, tzinfo=timezone.utc))
        self.assertEqual(remote.reminder_minutes, 10)
        self.assertFalse(remote.uses_default_reminder)

    def test_round_trip_keeps_local_fingerprint(self) -> None:
        local = LocalEvent(
            id="local-3",
            user_id="default",
            title="Standup",
            start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
            end=datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc),
            reminder_minutes=5,
        )

        remote = self.service.to_remote(local, provider="google", calendar_id="primary").with_updates(id="evt-3")
        back = self.service.to_local(remote, user_id="default", existing=local)

        self.assertEqual(local_fingerprint(back), local_fingerprint(local))

    def test_link_touch_and_unlink(self) -> None:
        mapping = self.service.link(
            local_kind="event",
            local_id="local-1",
            provider="google",
            external_event_id="evt-1",
            calendar_id="primary",
            local_hash="l1",
            remote_hash="r1",
        )

        self.assertIsNotNone(mapping.id)
        self.assertEqual(self.service.get_by_external("google", "evt-1").local_id, "local-1")
        relinked = self.service.link(
            local_kind="event", local_id="local-1", provider="google", external_event_id="evt-1", local_hash="l2"
        )
        self.assertEqual(relinked.id, mapping.id)
        self.assertEqual(relinked.remote_hash, "r1")
        self.assertEqual(relinked.calendar_id, "primary")

        touched = self.service.touch(relinked, remote_hash="r2", sync_status="conflict")
        stored = self.service.get_by_local("event", "local-1", "google")
        self.assertEqual(stored.remote_hash, "r2")
        self.assertEqual(stored.local_hash, "l2")
        self.assertEqual(stored.sync_status, "conflict")

        self.assertTrue(self.service.unlink(touched))
        self.assertIsNone(self.service.get_by_local("event", "local-1", "google"))

    def test_link_refuses_to_remap_either_side(self) -> None:
        self.service.link(local_kind="event", local_id="local-1", provider="google", external_event_id="evt-1")

        with self.assertRaises(MappingConflictError):
            self.service.link(local_kind="event", local_id="local-1", provider="google", external_event_id="evt-2")
        with self.assertRaises(MappingConflictError):
            self.service.link(local_kind="event", local_id="local-2", provider="google", external_event_id="evt-1")
        self.service.link(local_kind="event", local_id="local-1", provider="microsoft", external_event_id="evt-1")

    def test_event_and_assignment_can_track_the_same_remote_event(self) -> None:
        self.service.link(local_kind="event", local_id="google-evt-1", provider="google", external_event_id="evt-1")
        self.service.link(local_kind="assignment", local_id="google-evt-1", provider="google", external_event_id="evt-1")

        self.assertEqual(self.service.get_by_external("google", "evt-1", "event").local_kind, "event")
        self.assertEqual(self.service.get_by_external("google", "evt-1", "assignment").local_kind, "assignment")
        with self.assertRaises(MappingConflictError):
            self.service.link(local_kind="assignment", local_id="a2", provider="google", external_event_id="evt-1")


if __name__ == "__main__":
    unittest.main()
