import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import TestCase, mock

from curious_sync.errors import SyncTokenExpiredError
from curious_sync.microsoft_client import (
    MicrosoftCalendarProvider,
    from_graph,
    graph_recurrence_to_rrule,
    rrule_to_graph_recurrence,
    to_graph,
)
from curious_sync.models import NormalizedCalendarEvent, ProviderConfig, serialize_datetime, utc_now
from tests.fakes import FakeResponse


GRAPH_ITEM = {
    "id": "AAMk1",
    "changeKey": "ck-1",
    "subject": "Design review",
    "body": {"contentType": "text", "content": "Bring mockups"},
    "start": {"dateTime": "2026-03-02T15:00:00.0000000", "timeZone": "UTC"},
    "end": {"dateTime": "2026-03-02T16:00:00.0000000", "timeZone": "UTC"},
    "originalStartTimeZone": "Europe/Berlin",
    "location": {"displayName": "Room 4"},
    "isAllDay": False,
    "isCancelled": False,
    "isReminderOn": True,
    "reminderMinutesBeforeStart": 15,
    "categories": ["Work", "Green category"],
    "lastModifiedDateTime": "2026-02-28T12:00:00Z",
    "transactionId": "local-1",
}


class GraphConversionTests(TestCase):
    def test_from_graph(self) -> None:
        event = from_graph(GRAPH_ITEM, "calendar")

        self.assertEqual(event.id, "AAMk1")
        self.assertEqual(event.provider, "microsoft")
        self.assertEqual(event.start, datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))
        self.assertEqual(event.timezone, "Europe/Berlin")
        self.assertEqual(event.description, "Bring mockups")
        self.assertEqual(event.location, "Room 4")
        self.assertEqual(event.reminder_minutes, 15)
        self.assertEqual(event.color, "Green category")
        self.assertEqual(event.local_id, "local-1")
        self.assertEqual(event.etag, "ck-1")

    def test_removed_delta_item_is_cancelled(self) -> None:
        event = from_graph({"id": "AAMk2", "@removed": {"reason": "deleted"}}, "calendar")

        self.assertTrue(event.cancelled)
        self.assertIsNone(event.start)

    def test_all_day_and_reminder_off(self) -> None:
        event = from_graph(
            {
                **GRAPH_ITEM,
                "isAllDay": True,
                "isReminderOn": False,
                "start": {"dateTime": "2026-03-02T00:00:00.0000000", "timeZone": "UTC"},
                "end": {"dateTime": "2026-03-04T00:00:00.0000000", "timeZone": "UTC"},
            },
            "calendar",
        )

        self.assertTrue(event.is_all_day)
        self.assertEqual(event.end, datetime(2026, 3, 4, tzinfo=timezone.utc))
        self.assertIsNone(event.reminder_minutes)

    def test_to_graph(self) -> None:
        event = NormalizedCalendarEvent(
            id="",
            provider="microsoft",
            title="Study group",
            description="Chapter 4",
            start=datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc),
            end=datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc),
            timezone="Europe/Berlin",
            reminder_minutes=5,
            color="Blue category",
            local_id="local-2",
        )

        body = to_graph(event, include_transaction_id=True)

        self.assertEqual(body["start"], {"dateTime": "2026-03-02T14:00:00", "timeZone": "Europe/Berlin"})
        self.assertEqual(body["body"], {"contentType": "text", "content": "Chapter 4"})
        self.assertTrue(body["isReminderOn"])
        self.assertEqual(body["reminderMinutesBeforeStart"], 5)
        self.assertEqual(body["categories"], ["Blue category"])
        self.assertEqual(body["transactionId"], "local-2")
        self.assertNotIn("transactionId", to_graph(event))

    def test_graph_recurrence_to_rrule(self) -> None:
        line = graph_recurrence_to_rrule(
            {
                "pattern": {"type": "relativeMonthly", "interval": 2, "daysOfWeek": ["tuesday"], "index": "second"},
                "range": {"type": "numbered", "numberOfOccurrences": 5, "startDate": "2026-03-10"},
            }
        )

        self.assertTrue(line.startswith("RRULE:"))
        for part in ("FREQ=MONTHLY", "INTERVAL=2", "BYDAY=2TU", "COUNT=5"):
            self.assertIn(part, line)
        self.assertIsNone(graph_recurrence_to_rrule({"pattern": {"type": "hourly"}}))
        self.assertIsNone(graph_recurrence_to_rrule(None))

    def test_rrule_to_graph_recurrence(self) -> None:
        weekly = rrule_to_graph_recurrence("RRULE:FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20260401", date(2026, 3, 2))
        yearly = rrule_to_graph_recurrence("RRULE:FREQ=YEARLY;COUNT=3", date(2026, 3, 2))

        self.assertEqual(weekly["pattern"], {"interval": 1, "type": "weekly", "daysOfWeek": ["monday", "wednesday"]})
        self.assertEqual(weekly["range"], {"type": "endDate", "startDate": "2026-03-02", "endDate": "2026-04-01"})
        self.assertEqual(yearly["pattern"]["type"], "absoluteYearly")
        self.assertEqual(yearly["pattern"]["dayOfMonth"], 2)
        self.assertEqual(yearly["pattern"]["month"], 3)
        self.assertEqual(yearly["range"]["numberOfOccurrences"], 3)
        self.assertIsNone(rrule_to_graph_recurrence("RRULE:FREQ=HOURLY", date(2026, 3, 2)))


class MicrosoftCalendarProviderTests(TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        config = ProviderConfig(
            enabled=True,
            calendar_id="calendar",
            access_token="token",
            refresh_token="refresh",
            token_expires_at=serialize_datetime(utc_now() + timedelta(hours=1)),
        )
        self.provider = MicrosoftCalendarProvider(config, session=self.session)

    def test_delta_listing_follows_next_links(self) -> None:
        self.session.request.side_effect = [
            FakeResponse(200, {"value": [GRAPH_ITEM], "@odata.nextLink": "https://graph.microsoft.com/next"}),
            FakeResponse(
                200,
                {"value": [{"id": "AAMk2", "@removed": {}}], "@odata.deltaLink": "https://graph.microsoft.com/delta"},
            ),
        ]
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)

        page = self.provider.list_events("calendar", start, start + timedelta(days=7))

        self.assertEqual([event.id for event in page.events], ["AAMk1", "AAMk2"])
        self.assertTrue(page.events[1].cancelled)
        self.assertEqual(page.next_sync_token, "https://graph.microsoft.com/delta")
        first, second = self.session.request.call_args_list
        self.assertEqual(first.args[1], "https://graph.microsoft.com/v1.0/me/calendar/calendarView/delta")
        self.assertEqual(first.kwargs["params"]["startDateTime"], "2026-03-01T00:00:00+00:00")
        self.assertIn("Prefer", first.kwargs["headers"])
        self.assertEqual(second.args[1], "https://graph.microsoft.com/next")
        self.assertIsNone(second.kwargs["params"])

    def test_delta_link_is_reused_and_expiry_reported(self) -> None:
        self.session.request.return_value = FakeResponse(410, text="SyncStateNotFound")

        with self.assertRaises(SyncTokenExpiredError):
            self.provider.list_events("calendar", utc_now(), utc_now(), sync_token="https://graph.microsoft.com/delta")
        self.assertEqual(self.session.request.call_args.args[1], "https://graph.microsoft.com/delta")

    def test_named_calendar_url(self) -> None:
        self.session.request.return_value = FakeResponse(200, {"value": []})

        self.provider.find_events_by_local_id("AAMkCal", "it's-1")

        call = self.session.request.call_args
        self.assertEqual(call.args[1], "https://graph.microsoft.com/v1.0/me/calendars/AAMkCal/events")
        self.assertEqual(call.kwargs["params"]["$filter"], "transactionId eq 'it''s-1'")

    def test_create_sends_transaction_id_and_update_patches(self) -> None:
        event = from_graph(GRAPH_ITEM, "calendar")
        self.session.request.return_value = FakeResponse(201, GRAPH_ITEM)

        self.provider.create_event("calendar", event.with_updates(id=""))
        create_call = self.session.request.call_args
        self.provider.update_event("calendar", event)
        update_call = self.session.request.call_args

        self.assertEqual(create_call.args[0], "POST")
        self.assertEqual(create_call.kwargs["json"]["transactionId"], "local-1")
        self.assertEqual(update_call.args[0], "PATCH")
        self.assertEqual(update_call.args[1], "https://graph.microsoft.com/v1.0/me/events/AAMk1")
        self.assertNotIn("transactionId", update_call.kwargs["json"])

    def test_missing_event(self) -> None:
        self.session.request.return_value = FakeResponse(404, text="ErrorItemNotFound")

        self.assertIsNone(self.provider.get_event("calendar", "AAMk9"))
        self.assertFalse(self.provider.delete_event("calendar", "AAMk9"))


if __name__ == "__main__":
    unittest.main()
