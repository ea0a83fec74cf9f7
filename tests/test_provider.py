import unittest
from datetime import timedelta
from unittest import TestCase, mock

import requests

from curious_sync.errors import AuthError, ProviderError
from curious_sync.google_client import GoogleCalendarProvider
from curious_sync.microsoft_client import MicrosoftCalendarProvider
from curious_sync.models import ProviderConfig, serialize_datetime, utc_now
from curious_sync.provider import OAuthToken, build_provider
from tests.fakes import FakeResponse


def _config(**changes) -> ProviderConfig:
    config = ProviderConfig(
        enabled=True,
        client_id="client",
        client_secret="secret",
        access_token="old-token",
        refresh_token="refresh-1",
        token_expires_at=serialize_datetime(utc_now() + timedelta(hours=1)),
    )
    for key, value in changes.items():
        setattr(config, key, value)
    return config


class OAuthTokenTests(TestCase):
    def test_needs_refresh(self) -> None:
        now = utc_now()

        self.assertTrue(OAuthToken(access_token="").needs_refresh(now))
        self.assertFalse(OAuthToken(access_token="abc").needs_refresh(now))
        self.assertTrue(OAuthToken(access_token="abc", expires_at=now + timedelta(minutes=4)).needs_refresh(now))
        self.assertFalse(OAuthToken(access_token="abc", expires_at=now + timedelta(minutes=6)).needs_refresh(now))


class CalendarProviderTests(TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.refreshed = []
        self.provider = GoogleCalendarProvider(
            _config(),
            session=self.session,
            on_token_refresh=lambda name, token: self.refreshed.append((name, token.access_token)),
        )

    def test_refresh_keeps_refresh_token_when_not_rotated(self) -> None:
        self.session.post.return_value = FakeResponse(200, {"access_token": "new-token", "expires_in": 1800})

        token = self.provider.refresh_access_token()

        self.assertEqual(token.access_token, "new-token")
        self.assertEqual(token.refresh_token, "refresh-1")
        self.assertGreater(token.expires_at, utc_now() + timedelta(minutes=29))
        self.assertEqual(self.refreshed, [("google", "new-token")])
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://oauth2.googleapis.com/token")
        self.assertEqual(kwargs["data"]["grant_type"], "refresh_token")
        self.assertEqual(kwargs["data"]["refresh_token"], "refresh-1")

    def test_refresh_failures_raise_auth_error(self) -> None:
        self.session.post.return_value = FakeResponse(400, text="invalid_grant")

        with self.assertRaises(AuthError) as raised:
            self.provider.refresh_access_token()
        self.assertEqual(raised.exception.status_code, 400)

        provider = GoogleCalendarProvider(_config(refresh_token=""), session=self.session)
        with self.assertRaises(AuthError):
            provider.refresh_access_token()

    def test_expired_token_is_refreshed_before_request(self) -> None:
        provider = GoogleCalendarProvider(
            _config(token_expires_at=serialize_datetime(utc_now() - timedelta(minutes=1))),
            session=self.session,
        )
        self.session.post.return_value = FakeResponse(200, {"access_token": "fresh"})
        self.session.request.return_value = FakeResponse(200, {"summary": "Work"})

        ok, message = provider.test_connection()

        self.assertTrue(ok)
        self.assertIn("'Work'", message)
        headers = self.session.request.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer fresh")

    def test_unauthorized_request_is_retried_once_after_refresh(self) -> None:
        self.session.post.return_value = FakeResponse(200, {"access_token": "new-token"})
        self.session.request.side_effect = [FakeResponse(401, text="expired"), FakeResponse(200, {"ok": True})]

        payload = self.provider._request("GET", "https://example.test/events")

        self.assertEqual(payload, {"ok": True})
        self.assertEqual(self.session.request.call_count, 2)
        second_headers = self.session.request.call_args_list[1].kwargs["headers"]
        self.assertEqual(second_headers["Authorization"], "Bearer new-token")

    def test_error_statuses_are_mapped(self) -> None:
        self.session.request.return_value = FakeResponse(403, text="forbidden")
        with self.assertRaises(AuthError):
            self.provider._request("GET", "https://example.test/events")

        self.session.request.return_value = FakeResponse(500, text="boom")
        with self.assertRaises(ProviderError) as raised:
            self.provider._request("GET", "https://example.test/events")
        self.assertEqual(raised.exception.status_code, 500)
        self.assertFalse(raised.exception.is_not_found)

        self.session.request.return_value = FakeResponse(204)
        self.assertIsNone(self.provider._request("DELETE", "https://example.test/events/1"))

    def test_connection_failure_is_reported_not_raised(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("network down")

        ok, message = self.provider.test_connection()

        self.assertFalse(ok)
        self.assertIn("network down", message)

    def test_microsoft_refresh_uses_tenant_endpoint_and_scope(self) -> None:
        provider = MicrosoftCalendarProvider(_config(tenant_id="contoso"), session=self.session)
        self.session.post.return_value = FakeResponse(
            200, {"access_token": "graph-token", "refresh_token": "refresh-2", "expires_in": 3600}
        )

        token = provider.refresh_access_token()

        self.assertEqual(token.refresh_token, "refresh-2")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://login.microsoftonline.com/contoso/oauth2/v2.0/token")
        self.assertIn("Calendars.ReadWrite", kwargs["data"]["scope"])

    def test_build_provider(self) -> None:
        self.assertIsInstance(build_provider("google", _config(), session=self.session), GoogleCalendarProvider)
        self.assertIsInstance(
            build_provider("Microsoft", _config(), session=self.session), MicrosoftCalendarProvider
        )
        with self.assertRaises(ProviderError):
            build_provider("yahoo", _config())


if __name__ == "__main__":
    unittest.main()
