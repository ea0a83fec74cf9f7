from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import requests

from curious_sync.errors import AuthError, ProviderError
from curious_sync.models import (
    NormalizedCalendarEvent,
    ProviderConfig,
    parse_iso_datetime,
    utc_now,
)


logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_TIMEOUT_SECONDS = 30


@dataclass
class OAuthToken:
    access_token: str
    refresh_token: str = ""
    expires_at: datetime | None = None

    def needs_refresh(self, now: datetime | None = None, buffer: timedelta = REFRESH_BUFFER) -> bool:
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        return (now or utc_now()) + buffer >= self.expires_at

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "OAuthToken":
        return cls(
            access_token=config.access_token,
            refresh_token=config.refresh_token,
            expires_at=parse_iso_datetime(config.token_expires_at),
        )


@dataclass
class EventPage:
    events: list[NormalizedCalendarEvent] = field(default_factory=list)
    next_sync_token: str | None = None


TokenCallback = Callable[[str, OAuthToken], None]


class CalendarProvider:
    """Base class for remote calendar adapters.

    Subclasses translate vendor payloads into ``NormalizedCalendarEvent`` and
    implement the token endpoint; this class owns OAuth refresh and HTTP error
    mapping.
    """

    name = ""
    token_url = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        on_token_refresh: TokenCallback | None = None,
        session: requests.Session | None = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config
        self.token = OAuthToken.from_config(config)
        self.on_token_refresh = on_token_refresh
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    # OAuth

    def _refresh_payload(self) -> dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": self.token.refresh_token,
            "grant_type": "refresh_token",
        }

    def _token_endpoint(self) -> str:
        return self.token_url

    def refresh_access_token(self) -> OAuthToken:
        if not self.token.refresh_token:
            raise AuthError(f"{self.name}: no refresh token available, re-authorization required")
        response = self.session.post(
            self._token_endpoint(),
            data=self._refresh_payload(),
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            raise AuthError(
                f"{self.name}: token refresh failed: HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        payload = response.json()
        expires_in = int(payload.get("expires_in", 3600) or 3600)
        self.token = OAuthToken(
            access_token=str(payload.get("access_token", "")),
            # Providers may omit the refresh token when it has not rotated.
            refresh_token=str(payload.get("refresh_token") or self.token.refresh_token),
            expires_at=utc_now() + timedelta(seconds=expires_in),
        )
        logger.info("Refreshed %s access token, expires at %s", self.name, self.token.expires_at)
        if self.on_token_refresh is not None:
            self.on_token_refresh(self.name, self.token)
        return self.token

    def access_token(self) -> str:
        if self.token.needs_refresh():
            self.refresh_access_token()
        return self.token.access_token

    # HTTP

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
        retry_auth: bool = True,
    ) -> dict[str, Any] | None:
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)
        response = self.session.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
            timeout=self.timeout_seconds,
        )
        if response.status_code == 401 and retry_auth and self.token.refresh_token:
            logger.debug("%s returned 401 for %s %s, refreshing token", self.name, method, url)
            self.refresh_access_token()
            return self._request(
                method,
                url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                retry_auth=False,
            )
        if response.status_code in {401, 403}:
            raise AuthError(
                f"{self.name}: HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        if not response.ok:
            raise ProviderError(
                f"{self.name}: {method} {url} failed: HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # calendar operations

    def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
    ) -> EventPage:
        raise NotImplementedError

    def get_event(self, calendar_id: str, event_id: str) -> NormalizedCalendarEvent | None:
        raise NotImplementedError

    def find_events_by_local_id(self, calendar_id: str, local_id: str) -> list[NormalizedCalendarEvent]:
        raise NotImplementedError

    def create_event(self, calendar_id: str, event: NormalizedCalendarEvent) -> NormalizedCalendarEvent:
        raise NotImplementedError

    def update_event(self, calendar_id: str, event: NormalizedCalendarEvent) -> NormalizedCalendarEvent:
        raise NotImplementedError

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        raise NotImplementedError

    def _calendar_name(self, calendar_id: str) -> str:
        raise NotImplementedError

    def test_connection(self) -> tuple[bool, str]:
        try:
            name = self._calendar_name(self.config.calendar_id)
        except (requests.RequestException, ProviderError) as exc:
            return False, f"{type(exc).__name__}: {exc}"
        return True, f"Connected to {self.name} calendar {name!r}."


def build_provider(
    name: str,
    config: ProviderConfig,
    *,
    on_token_refresh: TokenCallback | None = None,
    session: requests.Session | None = None,
) -> CalendarProvider:
    from curious_sync.google_client import GoogleCalendarProvider
    from curious_sync.microsoft_client import MicrosoftCalendarProvider

    providers: dict[str, type[CalendarProvider]] = {
        GoogleCalendarProvider.name: GoogleCalendarProvider,
        MicrosoftCalendarProvider.name: MicrosoftCalendarProvider,
    }
    provider_cls = providers.get(str(name or "").strip().lower())
    if provider_cls is None:
        raise ProviderError(f"unsupported calendar provider: {name!r}")
    return provider_cls(config, on_token_refresh=on_token_refresh, session=session)

