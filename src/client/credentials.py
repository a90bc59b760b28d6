"""Client-side cache for relay (TURN) credentials."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
from pydantic import ValidationError

from config.settings import Settings, get_settings
from relay.credentials import TurnCredentials

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IceServer:
    urls: str
    username: str | None = None
    credential: str | None = None


def credentials_url(signaling_url: str) -> str:
    """Derive the HTTP credentials endpoint from the websocket signaling URL."""

    base = signaling_url
    if base.startswith("wss://"):
        base = "https://" + base.removeprefix("wss://")
    elif base.startswith("ws://"):
        base = "http://" + base.removeprefix("ws://")
    base = base.rstrip("/")
    if base.endswith("/ws"):
        base = base.removesuffix("/ws")
    return f"{base}/api/turn-credentials"


class TurnCredentialCache:
    """Fetches credentials over HTTP and re-fetches them before they expire.

    Credentials are opaque: only ``ttl`` is interpreted. When a fetch fails the
    configured static relay set is returned instead.
    """

    def __init__(
        self,
        user_id: str,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        self._user_id = user_id
        self._url = credentials_url(self._settings.signaling_url)
        self._client = client
        self._clock = clock
        self._cached: TurnCredentials | None = None
        self._fetched_at = 0.0

    @property
    def cached(self) -> TurnCredentials | None:
        return self._cached

    def is_expired(self) -> bool:
        if self._cached is None:
            return True
        elapsed = self._clock() - self._fetched_at
        return elapsed >= self._cached.ttl - self._settings.turn_refresh_buffer_seconds

    def clear(self) -> None:
        self._cached = None
        self._fetched_at = 0.0

    async def get_ice_servers(self) -> list[IceServer]:
        if not self.is_expired() and self._cached is not None:
            return self._build(self._cached)
        credentials = await self._fetch()
        if credentials is None:
            LOGGER.warning("Using fallback TURN credentials")
            return self._fallback()
        return self._build(credentials)

    async def _fetch(self) -> TurnCredentials | None:
        try:
            if self._client is not None:
                response = await self._client.get(self._url, params={"user_id": self._user_id})
            else:
                async with httpx.AsyncClient(timeout=10) as client:
                    response = await client.get(self._url, params={"user_id": self._user_id})
            response.raise_for_status()
            credentials = TurnCredentials.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            LOGGER.error("Failed to fetch TURN credentials: %s", exc)
            return None

        self._cached = credentials
        self._fetched_at = self._clock()
        LOGGER.info("Fetched TURN credentials for %s (ttl=%ss)", self._user_id, credentials.ttl)
        return credentials

    def _stun_servers(self) -> list[IceServer]:
        return [IceServer(urls=uri) for uri in self._settings.stun_uris]

    def _build(self, credentials: TurnCredentials) -> list[IceServer]:
        return self._stun_servers() + [
            IceServer(urls=uri, username=credentials.username, credential=credentials.password)
            for uri in credentials.uris
        ]

    def _fallback(self) -> list[IceServer]:
        return self._stun_servers() + [
            IceServer(
                urls=uri,
                username=self._settings.turn_fallback_username,
                credential=self._settings.turn_fallback_password,
            )
            for uri in self._settings.turn_uris
        ]
