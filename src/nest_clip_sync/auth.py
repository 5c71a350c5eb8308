"""
Google account token exchange and the short-lived credential cache.

The master token is long-lived; every call to a Google API needs an access
token minted from it for a specific service scope.  Access tokens live for
about an hour, so CredentialStore keeps one per scope and refreshes it
shortly before it expires.
"""

import asyncio
import logging
import secrets
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Protocol

import aiohttp

from nest_clip_sync.models import AuthError
from nest_clip_sync.models import Credential

logger = logging.getLogger(__name__)

AUTH_URL = "https://android.clients.google.com/auth"
USER_AGENT = "GoogleAuth/1.4"
APP_NAME = "com.google.android.apps.chromecast.app"
CLIENT_SIGNATURE = "24bb24c05e47e0aefa68a58a766179d9b613a600"

HOMEGRAPH_SCOPE = "oauth2:https://www.google.com/accounts/OAuthLogin"
NEST_SCOPE = "oauth2:https://www.googleapis.com/auth/nest-account"

ACCESS_TOKEN_VALIDITY = timedelta(hours=1)
REFRESH_MARGIN = timedelta(seconds=60)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenExchange(Protocol):
    async def exchange(self, service: str) -> Credential: ...


def parse_auth_response(text: str) -> dict[str, str]:
    """Parse the ``key=value`` line format returned by the auth endpoint."""
    fields = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            fields[key.strip()] = value.strip()
    return fields


class GoogleAuthenticator:
    """Exchanges the master token for a service-scoped access token."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        username: str,
        master_token: str,
        android_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.username = username
        self.master_token = master_token
        self.android_id = android_id or secrets.token_hex(8)
        self._clock = clock

    def _form(self, service: str) -> dict[str, str]:
        return {
            "accountType": "HOSTED_OR_GOOGLE",
            "Email": self.username,
            "has_permission": "1",
            "EncryptedPasswd": self.master_token,
            "service": service,
            "source": "android",
            "androidId": self.android_id,
            "app": APP_NAME,
            "client_sig": CLIENT_SIGNATURE,
            "device_country": "us",
            "operatorCountry": "us",
            "lang": "en",
            "sdk_version": "17",
            "google_play_services_version": "240913000",
        }

    async def exchange(self, service: str) -> Credential:
        headers = {
            "Accept-Encoding": "identity",
            "Content-Type": "application/x-www-form-urlencoded",
            "User-Agent": USER_AGENT,
        }
        try:
            async with self.session.post(
                AUTH_URL, data=self._form(service), headers=headers
            ) as response:
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthError(f"Token exchange for {service} failed: {e}") from e

        fields = parse_auth_response(text)
        token = fields.get("Auth")
        if not token:
            error = fields.get("Error") or f"HTTP {response.status}"
            raise AuthError(f"No Auth token in response for {service}: {error}")

        now = self._clock()
        expires_at = now + ACCESS_TOKEN_VALIDITY
        expiry = fields.get("Expiry")
        if expiry:
            try:
                expires_at = datetime.fromtimestamp(int(expiry), timezone.utc)
            except (ValueError, OverflowError, OSError):
                logger.debug("Ignoring unparseable Expiry=%r", expiry)
        return Credential(access_token=token, expires_at=expires_at, refresh_state=service)


class CredentialStore:
    """Holds one access token and refreshes it on demand.

    ``get_valid_token()`` never hands out a token that is expired or inside
    the refresh margin.  Refreshes are single-flight: callers that arrive
    while a refresh is running await that same refresh instead of starting
    another one, and all of them receive its token or its AuthError.  A
    failed refresh leaves the store empty so the next call tries again.
    """

    def __init__(
        self,
        exchange: TokenExchange,
        service: str,
        margin: timedelta = REFRESH_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._exchange = exchange
        self.service = service
        self.margin = margin
        self._clock = clock
        self._credential: Credential | None = None
        self._inflight: asyncio.Task | None = None
        self.refresh_count = 0

    @property
    def expires_at(self) -> datetime | None:
        return self._credential.expires_at if self._credential else None

    def _current(self) -> str | None:
        cred = self._credential
        if cred is not None and cred.is_valid(self._clock(), self.margin):
            return cred.access_token
        return None

    async def get_valid_token(self) -> str:
        token = self._current()
        if token is not None:
            return token

        if self._inflight is None:
            self._inflight = asyncio.create_task(
                self._refresh_once(), name=f"refresh {self.service}"
            )
        # One waiter being cancelled must not cancel the refresh for the others.
        return await asyncio.shield(self._inflight)

    async def _refresh_once(self) -> str:
        try:
            return await self._refresh()
        finally:
            self._inflight = None

    async def _refresh(self) -> str:
        self._credential = None
        self.refresh_count += 1
        logger.debug("Refreshing access token for %s", self.service)
        try:
            credential = await self._exchange.exchange(self.service)
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(f"Token refresh for {self.service} failed: {e}") from e

        if not credential.is_valid(self._clock(), self.margin):
            raise AuthError(
                f"Token for {self.service} expires at {credential.expires_at.isoformat()}, "
                "inside the refresh margin"
            )
        self._credential = credential
        logger.debug(
            "Access token for %s valid until %s",
            self.service,
            credential.expires_at.isoformat(),
        )
        return credential.access_token

    def invalidate(self) -> None:
        """Drop the cached token so the next call refreshes."""
        self._credential = None
