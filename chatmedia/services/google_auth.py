"""Google access tokens for the media pipeline.

Provides:
- Service-account tokens, optionally impersonating a Workspace user
- Pre-issued static tokens
- ``AuthContext``: the token and API client shared by one pipeline run
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from chatmedia.core.config import Settings, settings
from chatmedia.core.logging import get_logger
from chatmedia.services.exceptions import AuthTokenUnavailableError

if TYPE_CHECKING:
    from chatmedia.services.google_media import GoogleMediaClient

logger = get_logger(__name__)

# Refresh tokens this long before they expire
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass(frozen=True)
class AccessToken:
    """An OAuth access token and its expiry (``None`` = does not expire)."""

    token: str
    expiry: datetime | None = None

    def expires_soon(self, now: datetime | None = None) -> bool:
        if self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry <= now + TOKEN_REFRESH_MARGIN


class TokenProvider(Protocol):
    """Anything that can hand out access tokens."""

    async def get_access_token(self) -> AccessToken: ...


class StaticTokenProvider:
    """Serves one pre-issued token that never refreshes."""

    def __init__(self, token: str):
        self._token = token

    async def get_access_token(self) -> AccessToken:
        if not self._token:
            raise AuthTokenUnavailableError("Static access token is empty")
        return AccessToken(token=self._token)


class ServiceAccountTokenProvider:
    """Issues tokens from a service account key file.

    When *subject* is given the credentials use domain-wide delegation to act
    as that user, which is what the Chat and Drive APIs need to see the
    user's attachments.
    """

    def __init__(
        self,
        key_file: Path,
        scopes: list[str],
        subject: str | None = None,
    ):
        self.key_file = key_file
        self.scopes = scopes
        self.subject = subject
        self._credentials: service_account.Credentials | None = None

    def _load(self) -> service_account.Credentials:
        if self._credentials is None:
            if not self.key_file.exists():
                raise AuthTokenUnavailableError(
                    f"Service account file not found: {self.key_file}"
                )
            self._credentials = service_account.Credentials.from_service_account_file(
                str(self.key_file),
                scopes=self.scopes,
                subject=self.subject,
            )
        return self._credentials

    async def get_access_token(self) -> AccessToken:
        try:
            credentials = self._load()
            await asyncio.to_thread(credentials.refresh, Request())
        except (GoogleAuthError, ValueError, OSError) as e:
            raise AuthTokenUnavailableError(f"Token refresh failed: {e}") from e

        if not credentials.token:
            raise AuthTokenUnavailableError("Token refresh returned no token")

        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)

        logger.info(
            "access_token_refreshed",
            subject=self.subject,
            expires_at=expiry.isoformat() if expiry else None,
        )
        return AccessToken(token=credentials.token, expiry=expiry)


def provider_from_settings(config: Settings | None = None) -> TokenProvider | None:
    """Build the token provider configured in *config*, if any."""
    config = config or settings
    if config.service_account_file is not None:
        return ServiceAccountTokenProvider(
            key_file=config.service_account_file,
            scopes=config.google_scopes,
            subject=config.impersonate_subject,
        )
    if config.access_token:
        return StaticTokenProvider(config.access_token)
    return None


class AuthContext:
    """Authentication state shared read-only by every fetch in one run.

    The token is fetched once by ``start()`` and refreshed only when it gets
    close to expiry.
    """

    def __init__(
        self,
        provider: TokenProvider | None,
        media_client: GoogleMediaClient | None = None,
        *,
        allow_anonymous: bool = False,
    ):
        self.provider = provider
        self.media_client = media_client
        self.allow_anonymous = allow_anonymous
        self._token: AccessToken | None = None
        self._last_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def start(self) -> None:
        """Obtain the run's token.

        Raises:
            AuthTokenUnavailableError: If no token can be obtained and the
                run is not allowed to proceed anonymously.
        """
        token = await self.get_token()
        if token is None and not self.allow_anonymous:
            raise AuthTokenUnavailableError(
                self._last_error or "No token provider configured"
            )
        if token is None:
            logger.warning("running_without_access_token", reason=self._last_error)

    async def get_token(self) -> str | None:
        """Return a valid token, or ``None`` when none can be obtained."""
        async with self._lock:
            if self._token is not None and not self._token.expires_soon():
                return self._token.token

            if self.provider is None:
                self._last_error = "No token provider configured"
                return None

            try:
                self._token = await self.provider.get_access_token()
                self._last_error = None
            except AuthTokenUnavailableError as e:
                logger.warning("access_token_unavailable", error=e.message)
                self._token = None
                self._last_error = e.message
                return None

            return self._token.token
