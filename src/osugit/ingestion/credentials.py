"""
Client-credentials token cache for the osu! API.

One CredentialCache is created per process and handed to every client that
needs a bearer token. Readers take the cached credential without locking;
refreshes go through a single asyncio.Lock so that many callers discovering
an expired (or missing) token at the same moment cause one exchange.
"""

import asyncio
import time
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from osugit.errors import AuthError
from osugit.utils.log import get_logger

log = get_logger(__name__)


class Credential(BaseModel):
    """A bearer token plus the instant it was requested."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    issued_at: float

    def is_usable(self, now: float, skew: float = 0.0) -> bool:
        return self.issued_at + self.expires_in - skew > now


class CredentialCache:
    """
    Obtains and caches the client-credentials bearer token.

    Usage:
        cache = CredentialCache(http, token_endpoint, client_id, client_secret)
        credential = await cache.get_credential()
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_endpoint: str,
        client_id: str,
        client_secret: str,
        skew_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            http_client: Shared async client used for the token exchange
            token_endpoint: OAuth token URL
            client_id: OAuth client id
            client_secret: OAuth client secret
            skew_seconds: Treat a credential as stale this many seconds early (default: exact expiry)
            clock: Wall-clock source, injectable for tests
        """
        self.http_client = http_client
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.skew_seconds = skew_seconds
        self.clock = clock
        self._credential: Optional[Credential] = None
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0

    def _cached(self) -> Optional[Credential]:
        credential = self._credential
        if credential is not None and credential.is_usable(self.clock(), self.skew_seconds):
            return credential
        return None

    async def get_credential(self) -> Credential:
        """
        Returns the cached credential, exchanging a new one if it is absent or stale.

        Raises:
            AuthError: the token endpoint is unreachable or refused the exchange
        """
        credential = self._cached()
        if credential is not None:
            return credential

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock
            credential = self._cached()
            if credential is not None:
                return credential

            credential = await self._exchange()
            self._credential = credential
            return credential

    def invalidate(self):
        """Drops the cached credential so the next caller exchanges a new one."""
        if self._credential is not None:
            log.info("credential_invalidated")
        self._credential = None

    async def _exchange(self) -> Credential:
        issued_at = self.clock()
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
            "scope": "public",
        }

        try:
            response = await self.http_client.post(self.token_endpoint, data=form)
        except httpx.HTTPError as e:
            log.error("credential_exchange_unreachable", endpoint=self.token_endpoint, error=str(e))
            raise AuthError(f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            log.error("credential_exchange_refused", status=response.status_code)
            raise AuthError(
                f"Token exchange failed with {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )

        try:
            data = response.json()
            credential = Credential(
                access_token=data["access_token"],
                token_type=data.get("token_type", "Bearer"),
                expires_in=int(data["expires_in"]),
                issued_at=issued_at,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Malformed token response: {e}", status=response.status_code) from e

        self.refresh_count += 1
        log.info("credential_refreshed", expires_in=credential.expires_in)
        return credential
