#!/usr/bin/env python3
"""OAuth2 Token Caching for registry API access.

This module provides a process-wide token cache shared by every registry
client, keyed by token endpoint, using the client credentials grant.

Features:
    - One cache for all endpoints, guarded by a single asyncio.Lock
    - Lock-free reads while the cached token is still valid
    - Double-checked refresh: N concurrent callers cause one upstream fetch
    - Failed fetches evict the stale entry and propagate; no internal retry
    - Injectable clock and acquirer for deterministic tests

Security Notes:
    - Tokens are cached in memory only (never persisted to disk)
    - Token ID in logs and debug output is a SHA-256 prefix, never the token

Example:
    >>> cache = TokenCache()
    >>> creds = ClientCredentials(token_url, client_id, client_secret)
    >>> token = await cache.get(token_url, creds, ttl=6 * 24 * 3600)
"""
import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import aiohttp

from .exceptions import (
    ConnectionError,
    InvalidCredentialsError,
    NetworkError,
    TimeoutError,
    TokenFetchError,
)

logger = logging.getLogger(__name__)

# Validity applied to external registry tokens when the caller gives none.
DEFAULT_TOKEN_TTL_SECONDS = 6 * 24 * 3600


@dataclass(frozen=True)
class ClientCredentials:
    """Client credentials for one token endpoint.

    Attributes:
        token_url: OAuth2 token endpoint.
        client_id: OAuth2 client ID.
        client_secret: OAuth2 client secret.
        scope: Optional scope sent with the grant.
    """
    token_url: str
    client_id: str
    client_secret: str
    scope: Optional[str] = None

    def __repr__(self) -> str:
        return f"ClientCredentials(token_url={self.token_url!r}, client_id={self.client_id!r})"


@dataclass(frozen=True)
class CachedToken:
    """Immutable cache entry for one token endpoint.

    Attributes:
        endpoint_key: Cache key, normally the token endpoint URI.
        access_token: The OAuth2 bearer token string.
        valid_until: Absolute Unix timestamp after which the entry is unusable.
    """
    endpoint_key: str
    access_token: str
    valid_until: float

    @property
    def token_id(self) -> str:
        """Safe identifier for logging (SHA-256 hash, first 8 chars)."""
        return hashlib.sha256(self.access_token.encode()).hexdigest()[:8]

    def is_valid(self, now: float) -> bool:
        return now < self.valid_until


# Signature of a token acquirer: credentials in, access token out.
TokenAcquirer = Callable[[ClientCredentials], Awaitable[str]]


class OAuthTokenAcquirer:
    """Fetches tokens with the OAuth2 client credentials grant.

    Performs exactly one POST per call. Retrying belongs to the caller's
    workflow policy, so failures are classified and raised immediately.
    """

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds

    async def __call__(self, credentials: ClientCredentials) -> str:
        payload = {
            "grant_type": "client_credentials",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        if credentials.scope:
            payload["scope"] = credentials.scope

        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    credentials.token_url,
                    data=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    if response.status == 200:
                        data = await response.json(content_type=None)
                        access_token = data.get("access_token")
                        if not access_token:
                            raise TokenFetchError(
                                "Token response missing access_token",
                                status_code=200,
                                endpoint_key=credentials.token_url,
                                details={"response_keys": list(data.keys())},
                                recoverable=False,
                            )
                        return access_token

                    error_text = await response.text()

                    if response.status == 401:
                        raise InvalidCredentialsError(
                            "Invalid client credentials",
                            details={"response": error_text[:200]},
                        )

                    raise TokenFetchError(
                        f"Token server returned HTTP {response.status}",
                        status_code=response.status,
                        endpoint_key=credentials.token_url,
                        details={"response": error_text[:200]},
                        recoverable=response.status >= 500 or response.status == 429,
                    )

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to token server: {e}",
                host=credentials.token_url,
                cause=e,
            ) from e

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                "Token request timed out",
                timeout_seconds=self.timeout_seconds,
                cause=e,
            ) from e

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error fetching token: {e}",
                cause=e,
            ) from e


class TokenCache:
    """Process-scoped cache of bearer tokens keyed by endpoint.

    All endpoints share one lock. A caller that finds a valid entry never
    touches the lock; a caller that does not takes the lock, re-checks, and
    only then asks the acquirer for a new token. Concurrent callers for the
    same key therefore produce a single upstream request.

    Example:
        >>> cache = TokenCache()
        >>> token = await cache.get("https://idp/token", creds, ttl=3600)
        >>> await cache.get("https://idp/token", creds, ttl=3600) == token
        True
    """

    def __init__(
        self,
        acquirer: Optional[TokenAcquirer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._acquirer = acquirer or OAuthTokenAcquirer()
        self._clock = clock
        self._entries: dict[str, CachedToken] = {}
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    async def get(
        self,
        endpoint_key: str,
        credentials: ClientCredentials,
        ttl: float = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> str:
        """Return a valid token for ``endpoint_key``, fetching if needed.

        Args:
            endpoint_key: Cache key (token endpoint URI).
            credentials: Credentials used when a fetch is required.
            ttl: Validity in seconds applied to a freshly fetched token.

        Returns:
            The access token string.

        Raises:
            TokenFetchError: If the upstream fetch fails.
            InvalidCredentialsError: If the credentials are rejected.
            NetworkError: If the token server cannot be reached.
        """
        entry = self._entries.get(endpoint_key)
        if entry is not None and entry.is_valid(self._clock()):
            return entry.access_token

        async with self._lock:
            entry = self._entries.get(endpoint_key)
            if entry is not None and entry.is_valid(self._clock()):
                return entry.access_token

            self.fetch_count += 1
            try:
                access_token = await self._acquirer(credentials)
            except Exception:
                self._entries.pop(endpoint_key, None)
                logger.warning(f"Token fetch failed for {endpoint_key}; cache entry evicted")
                raise

            entry = CachedToken(
                endpoint_key=endpoint_key,
                access_token=access_token,
                valid_until=self._clock() + ttl,
            )
            self._entries[endpoint_key] = entry
            logger.info(
                f"Token fetched for {endpoint_key} (id={entry.token_id}), valid for {ttl:.0f}s"
            )
            return entry.access_token

    def invalidate(self, endpoint_key: str):
        """Drop the cached token for one endpoint."""
        self._entries.pop(endpoint_key, None)

    def token_info(self, endpoint_key: str) -> Optional[dict]:
        """Debug view of an entry. Never includes the token itself."""
        entry = self._entries.get(endpoint_key)
        if entry is None:
            return None
        now = self._clock()
        return {
            "token_id": entry.token_id,
            "is_valid": entry.is_valid(now),
            "time_remaining_seconds": max(0.0, entry.valid_until - now),
        }


__all__ = [
    "DEFAULT_TOKEN_TTL_SECONDS",
    "CachedToken",
    "ClientCredentials",
    "OAuthTokenAcquirer",
    "TokenAcquirer",
    "TokenCache",
]
