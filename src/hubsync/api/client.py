#!/usr/bin/env python3
"""JSON-over-HTTP client shared by the hub and external registry adapters.

Every request carries a bearer token from the injected provider (usually a
TokenCache). A 401 drops the cached token and the request is sent once more;
apart from that the client does not retry. Failures surface as typed
exceptions whose ``recoverable`` flag feeds the workflow retry policy.

Usage:
    async with RegistryHttpClient(token_provider, base_url=url) as client:
        page = await client.get("/devices", params={"pageIndex": 1})
        await client.delete(f"/devices/{ref}")
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .exceptions import (
    APIError,
    ConflictError,
    ConnectionError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


class RegistryHttpClient:
    """Async HTTP client for registry APIs.

    Use as an async context manager to ensure the session is closed:

        async with RegistryHttpClient(provider, base_url="https://hub") as client:
            data = await client.get("/devices")

    Attributes:
        base_url: Prefix for relative endpoints. Absolute URLs pass through.
        request_timeout: Total timeout per request in seconds.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = "",
        on_unauthorized: Optional[Callable[[], None]] = None,
        request_timeout: float = 60.0,
        max_connections: int = 10,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the client.

        Args:
            token_provider: Async callable returning a bearer token.
            base_url: Base URL for relative endpoints.
            on_unauthorized: Called on a 401 before the single retry, to drop
                the cached token.
            request_timeout: Total request timeout in seconds.
            max_connections: Connection pool size.
            session: Pre-built session (tests); otherwise created on enter.
        """
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.on_unauthorized = on_unauthorized
        self.request_timeout = request_timeout
        self.max_connections = max_connections
        self._session = session
        self._owns_session = session is None

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "RegistryHttpClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    limit_per_host=self.max_connections,
                ),
                timeout=aiohttp.ClientTimeout(
                    total=self.request_timeout,
                    connect=10,
                ),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}"

    async def _get_auth_headers(self) -> dict[str, str]:
        token = await self.token_provider()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Send one request and decode the JSON reply (None for an empty body).

        Raises:
            APIError: Non-2xx status, as the subclass matching the status
            NetworkError: Connection failure or timeout
        """
        if not self._session:
            raise RuntimeError("RegistryHttpClient used outside its async context")

        url = self._build_url(endpoint)

        try:
            headers = await self._get_auth_headers()

            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                        retry_after=response.headers.get("Retry-After"),
                    )

                body = await response.text()
                if not body:
                    return None
                return await response.json(content_type=None)

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {url}",
                host=self.base_url or url,
                cause=e,
            ) from e

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=self.request_timeout,
                cause=e,
            ) from e

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            ) from e

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
        retry_after: Optional[str] = None,
    ) -> APIError:
        """Map an error status onto the matching APIError subclass."""
        if status == 401:
            return TokenExpiredError(details={"endpoint": endpoint})

        context = {"endpoint": endpoint, "method": method, "response_body": response_body}
        where = f"{method} {endpoint}"

        if status == 404:
            return NotFoundError("Resource", endpoint, **context)
        if status == 409:
            return ConflictError(f"Conflict for {where}", **context)
        if status == 429:
            seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
            return RateLimitError(f"Rate limited on {where}", retry_after=seconds, **context)
        if status in (400, 422):
            return ValidationError(f"Rejected {where}", status_code=status, **context)
        if status >= 500:
            return ServerError(f"HTTP {status} from {where}", status_code=status, **context)
        return APIError(f"HTTP {status} from {where}", status_code=status, **context)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Make a request, refreshing the token once on a 401."""
        try:
            return await self._request(method, endpoint, params, json_body)
        except TokenExpiredError:
            logger.warning(f"Token rejected for {method} {endpoint}, refreshing once")
            if self.on_unauthorized:
                self.on_unauthorized()
            return await self._request(method, endpoint, params, json_body)

    # ----------------------------------------
    # Convenience Methods
    # ----------------------------------------

    async def get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_body: Optional[Any] = None,
        params: Optional[dict] = None,
    ) -> Any:
        return await self.request("POST", endpoint, params=params, json_body=json_body)

    async def put(self, endpoint: str, json_body: Optional[Any] = None) -> Any:
        return await self.request("PUT", endpoint, json_body=json_body)

    async def delete(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self.request("DELETE", endpoint, params=params)


__all__ = ["RegistryHttpClient", "TokenProvider"]
