"""Process-wide bearer-token cache with coalesced refresh.

The enterprise gateway wants a short-lived bearer token obtained from an
Entra ID client-credentials grant. Every request needs one, and a burst of
concurrent requests arriving just after expiry must trigger exactly one
token fetch, not one per request.

    cache = TokenCache(EntraTokenSource(tenant, client_id, secret, scope))
    token = await cache.get()

Refresh happens ``TOKEN_REFRESH_SKEW_SECONDS`` before the advertised expiry.
A token seeded from configuration (``AIDE_API_KEY``) has no known expiry and
is used until the gateway rejects it, at which point ``get(force=True)``
goes to the token source if one is configured.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from agent.errors import ConfigurationError, MalformedResponseError, ProviderTransportError
from threadloom_constants import (
    ENTRA_TOKEN_URL_TEMPLATE,
    TOKEN_DEFAULT_TTL_SECONDS,
    TOKEN_REFRESH_SKEW_SECONDS,
)
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)

# (access_token, expires_in_seconds or None)
TokenFetch = Callable[[], Awaitable[Tuple[str, Optional[float]]]]


class EntraTokenSource:
    """Client-credentials token fetch against Microsoft Entra ID."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, scope: str,
                 http_client: Optional[httpx.AsyncClient] = None, timeout: float = 20.0):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self._http_client = http_client
        self._timeout = timeout

    @property
    def token_url(self) -> str:
        return ENTRA_TOKEN_URL_TEMPLATE.format(tenant=quote(self.tenant_id, safe=""))

    async def __call__(self) -> Tuple[str, Optional[float]]:
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
        }
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            resp = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise ProviderTransportError(
                f"Entra ID token request failed: {sanitize_error(str(e))}"
            ) from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if resp.status_code >= 400:
            raise ProviderTransportError(
                f"Failed to fetch gateway token from Entra ID: {resp.status_code} "
                f"{sanitize_error(resp.text[:300])}",
                status_code=resp.status_code,
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponseError("Entra ID token response is not JSON") from e
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise MalformedResponseError("Entra ID token response missing access_token")
        expires_in = payload.get("expires_in")
        if not isinstance(expires_in, (int, float)):
            expires_in = TOKEN_DEFAULT_TTL_SECONDS
        return token, float(expires_in)


class TokenCache:
    """Caches one bearer token; concurrent refreshes share a single fetch."""

    def __init__(
        self,
        fetch: Optional[TokenFetch] = None,
        *,
        static_token: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        skew_seconds: float = TOKEN_REFRESH_SKEW_SECONDS,
    ):
        self._fetch = fetch
        self._clock = clock
        self._skew = skew_seconds
        self._token: Optional[str] = (static_token or "").strip() or None
        self._expires_at: Optional[float] = None
        self._pending: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    def _is_valid(self) -> bool:
        if not self._token:
            return False
        if self._expires_at is None:
            return True
        return self._clock() < self._expires_at

    @property
    def can_refresh(self) -> bool:
        return self._fetch is not None

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = None

    async def _refresh(self) -> str:
        try:
            self.fetch_count += 1
            token, expires_in = await self._fetch()
            ttl = TOKEN_DEFAULT_TTL_SECONDS if expires_in is None else expires_in
            self._token = token
            self._expires_at = self._clock() + max(0.0, ttl - self._skew)
            logger.debug("[token] refreshed bearer token (ttl=%ss)", ttl)
            return token
        finally:
            self._pending = None

    async def get(self, force: bool = False) -> str:
        async with self._lock:
            if not force and self._is_valid():
                return self._token
            if self._fetch is None:
                if self._token and not force:
                    return self._token
                raise ConfigurationError(
                    "No gateway token available: set AIDE_API_KEY or the "
                    "AIDE_ENTRA_TENANT_ID/CLIENT_ID/CLIENT_SECRET/SCOPE variables."
                )
            if self._pending is None:
                self._pending = asyncio.ensure_future(self._refresh())
            pending = self._pending

        token = await asyncio.shield(pending)
        # Another caller may have invalidated while we waited.
        if self._is_valid():
            return self._token
        return token


_CACHES: Dict[Tuple, TokenCache] = {}


def shared_token_cache(key: Tuple, factory: Callable[[], TokenCache]) -> TokenCache:
    """One cache per credential set for the whole process."""
    cache = _CACHES.get(key)
    if cache is None:
        cache = _CACHES[key] = factory()
    return cache


def reset_token_caches() -> None:
    _CACHES.clear()
