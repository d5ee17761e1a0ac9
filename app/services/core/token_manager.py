"""
Bearer token management for the Twizzit API.

Tokens are cached per (endpoint, username) in a ``TokenCache``. The cache is
an ordinary object handed to each ``TokenManager``; the process-wide default
returned by ``get_default_token_cache()`` is just one instance, so tests and
separate tenants can use isolated caches.

Lifecycle per key:
    Unauthenticated -> Authenticating -> Valid -> (Expiring | Rejected) -> Authenticating

Concurrent callers that find the key expiring while a refresh is already in
flight await that same refresh instead of logging in again.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.exceptions import (
    AuthenticationError,
    RateLimitError,
    TransientServerError,
    TwizzitApiError,
)
from app.core.logging import get_logger

logger = get_logger(__name__)

AUTHENTICATE_PATH = "/v2/api/authenticate"

TokenKey = Tuple[str, str]


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float  # unix seconds

    def remaining(self, now: float) -> float:
        return self.expires_at - now


class TokenCache:
    """
    Concurrent token map keyed by (endpoint, username).

    Each key has at most one in-flight refresh task; callers arriving while it
    runs share its result (or its exception).
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._tokens: Dict[TokenKey, CachedToken] = {}
        self._inflight: Dict[TokenKey, asyncio.Task] = {}

    def get(self, key: TokenKey) -> Optional[CachedToken]:
        return self._tokens.get(key)

    def set(self, key: TokenKey, token: CachedToken) -> None:
        self._tokens[key] = token

    def invalidate(self, key: TokenKey) -> None:
        self._tokens.pop(key, None)

    def clear(self) -> None:
        self._tokens.clear()

    def is_fresh(self, key: TokenKey, buffer_seconds: float) -> bool:
        cached = self._tokens.get(key)
        return cached is not None and cached.remaining(self.clock()) > buffer_seconds

    async def get_or_refresh(
        self,
        key: TokenKey,
        refresh: Callable[[], Awaitable[CachedToken]],
        buffer_seconds: float
    ) -> CachedToken:
        """
        Return a token with more than ``buffer_seconds`` of life left.

        Joins an in-flight refresh for the same key, or starts one.
        """
        cached = self._tokens.get(key)
        if cached is not None and cached.remaining(self.clock()) > buffer_seconds:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_refresh(key, refresh))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _run_refresh(
        self,
        key: TokenKey,
        refresh: Callable[[], Awaitable[CachedToken]]
    ) -> CachedToken:
        try:
            token = await refresh()
            self._tokens[key] = token
            return token
        finally:
            self._inflight.pop(key, None)


_default_cache: Optional[TokenCache] = None


def get_default_token_cache() -> TokenCache:
    """Process-wide token cache shared by clients that are not given one."""
    global _default_cache
    if _default_cache is None:
        _default_cache = TokenCache()
    return _default_cache


def classify_auth_failure(response: httpx.Response) -> TwizzitApiError:
    """Map a failed authenticate response to an error."""
    body = _safe_body(response)
    status = response.status_code

    if status == 429:
        return RateLimitError(
            _message_from(body) or "Monthly API call limit exceeded",
            status_code=status,
            body=body
        )
    if status in (400, 401, 403):
        return AuthenticationError("Invalid Twizzit API credentials", status_code=status, body=body)
    if status >= 500:
        return TransientServerError(
            f"Twizzit authentication unavailable ({status})", status_code=status, body=body
        )
    return TwizzitApiError(f"Authentication failed ({status})", status_code=status, body=body)


class TokenManager:
    """Obtains and caches the bearer token for one Twizzit account."""

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        http_client: httpx.AsyncClient,
        cache: Optional[TokenCache] = None,
        buffer_seconds: Optional[float] = None,
        default_ttl: Optional[int] = None
    ):
        """
        Args:
            endpoint: API base URL (e.g. https://app.twizzit.com)
            username: API username
            password: Decrypted API password (never logged)
            http_client: Client used for the login call
            cache: Token cache; defaults to the process-wide cache
            buffer_seconds: Refresh when less than this much lifetime remains
            default_ttl: Lifetime assumed when the response carries no expiry
        """
        self.endpoint = endpoint.rstrip("/")
        self.username = username
        self._password = password
        self.http_client = http_client
        self.cache = cache if cache is not None else get_default_token_cache()
        self.buffer_seconds = (
            settings.TWIZZIT_TOKEN_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
        )
        self.default_ttl = default_ttl or settings.TWIZZIT_DEFAULT_TOKEN_TTL

    @property
    def key(self) -> TokenKey:
        return (self.endpoint, self.username)

    async def ensure_authenticated(self) -> str:
        """Return a valid bearer token, logging in only when needed."""
        token = await self.cache.get_or_refresh(self.key, self.authenticate, self.buffer_seconds)
        return token.token

    def invalidate(self) -> None:
        """Drop the cached token (e.g. after the API rejected it)."""
        self.cache.invalidate(self.key)

    async def authenticate(self) -> CachedToken:
        """
        Exchange username/password for a bearer token.

        Raises:
            AuthenticationError: Credentials rejected
            RateLimitError: Quota exceeded (never retried)
            TransientServerError: Server or transport failure
        """
        logger.info(
            "Authenticating with Twizzit",
            extra={"endpoint": self.endpoint, "username": self.username}
        )
        try:
            response = await self.http_client.post(
                f"{self.endpoint}{AUTHENTICATE_PATH}",
                data={"username": self.username, "password": self._password},
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TransientServerError("Twizzit authentication timed out", cause=e) from e
        except httpx.RequestError as e:
            raise TransientServerError(f"Twizzit authentication failed: {e}", cause=e) from e

        if response.status_code >= 400:
            raise classify_auth_failure(response)

        body = _safe_body(response)
        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError(
                "Authentication response missing token", status_code=response.status_code
            )

        return CachedToken(token=token, expires_at=self._expiry_from(body))

    def _expiry_from(self, body: dict) -> float:
        """Expiry from ``valid-till`` (unix seconds) or ``expires_in``, else the default TTL."""
        now = self.cache.clock()
        valid_till = body.get("valid-till") or body.get("valid_till")
        if valid_till is not None:
            try:
                return float(valid_till)
            except (TypeError, ValueError):
                logger.warning("Unparseable valid-till in auth response", extra={"value": valid_till})

        expires_in = body.get("expires_in")
        if expires_in is not None:
            try:
                return now + float(expires_in)
            except (TypeError, ValueError):
                logger.warning("Unparseable expires_in in auth response", extra={"value": expires_in})

        return now + self.default_ttl


def _safe_body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _message_from(body) -> Optional[str]:
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return None
