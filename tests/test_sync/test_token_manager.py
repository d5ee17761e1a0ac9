"""Unit tests for TokenManager and TokenCache.

Test Strategy:
1. A valid cached token is reused without another login
2. A token inside the refresh buffer triggers exactly one login, even
   with concurrent callers
3. Expiry comes from valid-till, expires_in, or the default TTL
4. Login failures map onto the error taxonomy
"""
import asyncio

import httpx
import pytest

from app.core.exceptions import AuthenticationError, RateLimitError, TransientServerError
from app.services.core.token_manager import CachedToken, TokenCache, TokenManager

ENDPOINT = "https://twizzit.test"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def auth_transport(responses):
    """MockTransport answering the login call from ``responses`` (callable per call)."""
    state = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        state["count"] += 1
        return responses(state["count"], request)

    return httpx.MockTransport(handler), state


def make_manager(transport, cache, **kwargs) -> TokenManager:
    return TokenManager(
        ENDPOINT, "api-user", "s3cret",
        httpx.AsyncClient(transport=transport),
        cache=cache,
        **kwargs
    )


class TestTokenReuse:
    """Caching behaviour."""

    @pytest.mark.asyncio
    async def test_valid_token_reused(self):
        clock = FakeClock()
        transport, state = auth_transport(
            lambda n, r: httpx.Response(200, json={"token": f"t{n}", "expires_in": 3600})
        )
        manager = make_manager(transport, TokenCache(clock=clock))

        assert await manager.ensure_authenticated() == "t1"
        assert await manager.ensure_authenticated() == "t1"
        assert state["count"] == 1

    @pytest.mark.asyncio
    async def test_forced_expiry_triggers_one_reauth(self):
        """Many concurrent callers after expiry share a single login."""
        clock = FakeClock()
        transport, state = auth_transport(
            lambda n, r: httpx.Response(200, json={"token": f"t{n}", "expires_in": 3600})
        )
        manager = make_manager(transport, TokenCache(clock=clock), buffer_seconds=300)

        await manager.ensure_authenticated()
        clock.now += 3600 - 299  # inside the refresh buffer

        tokens = await asyncio.gather(*(manager.ensure_authenticated() for _ in range(5)))

        assert state["count"] == 2
        assert set(tokens) == {"t2"}

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_refresh(self):
        """Other callers still get the token when one waiter is cancelled."""
        gate = asyncio.Event()
        state = {"count": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            state["count"] += 1
            await gate.wait()
            return httpx.Response(200, json={"token": f"t{state['count']}", "expires_in": 3600})

        manager = make_manager(httpx.MockTransport(handler), TokenCache())

        first = asyncio.ensure_future(manager.ensure_authenticated())
        second = asyncio.ensure_future(manager.ensure_authenticated())
        await asyncio.sleep(0.01)
        first.cancel()
        gate.set()

        assert await second == "t1"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert state["count"] == 1

    @pytest.mark.asyncio
    async def test_managers_share_cache_per_key(self):
        clock = FakeClock()
        cache = TokenCache(clock=clock)
        transport, state = auth_transport(
            lambda n, r: httpx.Response(200, json={"token": f"t{n}", "expires_in": 3600})
        )

        await make_manager(transport, cache).ensure_authenticated()
        await make_manager(transport, cache).ensure_authenticated()

        assert state["count"] == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_login(self):
        transport, state = auth_transport(
            lambda n, r: httpx.Response(200, json={"token": f"t{n}", "expires_in": 3600})
        )
        manager = make_manager(transport, TokenCache())

        await manager.ensure_authenticated()
        manager.invalidate()

        assert await manager.ensure_authenticated() == "t2"
        assert state["count"] == 2

    @pytest.mark.asyncio
    async def test_login_sends_form_credentials(self):
        seen = {}

        def respond(n, request):
            seen["path"] = request.url.path
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"token": "t", "expires_in": 60})

        transport, _ = auth_transport(respond)
        await make_manager(transport, TokenCache(), buffer_seconds=0).ensure_authenticated()

        assert seen["path"] == "/v2/api/authenticate"
        assert "username=api-user" in seen["body"]
        assert "password=s3cret" in seen["body"]


class TestExpiry:
    """Expiry extraction."""

    @pytest.mark.asyncio
    async def test_valid_till_used_as_absolute_expiry(self):
        clock = FakeClock()
        cache = TokenCache(clock=clock)
        transport, _ = auth_transport(
            lambda n, r: httpx.Response(200, json={"token": "t", "valid-till": clock.now + 7200})
        )
        manager = make_manager(transport, cache)

        await manager.ensure_authenticated()

        assert cache.get(manager.key).expires_at == clock.now + 7200

    @pytest.mark.asyncio
    async def test_default_ttl_when_no_expiry(self):
        clock = FakeClock()
        cache = TokenCache(clock=clock)
        transport, _ = auth_transport(lambda n, r: httpx.Response(200, json={"token": "t"}))
        manager = make_manager(transport, cache, default_ttl=86400)

        await manager.ensure_authenticated()

        assert cache.get(manager.key).expires_at == clock.now + 86400

    def test_cache_freshness(self):
        clock = FakeClock()
        cache = TokenCache(clock=clock)
        cache.set(("e", "u"), CachedToken("t", clock.now + 100))

        assert cache.is_fresh(("e", "u"), 50)
        assert not cache.is_fresh(("e", "u"), 150)


class TestLoginFailures:
    """Error mapping for the login call."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_rejected_credentials(self, status):
        transport, _ = auth_transport(lambda n, r: httpx.Response(status, json={"error": "nope"}))
        with pytest.raises(AuthenticationError):
            await make_manager(transport, TokenCache()).ensure_authenticated()

    @pytest.mark.asyncio
    async def test_rate_limited_login(self):
        transport, state = auth_transport(
            lambda n, r: httpx.Response(429, json={"error": "Monthly API call limit exceeded"})
        )
        with pytest.raises(RateLimitError, match="Monthly API call limit exceeded"):
            await make_manager(transport, TokenCache()).ensure_authenticated()
        assert state["count"] == 1

    @pytest.mark.asyncio
    async def test_server_error(self):
        transport, _ = auth_transport(lambda n, r: httpx.Response(503, text="down"))
        with pytest.raises(TransientServerError):
            await make_manager(transport, TokenCache()).ensure_authenticated()

    @pytest.mark.asyncio
    async def test_missing_token_in_response(self):
        transport, _ = auth_transport(lambda n, r: httpx.Response(200, json={"ok": True}))
        with pytest.raises(AuthenticationError, match="missing token"):
            await make_manager(transport, TokenCache()).ensure_authenticated()

    @pytest.mark.asyncio
    async def test_failed_refresh_not_cached(self):
        """A failed login leaves no token and no stuck in-flight refresh."""
        transport, state = auth_transport(
            lambda n, r: httpx.Response(401, json={}) if n == 1
            else httpx.Response(200, json={"token": "t2", "expires_in": 3600})
        )
        manager = make_manager(transport, TokenCache())

        with pytest.raises(AuthenticationError):
            await manager.ensure_authenticated()
        assert await manager.ensure_authenticated() == "t2"
        assert state["count"] == 2
