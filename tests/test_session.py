"""Tests for session validation and single-flight refresh."""

import asyncio
import json

import httpx
import pytest

from signtrail.errors import SessionExpired, TokenExpired, TokenInvalid, Unauthorized
from signtrail.models import SessionUser
from signtrail.session import HttpIdentityProvider, SessionRefreshGuard

ALICE = SessionUser(id="alice-0000-0000", email="alice@example.org", name="Alice")
REFRESH = "refresh-token-for-alice-0123456789abcdef"


class RecordingCookies:
    """Stand-in for a Starlette Response."""

    def __init__(self) -> None:
        self.cookies: dict[str, dict] = {}

    def set_cookie(self, key, value="", **kwargs):
        self.cookies[key] = {"value": value, **kwargs}


@pytest.fixture
def guard(identity, settings) -> SessionRefreshGuard:
    identity.refresh_tokens[REFRESH] = ALICE
    return SessionRefreshGuard(identity, settings=settings)


class TestRefreshWithLock:
    @pytest.mark.asyncio
    async def test_five_concurrent_refreshes_one_upstream_call(self, guard, identity):
        writers = [RecordingCookies() for _ in range(5)]

        results = await asyncio.gather(
            *(guard.refresh_with_lock(REFRESH, w) for w in writers)
        )

        assert identity.refresh_calls == 1
        assert all(r == results[0] for r in results)
        assert results[0].user == ALICE
        for w in writers:
            assert w.cookies["sb-access-token"]["value"] == results[0].new_access_token
            assert w.cookies["sb-refresh-token"]["value"] == results[0].new_refresh_token
            assert w.cookies["sb-access-token"]["httponly"] is True

    @pytest.mark.asyncio
    async def test_failure_clears_cookies_for_everyone(self, guard, identity):
        identity.refresh_tokens.clear()
        writers = [RecordingCookies() for _ in range(3)]

        results = await asyncio.gather(
            *(guard.refresh_with_lock(REFRESH, w) for w in writers),
            return_exceptions=True,
        )

        assert all(isinstance(r, SessionExpired) for r in results)
        assert identity.refresh_calls == 1
        for w in writers:
            for name in ("sb-access-token", "sb-refresh-token"):
                assert w.cookies[name]["value"] == ""
                assert w.cookies[name]["max_age"] == 0

    @pytest.mark.asyncio
    async def test_lock_key_is_token_prefix(self, guard):
        assert guard.lock_key(REFRESH) == REFRESH[:20]
        assert len(guard.lock_key(REFRESH)) == 20

    @pytest.mark.asyncio
    async def test_sequential_refresh_within_grace_reuses_result(self, guard, identity):
        first = await guard.refresh_with_lock(REFRESH)
        second = await guard.refresh_with_lock(REFRESH)
        assert first == second
        assert identity.refresh_calls == 1


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_valid_access_token(self, guard, identity):
        identity.access_tokens["good"] = ALICE
        cookies = RecordingCookies()
        assert await guard.authenticate("good", REFRESH, cookies) == ALICE
        assert identity.refresh_calls == 0
        assert cookies.cookies == {}

    @pytest.mark.asyncio
    async def test_expired_access_token_falls_back_to_refresh(self, guard, identity):
        identity.expired_tokens.add("stale")
        cookies = RecordingCookies()
        user = await guard.authenticate("stale", REFRESH, cookies)
        assert user == ALICE
        assert identity.refresh_calls == 1
        assert "sb-access-token" in cookies.cookies

    @pytest.mark.asyncio
    async def test_refresh_only(self, guard):
        assert await guard.authenticate(None, REFRESH) == ALICE

    @pytest.mark.asyncio
    async def test_no_tokens(self, guard):
        with pytest.raises(Unauthorized):
            await guard.authenticate(None, None)

    @pytest.mark.asyncio
    async def test_bad_access_token_without_refresh(self, guard):
        with pytest.raises(TokenInvalid):
            await guard.authenticate("garbage", None)


def _transport(handler):
    return httpx.MockTransport(handler)


class TestHttpIdentityProvider:
    @pytest.mark.asyncio
    async def test_validate_access_token(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/auth/v1/user"
            assert request.headers["authorization"] == "Bearer tok"
            return httpx.Response(
                200,
                json={"id": "u1", "email": "u1@example.org", "user_metadata": {"full_name": "U One"}},
            )

        provider = HttpIdentityProvider(settings, transport=_transport(handler))
        user = await provider.validate_access_token("tok")
        assert user == SessionUser(id="u1", email="u1@example.org", name="U One")

    @pytest.mark.asyncio
    async def test_expired_token(self, settings):
        def handler(request):
            return httpx.Response(401, json={"msg": "invalid JWT: token is expired"})

        provider = HttpIdentityProvider(settings, transport=_transport(handler))
        with pytest.raises(TokenExpired):
            await provider.validate_access_token("tok")

    @pytest.mark.asyncio
    async def test_invalid_token(self, settings):
        def handler(request):
            return httpx.Response(401, json={"msg": "invalid JWT: signature is invalid"})

        provider = HttpIdentityProvider(settings, transport=_transport(handler))
        with pytest.raises(TokenInvalid):
            await provider.validate_access_token("tok")

    @pytest.mark.asyncio
    async def test_refresh(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/auth/v1/token"
            assert request.url.params["grant_type"] == "refresh_token"
            assert json.loads(request.content) == {"refresh_token": "r1"}
            return httpx.Response(
                200,
                json={
                    "access_token": "a2",
                    "refresh_token": "r2",
                    "expires_in": 3600,
                    "user": {"id": "u1", "email": "u1@example.org"},
                },
            )

        provider = HttpIdentityProvider(settings, transport=_transport(handler))
        user, tokens = await provider.refresh("r1")
        assert user.id == "u1"
        assert (tokens.access_token, tokens.refresh_token, tokens.expires_in) == ("a2", "r2", 3600)

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, settings):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        provider = HttpIdentityProvider(settings, transport=_transport(handler))
        with pytest.raises(TokenInvalid):
            await provider.refresh("used")
