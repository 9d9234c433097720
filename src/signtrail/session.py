"""Session validation and single-flight token refresh.

Browsers open several requests at once. When the access token has just
expired they all arrive carrying the same refresh token, and most
identity providers rotate refresh tokens on use: only the first refresh
succeeds, the rest would log the user out. ``SessionRefreshGuard``
collapses those concurrent refreshes into one upstream call and hands
every caller the same new token pair.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from .config import Settings, get_settings
from .errors import SessionExpired, TokenExpired, TokenInvalid, Unauthorized
from .locks import LockTable, SharedFutureMap, lock_key
from .models import RefreshResult, SessionTokens, SessionUser

logger = logging.getLogger("signtrail.session")


class IdentityProvider(Protocol):
    async def validate_access_token(self, token: str) -> SessionUser: ...

    async def refresh(self, refresh_token: str) -> tuple[SessionUser, SessionTokens]: ...


class CookieWriter(Protocol):
    """Anything with Starlette's ``Response.set_cookie`` signature."""

    def set_cookie(self, key: str, value: str = "", **kwargs: Any) -> None: ...


# ---------------------------------------------------------------------------
# GoTrue-compatible provider
# ---------------------------------------------------------------------------

class HttpIdentityProvider:
    """Talks to a GoTrue-compatible auth API over HTTP.

    Args:
        settings: Supplies ``identity_url``, ``identity_api_key`` and the
            request timeout.
        transport: Optional httpx transport, used by tests to mock the API.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {}
        if self._settings.identity_api_key:
            headers["apikey"] = self._settings.identity_api_key
        return httpx.AsyncClient(
            base_url=self._settings.identity_url.rstrip("/"),
            headers=headers,
            timeout=self._settings.identity_timeout_seconds,
            transport=self._transport,
        )

    @staticmethod
    def _user(payload: dict) -> SessionUser:
        metadata = payload.get("user_metadata") or {}
        return SessionUser(
            id=payload["id"],
            email=payload.get("email"),
            name=metadata.get("full_name") or metadata.get("name"),
        )

    async def validate_access_token(self, token: str) -> SessionUser:
        async with self._client() as client:
            resp = await client.get(
                "/auth/v1/user", headers={"Authorization": f"Bearer {token}"}
            )
        if resp.status_code in (401, 403):
            body = resp.text.lower()
            if "expired" in body:
                raise TokenExpired()
            raise TokenInvalid()
        resp.raise_for_status()
        return self._user(resp.json())

    async def refresh(self, refresh_token: str) -> tuple[SessionUser, SessionTokens]:
        async with self._client() as client:
            resp = await client.post(
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
        if 400 <= resp.status_code < 500:
            raise TokenInvalid(f"Refresh rejected by identity provider ({resp.status_code}).")
        resp.raise_for_status()
        data = resp.json()
        tokens = SessionTokens(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=data.get("expires_in"),
        )
        return self._user(data["user"]), tokens


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

class SessionRefreshGuard:
    """Authenticates requests and single-flights refreshes per token.

    Args:
        provider: Identity provider.
        settings: Cookie names, lock-key prefix and lock timings.
        lock_table: Shared-future table; defaults to an in-process one.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        settings: Optional[Settings] = None,
        lock_table: Optional[LockTable] = None,
    ) -> None:
        self._provider = provider
        self._settings = settings or get_settings()
        self.lock_table = lock_table or SharedFutureMap(
            grace_seconds=self._settings.refresh_grace_seconds,
            stale_seconds=self._settings.refresh_stale_seconds,
        )

    def lock_key(self, refresh_token: str) -> str:
        return lock_key(refresh_token, self._settings.refresh_lock_prefix)

    async def authenticate(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        cookies: Optional[CookieWriter] = None,
    ) -> SessionUser:
        """Resolve the caller, refreshing the session when needed.

        Raises:
            Unauthorized: Neither token was presented.
            TokenInvalid: A bad access token and nothing to refresh with.
            SessionExpired: The refresh failed.
        """
        if not access_token and not refresh_token:
            raise Unauthorized("Not logged in.")

        if access_token:
            try:
                return await self._provider.validate_access_token(access_token)
            except (TokenExpired, TokenInvalid):
                if not refresh_token:
                    raise
                logger.debug("Access token rejected, trying refresh")

        result = await self.refresh_with_lock(refresh_token, cookies)
        return result.user

    async def refresh_with_lock(
        self, refresh_token: str, cookies: Optional[CookieWriter] = None
    ) -> RefreshResult:
        """Refresh a session; concurrent callers share one upstream call.

        On success the new pair is written to ``cookies``; on failure both
        session cookies are cleared and SessionExpired is raised.
        """
        try:
            result = await self.lock_table.run_once(
                self.lock_key(refresh_token),
                lambda: self._refresh_upstream(refresh_token),
            )
        except SessionExpired:
            if cookies is not None:
                self.clear_cookies(cookies)
            raise

        if cookies is not None:
            self.set_cookies(cookies, result)
        return result

    async def _refresh_upstream(self, refresh_token: str) -> RefreshResult:
        try:
            user, tokens = await self._provider.refresh(refresh_token)
        except Exception as exc:
            logger.warning("Session refresh failed: %s", exc)
            raise SessionExpired() from exc

        logger.info("Refreshed session for user %s", user.id[:8])
        return RefreshResult(
            user=user,
            new_access_token=tokens.access_token,
            new_refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        )

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    def set_cookies(self, cookies: CookieWriter, result: RefreshResult) -> None:
        s = self._settings
        cookies.set_cookie(
            s.access_cookie_name,
            result.new_access_token,
            max_age=result.expires_in or s.cookie_max_age,
            httponly=True,
            secure=s.cookie_secure,
            samesite="lax",
            path="/",
        )
        cookies.set_cookie(
            s.refresh_cookie_name,
            result.new_refresh_token,
            max_age=s.cookie_max_age,
            httponly=True,
            secure=s.cookie_secure,
            samesite="lax",
            path="/",
        )

    def clear_cookies(self, cookies: CookieWriter) -> None:
        for name in (self._settings.access_cookie_name, self._settings.refresh_cookie_name):
            cookies.set_cookie(
                name,
                "",
                max_age=0,
                httponly=True,
                secure=self._settings.cookie_secure,
                samesite="lax",
                path="/",
            )
