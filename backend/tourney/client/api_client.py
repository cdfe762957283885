"""Cookie-session HTTP client with CSRF headers and transparent token refresh."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Mapping, Optional

import httpx

from tourney.client.idle import ActivityStorage, clear_session_data
from tourney.client.session import ClientSession

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CSRF_COOKIE = "csrf_token"


def _unquote(value: str) -> str:
    # Servers quote cookie values containing "=" or "/", which base64 tokens do.
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


class SessionExpiredError(Exception):
    """The session could not be refreshed; the user has to log in again."""

    def __init__(self, redirect_to: str = "/login"):
        self.redirect_to = redirect_to
        super().__init__(f"Session expired, redirect to {redirect_to}")


class SecureClient:
    """
    HTTP client for the tourney API.

    * cookies are kept in the underlying ``httpx.AsyncClient`` jar
    * mutating requests carry the ``X-CSRF-Token`` header
    * a 401 triggers one refresh shared by every request of the session,
      then the original request is replayed once with rebuilt headers

    Every client has its own session state unless ``session_key`` is given;
    clients built with the same key share cached identity and the in-flight
    refresh. Several clients may share one ``httpx.AsyncClient`` (one cookie
    jar) with different keys, the way browser tabs share cookies but not
    memory. With ``activity_storage`` set, :meth:`logout` clears the shared
    session data so sibling idle monitors mirror the logout.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        session_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        activity_storage: Optional[ActivityStorage] = None,
        api_prefix: str = "/api/v1",
        csrf_header: str = "X-CSRF-Token",
        login_path: str = "/login",
        timeout: float = 30.0,
    ):
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=timeout, follow_redirects=False
        )
        self._session_key = session_key
        if session_key is None:
            self.session = ClientSession(f"client-{uuid.uuid4().hex}")
        else:
            self.session = ClientSession.for_key(session_key)
        self.activity_storage = activity_storage
        self.api_prefix = api_prefix.rstrip("/")
        self.csrf_header = csrf_header
        self.login_path = login_path

    async def __aenter__(self) -> "SecureClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._session_key is not None:
            ClientSession.release(self._session_key)
            self._session_key = None
        if self._owns_http:
            await self.http.aclose()

    @property
    def refresh_path(self) -> str:
        return f"{self.api_prefix}/auth/refresh"

    @property
    def logout_path(self) -> str:
        return f"{self.api_prefix}/auth/logout"

    def csrf_token(self) -> Optional[str]:
        """CSRF token from the script-readable cookie, else the cached copy."""
        for cookie in self.http.cookies.jar:
            if cookie.name == CSRF_COOKIE and cookie.value:
                return _unquote(cookie.value)
        return self.session.csrf_token

    def is_authenticated(self) -> bool:
        # Auth cookies are httpOnly in a browser; the CSRF cookie travels with them.
        return any(cookie.name == CSRF_COOKIE for cookie in self.http.cookies.jar)

    def _build_headers(
        self,
        method: str,
        base: Optional[Mapping[str, str]],
        has_raw_body: bool,
        skip_csrf: bool,
    ) -> Dict[str, str]:
        headers = dict(base or {})
        if has_raw_body and not any(name.lower() == "content-type" for name in headers):
            headers["Content-Type"] = "application/json"
        if not skip_csrf and method in MUTATING_METHODS:
            token = self.csrf_token()
            if token:
                headers[self.csrf_header] = token
        return headers

    async def request(
        self,
        method: str,
        url: str,
        *,
        skip_csrf: bool = False,
        skip_refresh: bool = False,
        headers: Optional[Mapping[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request, refreshing the session once on 401.

        A 401 returned after the replay, or after a failed refresh, is handed
        back unchanged; the caller decides what "logged out" means.
        """
        method = method.upper()
        has_raw_body = kwargs.get("content") is not None

        response = await self.http.request(
            method, url, headers=self._build_headers(method, headers, has_raw_body, skip_csrf), **kwargs
        )
        if response.status_code != 401 or skip_refresh:
            return response

        refreshed = await self.session.refresh(self._refresh_access_token)
        if not refreshed:
            self.session.clear_cached_user()
            return response

        # Headers are rebuilt so the replay carries the rotated CSRF token.
        return await self.http.request(
            method, url, headers=self._build_headers(method, headers, has_raw_body, skip_csrf), **kwargs
        )

    async def _refresh_access_token(self) -> bool:
        try:
            response = await self.http.post(self.refresh_path)
        except httpx.HTTPError as exc:
            logger.warning("Refresh request failed: %s", exc)
            return False

        if response.status_code == 401:
            # The server clears it too; drop it here in case the jar kept it.
            self.http.cookies.delete(CSRF_COOKIE)
            return False
        if response.status_code != 200:
            return False
        try:
            body = response.json()
        except ValueError:
            return False

        data = body.get("data") or {}
        if not body.get("success") or not data.get("user"):
            return False
        self.session.set_cached_user(data["user"], data.get("csrf_token"))
        return True

    async def api(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """
        JSON helper over :meth:`request`.

        Raises:
            SessionExpiredError: If the request is still unauthorized after
                the refresh attempt
        """
        try:
            response = await self.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("API request failed: %s %s: %s", method, url, exc)
            return {"success": False, "message": "Network error"}

        if response.status_code == 401:
            self.session.clear_cached_user()
            raise SessionExpiredError(self.login_path)

        try:
            return response.json()
        except ValueError:
            return {"success": False, "message": "Invalid response"}

    async def login(self, email: str, password: str, remember_me: bool = False) -> Dict[str, Any]:
        response = await self.http.post(
            f"{self.api_prefix}/auth/login",
            json={"email": email, "password": password, "remember_me": remember_me},
        )
        body = response.json()
        if response.status_code == 200 and body.get("success"):
            data = body["data"]
            self.session.set_cached_user(data["user"], data.get("csrf_token"))
        return body

    async def logout(self) -> None:
        """Revoke the refresh token server-side and forget the cached identity."""
        try:
            await self.request("POST", self.logout_path, skip_refresh=True)
        except httpx.HTTPError as exc:
            logger.warning("Logout request failed: %s", exc)
        self.session.clear_cached_user()
        if self.activity_storage is not None:
            clear_session_data(self.activity_storage)
