"""Client-side token state and single-flight refresh.

Usage:
    async with httpx.AsyncClient(base_url="http://localhost:5000", timeout=10) as http:
        api = RefreshCoordinator(http)
        await api.login("user@example.com", "secret123")
        response = await api.get("/api/projects")

When several requests fail with 401 at the same time, only the first one
calls the refresh endpoint; the others await the same pending result and
are all retried once with the new access token.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from core.exceptions import SessionTerminated
from core.logging import get_logger

logger = get_logger(__name__)

AuthListener = Callable[[bool], None]
TerminationListener = Callable[[SessionTerminated], None]


def _notify(listeners: List[Callable], *args: Any) -> None:
    # Copy so listeners can unsubscribe while being notified
    for callback in list(listeners):
        try:
            callback(*args)
        except Exception as e:
            logger.error("Auth listener failed", listener=getattr(callback, "__name__", repr(callback)),
                         error=str(e))


def _unsubscriber(listeners: List[Callable], callback: Callable) -> Callable[[], None]:
    def unsubscribe() -> None:
        if callback in listeners:
            listeners.remove(callback)
    return unsubscribe


class AuthState:
    """Access/refresh tokens of one client session.

    Mutated only through ``set_tokens`` / ``clear_tokens``; subscribers are
    called synchronously with the new authenticated flag on every change.
    """

    def __init__(self, access_token: Optional[str] = None, refresh_token: Optional[str] = None):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self._listeners: List[AuthListener] = []

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def subscribe(self, callback: AuthListener) -> Callable[[], None]:
        """Register ``callback(is_authenticated)``. Returns an unsubscribe function."""
        self._listeners.append(callback)
        return _unsubscriber(self._listeners, callback)

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        _notify(self._listeners, self.is_authenticated)

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None
        _notify(self._listeners, False)


def _extract_tokens(body: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Accept ``{data: {tokens: ...}}``, ``{data: ...}`` or a bare token body."""
    data = body.get("data") if isinstance(body.get("data"), dict) else body
    tokens = data.get("tokens") if isinstance(data.get("tokens"), dict) else data
    return {
        "access": tokens.get("accessToken") or tokens.get("access_token"),
        "refresh": tokens.get("refreshToken") or tokens.get("refresh_token"),
    }


class RefreshCoordinator:
    """HTTP client wrapper that refreshes expired sessions transparently.

    At most one refresh call is in flight per instance. Timeouts are left to
    the underlying ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        state: Optional[AuthState] = None,
        refresh_path: str = "/api/auth/refresh",
        login_path: str = "/api/auth/login",
        logout_path: str = "/api/auth/logout",
    ):
        self.client = client
        self.state = state or AuthState()
        self.refresh_path = refresh_path
        self.login_path = login_path
        self.logout_path = logout_path
        self._in_flight: Optional[asyncio.Future] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._termination_listeners: List[TerminationListener] = []

    @property
    def is_refreshing(self) -> bool:
        return self._in_flight is not None

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        return self.state.subscribe(callback)

    def on_session_terminated(self, callback: TerminationListener) -> Callable[[], None]:
        """Register a callback fired once per terminated session (e.g. redirect to login)."""
        self._termination_listeners.append(callback)
        return _unsubscriber(self._termination_listeners, callback)

    # ============================================================================
    # Refresh
    # ============================================================================

    async def refresh(self) -> str:
        """Return a fresh access token, sharing any refresh already in flight.

        The exchange runs in its own task, so cancelling one caller leaves the
        shared refresh running for the others.

        Raises:
            SessionTerminated: no refresh token, or the refresh was rejected.
        """
        if self._in_flight is None:
            if not self.state.refresh_token:
                error = SessionTerminated("No refresh token")
                self._terminate(error)
                raise error

            future = asyncio.get_running_loop().create_future()
            # Waiters may all be gone by the time it fails; keep asyncio quiet about it
            future.add_done_callback(lambda f: f.cancelled() or f.exception())
            self._in_flight = future
            self._refresh_task = asyncio.create_task(self._run_refresh(future, self.state.refresh_token))

        return await asyncio.shield(self._in_flight)

    async def _run_refresh(self, future: asyncio.Future, refresh_token: str) -> None:
        try:
            access_token, refresh_token = await self._exchange(refresh_token)
        except Exception as e:
            if isinstance(e, SessionTerminated):
                error = e
            else:
                logger.error("Unexpected token refresh failure", error=str(e))
                error = SessionTerminated()
            # A torn-down coordinator has already failed the future
            if not future.done():
                self._terminate(error)
                future.set_exception(error)
        else:
            if not future.done():
                self.state.set_tokens(access_token, refresh_token)
                future.set_result(access_token)
        finally:
            if not future.done():
                future.set_exception(SessionTerminated("Refresh cancelled"))
            if self._in_flight is future:
                self._in_flight = None
                self._refresh_task = None

    async def _exchange(self, refresh_token: str) -> Tuple[str, str]:
        try:
            response = await self.client.post(self.refresh_path, json={"refreshToken": refresh_token})
        except httpx.HTTPError as e:
            logger.warning("Token refresh request failed", error=str(e))
            raise SessionTerminated() from e

        if response.status_code != 200:
            logger.info("Token refresh rejected", status=response.status_code)
            raise SessionTerminated()

        try:
            tokens = _extract_tokens(response.json())
        except (ValueError, AttributeError) as e:
            raise SessionTerminated() from e

        if not tokens["access"] or not tokens["refresh"]:
            raise SessionTerminated()

        logger.debug("Token refreshed")
        return tokens["access"], tokens["refresh"]

    def _terminate(self, error: SessionTerminated) -> None:
        self.state.clear_tokens()
        _notify(self._termination_listeners, error)

    # ============================================================================
    # Requests
    # ============================================================================

    def _headers(self, include_auth: bool, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = dict(headers or {})
        if include_auth and self.state.access_token:
            merged["Authorization"] = f"Bearer {self.state.access_token}"
        return merged

    async def request(
        self,
        method: str,
        url: str,
        retry_on_unauthorized: bool = True,
        include_auth: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, refreshing and retrying exactly once on 401."""
        sent_token = self.state.access_token
        response = await self.client.request(
            method, url, headers=self._headers(include_auth, headers), **kwargs
        )

        if response.status_code == 401 and retry_on_unauthorized and include_auth \
                and self.state.refresh_token:
            # Tokens already rotated by another request since this one was sent
            if self.state.access_token == sent_token:
                await self.refresh()
            response = await self.client.request(
                method, url, headers=self._headers(include_auth, headers), **kwargs
            )

        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # ============================================================================
    # Session
    # ============================================================================

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        response = await self.client.post(self.login_path, json={"email": email, "password": password})
        body = response.json()
        if response.status_code == 200:
            tokens = _extract_tokens(body)
            self.state.set_tokens(tokens["access"], tokens["refresh"])
        return body

    async def logout(self) -> None:
        """Revoke the refresh token server-side and drop local state."""
        refresh_token = self.state.refresh_token
        try:
            if refresh_token:
                await self.request("POST", self.logout_path, json={"refreshToken": refresh_token},
                                   retry_on_unauthorized=False)
        except httpx.HTTPError as e:
            logger.warning("Server-side logout failed", error=str(e))
        finally:
            await self.teardown()

    async def teardown(self) -> None:
        """Fail any pending refresh with SessionTerminated and clear tokens."""
        future, task = self._in_flight, self._refresh_task
        self._in_flight = None
        self._refresh_task = None
        if future is not None and not future.done():
            future.set_exception(SessionTerminated("Session closed"))
        if task is not None and not task.done():
            task.cancel()
        self.state.clear_tokens()

    async def aclose(self) -> None:
        await self.teardown()
