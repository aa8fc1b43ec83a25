"""Tests for client-side single-flight token refresh."""

from __future__ import annotations

import asyncio
import json
from typing import List, Optional

import httpx
import pytest

from core.exceptions import SessionTerminated
from services.refresh_coordinator import AuthState, RefreshCoordinator


class FakeAuthServer:
    """Minimal API: one protected route plus the auth endpoints.

    Only the latest access token is accepted on protected routes, and each
    refresh token can be exchanged once.
    """

    def __init__(self, refresh_delay: float = 0.05, reject_refresh: bool = False):
        self.refresh_delay = refresh_delay
        self.reject_refresh = reject_refresh
        self.generation = 1
        self.valid_access: Optional[str] = None  # access-1 starts out expired
        self.refresh_token = "refresh-1"
        self.refresh_calls = 0
        self.logout_calls = 0
        self.protected_calls: List[Optional[str]] = []

    def _tokens(self) -> dict:
        return {"accessToken": self.valid_access, "refreshToken": self.refresh_token, "expiresIn": 900}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == "/api/auth/refresh":
            self.refresh_calls += 1
            await asyncio.sleep(self.refresh_delay)
            body = json.loads(request.content)
            if self.reject_refresh or body.get("refreshToken") != self.refresh_token:
                return httpx.Response(401, json={
                    "success": False,
                    "error": {"code": "INVALID_REFRESH_TOKEN", "message": "Invalid refresh token"},
                })
            self.generation += 1
            self.valid_access = f"access-{self.generation}"
            self.refresh_token = f"refresh-{self.generation}"
            return httpx.Response(200, json={"success": True, "data": {"tokens": self._tokens()}})

        if path == "/api/auth/login":
            self.generation += 1
            self.valid_access = f"access-{self.generation}"
            self.refresh_token = f"refresh-{self.generation}"
            return httpx.Response(200, json={"success": True, "data": {"tokens": self._tokens()}})

        if path == "/api/auth/logout":
            self.logout_calls += 1
            return httpx.Response(200, json={"success": True})

        # Let concurrent requests reach the server before any of them is answered
        await asyncio.sleep(0)
        authorization = request.headers.get("authorization")
        self.protected_calls.append(authorization)
        if path == "/api/always-401" or authorization != f"Bearer {self.valid_access}":
            return httpx.Response(401, json={
                "success": False,
                "error": {"code": "TOKEN_EXPIRED", "message": "Token expired"},
            })
        return httpx.Response(200, json={"success": True, "token": self.valid_access})


@pytest.fixture
def server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture
async def coordinator(server: FakeAuthServer):
    transport = httpx.MockTransport(server.handler)
    async with httpx.AsyncClient(transport=transport, base_url="http://api.test") as http:
        state = AuthState(access_token="access-1", refresh_token="refresh-1")
        yield RefreshCoordinator(http, state=state)


class TestSingleFlight:
    """Concurrent 401s share one refresh call."""

    async def test_five_concurrent_requests_one_refresh(self, coordinator: RefreshCoordinator,
                                                        server: FakeAuthServer) -> None:
        responses = await asyncio.gather(*(coordinator.get("/api/projects") for _ in range(5)))

        assert [r.status_code for r in responses] == [200] * 5
        assert all(r.json()["token"] == "access-2" for r in responses)
        assert server.refresh_calls == 1
        assert coordinator.state.access_token == "access-2"
        assert coordinator.state.refresh_token == "refresh-2"
        assert not coordinator.is_refreshing

    async def test_each_request_retried_once(self, coordinator: RefreshCoordinator,
                                             server: FakeAuthServer) -> None:
        await asyncio.gather(*(coordinator.get("/api/projects") for _ in range(3)))
        assert server.protected_calls.count("Bearer access-1") == 3
        assert server.protected_calls.count("Bearer access-2") == 3

    async def test_direct_refresh_calls_share_result(self, coordinator: RefreshCoordinator,
                                                     server: FakeAuthServer) -> None:
        tokens = await asyncio.gather(*(coordinator.refresh() for _ in range(4)))
        assert tokens == ["access-2"] * 4
        assert server.refresh_calls == 1

    async def test_cancelled_first_caller_keeps_refresh_alive(self, coordinator: RefreshCoordinator,
                                                              server: FakeAuthServer) -> None:
        server.refresh_delay = 0.2
        terminated: List[SessionTerminated] = []
        coordinator.on_session_terminated(terminated.append)

        first = asyncio.create_task(coordinator.get("/api/projects"))
        await asyncio.sleep(0.01)
        assert coordinator.is_refreshing
        followers = [asyncio.create_task(coordinator.get("/api/projects")) for _ in range(3)]
        await asyncio.sleep(0.01)
        first.cancel()

        responses = await asyncio.gather(*followers)

        with pytest.raises(asyncio.CancelledError):
            await first
        assert [r.status_code for r in responses] == [200] * 3
        assert server.refresh_calls == 1
        assert coordinator.state.access_token == "access-2"
        assert coordinator.state.refresh_token == "refresh-2"
        assert terminated == []

    async def test_cancelled_direct_refresh(self, coordinator: RefreshCoordinator,
                                            server: FakeAuthServer) -> None:
        server.refresh_delay = 0.2
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coordinator.refresh(), timeout=0.01)

        assert await coordinator.refresh() == "access-2"
        assert server.refresh_calls == 1

    async def test_later_expiry_refreshes_again(self, coordinator: RefreshCoordinator,
                                                server: FakeAuthServer) -> None:
        await coordinator.get("/api/projects")
        server.valid_access = None
        response = await coordinator.get("/api/projects")
        assert response.status_code == 200
        assert server.refresh_calls == 2
        assert coordinator.state.refresh_token == "refresh-3"

    async def test_retries_only_once(self, coordinator: RefreshCoordinator, server: FakeAuthServer) -> None:
        response = await coordinator.get("/api/always-401")
        assert response.status_code == 401
        assert server.refresh_calls == 1
        assert len(server.protected_calls) == 2

    async def test_no_retry_when_disabled(self, coordinator: RefreshCoordinator,
                                          server: FakeAuthServer) -> None:
        response = await coordinator.get("/api/projects", retry_on_unauthorized=False)
        assert response.status_code == 401
        assert server.refresh_calls == 0

    async def test_no_refresh_without_refresh_token(self, server: FakeAuthServer) -> None:
        transport = httpx.MockTransport(server.handler)
        async with httpx.AsyncClient(transport=transport, base_url="http://api.test") as http:
            api = RefreshCoordinator(http, state=AuthState(access_token="access-1"))
            response = await api.get("/api/projects")
        assert response.status_code == 401
        assert server.refresh_calls == 0


class TestRefreshFailure:
    """A rejected refresh ends the session for every waiter."""

    async def test_failure_is_broadcast(self, coordinator: RefreshCoordinator,
                                        server: FakeAuthServer) -> None:
        server.reject_refresh = True
        terminated: List[SessionTerminated] = []
        auth_changes: List[bool] = []
        coordinator.on_session_terminated(terminated.append)
        coordinator.on_auth_change(auth_changes.append)

        results = await asyncio.gather(
            *(coordinator.get("/api/projects") for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, SessionTerminated) for r in results)
        assert len({id(r) for r in results}) == 1
        assert server.refresh_calls == 1
        assert len(terminated) == 1
        assert auth_changes == [False]
        assert coordinator.state.access_token is None
        assert coordinator.state.refresh_token is None
        assert not coordinator.is_refreshing

    async def test_refresh_without_token_terminates(self, server: FakeAuthServer) -> None:
        transport = httpx.MockTransport(server.handler)
        async with httpx.AsyncClient(transport=transport, base_url="http://api.test") as http:
            api = RefreshCoordinator(http)
            terminated = []
            api.on_session_terminated(terminated.append)
            with pytest.raises(SessionTerminated):
                await api.refresh()
        assert len(terminated) == 1
        assert server.refresh_calls == 0

    async def test_transport_error_terminates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler),
                                     base_url="http://api.test") as http:
            api = RefreshCoordinator(http, state=AuthState("access-1", "refresh-1"))
            with pytest.raises(SessionTerminated):
                await api.refresh()
        assert api.state.refresh_token is None

    async def test_malformed_refresh_body_terminates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "data": {}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler),
                                     base_url="http://api.test") as http:
            api = RefreshCoordinator(http, state=AuthState("access-1", "refresh-1"))
            with pytest.raises(SessionTerminated):
                await api.refresh()
        assert not api.state.is_authenticated

    async def test_next_refresh_after_failure_starts_fresh(self, coordinator: RefreshCoordinator,
                                                           server: FakeAuthServer) -> None:
        server.reject_refresh = True
        with pytest.raises(SessionTerminated):
            await coordinator.refresh()

        server.reject_refresh = False
        coordinator.state.set_tokens("access-1", "refresh-1")
        assert await coordinator.refresh() == "access-2"
        assert server.refresh_calls == 2


class TestTeardown:
    async def test_teardown_during_refresh(self, coordinator: RefreshCoordinator,
                                           server: FakeAuthServer) -> None:
        tasks = [asyncio.create_task(coordinator.get("/api/projects")) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert coordinator.is_refreshing

        await coordinator.teardown()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, SessionTerminated) for r in results)
        # The refresh response that arrives afterwards must not revive the session
        assert coordinator.state.access_token is None
        assert coordinator.state.refresh_token is None
        assert not coordinator.is_refreshing

    async def test_logout(self, coordinator: RefreshCoordinator, server: FakeAuthServer) -> None:
        auth_changes: List[bool] = []
        coordinator.on_auth_change(auth_changes.append)
        await coordinator.logout()
        assert server.logout_calls == 1
        assert auth_changes == [False]
        assert not coordinator.state.is_authenticated


class TestLogin:
    async def test_login_stores_tokens(self, server: FakeAuthServer) -> None:
        transport = httpx.MockTransport(server.handler)
        async with httpx.AsyncClient(transport=transport, base_url="http://api.test") as http:
            api = RefreshCoordinator(http)
            auth_changes: List[bool] = []
            api.on_auth_change(auth_changes.append)
            body = await api.login("alice@renoai.lu", "correct-horse-battery")
            response = await api.get("/api/projects")

        assert body["success"] is True
        assert auth_changes == [True]
        assert response.status_code == 200
        assert server.refresh_calls == 0


class TestAuthState:
    """Listener registration and isolation."""

    def test_listener_receives_changes(self) -> None:
        state = AuthState()
        seen: List[bool] = []
        state.subscribe(seen.append)
        state.set_tokens("a", "r")
        state.clear_tokens()
        assert seen == [True, False]

    def test_unsubscribe(self) -> None:
        state = AuthState()
        seen: List[bool] = []
        unsubscribe = state.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        state.set_tokens("a", "r")
        assert seen == []

    def test_failing_listener_does_not_block_others(self) -> None:
        state = AuthState()
        seen: List[bool] = []

        def broken(_: bool) -> None:
            raise RuntimeError("listener bug")

        state.subscribe(broken)
        state.subscribe(seen.append)
        state.set_tokens("a", "r")
        assert seen == [True]
        assert state.access_token == "a"

    def test_listener_may_unsubscribe_while_notified(self) -> None:
        state = AuthState()
        seen: List[bool] = []
        unsubscribe = None

        def once(value: bool) -> None:
            seen.append(value)
            unsubscribe()

        unsubscribe = state.subscribe(once)
        state.set_tokens("a", "r")
        state.clear_tokens()
        assert seen == [True]
