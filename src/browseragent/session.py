"""
Tool-router session lifecycle.

A :class:`SessionManager` owns one session per session key and moves it
through ``absent -> active -> expired -> active``.  Expiry is detected lazily
when a caller asks for an endpoint URL; renewal replaces the frozen
:class:`~browseragent.state.Session` value and is single-flight, so every
caller that finds the session expired awaits the same bootstrap request.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Protocol

import httpx

from .errors import SessionError, ValidationError, is_retryable_status
from .schemas import SessionBootstrap, validate
from .state import Session

ABSENT = "absent"
ACTIVE = "active"
EXPIRED = "expired"


class SessionBootstrapper(Protocol):
    async def create_session(self, api_key: str) -> dict[str, Any]: ...


class ComposioBootstrap:
    """Creates tool-router sessions against the Composio session service."""

    def __init__(self, url: str, timeout: float = 30.0) -> None:
        self.url = url
        self.timeout = timeout

    async def create_session(self, api_key: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    headers={"x-api-key": api_key, "Content-Type": "application/json"},
                    json={},
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            reason = "unavailable" if is_retryable_status(status) else "rejected"
            raise SessionError(f"Session service returned HTTP {status}", reason=reason) from exc
        except httpx.HTTPError as exc:
            raise SessionError(f"Session service unreachable: {exc}") from exc
        except ValueError as exc:
            raise SessionError("Session service returned a non-JSON body", reason="invalid") from exc


class SessionManager:
    def __init__(
        self,
        key: str,
        bootstrap: SessionBootstrapper,
        *,
        default_ttl: float = 3600.0,
        renew_retries: int = 1,
        timeout: float = 30.0,
        clock: Callable[[], float] | None = None,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self.key = key
        self.bootstrap = bootstrap
        self.default_ttl = default_ttl
        self.renew_retries = max(0, renew_retries)
        self.timeout = timeout
        self.clock = clock or time.time
        self.log = log
        self._session: Session | None = None
        self._inflight: asyncio.Future[Session] | None = None
        self.bootstrap_calls = 0

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def state(self) -> str:
        if self._session is None:
            return ABSENT
        if self._session.is_expired(self.clock()):
            return EXPIRED
        return ACTIVE

    async def acquire(self) -> Session:
        session = self._session
        if session is not None and not session.is_expired(self.clock()):
            return session
        return await self._refresh()

    async def renew(self) -> Session:
        return await self._refresh()

    def invalidate(self) -> None:
        self._session = None

    async def get_chat_endpoint(self) -> str:
        return (await self._usable()).chat_session_mcp_url

    async def get_tool_router_endpoint(self) -> str:
        return (await self._usable()).tool_router_mcp_url

    async def endpoints(self) -> tuple[str, str]:
        """Return ``(tool_router_url, chat_session_url)`` taken from one session value."""
        session = await self._usable()
        return session.tool_router_mcp_url, session.chat_session_mcp_url

    async def _usable(self) -> Session:
        session = self._session
        if session is None:
            session = await self.acquire()
        elif session.is_expired(self.clock()):
            self._log(f"session {session.session_id} expired, renewing")
            session = await self.renew()
        if session.is_expired(self.clock()):
            raise SessionError(f"Session {session.session_id} expired before it could be used")
        return session

    async def _refresh(self) -> Session:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._bootstrap())
            self._inflight.add_done_callback(self._clear_inflight)
        # shield: a cancelled caller must not cancel a renewal other callers await.
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, future: asyncio.Future[Session]) -> None:
        if self._inflight is future:
            self._inflight = None
        if not future.cancelled():
            future.exception()

    async def _bootstrap(self) -> Session:
        attempts = 1 + self.renew_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            self.bootstrap_calls += 1
            self._log(f"session bootstrap attempt {attempt}/{attempts}")
            try:
                raw = await asyncio.wait_for(self.bootstrap.create_session(self.key), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                last_error = SessionError(f"Session bootstrap timed out after {self.timeout:g}s")
                last_error.__cause__ = exc
                continue
            except SessionError as exc:
                if exc.reason != "unavailable":
                    raise
                last_error = exc
                continue
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                continue
            return self._store(raw)
        raise SessionError(f"Session service unavailable: {last_error}", reason="unavailable") from last_error

    def _store(self, raw: Any) -> Session:
        try:
            payload: SessionBootstrap = validate("session_bootstrap", raw)
        except ValidationError as exc:
            raise SessionError(f"Invalid session bootstrap response: {exc}", reason="invalid") from exc
        now = self.clock()
        if payload.expires_in is not None:
            ttl = payload.expires_in
        elif payload.expires_at is not None:
            ttl = payload.expires_at.timestamp() - now
        else:
            ttl = self.default_ttl
        if ttl <= 0:
            raise SessionError("Session service returned an already-expired session", reason="invalid")
        session = Session(
            session_id=payload.session_id,
            chat_session_mcp_url=payload.chat_session_mcp_url,
            tool_router_mcp_url=payload.tool_router_instance_mcp_url,
            created_at=now,
            expires_at=now + ttl,
        )
        self._session = session
        self._log(f"session {session.session_id} active for {ttl:.0f}s")
        return session

    def _log(self, message: str) -> None:
        if self.log:
            self.log(message)


class SessionRegistry:
    """Process-wide map of session key -> :class:`SessionManager`."""

    def __init__(self, bootstrap: SessionBootstrapper, **manager_kwargs: Any) -> None:
        self.bootstrap = bootstrap
        self.manager_kwargs = manager_kwargs
        self._managers: dict[str, SessionManager] = {}

    def for_key(self, key: str) -> SessionManager:
        if not key:
            raise SessionError("A session API key is required for tool-router mode", reason="rejected")
        manager = self._managers.get(key)
        if manager is None:
            manager = SessionManager(key, self.bootstrap, **self.manager_kwargs)
            self._managers[key] = manager
        return manager
