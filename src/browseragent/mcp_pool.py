"""
Pool of live MCP client connections, one per endpoint URL.

The default client speaks MCP over streamable HTTP via the ``mcp`` SDK.  Each
connection's transport and ``ClientSession`` contexts are entered and exited
inside a dedicated task, because the SDK's anyio cancel scopes must be closed
by the task that opened them, while the pool may be shut down from another.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Protocol

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from .errors import PoolCloseError


class MCPClient(Protocol):
    closed: bool

    async def tools(self) -> dict[str, dict[str, Any]]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]: ...

    async def close(self) -> None: ...


class StreamableHttpMCPClient:
    def __init__(self, url: str, *, headers: dict[str, str] | None = None, timeout: float = 60.0) -> None:
        self.url = url
        self.headers = headers
        self.timeout = timeout
        self.closed = False
        self._session: ClientSession | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing = asyncio.Event()
        self._runner: asyncio.Task[None] | None = None

    async def connect(self) -> "StreamableHttpMCPClient":
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._runner = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.timeout)
        except BaseException:
            self._closing.set()
            self._runner.cancel()
            self.closed = True
            raise
        return self

    async def _run(self) -> None:
        assert self._ready is not None
        try:
            async with streamablehttp_client(
                url=self.url,
                headers=self.headers,
                timeout=timedelta(seconds=self.timeout),
            ) as (read, write, _get_session_id):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set_result(None)
                    await self._closing.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
                return
            raise
        finally:
            # Whatever ended the owner task, this connection is unusable now.
            self._session = None
            self.closed = True

    def _require_session(self) -> ClientSession:
        if self._session is None or self.closed:
            raise ConnectionError(f"MCP client for {self.url} is not connected")
        return self._session

    async def tools(self) -> dict[str, dict[str, Any]]:
        result = await self._require_session().list_tools()
        return {
            tool.name: {
                "name": tool.name,
                "description": tool.description or "",
                "inputSchema": dict(tool.inputSchema or {}),
            }
            for tool in result.tools
        }

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await self._require_session().call_tool(name, arguments=arguments)
        return result.model_dump(by_alias=True, exclude_none=True)

    async def close(self) -> None:
        self.closed = True
        self._closing.set()
        runner, self._runner = self._runner, None
        if runner is None:
            return
        if runner.done():
            # Connection already dropped.
            if not runner.cancelled():
                runner.exception()
            return
        await runner


ClientFactory = Callable[[str], Awaitable[MCPClient]]


def streamable_http_factory(
    headers: dict[str, str] | None = None, timeout: float = 60.0
) -> ClientFactory:
    async def _open(url: str) -> MCPClient:
        return await StreamableHttpMCPClient(url, headers=headers, timeout=timeout).connect()

    return _open


class MCPClientPool:
    def __init__(
        self,
        factory: ClientFactory | None = None,
        *,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self.factory = factory or streamable_http_factory()
        self.log = log
        self._clients: dict[str, MCPClient] = {}
        self._tools: dict[str, tuple[MCPClient, dict[str, dict[str, Any]]]] = {}
        self._opening: dict[str, asyncio.Future[MCPClient]] = {}

    @property
    def urls(self) -> list[str]:
        return list(self._clients)

    async def get_client(self, url: str) -> MCPClient:
        client = self._clients.get(url)
        if client is not None and not getattr(client, "closed", False):
            return client
        pending = self._opening.get(url)
        if pending is None:
            pending = asyncio.ensure_future(self._open(url))
            self._opening[url] = pending
            pending.add_done_callback(lambda _f, u=url: self._opening.pop(u, None))
        return await asyncio.shield(pending)

    async def _open(self, url: str) -> MCPClient:
        self._log(f"mcp connect {url}")
        client = await self.factory(url)
        self._clients[url] = client
        self._tools.pop(url, None)
        return client

    async def tools_for(self, url: str) -> dict[str, dict[str, Any]]:
        client = await self.get_client(url)
        cached = self._tools.get(url)
        if cached is not None and cached[0] is client:
            return cached[1]
        tools = await client.tools()
        self._tools[url] = (client, tools)
        self._log(f"mcp {url}: {len(tools)} tools")
        return tools

    async def call_tool(self, url: str, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        client = await self.get_client(url)
        return await client.call_tool(name, arguments)

    async def release(self, url: str) -> None:
        client = self._clients.pop(url, None)
        self._tools.pop(url, None)
        if client is not None:
            self._log(f"mcp release {url}")
            await client.close()

    async def close_all(self) -> None:
        # Settle in-flight opens so their clients are closed too.
        while self._opening:
            await asyncio.gather(*self._opening.values(), return_exceptions=True)
        clients = list(self._clients.items())
        self._clients.clear()
        self._tools.clear()
        errors: list[tuple[str, BaseException]] = []
        for url, client in clients:
            try:
                await client.close()
            except Exception as exc:  # noqa: BLE001
                self._log(f"mcp close failed {url}: {exc}")
                errors.append((url, exc))
        if errors:
            raise PoolCloseError(errors)

    async def __aenter__(self) -> "MCPClientPool":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close_all()

    def _log(self, message: str) -> None:
        if self.log:
            self.log(message)
