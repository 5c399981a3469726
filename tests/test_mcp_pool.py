from __future__ import annotations

import asyncio
import contextlib
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from browseragent.errors import PoolCloseError
from browseragent.mcp_pool import MCPClientPool, streamable_http_factory


class FakeClient:
    def __init__(self, url: str, *, fail_close: bool = False) -> None:
        self.url = url
        self.closed = False
        self.fail_close = fail_close
        self.close_calls = 0
        self.tool_listings = 0
        self.calls: list[tuple[str, dict]] = []

    async def tools(self) -> dict:
        self.tool_listings += 1
        return {"search": {"name": "search", "description": "Search the web", "inputSchema": {"type": "object"}}}

    async def call_tool(self, name: str, arguments: dict) -> dict:
        self.calls.append((name, arguments))
        return {"content": [{"type": "text", "text": f"{name} ok"}], "isError": False}

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        if self.fail_close:
            raise ConnectionError(f"{self.url} hung up")


class FakeFactory:
    def __init__(self, failing_urls=(), delay: float = 0.0) -> None:
        self.failing_urls = set(failing_urls)
        self.delay = delay
        self.opened: list[FakeClient] = []

    async def __call__(self, url: str) -> FakeClient:
        if self.delay:
            await asyncio.sleep(self.delay)
        client = FakeClient(url, fail_close=url in self.failing_urls)
        self.opened.append(client)
        return client


class MCPClientPoolTests(unittest.IsolatedAsyncioTestCase):
    async def test_get_client_reuses_open_client(self):
        factory = FakeFactory()
        pool = MCPClientPool(factory)
        first = await pool.get_client("https://mcp/a")
        second = await pool.get_client("https://mcp/a")
        self.assertIs(first, second)
        self.assertEqual(len(factory.opened), 1)
        self.assertEqual(pool.urls, ["https://mcp/a"])

    async def test_closed_client_is_replaced(self):
        factory = FakeFactory()
        pool = MCPClientPool(factory)
        first = await pool.get_client("https://mcp/a")
        first.closed = True
        second = await pool.get_client("https://mcp/a")
        self.assertIsNot(first, second)
        self.assertFalse(second.closed)

    async def test_concurrent_get_client_opens_once(self):
        factory = FakeFactory(delay=0.01)
        pool = MCPClientPool(factory)
        clients = await asyncio.gather(*(pool.get_client("https://mcp/a") for _ in range(4)))
        self.assertEqual(len(factory.opened), 1)
        self.assertTrue(all(c is clients[0] for c in clients))

    async def test_tool_listing_cached_per_client(self):
        pool = MCPClientPool(FakeFactory())
        tools = await pool.tools_for("https://mcp/a")
        await pool.tools_for("https://mcp/a")
        client = await pool.get_client("https://mcp/a")
        self.assertIn("search", tools)
        self.assertEqual(client.tool_listings, 1)

        client.closed = True
        await pool.tools_for("https://mcp/a")
        fresh = await pool.get_client("https://mcp/a")
        self.assertEqual(fresh.tool_listings, 1)

    async def test_call_tool_routes_to_url(self):
        pool = MCPClientPool(FakeFactory())
        result = await pool.call_tool("https://mcp/b", "search", {"q": "cats"})
        client = await pool.get_client("https://mcp/b")
        self.assertEqual(client.calls, [("search", {"q": "cats"})])
        self.assertEqual(result["content"][0]["text"], "search ok")

    async def test_release_closes_and_forgets(self):
        factory = FakeFactory()
        pool = MCPClientPool(factory)
        client = await pool.get_client("https://mcp/a")
        await pool.release("https://mcp/a")
        self.assertTrue(client.closed)
        self.assertEqual(pool.urls, [])
        await pool.release("https://mcp/never-opened")

    async def test_close_all_attempts_every_client_and_aggregates(self):
        factory = FakeFactory(failing_urls={"https://mcp/b", "https://mcp/c"})
        pool = MCPClientPool(factory)
        for url in ("https://mcp/a", "https://mcp/b", "https://mcp/c"):
            await pool.get_client(url)

        with self.assertRaises(PoolCloseError) as ctx:
            await pool.close_all()

        self.assertEqual(len(ctx.exception.errors), 2)
        self.assertEqual({url for url, _ in ctx.exception.errors}, {"https://mcp/b", "https://mcp/c"})
        self.assertTrue(all(c.close_calls == 1 for c in factory.opened))
        self.assertEqual(pool.urls, [])

    async def test_close_all_clean(self):
        factory = FakeFactory()
        async with MCPClientPool(factory) as pool:
            await pool.get_client("https://mcp/a")
        self.assertTrue(factory.opened[0].closed)

    async def test_close_all_waits_for_open_in_flight(self):
        factory = FakeFactory(delay=0.01)
        pool = MCPClientPool(factory)
        opening = asyncio.create_task(pool.get_client("https://mcp/a"))
        await asyncio.sleep(0)

        await pool.close_all()
        client = await opening

        self.assertEqual(len(factory.opened), 1)
        self.assertIs(client, factory.opened[0])
        self.assertTrue(client.closed)
        self.assertEqual(pool.urls, [])


class _Transport:
    async def __aenter__(self):
        return (None, None, lambda: None)

    async def __aexit__(self, *exc):
        return False


class _Session:
    def __init__(self, read, write) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def initialize(self) -> None:
        return None


class StreamableHttpClientTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._patches = [
            patch("browseragent.mcp_pool.streamablehttp_client", lambda **kwargs: _Transport()),
            patch("browseragent.mcp_pool.ClientSession", _Session),
        ]
        for p in self._patches:
            p.start()

    def tearDown(self) -> None:
        for p in self._patches:
            p.stop()

    async def test_dropped_connection_is_replaced(self):
        pool = MCPClientPool(streamable_http_factory(timeout=1))
        dead = await pool.get_client("https://mcp.example/x")
        self.assertFalse(dead.closed)

        dead._runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await dead._runner

        self.assertTrue(dead.closed)
        with self.assertRaises(ConnectionError):
            await dead.call_tool("search", {})
        fresh = await pool.get_client("https://mcp.example/x")
        self.assertIsNot(fresh, dead)
        self.assertFalse(fresh.closed)
        await pool.close_all()
        self.assertTrue(fresh.closed)


if __name__ == "__main__":
    unittest.main()
