import asyncio
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from browseragent.errors import DispatchError, ToolRequestError
from browseragent.state import SafetyBlocked, ToolCall, ToolResult
from browseragent.tool_scheduler import ToolScheduler


def _ok(call: ToolCall) -> ToolResult:
    return ToolResult(tool_call_id=call.id, name=call.name, result={"success": True})


class TestToolScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_retry_on_429(self) -> None:
        attempts = 0
        sleeps: list[float] = []

        async def runner(call: ToolCall) -> ToolResult:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ToolRequestError("rate limit", status_code=429, retryable=True)
            return _ok(call)

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        scheduler = ToolScheduler(runner, sleep=fake_sleep, jitter=lambda: 0, max_attempts=4)
        results = await scheduler.run_batch([ToolCall("call_1", "search", {"q": "x"})])
        self.assertEqual(attempts, 3)
        self.assertEqual(sleeps, [0.5, 1.0])
        self.assertTrue(results[0].ok)

    async def test_caps_attempts(self) -> None:
        sleeps: list[float] = []

        async def runner(call: ToolCall) -> ToolResult:
            raise ToolRequestError("rate limit", status_code=429, retryable=True)

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        scheduler = ToolScheduler(runner, sleep=fake_sleep, jitter=lambda: 0, max_attempts=3)
        results = await scheduler.run_batch([ToolCall("call_1", "search", {})])
        self.assertFalse(results[0].ok)
        self.assertEqual(results[0].result["attempts"], 3)
        self.assertEqual(results[0].tool_call_id, "call_1")
        self.assertEqual(len(sleeps), 2)

    async def test_non_retryable_failure_is_not_retried(self) -> None:
        attempts = 0

        async def runner(call: ToolCall) -> ToolResult:
            nonlocal attempts
            attempts += 1
            raise DispatchError("click: browser executor failed")

        scheduler = ToolScheduler(runner, max_attempts=5)
        (result,) = await scheduler.run_batch([ToolCall("call_1", "click", {})])
        self.assertEqual(attempts, 1)
        self.assertEqual(result.result, {"success": False, "error": "click: browser executor failed", "attempts": 1})

    async def test_timeout_becomes_failed_result(self) -> None:
        async def runner(call: ToolCall) -> ToolResult:
            await asyncio.sleep(1)
            return _ok(call)

        scheduler = ToolScheduler(runner, timeout=0.01, max_attempts=3)
        (result,) = await scheduler.run_batch([ToolCall("call_1", "wait", {})])
        self.assertFalse(result.ok)
        self.assertIn("timed out", result.result["error"])
        self.assertEqual(result.result["attempts"], 1)

    async def test_runs_in_emission_order(self) -> None:
        seen: list[str] = []

        async def runner(call: ToolCall) -> ToolResult:
            seen.append(call.id)
            await asyncio.sleep(0)
            return _ok(call)

        calls = [ToolCall(f"call_{i}", "scroll", {}, index=i) for i in range(4)]
        results = await ToolScheduler(runner).run_batch(calls)
        self.assertEqual(seen, ["call_0", "call_1", "call_2", "call_3"])
        self.assertEqual([r.tool_call_id for r in results], seen)

    async def test_stops_at_safety_block(self) -> None:
        seen: list[str] = []

        async def runner(call: ToolCall):
            seen.append(call.id)
            if call.name == "click":
                return SafetyBlocked(call)
            return _ok(call)

        calls = [ToolCall("a", "scroll"), ToolCall("b", "click"), ToolCall("c", "scroll")]
        outcomes = await ToolScheduler(runner).run_batch(calls)
        self.assertEqual(seen, ["a", "b"])
        self.assertIsInstance(outcomes[-1], SafetyBlocked)

    async def test_logs_lifecycle(self) -> None:
        lines: list[str] = []

        async def runner(call: ToolCall) -> ToolResult:
            return _ok(call)

        await ToolScheduler(runner, log=lines.append).run_batch([ToolCall("a", "scroll", {"amount": 3})])
        self.assertEqual(lines[0], 'queued [scroll] {"amount": 3}')
        self.assertTrue(lines[1].startswith("running [scroll]"))
        self.assertTrue(lines[-1].startswith("done [scroll]"))


if __name__ == "__main__":
    unittest.main()
