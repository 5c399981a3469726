from __future__ import annotations

import asyncio
import copy
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from browseragent.client import GeminiClient
from browseragent.controller import TurnController
from browseragent.dispatcher import ToolDispatcher
from browseragent.errors import ContractViolation, DispatchError, TurnBusyError
from browseragent.mcp_pool import MCPClientPool
from browseragent.memory import BrowserMemory
from browseragent.state import ChatPhase, Settings
from browseragent.transcript import TranscriptStore

PAGE = {
    "url": "https://shop.example.com/cart",
    "title": "Your cart",
    "textContent": "2 items in cart",
}


def call_chunk(*calls: tuple[str, dict], confirm: bool = False) -> dict:
    candidate: dict = {"content": {"role": "model", "parts": [{"functionCall": {"name": n, "args": a}} for n, a in calls]}}
    if confirm:
        candidate["safetyResponse"] = {"requireConfirmation": True, "message": "This buys something."}
    return {"candidates": [candidate]}


def text_chunk(text: str, finish: str | None = None) -> dict:
    candidate: dict = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish:
        candidate["finishReason"] = finish
    return {"candidates": [candidate]}


class FakeModel:
    """Replays scripted responses; an ``asyncio.Event`` entry blocks until set."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []

    async def stream_generate(self, model, contents, tools=None, system_instruction=None):
        self.requests.append(
            {
                "model": model,
                "contents": copy.deepcopy(contents),
                "tools": tools,
                "system_instruction": system_instruction,
            }
        )
        response = self.responses.pop(0) if self.responses else [text_chunk("done")]
        if isinstance(response, asyncio.Event):
            await response.wait()
            response = [text_chunk("late")]
        for chunk in response:
            yield chunk


class FakeExecutor:
    def __init__(self, *, fail_on: set[str] | None = None, page: dict | None = None) -> None:
        self.fail_on = fail_on or set()
        self.page = page
        self.executed: list[tuple[str, dict]] = []

    async def execute(self, action: str, params: dict) -> dict:
        self.executed.append((action, params))
        if action in self.fail_on:
            raise DispatchError(f"{action}: element not found")
        return {"success": True, "message": f"{action} ok"}

    async def capture_screenshot(self) -> dict:
        return {"success": True, "screenshot": "data:image/png;base64,AAAA"}

    async def get_page_context(self) -> dict:
        if self.page is None:
            raise DispatchError("no content script in this tab")
        return self.page


def _controller(model, executor=None, **kwargs) -> TurnController:
    executor = executor or FakeExecutor()
    settings = kwargs.pop("settings", Settings(api_key="test-key", model="gemini-2.5-flash"))
    dispatcher = ToolDispatcher(executor, MCPClientPool())
    return TurnController(model, dispatcher, settings, executor=executor, **kwargs)


def _answered(state) -> dict[str, list[str]]:
    calls = [c.id for m in state.messages for c in (m.tool_calls or [])]
    results = [r.tool_call_id for m in state.messages for r in (m.tool_results or [])]
    return {"calls": calls, "results": results}


class TurnLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def test_click_then_answer(self):
        model = FakeModel(
            [call_chunk(("click", {"selector": "#submit"}))],
            [text_chunk("Clicked "), text_chunk("the button.", finish="STOP")],
        )
        executor = FakeExecutor()
        deltas: list[str] = []
        controller = _controller(model, executor, on_delta=deltas.append)

        state = await controller.send("Click submit")

        self.assertEqual(state.phase, ChatPhase.READY)
        self.assertIsNone(state.error)
        self.assertEqual(executor.executed, [("click", {"selector": "#submit"})])
        roles = [(m.role, bool(m.tool_calls), bool(m.tool_results)) for m in state.messages if m.content or m.tool_calls or m.tool_results]
        self.assertEqual(
            roles,
            [("user", False, False), ("assistant", True, False), ("user", False, True), ("assistant", False, False)],
        )
        self.assertEqual(state.messages[-1].content, "Clicked the button.")
        self.assertEqual(deltas, ["Clicked ", "the button."])

        second = model.requests[1]["contents"]
        self.assertEqual([c["role"] for c in second], ["user", "model", "user"])
        response_part = second[2]["parts"][0]["functionResponse"]
        self.assertEqual(response_part["name"], "click")
        self.assertTrue(response_part["response"]["success"])

    async def test_every_call_gets_one_result_in_order(self):
        model = FakeModel(
            [call_chunk(("scroll", {"direction": "down"}), ("click", {"x": 5, "y": 6}), ("read_page", {}))],
            [text_chunk("ok")],
        )
        executor = FakeExecutor()
        state = await _controller(model, executor).send("look around")

        ids = _answered(state)
        self.assertEqual(len(ids["calls"]), 3)
        self.assertEqual(ids["calls"], ids["results"])
        self.assertEqual(len(set(ids["calls"])), 3)
        self.assertEqual([a for a, _ in executor.executed], ["scroll", "click", "read_page"])

    async def test_executor_failure_is_reported_to_model(self):
        model = FakeModel([call_chunk(("click", {"selector": "#gone"}))], [text_chunk("It is gone.")])
        state = await _controller(model, FakeExecutor(fail_on={"click"})).send("click it")
        self.assertEqual(state.phase, ChatPhase.READY)
        result = next(r for m in state.messages for r in (m.tool_results or []))
        self.assertFalse(result.ok)
        self.assertIn("element not found", result.result["error"])

    async def test_unknown_tool_continues_turn(self):
        model = FakeModel([call_chunk(("teleport", {}))], [text_chunk("I cannot teleport.")])
        state = await _controller(model).send("go")
        self.assertEqual(state.phase, ChatPhase.READY)
        result = next(r for m in state.messages for r in (m.tool_results or []))
        self.assertTrue(result.result["unknown_tool"])

    async def test_malformed_response_enters_error_without_dispatch(self):
        executor = FakeExecutor()
        model = FakeModel([{"candidates": [{"content": {"parts": [{"functionCall": {"args": {}}}]}}]}])
        state = await _controller(model, executor).send("hi")
        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIn("model_response", state.error)
        self.assertEqual(executor.executed, [])

    async def test_truncated_stream_chunk_enters_error_without_dispatch(self):
        async def _lines():
            yield 'data: {"candidates":[{"content":{"parts":[{"text":"Buying it now."}]}}]}'
            yield 'data: {"candidates":[{"content":{"parts":[{"functionCall":{"name":"click","args":{"sel'

        response = MagicMock()
        response.status_code = 200
        response.aiter_lines = _lines
        stream = AsyncMock()
        stream.__aenter__ = AsyncMock(return_value=response)
        stream.__aexit__ = AsyncMock(return_value=False)
        http = MagicMock()
        http.stream = MagicMock(return_value=stream)
        ctx = AsyncMock()
        ctx.__aenter__ = AsyncMock(return_value=http)
        ctx.__aexit__ = AsyncMock(return_value=False)

        executor = FakeExecutor()
        with patch("httpx.AsyncClient", return_value=ctx):
            state = await _controller(GeminiClient("k"), executor).send("buy the first item")

        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIn("Malformed stream chunk", state.error)
        self.assertEqual(executor.executed, [])

    async def test_blocked_prompt_enters_error(self):
        model = FakeModel([{"promptFeedback": {"blockReason": "SAFETY"}}])
        state = await _controller(model).send("something bad")
        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIn("SAFETY", state.error)

    async def test_tool_round_limit(self):
        model = FakeModel(*[[call_chunk(("scroll", {"direction": "down"}))] for _ in range(5)])
        state = await _controller(model, max_tool_rounds=2).send("scroll forever")
        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIn("2 tool-call rounds", state.error)
        self.assertEqual(len(model.requests), 2)
        ids = _answered(state)
        self.assertEqual(ids["calls"], ids["results"])

    async def test_model_timeout(self):
        model = FakeModel(asyncio.Event())
        state = await _controller(model, model_timeout=0.01).send("hello")
        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIn("did not answer", state.error)


class PhaseTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_api_key_enters_error(self):
        controller = _controller(FakeModel(), settings=Settings(api_key="  ", model="gemini-2.5-flash"))
        self.assertEqual(controller.start().phase, ChatPhase.ERROR)
        with self.assertRaises(TurnBusyError):
            await controller.send("hi")

    async def test_reset_returns_to_ready(self):
        controller = _controller(FakeModel([{"promptFeedback": {"blockReason": "OTHER"}}]))
        await controller.send("hi")
        self.assertEqual(controller.state.phase, ChatPhase.ERROR)
        state = controller.reset()
        self.assertEqual(state.phase, ChatPhase.READY)
        self.assertIsNone(state.error)

    async def test_send_while_streaming_is_rejected(self):
        gate = asyncio.Event()
        controller = _controller(FakeModel(gate))
        first = asyncio.create_task(controller.send("one"))
        await asyncio.sleep(0.01)
        self.assertEqual(controller.state.phase, ChatPhase.STREAMING)
        self.assertTrue(controller.state.is_loading)
        with self.assertRaises(TurnBusyError):
            await controller.send("two")
        with self.assertRaises(TurnBusyError):
            controller.reset()
        gate.set()
        state = await first
        self.assertEqual(state.phase, ChatPhase.READY)

    async def test_cancel_moves_to_error(self):
        controller = _controller(FakeModel(asyncio.Event()))
        task = asyncio.create_task(controller.send("slow"))
        await asyncio.sleep(0.01)
        controller.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(controller.state.phase, ChatPhase.ERROR)
        self.assertEqual(controller.state.error, "Turn cancelled")

    async def test_snapshot_is_detached(self):
        controller = _controller(FakeModel([text_chunk("hi")]))
        await controller.send("hello")
        snapshot = controller.state.snapshot()
        snapshot.messages.clear()
        self.assertTrue(controller.state.messages)
        self.assertEqual(snapshot.phase, ChatPhase.READY)

    async def test_confirm_without_pending_is_contract_violation(self):
        controller = _controller(FakeModel())
        controller.start()
        with self.assertRaises(ContractViolation):
            await controller.confirm()


class SafetyConfirmationTests(unittest.IsolatedAsyncioTestCase):
    def _model(self) -> FakeModel:
        return FakeModel(
            [call_chunk(("scroll", {"direction": "down"}), ("click", {"selector": "#buy"}), ("read_page", {}), confirm=True)],
            [text_chunk("Purchased.")],
        )

    async def test_confirmation_parks_then_resumes(self):
        executor = FakeExecutor()
        controller = _controller(self._model(), executor)

        state = await controller.send("buy it")
        self.assertEqual(state.phase, ChatPhase.STREAMING)
        self.assertEqual(executor.executed, [])
        self.assertEqual(controller.pending.tool_call.name, "scroll")

        await controller.confirm()
        self.assertEqual(controller.pending.tool_call.name, "click")
        self.assertEqual([a for a, _ in executor.executed], ["scroll"])

        await controller.confirm()
        self.assertIsNone(controller.pending)
        self.assertEqual(controller.state.phase, ChatPhase.READY)
        self.assertEqual([a for a, _ in executor.executed], ["scroll", "click", "read_page"])
        ids = _answered(controller.state)
        self.assertEqual(ids["calls"], ids["results"])

    async def test_read_only_batch_runs_without_parking(self):
        executor = FakeExecutor()
        model = FakeModel([call_chunk(("read_page", {}), ("take_screenshot", {}), confirm=True)], [text_chunk("Seen.")])
        state = await _controller(model, executor).send("look")
        self.assertEqual(state.phase, ChatPhase.READY)
        self.assertEqual([a for a, _ in executor.executed], ["read_page"])

    async def test_decline_closes_every_call(self):
        executor = FakeExecutor()
        controller = _controller(self._model(), executor)
        await controller.send("buy it")
        await controller.confirm()

        state = await controller.decline("too expensive")

        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIsNone(controller.pending)
        self.assertEqual([a for a, _ in executor.executed], ["scroll"])
        results = {r.name: r.result for m in state.messages for r in (m.tool_results or [])}
        self.assertTrue(results["click"]["declined"])
        self.assertFalse(results["read_page"]["success"])
        ids = _answered(state)
        self.assertEqual(sorted(ids["calls"]), sorted(ids["results"]))


class PageContextTests(unittest.IsolatedAsyncioTestCase):
    async def test_page_summary_reaches_model_and_memory(self):
        memory = BrowserMemory()
        model = FakeModel([text_chunk("Two items.")])
        controller = _controller(model, FakeExecutor(page=PAGE), memory=memory)
        await controller.send("what's in my cart?")
        self.assertIn("Your cart", model.requests[0]["system_instruction"])
        self.assertEqual([v.url for v in memory.recent_pages], [PAGE["url"]])

    async def test_missing_content_script_is_tolerated(self):
        model = FakeModel([text_chunk("hi")])
        state = await _controller(model, FakeExecutor(page=None)).send("hi")
        self.assertEqual(state.phase, ChatPhase.READY)
        self.assertNotIn("Current page", model.requests[0]["system_instruction"])

    async def test_malformed_page_context_enters_error(self):
        model = FakeModel([text_chunk("hi")])
        state = await _controller(model, FakeExecutor(page={"url": "/relative", "title": "x", "textContent": ""})).send("hi")
        self.assertEqual(state.phase, ChatPhase.ERROR)
        self.assertIn("page_context", state.error)
        self.assertEqual(model.requests, [])

    async def test_browser_tools_disabled_skips_page_and_declarations(self):
        model = FakeModel([text_chunk("hi")])
        executor = FakeExecutor(page=PAGE)
        settings = Settings(api_key="k", model="gemini-2.5-flash")
        dispatcher = ToolDispatcher(executor, MCPClientPool(), browser_enabled=False)
        controller = TurnController(model, dispatcher, settings, executor=executor, browser_tools_enabled=False)
        await controller.send("hi")
        self.assertIsNone(model.requests[0]["tools"])
        self.assertIsNone(controller.page)


class TranscriptPersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_turn_is_persisted(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = TranscriptStore(Path(tmp) / "t.jsonl")
            model = FakeModel([call_chunk(("click", {"x": 1, "y": 2}))], [text_chunk("done")])
            await _controller(model, transcript=store).send("click")
            messages = store.load_messages()
            self.assertEqual(messages[0].content, "click")
            self.assertEqual(messages[1].tool_calls[0].name, "click")
            self.assertEqual(messages[2].tool_results[0].tool_call_id, messages[1].tool_calls[0].id)
            self.assertEqual(messages[-1].content, "done")


if __name__ == "__main__":
    unittest.main()
