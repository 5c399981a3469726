"""
Turn controller: the state machine behind one conversation.

Phases::

    loading --start()--> ready --send()--> streaming --(final answer)--> ready
                                               |
                                               +--(failure)--> error --reset()--> ready

While streaming, each model response is validated chunk by chunk.  Function
calls become :class:`ToolCall` records on the in-progress assistant message,
run one at a time in emission order, and their results are appended before
the model is called again.  A browser action held for safety confirmation
parks the turn in ``streaming`` until :meth:`confirm` or :meth:`decline`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from .dispatcher import ToolDispatcher
from .errors import (
    BrowserAgentError,
    ContractViolation,
    DispatchError,
    TurnBusyError,
)
from .memory import BrowserMemory
from .schemas import FunctionCallPart, ModelResponse, PageContext, SafetyResponse, TextPart, validate
from .state import ChatPhase, ChatState, Message, SafetyBlocked, Settings, ToolCall, ToolResult, new_id
from .tool_scheduler import ToolScheduler
from .tools.browser import BrowserActionExecutor
from .transcript import TranscriptStore

SYSTEM_PROMPT = (
    "You are a browser assistant working inside the user's current tab. "
    "Use the browser tools to look at and act on the page; read the page again after actions "
    "that change it. Use remote tools only when the page alone cannot answer the request. "
    "When a tool fails, say so and try another approach instead of repeating the same call."
)


class ModelCollaborator(Protocol):
    def stream_generate(
        self,
        model: str,
        contents: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system_instruction: str | None = None,
    ) -> AsyncIterator[Any]: ...


class TurnFailed(BrowserAgentError):
    pass


@dataclass
class ModelReply:
    text: str = ""
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    finish_reason: str | None = None
    safety: SafetyResponse | None = None
    block_reason: str | None = None

    def absorb(self, chunk: ModelResponse) -> str:
        """Fold one validated chunk into the reply; return its text delta."""
        delta = ""
        for part in chunk.parts:
            if isinstance(part, TextPart):
                delta += part.text
            elif isinstance(part, FunctionCallPart):
                self.calls.append((part.function_call.name, dict(part.function_call.args)))
        self.text += delta
        if chunk.candidates:
            candidate = chunk.candidates[0]
            if candidate.finish_reason:
                self.finish_reason = candidate.finish_reason
            if candidate.safety_response is not None:
                self.safety = candidate.safety_response
        if chunk.prompt_feedback is not None and chunk.prompt_feedback.block_reason:
            self.block_reason = chunk.prompt_feedback.block_reason
        return delta

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.safety and self.safety.require_confirmation)


class TurnController:
    def __init__(
        self,
        model: ModelCollaborator,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        executor: BrowserActionExecutor | None = None,
        memory: BrowserMemory | None = None,
        transcript: TranscriptStore | None = None,
        browser_tools_enabled: bool = True,
        max_tool_rounds: int = 10,
        model_timeout: float = 120.0,
        tool_timeout: float = 60.0,
        browser_timeout: float = 30.0,
        tool_attempts: int = 1,
        system_prompt: str = SYSTEM_PROMPT,
        on_delta: Callable[[str], None] | None = None,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self.model = model
        self.dispatcher = dispatcher
        self.executor = executor
        self.memory = memory
        self.transcript = transcript
        self.max_tool_rounds = max_tool_rounds
        self.model_timeout = model_timeout
        self.tool_timeout = tool_timeout
        self.browser_timeout = browser_timeout
        self.tool_attempts = tool_attempts
        self.system_prompt = system_prompt
        self.on_delta = on_delta
        self.log = log
        self.state = ChatState(settings=settings, browser_tools_enabled=browser_tools_enabled)
        self.page: PageContext | None = None
        self.pending: SafetyBlocked | None = None
        self._remaining: list[ToolCall] = []
        self._require_confirmation = False
        self._round = 0
        self._task: asyncio.Task[Any] | None = None

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def start(self) -> ChatState:
        if self.state.phase != ChatPhase.LOADING:
            return self.state
        settings = self.state.settings
        if settings is None or not settings.api_key.strip():
            self._enter_error("An API key is required before chatting.")
        else:
            self.state.phase = ChatPhase.READY
        return self.state

    def reset(self) -> ChatState:
        if self.state.phase == ChatPhase.STREAMING:
            raise TurnBusyError("Cannot reset while a turn is in progress")
        if self.state.phase == ChatPhase.LOADING:
            return self.start()
        settings = self.state.settings
        if settings is None or not settings.api_key.strip():
            return self.state
        self.state.error = None
        self.state.phase = ChatPhase.READY
        return self.state

    def _enter_error(self, message: str) -> None:
        self.state.error = message
        self.state.phase = ChatPhase.ERROR
        self._log(f"turn error: {message}")

    def _finish(self) -> None:
        self.state.error = None
        self.state.phase = ChatPhase.READY

    def _fail(self, message: str) -> None:
        self._close_unanswered(f"not executed: {message}")
        self.pending = None
        self._remaining = []
        self._enter_error(message)

    # ------------------------------------------------------------------
    # Public turn operations
    # ------------------------------------------------------------------

    async def send(self, text: str) -> ChatState:
        if self.state.phase == ChatPhase.LOADING:
            self.start()
        if self.state.phase != ChatPhase.READY:
            raise TurnBusyError(f"Cannot send while the conversation is {self.state.phase.value}")
        self.state.phase = ChatPhase.STREAMING
        self.state.error = None
        self._round = 0
        self._append(Message("user", text))
        await self._drive(self._model_loop())
        return self.state

    async def confirm(self) -> ChatState:
        pending = self._take_pending()
        remaining = self._remaining
        self._remaining = []
        await self._drive(self._resume(pending.tool_call, remaining))
        return self.state

    async def decline(self, reason: str = "declined by user") -> ChatState:
        pending = self._take_pending()
        self._record(
            ToolResult(
                tool_call_id=pending.tool_call.id,
                name=pending.tool_call.name,
                result={"success": False, "declined": True, "error": reason},
            )
        )
        self._fail(f"Action '{pending.tool_call.name}' was not confirmed ({reason}).")
        return self.state

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        elif self.pending is not None:
            self._fail("Turn cancelled")

    def _take_pending(self) -> SafetyBlocked:
        if self.pending is None or self.state.phase != ChatPhase.STREAMING:
            raise ContractViolation("No action is waiting for confirmation")
        pending = self.pending
        self.pending = None
        return pending

    async def _drive(self, work: Any) -> None:
        self._task = asyncio.current_task()
        try:
            await work
        except asyncio.CancelledError:
            self._fail("Turn cancelled")
            raise
        except ContractViolation as exc:
            self._fail(str(exc))
            raise
        except (BrowserAgentError, asyncio.TimeoutError) as exc:
            message = str(exc) or type(exc).__name__
            if isinstance(exc, asyncio.TimeoutError):
                message = f"Model did not answer within {self.model_timeout:g}s"
            self._fail(message)
        except Exception as exc:
            self._fail(f"Internal error: {exc}")
            raise
        finally:
            self._task = None

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    async def _model_loop(self) -> None:
        while True:
            if self._round >= self.max_tool_rounds:
                raise TurnFailed(f"Stopped after {self.max_tool_rounds} tool-call rounds without a final answer.")
            await self._capture_page()
            assistant = Message("assistant")
            self.state.messages.append(assistant)
            reply = await asyncio.wait_for(self._call_model(), timeout=self.model_timeout)
            assistant.content = reply.text
            if reply.block_reason:
                self._persist(assistant)
                raise TurnFailed(f"The prompt was blocked by the model ({reply.block_reason}).")
            if not reply.calls:
                if not reply.text and reply.finish_reason not in (None, "STOP"):
                    self._persist(assistant)
                    raise TurnFailed(f"The model stopped without an answer ({reply.finish_reason}).")
                self._persist(assistant)
                self._finish()
                return
            self._round += 1
            assistant.tool_calls = [
                ToolCall(id=new_id("call"), name=name, parameters=args, index=index)
                for index, (name, args) in enumerate(reply.calls)
            ]
            self._persist(assistant)
            self._require_confirmation = reply.requires_confirmation
            if not await self._run_calls(assistant.tool_calls):
                return

    async def _resume(self, call: ToolCall, remaining: list[ToolCall]) -> None:
        scheduler = self._scheduler(lambda c: self.dispatcher.dispatch(c, confirmed=True))
        outcome = await scheduler.run_one(call)
        if isinstance(outcome, SafetyBlocked):
            raise ContractViolation(f"Confirmed action '{call.name}' was blocked again")
        self._record(outcome)
        if remaining and not await self._run_calls(remaining):
            return
        await self._model_loop()

    async def _run_calls(self, calls: list[ToolCall]) -> bool:
        """Run ``calls`` in order; False when the turn is parked on a confirmation."""
        scheduler = self._scheduler(self._dispatch_one)
        async for outcome in scheduler.iter_batch(calls):
            if isinstance(outcome, SafetyBlocked):
                self.pending = outcome
                position = calls.index(outcome.tool_call)
                self._remaining = calls[position + 1:]
                self._log(f"awaiting confirmation for [{outcome.tool_call.name}]")
                return False
            self._record(outcome)
        return True

    async def _dispatch_one(self, call: ToolCall) -> ToolResult | SafetyBlocked:
        return await self.dispatcher.dispatch(call, require_confirmation=self._require_confirmation)

    def _scheduler(self, runner: Callable[[ToolCall], Any]) -> ToolScheduler:
        return ToolScheduler(runner, log=self.log, timeout=self.tool_timeout, max_attempts=self.tool_attempts)

    async def _call_model(self) -> ModelReply:
        settings = self.state.settings
        assert settings is not None
        tools = await self.dispatcher.function_declarations()
        reply = ModelReply()
        stream = self.model.stream_generate(
            settings.model,
            self._contents(),
            tools=tools or None,
            system_instruction=self._system_instruction(),
        )
        async for raw in stream:
            chunk: ModelResponse = validate("model_response", raw)
            delta = reply.absorb(chunk)
            if delta and self.on_delta:
                self.on_delta(delta)
        return reply

    async def _capture_page(self) -> None:
        if not self.state.browser_tools_enabled or self.executor is None:
            return
        try:
            raw = await asyncio.wait_for(self.executor.get_page_context(), timeout=self.browser_timeout)
        except (DispatchError, asyncio.TimeoutError) as exc:
            self._log(f"page context unavailable: {exc}")
            self.page = None
            return
        self.page = validate("page_context", raw)
        if self.memory is not None:
            self.memory.record_visit(self.page)

    # ------------------------------------------------------------------
    # Transcript bookkeeping
    # ------------------------------------------------------------------

    def _contents(self) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in self.state.messages:
            entry = message.as_gemini_content()
            if entry is None:
                continue
            if contents and contents[-1]["role"] == entry["role"]:
                contents[-1]["parts"].extend(entry["parts"])
            else:
                contents.append(entry)
        return contents

    def _system_instruction(self) -> str:
        if self.page is None:
            return self.system_prompt
        return f"{self.system_prompt}\n\n{self.page.summary()}"

    def _append(self, message: Message) -> None:
        self.state.messages.append(message)
        self._persist(message)

    def _persist(self, message: Message) -> None:
        if self.transcript is not None:
            self.transcript.append(message)

    def _calls_and_answers(self) -> tuple[dict[str, ToolCall], set[str]]:
        calls: dict[str, ToolCall] = {}
        answered: set[str] = set()
        for message in self.state.messages:
            for call in message.tool_calls or []:
                calls[call.id] = call
            for result in message.tool_results or []:
                answered.add(result.tool_call_id)
        return calls, answered

    def _record(self, result: ToolResult) -> None:
        calls, answered = self._calls_and_answers()
        if result.tool_call_id not in calls:
            raise ContractViolation(f"Tool result references unknown call id {result.tool_call_id}")
        if result.tool_call_id in answered:
            raise ContractViolation(f"Tool call {result.tool_call_id} already has a result")
        self._append(Message("user", tool_results=[result]))

    def _close_unanswered(self, reason: str) -> None:
        calls, answered = self._calls_and_answers()
        for call_id, call in calls.items():
            if call_id in answered:
                continue
            self._append(
                Message(
                    "user",
                    tool_results=[
                        ToolResult(tool_call_id=call_id, name=call.name, result={"success": False, "error": reason})
                    ],
                )
            )

    def _log(self, message: str) -> None:
        if self.log:
            self.log(message)
