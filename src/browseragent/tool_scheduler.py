from __future__ import annotations

import asyncio
import json
import random
import time
from typing import AsyncIterator, Awaitable, Callable, Union

from .errors import ToolRequestError
from .state import SafetyBlocked, ToolCall, ToolResult

Outcome = Union[ToolResult, SafetyBlocked]


class ToolScheduler:
    """Runs the tool calls of one model response strictly one after another.

    Calls are executed in emission order; a :class:`SafetyBlocked` outcome
    stops the batch so nothing after it runs before the user decides.
    """

    def __init__(
        self,
        runner: Callable[[ToolCall], Awaitable[Outcome]],
        *,
        log: Callable[[str], None] | None = None,
        timeout: float | None = None,
        max_attempts: int = 1,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self.runner = runner
        self.log = log
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.sleep = sleep or asyncio.sleep
        self.jitter = jitter or random.random

    async def iter_batch(self, calls: list[ToolCall]) -> AsyncIterator[Outcome]:
        for call in calls:
            self._log(f"queued [{call.name}] {self._format_args(call.parameters)}")
        for call in calls:
            outcome = await self.run_one(call)
            yield outcome
            if isinstance(outcome, SafetyBlocked):
                self._log(f"blocked [{call.name}] awaiting confirmation")
                return

    async def run_batch(self, calls: list[ToolCall]) -> list[Outcome]:
        return [outcome async for outcome in self.iter_batch(calls)]

    async def run_one(self, call: ToolCall) -> Outcome:
        start = time.monotonic()
        attempt = 1
        while True:
            self._log(f"running [{call.name}] attempt {attempt}")
            try:
                if self.timeout is not None:
                    outcome = await asyncio.wait_for(self.runner(call), timeout=self.timeout)
                else:
                    outcome = await self.runner(call)
                duration = time.monotonic() - start
                self._log(f"done [{call.name}] {duration:.2f}s")
                return outcome
            except asyncio.TimeoutError:
                duration = time.monotonic() - start
                self._log(f"timeout [{call.name}] {duration:.2f}s")
                return self._failure(call, f"{call.name} timed out after {self.timeout:g}s", attempt)
            except ToolRequestError as exc:
                status = exc.status_code
                reason = f"{status}" if status else type(exc).__name__
                if exc.retryable and attempt < self.max_attempts:
                    delay = self._backoff_delay(attempt)
                    self._log(f"retry [{call.name}] attempt {attempt + 1} in {delay:.2f}s ({reason})")
                    await self.sleep(delay)
                    attempt += 1
                    continue
                duration = time.monotonic() - start
                self._log(f"fail [{call.name}] {duration:.2f}s ({reason})")
                return self._failure(call, str(exc), attempt)

    def _failure(self, call: ToolCall, error: str, attempts: int) -> ToolResult:
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            result={"success": False, "error": error, "attempts": attempts},
        )

    def _backoff_delay(self, attempt: int) -> float:
        base = 0.5 * (2 ** (attempt - 1))
        capped = min(base, 8.0)
        jitter = self.jitter() * 0.25 * capped
        return capped + jitter

    def _format_args(self, args: dict[str, object]) -> str:
        try:
            return json.dumps(args, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(args)

    def _log(self, message: str) -> None:
        if self.log:
            self.log(message)
