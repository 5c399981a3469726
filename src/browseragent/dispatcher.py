"""
Resolves a model-issued function call to something executable.

Resolution order:

1. a registered local browser action (or one of its computer-use aliases),
   run through the :class:`BrowserActionExecutor` with only the parameters
   that action accepts;
2. a remote tool discovered on the session's MCP endpoints (tool-router
   endpoint first, then chat-session);
3. otherwise an "unknown tool" result the model can read and recover from.

Executor and remote failures come back as failed :class:`ToolResult`
payloads via :class:`DispatchError`; malformed payloads raise
:class:`ValidationError` for the caller to surface.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx

from .errors import DispatchError
from .mcp_pool import MCPClientPool
from .schemas import ActionResponse, ScreenshotResponse, ToolResultEnvelope, validate
from .session import SessionManager
from .state import SafetyBlocked, ToolCall, ToolResult
from .tools.browser import BrowserAction, BrowserActionExecutor, action_params, browser_declarations, resolve_action

# JSON-schema keywords the Gemini function-declaration schema rejects.
_UNSUPPORTED_SCHEMA_KEYS = {
    "$schema",
    "$id",
    "$ref",
    "$defs",
    "definitions",
    "additionalProperties",
    "patternProperties",
    "default",
    "examples",
    "const",
    "title",
}


def gemini_parameters(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Strip an MCP tool's JSON schema down to what Gemini accepts."""

    def _clean(node: Any) -> Any:
        if isinstance(node, dict):
            cleaned: dict[str, Any] = {}
            for key, value in node.items():
                if key in _UNSUPPORTED_SCHEMA_KEYS:
                    continue
                if key == "properties" and isinstance(value, dict):
                    cleaned[key] = {name: _clean(prop) for name, prop in value.items()}
                else:
                    cleaned[key] = _clean(value)
            return cleaned
        if isinstance(node, list):
            return [_clean(item) for item in node]
        return node

    parameters = _clean(dict(schema or {}))
    if not isinstance(parameters, dict):
        parameters = {}
    parameters.setdefault("type", "object")
    parameters.setdefault("properties", {})
    return parameters


def unknown_tool_result(call: ToolCall) -> ToolResult:
    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        result={"success": False, "unknown_tool": True, "error": f"unknown tool '{call.name}'"},
    )


class ToolDispatcher:
    def __init__(
        self,
        executor: BrowserActionExecutor,
        pool: MCPClientPool,
        *,
        sessions: SessionManager | None = None,
        browser_enabled: bool = True,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self.executor = executor
        self.pool = pool
        self.sessions = sessions
        self.browser_enabled = browser_enabled
        self.log = log
        self._known_endpoints: list[str] = []
        self._discovery_failures: list[str] = []

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        call: ToolCall,
        *,
        require_confirmation: bool = False,
        confirmed: bool = False,
    ) -> ToolResult | SafetyBlocked:
        local = resolve_action(call.name) if self.browser_enabled else None
        if local is not None:
            action, defaults = local
            if require_confirmation and action.mutates and not confirmed:
                return SafetyBlocked(call, f"Confirm browser action '{call.name}' before it runs.")
            return await self._run_browser(call, action, defaults)

        remote_url = await self._find_remote(call.name)
        if remote_url is not None:
            return await self._run_remote(call, remote_url)
        self._log(f"unknown tool [{call.name}]")
        return unknown_tool_result(call)

    async def _run_browser(self, call: ToolCall, action: BrowserAction, defaults: dict[str, Any]) -> ToolResult:
        params = action_params(action, call.parameters, defaults)
        if action.name == "screenshot":
            raw = await self._executor_call(action.name, self.executor.capture_screenshot())
            shot: ScreenshotResponse = validate("screenshot_response", raw)
            payload = shot.model_dump(exclude_none=True)
        else:
            raw = await self._executor_call(action.name, self.executor.execute(action.name, params))
            response: ActionResponse = validate("action_response", raw)
            payload = response.model_dump(exclude_none=True)
        payload["action"] = action.name
        return ToolResult(tool_call_id=call.id, name=call.name, result=payload)

    async def _executor_call(self, action: str, pending: Awaitable[Any]) -> Any:
        try:
            return await pending
        except DispatchError:
            raise
        except (httpx.HTTPError, OSError) as exc:
            raise DispatchError(f"{action}: browser executor failed: {exc}") from exc

    async def _run_remote(self, call: ToolCall, url: str) -> ToolResult:
        try:
            raw = await self.pool.call_tool(url, call.name, dict(call.parameters))
        except Exception as exc:  # noqa: BLE001
            retryable = isinstance(exc, (httpx.TransportError, OSError, ConnectionError))
            if retryable:
                await self.pool.release(url)
            raise DispatchError(f"{call.name}: remote tool failed: {exc}", retryable=retryable) from exc
        envelope: ToolResultEnvelope = validate("tool_result_envelope", raw)
        text = envelope.text()
        payload: dict[str, Any] = {"success": not envelope.is_error, "content": text}
        if envelope.structured_content is not None:
            payload["structured"] = envelope.structured_content
        if envelope.is_error:
            payload["error"] = text or f"{call.name} reported an error"
        return ToolResult(tool_call_id=call.id, name=call.name, result=payload)

    # ------------------------------------------------------------------
    # Remote tool discovery
    # ------------------------------------------------------------------

    async def _endpoints(self) -> list[str]:
        if self.sessions is None:
            return []
        tool_router, chat_session = await self.sessions.endpoints()
        current = [tool_router, chat_session]
        for stale in self._known_endpoints:
            if stale not in current:
                await self.pool.release(stale)
        self._known_endpoints = current
        return current

    async def remote_tools(self) -> dict[str, tuple[str, dict[str, Any]]]:
        """Map tool name -> (endpoint url, schema) across the session's endpoints."""
        found: dict[str, tuple[str, dict[str, Any]]] = {}
        failures: list[str] = []
        for url in await self._endpoints():
            try:
                tools = await self.pool.tools_for(url)
            except Exception as exc:  # noqa: BLE001
                self._log(f"mcp discovery failed {url}: {exc}")
                failures.append(url)
                continue
            for name, schema in tools.items():
                found.setdefault(name, (url, schema))
        self._discovery_failures = failures
        return found

    async def _find_remote(self, name: str) -> str | None:
        tools = await self.remote_tools()
        if name in tools:
            return tools[name][0]
        if self._discovery_failures:
            raise DispatchError(
                f"{name}: remote tools unavailable ({', '.join(self._discovery_failures)})",
                retryable=True,
            )
        return None

    async def function_declarations(self) -> list[dict[str, Any]]:
        declarations = browser_declarations() if self.browser_enabled else []
        taken = {decl["name"] for decl in declarations}
        for name, (_url, schema) in (await self.remote_tools()).items():
            if name in taken or (self.browser_enabled and resolve_action(name) is not None):
                self._log(f"skipping remote tool [{name}]: shadowed by a browser action")
                continue
            taken.add(name)
            declarations.append(
                {
                    "name": name,
                    "description": schema.get("description", ""),
                    "parameters": gemini_parameters(schema.get("inputSchema")),
                }
            )
        return declarations

    def _log(self, message: str) -> None:
        if self.log:
            self.log(message)
