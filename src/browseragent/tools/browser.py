"""
Browser actions the agent can perform locally, and the default executor that
carries them to the browser.

The executor talks to a small HTTP bridge that forwards ``MessageRequest``
envelopes (``{"type": ..., ...}``) to the extension's content script and
returns its ``MessageResponse`` (``{"success": ..., "error": ..., ...}``).
The DOM work itself happens on the other side of that bridge.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict

from ..errors import DispatchError
from ..schemas import MessageResponse, validate

BRIDGE_PATH = "/message"


class Coordinate(BaseModel):
    x: float
    y: float


class BrowserActionParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x: float | None = None
    y: float | None = None
    text: str | None = None
    selector: str | None = None
    target: str | None = None
    value: str | None = None
    direction: str | None = None
    amount: float | None = None
    key: str | None = None
    keys: list[str] | None = None
    destination_x: float | None = None
    destination_y: float | None = None
    coordinate: Coordinate | None = None
    address: str | None = None
    uri: str | None = None
    content: str | None = None
    seconds: float | None = None
    milliseconds: float | None = None
    press_enter: bool | None = None
    clear_before_typing: bool | None = None
    magnitude: float | None = None


_PARAM_DOCS: dict[str, dict[str, Any]] = {
    "x": {"type": "number", "description": "Horizontal viewport coordinate in CSS pixels."},
    "y": {"type": "number", "description": "Vertical viewport coordinate in CSS pixels."},
    "text": {"type": "string", "description": "Text to type."},
    "selector": {"type": "string", "description": "CSS selector of the target element."},
    "target": {"type": "string", "description": "Visible label or description of the target element."},
    "value": {"type": "string", "description": "Option value to select."},
    "direction": {"type": "string", "enum": ["up", "down", "left", "right"]},
    "amount": {"type": "number", "description": "Scroll distance in pixels."},
    "magnitude": {"type": "number", "description": "Scroll distance in viewport-relative units."},
    "key": {"type": "string", "description": "Single key, e.g. Enter or Escape."},
    "keys": {"type": "array", "items": {"type": "string"}, "description": "Key combination, e.g. [\"Control\", \"a\"]."},
    "destination_x": {"type": "number", "description": "Drop point x coordinate."},
    "destination_y": {"type": "number", "description": "Drop point y coordinate."},
    "address": {"type": "string", "description": "URL to open."},
    "uri": {"type": "string", "description": "URL to open (alternative to address)."},
    "content": {"type": "string", "description": "Content to insert."},
    "seconds": {"type": "number", "description": "How long to wait, in seconds."},
    "milliseconds": {"type": "number", "description": "How long to wait, in milliseconds."},
    "press_enter": {"type": "boolean", "description": "Press Enter after typing."},
    "clear_before_typing": {"type": "boolean", "description": "Clear the field before typing."},
}


@dataclass(frozen=True)
class BrowserAction:
    name: str
    description: str
    params: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    # At least one of these must be present.
    requires_any: tuple[str, ...] = ()
    mutates: bool = True

    def declaration(self) -> dict[str, Any]:
        properties = {name: dict(_PARAM_DOCS[name]) for name in self.params if name in _PARAM_DOCS}
        if "coordinate" in self.params:
            properties["coordinate"] = {
                "type": "object",
                "properties": {"x": {"type": "number"}, "y": {"type": "number"}},
            }
        parameters: dict[str, Any] = {"type": "object", "properties": properties}
        if self.required:
            parameters["required"] = list(self.required)
        return {"name": self.name, "description": self.description, "parameters": parameters}


_ACTIONS = [
    BrowserAction("click", "Click an element by selector, label or viewport coordinates.",
                  ("x", "y", "selector", "target", "coordinate")),
    BrowserAction("type", "Type text into the focused element or the element at a selector/coordinates.",
                  ("text", "selector", "x", "y", "coordinate", "press_enter", "clear_before_typing"),
                  required=("text",)),
    BrowserAction("scroll", "Scroll the page or an element.",
                  ("direction", "amount", "magnitude", "x", "y", "selector")),
    BrowserAction("navigate", "Open a URL in the current tab.", ("address", "uri"),
                  requires_any=("address", "uri")),
    BrowserAction("go_back", "Go back in tab history."),
    BrowserAction("go_forward", "Go forward in tab history."),
    BrowserAction("press_key", "Press a key or key combination.", ("key", "keys"),
                  requires_any=("key", "keys")),
    BrowserAction("hover", "Move the pointer over an element.", ("x", "y", "selector", "coordinate")),
    BrowserAction("drag_and_drop", "Drag from (x, y) and drop at (destination_x, destination_y).",
                  ("x", "y", "destination_x", "destination_y"),
                  required=("x", "y", "destination_x", "destination_y")),
    BrowserAction("select", "Choose an option in a <select> element.", ("selector", "value"),
                  required=("selector", "value")),
    BrowserAction("wait", "Wait before the next action.", ("seconds", "milliseconds"), mutates=False),
    BrowserAction("screenshot", "Capture the visible part of the page.", mutates=False),
    BrowserAction("read_page", "Read the text content of the page or of one element.", ("selector",),
                  mutates=False),
]

BROWSER_ACTIONS: dict[str, BrowserAction] = {action.name: action for action in _ACTIONS}

# Gemini computer-use names -> (local action, default parameters)
ACTION_ALIASES: dict[str, tuple[str, dict[str, Any]]] = {
    "click_at": ("click", {}),
    "type_text_at": ("type", {}),
    "scroll_document": ("scroll", {}),
    "scroll_at": ("scroll", {}),
    "key_combination": ("press_key", {}),
    "hover_at": ("hover", {}),
    "wait_5_seconds": ("wait", {"seconds": 5}),
    "navigate_to": ("navigate", {}),
    "open_url": ("navigate", {}),
    "take_screenshot": ("screenshot", {}),
    "get_page_content": ("read_page", {}),
}


def resolve_action(name: str) -> tuple[BrowserAction, dict[str, Any]] | None:
    if name in BROWSER_ACTIONS:
        return BROWSER_ACTIONS[name], {}
    alias = ACTION_ALIASES.get(name)
    if alias is None:
        return None
    canonical, defaults = alias
    return BROWSER_ACTIONS[canonical], dict(defaults)


def action_params(action: BrowserAction, args: dict[str, Any], defaults: dict[str, Any] | None = None) -> dict[str, Any]:
    """Narrow model-supplied arguments to the subset ``action`` accepts.

    Raises :class:`DispatchError` when an argument has the wrong type or a
    required argument is missing; the model sees that as a failed tool call.
    """
    merged = {**(defaults or {}), **args}
    try:
        parsed = BrowserActionParams.model_validate(merged)
    except ValueError as exc:
        raise DispatchError(f"{action.name}: invalid arguments: {exc}") from exc
    params = parsed.model_dump(include=set(action.params), exclude_none=True)
    missing = [name for name in action.required if name not in params]
    if missing:
        raise DispatchError(f"{action.name}: missing required argument(s): {', '.join(missing)}")
    if action.requires_any and not any(name in params for name in action.requires_any):
        raise DispatchError(f"{action.name}: one of {', '.join(action.requires_any)} is required")
    return params


def browser_declarations() -> list[dict[str, Any]]:
    return [action.declaration() for action in _ACTIONS]


class BrowserActionExecutor(Protocol):
    async def execute(self, action: str, params: dict[str, Any]) -> dict[str, Any]: ...

    async def capture_screenshot(self) -> dict[str, Any]: ...

    async def get_page_context(self) -> dict[str, Any]: ...


@dataclass
class HttpBrowserExecutor:
    base_url: str = "http://localhost:7081"
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)

    async def _send(self, request: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}{BRIDGE_PATH}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers) as client:
                response = await client.post(url, json=request)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise DispatchError(
                f"Browser bridge returned HTTP {exc.response.status_code} for {request['type']}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise DispatchError(f"Browser bridge unreachable for {request['type']}: {exc}") from exc
        except ValueError as exc:
            raise DispatchError(f"Browser bridge returned a non-JSON body for {request['type']}") from exc
        envelope: MessageResponse = validate("message_response", body)
        return envelope.model_dump()

    async def execute(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._send({"type": "EXECUTE_ACTION", "action": action, "params": params})

    async def capture_screenshot(self) -> dict[str, Any]:
        return await self._send({"type": "CAPTURE_SCREENSHOT"})

    async def get_page_context(self) -> dict[str, Any]:
        response = await self._send({"type": "GET_PAGE_CONTEXT"})
        if response.get("success") is False:
            raise DispatchError(f"Page context unavailable: {response.get('error') or 'unknown error'}")
        context = response.get("context")
        if context is None:
            raise DispatchError("Browser bridge returned no page context")
        return context
