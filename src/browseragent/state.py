from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

TOOL_ROUTER_MODE = "tool-router"


class ChatPhase(str, Enum):
    LOADING = "loading"
    READY = "ready"
    STREAMING = "streaming"
    ERROR = "error"


def new_id(prefix: str = "msg") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _inline_image(value: Any) -> dict[str, str] | None:
    if not isinstance(value, str) or not value.startswith("data:image/"):
        return None
    header, _, data = value.partition(",")
    if not header.endswith(";base64") or not data:
        return None
    return {"mimeType": header[5:].split(";", 1)[0], "data": data}


@dataclass(frozen=True)
class Settings:
    api_key: str
    model: str
    provider: str = "google"
    tool_mode: str | None = None
    composio_api_key: str | None = None

    @property
    def uses_tool_router(self) -> bool:
        return self.tool_mode == TOOL_ROUTER_MODE and bool(self.composio_api_key)


@dataclass(frozen=True)
class Session:
    session_id: str
    chat_session_mcp_url: str
    tool_router_mcp_url: str
    expires_at: float
    created_at: float

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("session must expire after it was created")

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    index: int = 0


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    name: str
    result: dict[str, Any]

    @property
    def ok(self) -> bool:
        return bool(self.result.get("success", True)) and "error" not in self.result


@dataclass(slots=True)
class Message:
    role: str
    content: str = ""
    id: str = field(default_factory=new_id)
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None

    def as_gemini_content(self) -> dict[str, Any] | None:
        """Render this message as a Gemini ``contents`` entry, or None if it carries nothing."""
        parts: list[dict[str, Any]] = []
        if self.content:
            parts.append({"text": self.content})
        for call in self.tool_calls or []:
            parts.append({"functionCall": {"name": call.name, "args": call.parameters}})
        for result in self.tool_results or []:
            response = dict(result.result)
            image = _inline_image(response.get("screenshot"))
            if image is not None:
                response.pop("screenshot")
            parts.append({"functionResponse": {"name": result.name, "response": response}})
            if image is not None:
                parts.append({"inlineData": image})
        if not parts:
            return None
        return {"role": "model" if self.role == "assistant" else "user", "parts": parts}


@dataclass(slots=True)
class ChatState:
    phase: ChatPhase = ChatPhase.LOADING
    settings: Settings | None = None
    messages: list[Message] = field(default_factory=list)
    error: str | None = None
    browser_tools_enabled: bool = True

    @property
    def is_loading(self) -> bool:
        return self.phase in (ChatPhase.LOADING, ChatPhase.STREAMING)

    def snapshot(self) -> "ChatState":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class SafetyBlocked:
    """A browser action held back until the user confirms it.

    This is an outcome, not a failure: nothing has been executed yet.
    """

    tool_call: ToolCall
    message: str = "This action requires confirmation."
