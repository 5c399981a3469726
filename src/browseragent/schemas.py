"""
Runtime contracts for every payload that enters the core from outside:
model responses, session bootstrap replies, page snapshots, browser action
results and MCP tool results.

Each contract is a frozen pydantic model.  ``validate()`` is the single entry
point; it returns the narrowed model or raises
:class:`~browseragent.errors.ValidationError` with the dotted path of the
first offending field.  Nothing past this module handles raw dicts.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Union
from urllib.parse import urlsplit

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator

from .errors import ValidationError


class _Contract(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


def _alias(*names: str) -> Any:
    return Field(validation_alias=AliasChoices(*names))


def _is_absolute_url(value: str) -> bool:
    parts = urlsplit(value)
    return bool(parts.scheme) and bool(parts.netloc)


# ---------------------------------------------------------------------------
# Model response: a closed sum of four part shapes
# ---------------------------------------------------------------------------


class TextPart(_Contract):
    text: str


class FunctionCallBody(_Contract):
    name: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def _none_args(cls, value: Any) -> Any:
        return {} if value is None else value


class FunctionCallPart(_Contract):
    function_call: FunctionCallBody = _alias("functionCall", "function_call")


class FunctionResponsePart(_Contract):
    function_response: Any = _alias("function_response", "functionResponse")


class InlineData(_Contract):
    mime_type: str = _alias("mime_type", "mimeType")
    data: str


class InlineDataPart(_Contract):
    inline_data: InlineData = _alias("inline_data", "inlineData")


_PART_KEYS = (
    ("text", ("text",)),
    ("function_call", ("functionCall", "function_call")),
    ("function_response", ("function_response", "functionResponse")),
    ("inline_data", ("inline_data", "inlineData")),
)

_PART_TYPES = {
    TextPart: "text",
    FunctionCallPart: "function_call",
    FunctionResponsePart: "function_response",
    InlineDataPart: "inline_data",
}


def _part_kind(value: Any) -> str | None:
    if isinstance(value, BaseModel):
        return _PART_TYPES.get(type(value))
    if not isinstance(value, dict):
        return None
    for tag, keys in _PART_KEYS:
        if any(key in value for key in keys):
            return tag
    return None


Part = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[FunctionCallPart, Tag("function_call")],
        Annotated[FunctionResponsePart, Tag("function_response")],
        Annotated[InlineDataPart, Tag("inline_data")],
    ],
    Discriminator(_part_kind),
]


class Content(_Contract):
    role: str | None = None
    # Streamed chunks may close with a content block that carries no parts.
    parts: list[Part] = Field(default_factory=list)


class SafetyResponse(_Contract):
    require_confirmation: bool = _alias("requireConfirmation", "require_confirmation")
    message: str | None = None


class Candidate(_Contract):
    content: Content | None = None
    finish_reason: str | None = Field(default=None, validation_alias=AliasChoices("finishReason", "finish_reason"))
    safety_response: SafetyResponse | None = Field(
        default=None, validation_alias=AliasChoices("safetyResponse", "safety_response")
    )


class PromptFeedback(_Contract):
    block_reason: str | None = Field(default=None, validation_alias=AliasChoices("blockReason", "block_reason"))


class ModelResponse(_Contract):
    candidates: list[Candidate] = Field(default_factory=list)
    prompt_feedback: PromptFeedback | None = Field(
        default=None, validation_alias=AliasChoices("promptFeedback", "prompt_feedback")
    )

    @property
    def parts(self) -> list[Any]:
        if not self.candidates or self.candidates[0].content is None:
            return []
        return list(self.candidates[0].content.parts)


# ---------------------------------------------------------------------------
# Session bootstrap
# ---------------------------------------------------------------------------


class SessionBootstrap(_Contract):
    session_id: str = Field(min_length=1)
    chat_session_mcp_url: str
    tool_router_instance_mcp_url: str
    expires_in: float | None = Field(default=None, gt=0)
    expires_at: datetime | None = None

    @field_validator("chat_session_mcp_url", "tool_router_instance_mcp_url")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not _is_absolute_url(value):
            raise ValueError("must be an absolute URL")
        return value


# ---------------------------------------------------------------------------
# Page context
# ---------------------------------------------------------------------------


class Link(_Contract):
    text: str
    href: str


class Image(_Contract):
    alt: str
    src: str


class FormInput(_Contract):
    name: str
    type: str


class Form(_Contract):
    id: str
    action: str
    inputs: list[FormInput]


class PageMetadata(_Contract):
    description: str | None = None
    keywords: str | None = None
    author: str | None = None


class Viewport(_Contract):
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    scroll_x: float = _alias("scrollX", "scroll_x")
    scroll_y: float = _alias("scrollY", "scroll_y")
    device_pixel_ratio: float = Field(gt=0, validation_alias=AliasChoices("devicePixelRatio", "device_pixel_ratio"))


class PageContext(_Contract):
    url: str
    title: str
    text_content: str = _alias("textContent", "text_content")
    links: list[Link] = Field(default_factory=list)
    images: list[Image] = Field(default_factory=list)
    forms: list[Form] = Field(default_factory=list)
    metadata: PageMetadata | None = None
    viewport: Viewport | None = None

    @field_validator("url")
    @classmethod
    def _page_url(cls, value: str) -> str:
        if value.startswith("data:") or _is_absolute_url(value):
            return value
        raise ValueError("must be an absolute URL or a data: URL")

    def summary(self, max_chars: int = 4000) -> str:
        lines = [f"Current page: {self.title or '(untitled)'} <{self.url}>"]
        if self.metadata and self.metadata.description:
            lines.append(f"Description: {self.metadata.description}")
        if self.viewport:
            vp = self.viewport
            lines.append(f"Viewport: {vp.width:g}x{vp.height:g} scrolled to ({vp.scroll_x:g}, {vp.scroll_y:g})")
        if self.forms:
            lines.append("Forms: " + ", ".join(f"#{form.id or '?'} ({len(form.inputs)} inputs)" for form in self.forms))
        if self.links:
            lines.append("Links: " + "; ".join(f"{link.text.strip()[:40]} -> {link.href}" for link in self.links[:20]))
        text = self.text_content.strip()
        if text:
            lines.append("Text:")
            lines.append(text[:max_chars])
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Browser action results
# ---------------------------------------------------------------------------


class ElementBounds(_Contract):
    left: float
    top: float
    width: float
    height: float


class ActionResponse(_Contract):
    success: bool
    message: str | None = None
    error: str | None = None
    data: Any = None
    element: str | None = None
    element_bounds: ElementBounds | None = Field(
        default=None, validation_alias=AliasChoices("elementBounds", "element_bounds")
    )
    text: str | None = None
    screenshot: str | None = None


class ScreenshotResponse(_Contract):
    success: bool
    error: str | None = None
    screenshot: str | None = None

    @field_validator("screenshot")
    @classmethod
    def _data_url(cls, value: str | None) -> str | None:
        if value is None:
            return value
        header, sep, _ = value.partition(",")
        if not sep or not header.startswith("data:image/") or not header.endswith(";base64"):
            raise ValueError("must be a base64 image data URL")
        return value


class MessageResponse(BaseModel):
    """Envelope returned by the browser bridge for every request type."""

    model_config = ConfigDict(frozen=True, extra="allow")

    success: bool | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# MCP tool results
# ---------------------------------------------------------------------------


class ToolResultEnvelope(_Contract):
    content: list[dict[str, Any]] = Field(default_factory=list)
    is_error: bool = Field(default=False, validation_alias=AliasChoices("isError", "is_error"))
    structured_content: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("structuredContent", "structured_content")
    )

    def text(self) -> str:
        chunks: list[str] = []
        for block in self.content:
            if block.get("type") == "text":
                chunks.append(str(block.get("text", "")))
            elif block.get("type") == "image":
                chunks.append(f"[image {block.get('mimeType', 'unknown')}]")
            else:
                chunks.append(str(block))
        return "\n".join(chunks)


SCHEMAS: dict[str, type[BaseModel]] = {
    "model_response": ModelResponse,
    "session_bootstrap": SessionBootstrap,
    "page_context": PageContext,
    "action_response": ActionResponse,
    "screenshot_response": ScreenshotResponse,
    "message_response": MessageResponse,
    "tool_result_envelope": ToolResultEnvelope,
}


def _error_path(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc)


def validate(schema: str, payload: Any) -> Any:
    model = SCHEMAS.get(schema)
    if model is None:
        raise KeyError(f"unknown schema '{schema}'")
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        raise ValidationError(schema, _error_path(first.get("loc", ())), first.get("msg", "invalid")) from exc
