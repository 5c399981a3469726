from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx

from .errors import ModelClientError

# Streaming uses read=None so gaps between chunks are not limited (the model
# may pause while thinking); the turn controller bounds the whole call.
_STREAM_TIMEOUT = httpx.Timeout(connect=15.0, read=None, write=15.0, pool=5.0)

# Transient errors that warrant a single automatic retry (connection-level only).
_RETRIABLE = (
    httpx.RemoteProtocolError,
    httpx.ReadError,
    httpx.ConnectError,
    httpx.LocalProtocolError,
)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"


def build_payload(
    contents: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None = None,
    system_instruction: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"contents": contents}
    if tools:
        payload["tools"] = [{"functionDeclarations": tools}]
        payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
    if system_instruction:
        payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    return payload


class GeminiClient:
    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL, timeout: float = 60.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers) as client:
                response = await client.request(method, f"{self.base_url}{path}", **kwargs)
                response.raise_for_status()
                return response
        except httpx.TimeoutException as exc:
            raise ModelClientError(f"Request timed out: {path}") from exc
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:300]
            raise ModelClientError(f"HTTP {exc.response.status_code} on {path}: {body}") from exc
        except httpx.HTTPError as exc:
            raise ModelClientError(f"Network error on {path}: {exc}") from exc

    async def list_models(self) -> list[str]:
        response = await self._request("GET", "/v1beta/models")
        payload = response.json()
        names = [m.get("name", "") for m in payload.get("models", []) if isinstance(m, dict)]
        return [name.removeprefix("models/") for name in names if name]

    async def _raw_stream(self, model: str, payload: dict[str, Any]) -> AsyncIterator[Any]:
        """Low-level SSE iterator over ``streamGenerateContent?alt=sse`` (no retry logic).

        Yields each decoded ``data:`` payload as-is; shape checks belong to the
        caller.  Comment and blank lines are skipped; a ``data:`` line that is
        not JSON ends the stream with :class:`ModelClientError`.
        """
        url = f"{self.base_url}/v1beta/models/{model}:streamGenerateContent"
        try:
            async with httpx.AsyncClient(timeout=_STREAM_TIMEOUT, headers=self._headers) as client:
                async with client.stream("POST", url, params={"alt": "sse"}, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", "replace")[:300]
                        raise ModelClientError(f"Streaming failed with HTTP {response.status_code}: {body}")
                    async for line in response.aiter_lines():
                        if not line or not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if not data or data == "[DONE]":
                            continue
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError as exc:
                            raise ModelClientError(f"Malformed stream chunk: {data[:120]}") from exc
                        yield chunk
        except httpx.TimeoutException as exc:
            raise ModelClientError("Streaming timed out") from exc
        except asyncio.CancelledError:
            raise
        except _RETRIABLE as exc:
            raise ModelClientError(f"Streaming network error: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ModelClientError(f"Streaming network error: {exc}") from exc

    async def stream_generate(
        self,
        model: str,
        contents: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        system_instruction: str | None = None,
    ) -> AsyncIterator[Any]:
        """Stream response chunks with one automatic retry on transient errors.

        A retry happens only if the connection failed before any chunk was
        delivered, so the caller never sees duplicated content.
        """
        payload = build_payload(contents, tools, system_instruction)
        chunks_yielded = 0
        last_exc: Exception | None = None

        for attempt in range(2):
            if attempt > 0:
                if chunks_yielded > 0:
                    break
                await asyncio.sleep(0.5)
            try:
                async for chunk in self._raw_stream(model, payload):
                    chunks_yielded += 1
                    yield chunk
                return
            except ModelClientError as exc:
                last_exc = exc
                if not isinstance(exc.__cause__, _RETRIABLE):
                    raise
                if chunks_yielded > 0:
                    raise

        if last_exc is not None:
            raise last_exc
