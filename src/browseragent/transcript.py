from __future__ import annotations

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from .state import Message, ToolCall, ToolResult

DEFAULT_TRANSCRIPT = Path.home() / ".local" / "share" / "browseragent" / "transcript.jsonl"


def _encode(message: Message) -> dict[str, Any]:
    record: dict[str, Any] = {
        "ts": datetime.now().isoformat(timespec="seconds"),
        "id": message.id,
        "role": message.role,
        "content": message.content,
    }
    if message.tool_calls:
        record["tool_calls"] = [{"id": c.id, "name": c.name, "parameters": c.parameters} for c in message.tool_calls]
    if message.tool_results:
        record["tool_results"] = [
            {"tool_call_id": r.tool_call_id, "name": r.name, "result": r.result} for r in message.tool_results
        ]
    return record


def _decode(record: dict[str, Any]) -> Message:
    calls = [
        ToolCall(id=c["id"], name=c["name"], parameters=c.get("parameters") or {}, index=i)
        for i, c in enumerate(record.get("tool_calls") or [])
    ]
    results = [
        ToolResult(tool_call_id=r["tool_call_id"], name=r.get("name", ""), result=r.get("result") or {})
        for r in record.get("tool_results") or []
    ]
    return Message(
        role=record.get("role", "assistant"),
        content=record.get("content", ""),
        id=record.get("id", ""),
        tool_calls=calls or None,
        tool_results=results or None,
    )


class TranscriptStore:
    """Append-only JSONL mirror of a conversation, one message per line."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or DEFAULT_TRANSCRIPT
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, message: Message) -> None:
        line = json.dumps(_encode(message), ensure_ascii=False, default=str)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def _records(self) -> Iterator[dict[str, Any]]:
        if not self.path.exists():
            return
        with self.path.open(encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    yield json.loads(line)

    def has_content(self) -> bool:
        return self.path.exists() and self.path.stat().st_size > 0

    def clear(self) -> None:
        if self.path.exists():
            self.path.write_text("", encoding="utf-8")

    def archive_to(self, target_dir: Path) -> Path | None:
        if not self.has_content():
            return None
        target_dir.mkdir(parents=True, exist_ok=True)
        dest = target_dir / f"browseragent-{datetime.now():%Y%m%d-%H%M%S}.jsonl"
        shutil.copy2(self.path, dest)
        return dest

    def load_messages(self) -> list[Message]:
        return [_decode(record) for record in self._records()]

    def search(self, query: str) -> list[dict[str, str]]:
        """Case-insensitive match over message text and called tool names."""
        needle = query.strip().lower()
        if not needle:
            return []
        hits: list[dict[str, str]] = []
        for record in self._records():
            text = record.get("content") or ""
            tools = " ".join(c.get("name", "") for c in record.get("tool_calls") or [])
            if needle in text.lower() or (tools and needle in tools.lower()):
                hits.append({"ts": record.get("ts", ""), "role": record.get("role", ""), "content": text})
        return hits

    def export_markdown(self, out_path: Path) -> Path:
        out = ["# Browser Agent Transcript", ""]
        for message in self.load_messages():
            for result in message.tool_results or []:
                out += [f"## tool: {result.name}", "```json", json.dumps(result.result, ensure_ascii=False, indent=2, default=str), "```", ""]
            if message.tool_results:
                continue
            out.append(f"## {message.role}")
            if message.content:
                out.append(message.content)
            out.extend(f"- call `{c.name}` {json.dumps(c.parameters, ensure_ascii=False)}" for c in message.tool_calls or [])
            out.append("")
        out_path.write_text("\n".join(out), encoding="utf-8")
        return out_path
