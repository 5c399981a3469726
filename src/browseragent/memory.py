from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from .schemas import PageContext


@dataclass(slots=True)
class PageVisit:
    url: str
    title: str
    timestamp: float
    context: dict[str, Any] | None = None


@dataclass(slots=True)
class BrowserMemory:
    """Host-owned memory; the core only ever appends page visits."""

    recent_pages: list[PageVisit] = field(default_factory=list)
    user_preferences: dict[str, Any] = field(default_factory=dict)
    session_data: dict[str, Any] = field(default_factory=dict)
    max_pages: int = 50

    def record_visit(self, page: PageContext, *, now: float | None = None, keep_context: bool = False) -> PageVisit:
        stamp = time.time() if now is None else now
        context = page.model_dump(exclude={"text_content"}) if keep_context else None
        # Re-reading the same page between actions refreshes its entry instead of flooding the log.
        if self.recent_pages and self.recent_pages[-1].url == page.url:
            self.recent_pages.pop()
        visit = PageVisit(url=page.url, title=page.title, timestamp=stamp, context=context)
        self.recent_pages.append(visit)
        if len(self.recent_pages) > self.max_pages:
            del self.recent_pages[: len(self.recent_pages) - self.max_pages]
        return visit

    def to_dict(self) -> dict[str, Any]:
        return {
            "recentPages": [
                {"url": v.url, "title": v.title, "timestamp": v.timestamp, **({"context": v.context} if v.context else {})}
                for v in self.recent_pages
            ],
            "userPreferences": dict(self.user_preferences),
            "sessionData": dict(self.session_data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], max_pages: int = 50) -> "BrowserMemory":
        pages = [
            PageVisit(
                url=str(row.get("url", "")),
                title=str(row.get("title", "")),
                timestamp=float(row.get("timestamp", 0)),
                context=row.get("context"),
            )
            for row in data.get("recentPages", [])
            if isinstance(row, dict) and row.get("url")
        ]
        return cls(
            recent_pages=pages[-max_pages:],
            user_preferences=dict(data.get("userPreferences") or {}),
            session_data=dict(data.get("sessionData") or {}),
            max_pages=max_pages,
        )
