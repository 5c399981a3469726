from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from .client import GeminiClient
from .controller import ModelCollaborator, TurnController
from .dispatcher import ToolDispatcher
from .mcp_pool import MCPClientPool, streamable_http_factory
from .memory import BrowserMemory
from .session import ComposioBootstrap, SessionManager, SessionRegistry
from .state import Settings
from .tools.browser import BrowserActionExecutor, HttpBrowserExecutor
from .transcript import TranscriptStore


@dataclass
class AgentContext:
    """State shared by every conversation in the process.

    Only the MCP client pool and the session registry live here; each
    conversation keeps its own :class:`~browseragent.state.ChatState`.
    """

    pool: MCPClientPool
    sessions: SessionRegistry
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: dict[str, Any], log: Callable[[str], None] | None = None) -> "AgentContext":
        pool = MCPClientPool(streamable_http_factory(timeout=cfg["tool_timeout"]), log=log)
        sessions = SessionRegistry(
            ComposioBootstrap(cfg["session_url"], timeout=cfg["session_timeout"]),
            default_ttl=cfg["session_ttl"],
            renew_retries=cfg["session_renew_retries"],
            timeout=cfg["session_timeout"],
            log=log,
        )
        return cls(pool=pool, sessions=sessions, config=dict(cfg))

    def session_for(self, settings: Settings) -> SessionManager | None:
        if not settings.uses_tool_router:
            return None
        return self.sessions.for_key(settings.composio_api_key or "")

    def controller(
        self,
        settings: Settings,
        *,
        model: ModelCollaborator | None = None,
        executor: BrowserActionExecutor | None = None,
        memory: BrowserMemory | None = None,
        transcript: TranscriptStore | None = None,
        on_delta: Callable[[str], None] | None = None,
        log: Callable[[str], None] | None = None,
    ) -> TurnController:
        """Wire a turn controller for one conversation on top of the shared pool and sessions."""
        cfg = self.config
        browser_enabled = bool(cfg.get("browser_tools_enabled", True))
        if executor is None:
            executor = HttpBrowserExecutor(cfg["browser_bridge_url"], timeout=cfg["browser_timeout"])
        if model is None:
            model = GeminiClient(settings.api_key, cfg["gemini_base_url"], timeout=cfg["model_timeout"])
        if memory is None:
            memory = BrowserMemory(max_pages=cfg["memory_max_pages"])
        dispatcher = ToolDispatcher(
            executor,
            self.pool,
            sessions=self.session_for(settings),
            browser_enabled=browser_enabled,
            log=log,
        )
        return TurnController(
            model,
            dispatcher,
            settings,
            executor=executor,
            memory=memory,
            transcript=transcript,
            browser_tools_enabled=browser_enabled,
            max_tool_rounds=cfg["max_tool_rounds"],
            model_timeout=cfg["model_timeout"],
            tool_timeout=cfg["tool_timeout"],
            browser_timeout=cfg["browser_timeout"],
            tool_attempts=1 + cfg["mcp_tool_retries"],
            on_delta=on_delta,
            log=log,
        )

    async def aclose(self) -> None:
        await self.pool.close_all()
