from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .state import TOOL_ROUTER_MODE, Settings

CONFIG_PATH = Path.home() / ".config" / "browseragent" / "config.yml"

_ENV_OVERRIDES = {
    "api_key": "GEMINI_API_KEY",
    "composio_api_key": "COMPOSIO_API_KEY",
    "browser_bridge_url": "BROWSERAGENT_BRIDGE_URL",
}


@dataclass(frozen=True)
class AppConfig:
    provider: str = "google"
    api_key: str = ""
    model: str = "gemini-2.5-flash"
    tool_mode: str = ""                 # "tool-router" enables remote MCP tools
    composio_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    session_url: str = "https://backend.composio.dev/api/v3/labs/tool_router/session"
    browser_bridge_url: str = "http://localhost:7081"
    browser_tools_enabled: bool = True
    # Used only when the session service does not report an expiry.
    session_ttl: float = 3600.0
    session_renew_retries: int = 1
    # Bounded waits (seconds) for every external call.
    model_timeout: float = 120.0
    session_timeout: float = 30.0
    tool_timeout: float = 60.0
    browser_timeout: float = 30.0
    mcp_tool_retries: int = 0
    max_tool_rounds: int = 10           # model round-trips with tool calls per turn
    memory_max_pages: int = 50
    config_version: int = 2


def _positive_float(merged: dict[str, Any], defaults: dict[str, Any], key: str) -> float:
    raw = merged.get(key, defaults[key])
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and float(raw) > 0:
        return float(raw)
    return defaults[key]


def _bounded_int(merged: dict[str, Any], defaults: dict[str, Any], key: str, low: int, high: int) -> int:
    raw = merged.get(key, defaults[key])
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and low <= int(raw) <= high:
        return int(raw)
    return defaults[key]


def _validate(cfg: dict[str, Any]) -> dict[str, Any]:
    defaults = AppConfig().__dict__.copy()
    merged = {**defaults, **{k: v for k, v in cfg.items() if k in defaults}}
    for key in ("provider", "model", "gemini_base_url", "session_url", "browser_bridge_url"):
        if not isinstance(merged.get(key), str) or not merged[key].strip():
            merged[key] = defaults[key]
    if merged["provider"] != "google":
        merged["provider"] = defaults["provider"]
    for key in ("api_key", "composio_api_key"):
        merged[key] = str(merged.get(key) or "").strip()
    if merged.get("tool_mode") not in ("", TOOL_ROUTER_MODE):
        merged["tool_mode"] = defaults["tool_mode"]
    merged["browser_tools_enabled"] = bool(merged.get("browser_tools_enabled", defaults["browser_tools_enabled"]))
    for key in ("session_ttl", "model_timeout", "session_timeout", "tool_timeout", "browser_timeout"):
        merged[key] = _positive_float(merged, defaults, key)
    merged["session_renew_retries"] = _bounded_int(merged, defaults, "session_renew_retries", 0, 3)
    merged["mcp_tool_retries"] = _bounded_int(merged, defaults, "mcp_tool_retries", 0, 5)
    merged["max_tool_rounds"] = _bounded_int(merged, defaults, "max_tool_rounds", 1, 100)
    merged["memory_max_pages"] = _bounded_int(merged, defaults, "memory_max_pages", 1, 1000)
    merged["config_version"] = defaults["config_version"]
    return merged


def _apply_env(cfg: dict[str, Any]) -> dict[str, Any]:
    overridden = dict(cfg)
    for key, env_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if value:
            overridden[key] = value
    return overridden


def load_config(path: Path = CONFIG_PATH) -> dict[str, Any]:
    """Load the YAML config, repairing and re-saving it when values were invalid.

    Environment overrides are applied to the returned dict only, so secrets
    from the environment are never written back to disk.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        cfg = _validate({})
        save_config(cfg, path)
        return _apply_env(cfg)

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = _validate(raw if isinstance(raw, dict) else {})
    if cfg != raw:
        save_config(cfg, path)
    return _apply_env(cfg)


def save_config(cfg: dict[str, Any], path: Path = CONFIG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    validated = _validate(cfg)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(yaml.safe_dump(validated, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def settings_from_config(cfg: dict[str, Any]) -> Settings:
    return Settings(
        provider=cfg.get("provider", "google"),
        api_key=cfg.get("api_key", ""),
        model=cfg.get("model", AppConfig.model),
        tool_mode=cfg.get("tool_mode") or None,
        composio_api_key=cfg.get("composio_api_key") or None,
    )
