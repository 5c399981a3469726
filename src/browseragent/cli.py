from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Callable

from .config import CONFIG_PATH, load_config, settings_from_config
from .context import AgentContext
from .errors import BrowserAgentError, PoolCloseError
from .state import ChatPhase
from .client import GeminiClient
from .transcript import DEFAULT_TRANSCRIPT, TranscriptStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="browseragent",
        description="Drive a Gemini browser agent turn from the command line.",
    )
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help="Config file (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log tool and session activity to stderr")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Run one conversation turn")
    chat.add_argument("prompt", help="What to ask the agent")
    chat.add_argument("--yes", action="store_true", help="Confirm safety-gated browser actions without asking")
    chat.add_argument("--transcript", type=Path, help="Append messages to this JSONL transcript")
    chat.set_defaults(func=chat_command)

    session = subparsers.add_parser("session", help="Acquire a tool-router session and print its endpoints")
    session.set_defaults(func=session_command)

    tools = subparsers.add_parser("tools", help="List the tools that would be advertised to the model")
    tools.set_defaults(func=tools_command)

    models = subparsers.add_parser("models", help="List the Gemini models this API key can use")
    models.set_defaults(func=models_command)

    history = subparsers.add_parser("transcript", help="Inspect a JSONL chat transcript")
    history.add_argument("--file", type=Path, default=DEFAULT_TRANSCRIPT, help="Transcript file (default: %(default)s)")
    history_sub = history.add_subparsers(dest="transcript_command", required=True)
    search = history_sub.add_parser("search", help="Find messages or tool calls matching a query")
    search.add_argument("query")
    export = history_sub.add_parser("export", help="Write the transcript as Markdown")
    export.add_argument("out", type=Path)
    archive = history_sub.add_parser("archive", help="Copy the transcript into a directory and clear it")
    archive.add_argument("target_dir", type=Path)
    history.set_defaults(func=transcript_command)
    return parser


def _log_sink(verbose: bool) -> Callable[[str], None] | None:
    if not verbose:
        return None
    return lambda message: print(f"[browseragent] {message}", file=sys.stderr)


def _ask(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


async def _close(context: AgentContext) -> None:
    try:
        await context.aclose()
    except PoolCloseError as exc:
        print(f"warning: {exc}", file=sys.stderr)


async def chat_command(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    log = _log_sink(args.verbose)
    context = AgentContext.from_config(cfg, log=log)
    transcript = TranscriptStore(args.transcript) if args.transcript else None
    controller = context.controller(
        settings_from_config(cfg),
        transcript=transcript,
        on_delta=lambda text: print(text, end="", flush=True),
        log=log,
    )
    try:
        controller.start()
        if controller.state.phase == ChatPhase.ERROR:
            print(f"error: {controller.state.error}", file=sys.stderr)
            return 1
        state = await controller.send(args.prompt)
        while controller.pending is not None:
            call = controller.pending.tool_call
            question = f"\n{controller.pending.message} {call.name} {json.dumps(call.parameters)}"
            if args.yes or _ask(question):
                state = await controller.confirm()
            else:
                state = await controller.decline()
        print()
        if state.phase == ChatPhase.ERROR:
            print(f"error: {state.error}", file=sys.stderr)
            return 1
        return 0
    finally:
        await _close(context)


async def session_command(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    context = AgentContext.from_config(cfg, log=_log_sink(args.verbose))
    manager = context.session_for(settings_from_config(cfg))
    if manager is None:
        print("tool-router mode is not configured (set tool_mode and composio_api_key)", file=sys.stderr)
        return 2
    try:
        session = await manager.acquire()
    except BrowserAgentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(f"session:      {session.session_id}")
    print(f"chat session: {session.chat_session_mcp_url}")
    print(f"tool router:  {session.tool_router_mcp_url}")
    print(f"expires in:   {session.expires_at - session.created_at:.0f}s")
    return 0


async def tools_command(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    log = _log_sink(args.verbose)
    context = AgentContext.from_config(cfg, log=log)
    controller = context.controller(settings_from_config(cfg), log=log)
    try:
        declarations = await controller.dispatcher.function_declarations()
    except BrowserAgentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await _close(context)
    for decl in declarations:
        print(f"{decl['name']:<24} {decl.get('description', '')[:80]}")
    return 0


async def models_command(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    if not cfg["api_key"]:
        print("error: no API key configured (set api_key or GEMINI_API_KEY)", file=sys.stderr)
        return 2
    client = GeminiClient(cfg["api_key"], cfg["gemini_base_url"], timeout=cfg["model_timeout"])
    try:
        names = await client.list_models()
    except BrowserAgentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    for name in names:
        marker = "*" if name == cfg["model"] else " "
        print(f"{marker} {name}")
    return 0


async def transcript_command(args: argparse.Namespace) -> int:
    store = TranscriptStore(args.file)
    if args.transcript_command == "search":
        for hit in store.search(args.query):
            print(f"{hit['ts']} {hit['role']:<9} {hit['content'][:100]}")
        return 0
    if args.transcript_command == "export":
        print(store.export_markdown(args.out))
        return 0
    dest = store.archive_to(args.target_dir)
    if dest is None:
        print("transcript is empty, nothing archived", file=sys.stderr)
        return 1
    store.clear()
    print(dest)
    return 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(2)
    sys.exit(asyncio.run(args.func(args)))


if __name__ == "__main__":
    main()
