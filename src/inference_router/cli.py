"""Inference router command line.

Sub-commands:
    decide   print the routing decision for a prompt
    route    serve a prompt and print the result
    models   local model recommendations per use-case
    usage    aggregate the usage log

``--offline`` swaps the real backends for the deterministic fakes so the
router can be exercised without API keys or a running Ollama server.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict
from enum import Enum
from typing import Any, List, Optional

# Load .env early so config is available to subsequent imports.
from dotenv import load_dotenv

env_file = os.getenv("DOTENV_FILE")
if env_file:
    load_dotenv(env_file)
else:
    load_dotenv()

from .config import get_settings  # noqa: E402
from .logging_utils import get_logger, setup_logging  # noqa: E402
from .services.llm_providers.fake import FakeLocalEngine, FakeRemoteGateway, RecordingSink  # noqa: E402
from .services.local_models import LocalModelSelector  # noqa: E402
from .services.models import Category, Priority, RequestContext, RouterError  # noqa: E402
from .services.routing_engine import OPERATION_USE_CASES, RoutingEngine  # noqa: E402
from .services.usage_sink import JsonlUsageSink  # noqa: E402

log = get_logger("cli")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _dump(obj: Any) -> str:
    data = asdict(obj) if hasattr(obj, "__dataclass_fields__") else obj
    return json.dumps(data, indent=2, default=_jsonable)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="inference-router", description="Cost-aware inference router")
    sub = p.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("decide", "Print the routing decision for a prompt"),
        ("route", "Serve a prompt and print the result"),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("prompt", help="Prompt text ('-' reads stdin)")
        sp.add_argument("--operation", default="chat_response", help="Operation name")
        sp.add_argument("--user", default="cli", help="User id")
        sp.add_argument(
            "--priority", default="medium", choices=[p.value for p in Priority]
        )
        sp.add_argument(
            "--category", default="enhancement", choices=[c.value for c in Category]
        )
        sp.add_argument("--max-response-ms", type=int, default=None)
        sp.add_argument("--min-quality", type=float, default=None)
        sp.add_argument(
            "--offline", action="store_true", help="Use in-process fake backends"
        )

    mp = sub.add_parser("models", help="Local model recommendations")
    mp.add_argument(
        "use_cases",
        nargs="*",
        help="Use-cases to report (default: every operation's use-case)",
    )

    sub.add_parser("usage", help="Summarize today's usage log")
    return p.parse_args(argv)


def _build_engine(offline: bool) -> RoutingEngine:
    settings = get_settings()
    if offline:
        return RoutingEngine(
            FakeRemoteGateway(), FakeLocalEngine(), settings=settings, sink=RecordingSink()
        )
    return RoutingEngine.from_settings(settings)


def _context(args: argparse.Namespace) -> RequestContext:
    return RequestContext(
        operation=args.operation,
        user_id=args.user,
        priority=Priority(args.priority),
        category=Category(args.category),
        max_response_time_ms=args.max_response_ms,
        min_quality_threshold=args.min_quality,
    )


async def _run_prompt(args: argparse.Namespace) -> int:
    prompt = sys.stdin.read() if args.prompt == "-" else args.prompt
    context = _context(args)

    async with _build_engine(args.offline) as engine:
        if args.command == "decide":
            decision = await engine.decide(prompt, context)
            print(_dump(decision))
            return 0
        try:
            result = await engine.route(prompt, context)
        except RouterError as e:
            log.error("cli_route_failed err=%s", str(e))
            print(json.dumps({"error": str(e)}, indent=2))
            return 1
        print(_dump(result))
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging()

    if args.command in ("decide", "route"):
        return asyncio.run(_run_prompt(args))

    if args.command == "models":
        use_cases = args.use_cases or sorted(set(OPERATION_USE_CASES.values()))
        print(json.dumps(LocalModelSelector().recommendations(use_cases), indent=2))
        return 0

    if args.command == "usage":
        summary = JsonlUsageSink(get_settings().resolved_usage_log_path).summary()
        print(_dump(summary))
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
