"""
Render Gateway command-line interface.

Commands:
    render-gateway serve
        Run the HTTP gateway (settings from the environment).

    render-gateway compile <plan.json> -o <output> [--source URL] [--engine ENGINE] [--json]
        Validate a plan and print the FFmpeg command it compiles to.

    render-gateway route <plan.json> [--source URL] [--engines a,b,...]
        Validate a plan and print the routing decision as JSON.

Exit Codes:
    0: Success
    1: Validation failure (malformed or inconsistent plan)
    4: System error (file not found, invalid JSON, bad configuration)
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from pydantic import ValidationError

from .config import ConfigError, GatewaySettings
from .execution.compiler import compile_plan
from .plans.models import ExecutionPlan
from .plans.validation import PlanValidationError, validated
from .routing.engines import EngineId, build_engine_list
from .routing.router import route

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _load_plan(plan_path: Path, source: Optional[str] = None) -> ExecutionPlan:
    """
    Load, parse and validate an Execution Plan JSON file.

    Args:
        plan_path: Plan JSON file
        source: Fills segments and audio tracks that have no asset_url

    Raises:
        SystemExit(4): File not found or invalid JSON
        SystemExit(1): Schema or timeline validation failure
    """
    if not plan_path.exists():
        print(f"ERROR: Plan file not found: {plan_path}", file=sys.stderr)
        sys.exit(4)

    try:
        with open(plan_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON in {plan_path}: {e}", file=sys.stderr)
        sys.exit(4)

    try:
        plan = ExecutionPlan.model_validate(data)
        if source:
            plan = plan.bind_source(source)
        return validated(plan)
    except ValidationError as e:
        print(f"✗ Malformed plan {plan_path}:\n{e}", file=sys.stderr)
        sys.exit(1)
    except PlanValidationError as e:
        print(f"✗ Plan validation failed [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> NoReturn:
    """Run the gateway until interrupted."""
    # Imported here so compile/route work without the server stack loaded
    from .main import run_server

    try:
        settings = GatewaySettings.from_env()
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    run_server(settings)
    sys.exit(0)


def cmd_compile(args: argparse.Namespace) -> NoReturn:
    """
    Print the FFmpeg command for a plan.

    Exit codes:
        0: Compiled
        1: Validation error
        4: File or argument error
    """
    plan = _load_plan(Path(args.plan).resolve(), args.source)
    try:
        engine = EngineId(args.engine)
    except ValueError:
        print(f"ERROR: Unknown engine: {args.engine}", file=sys.stderr)
        sys.exit(4)
    if engine not in (EngineId.SERVER_FFMPEG, EngineId.PLAN_EXPORT):
        print(f"ERROR: No command compiler for engine '{engine.value}'", file=sys.stderr)
        sys.exit(4)

    command = compile_plan(plan, engine, args.output)
    if args.json:
        print(json.dumps(command.to_dict(), indent=2))
    else:
        print(command.to_shell())
    sys.exit(0)


def cmd_route(args: argparse.Namespace) -> NoReturn:
    """
    Print the routing decision for a plan.

    Availability is not probed: every configured engine is assumed present.
    """
    plan = _load_plan(Path(args.plan).resolve(), args.source)
    engine_ids = []
    for name in (part.strip() for part in args.engines.split(",")):
        if not name:
            continue
        try:
            engine_ids.append(EngineId(name))
        except ValueError:
            print(f"ERROR: Unknown engine: {name}", file=sys.stderr)
            sys.exit(4)

    decision = route(plan, build_engine_list(engine_ids))
    print(json.dumps(decision.to_dict(), indent=2))
    sys.exit(0)


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    parser = argparse.ArgumentParser(
        prog="render-gateway",
        description="Render Gateway - Execution Plans to FFmpeg renders",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    # Serve command
    parser_serve = subparsers.add_parser("serve", help="Run the HTTP gateway")
    parser_serve.set_defaults(func=cmd_serve)

    # Compile command
    parser_compile = subparsers.add_parser(
        "compile",
        help="Print the FFmpeg command a plan compiles to",
    )
    parser_compile.add_argument("plan", help="Path to Execution Plan JSON file")
    parser_compile.add_argument("--source", help="Source video for segments without an asset_url")
    parser_compile.add_argument("-o", "--output", default="output.mp4", help="Output path (default: output.mp4)")
    parser_compile.add_argument(
        "--engine",
        default=EngineId.SERVER_FFMPEG.value,
        help="server_ffmpeg or plan_export (default: server_ffmpeg)",
    )
    parser_compile.add_argument("--json", action="store_true", help="Print the command as JSON")
    parser_compile.set_defaults(func=cmd_compile)

    # Route command
    parser_route = subparsers.add_parser("route", help="Print the routing decision for a plan")
    parser_route.add_argument("plan", help="Path to Execution Plan JSON file")
    parser_route.add_argument("--source", help="Source video for segments without an asset_url")
    parser_route.add_argument(
        "--engines",
        default=EngineId.SERVER_FFMPEG.value,
        help="Comma-separated engine priority list (default: server_ffmpeg)",
    )
    parser_route.set_defaults(func=cmd_route)

    # Parse and dispatch
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
