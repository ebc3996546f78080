"""Command-line interface for listing, describing and dispatching to drivers."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from config import Settings, load_settings
from drivers.loader import DriverRuntime, build_runtime
from errors import DriverError, NoCallFound

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_DRIVER_ERROR = 2
EXIT_NO_CALL = 3


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="llm-drivers", description="Describe drivers and dispatch model-emitted calls")
    parser.add_argument("--config", type=Path, help="Path to TOML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list", help="List registered drivers")
    list_parser.add_argument("--model", help="Only drivers targeting this model")
    list_parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")

    describe_parser = sub.add_parser("describe", help="Print a driver's spec artifact")
    describe_parser.add_argument("driver", help="Driver id or prefix")
    describe_parser.add_argument("--model", help="Model hint for model-specific artifacts")
    describe_parser.add_argument("--system-message", action="store_true", help="Print the system message instead")

    dispatch_parser = sub.add_parser("dispatch", help="Dispatch the call found in model output")
    source = dispatch_parser.add_mutually_exclusive_group()
    source.add_argument("--text", help="Model output text")
    source.add_argument("--file", type=Path, help="File containing model output")
    dispatch_parser.add_argument("--timeout", type=float, default=None, help="Per-call timeout in seconds")
    dispatch_parser.add_argument("--all", action="store_true", help="Dispatch every call in the text concurrently")

    return parser.parse_args(argv)


def load_model_output(args: argparse.Namespace) -> str:
    if args.file:
        return args.file.read_text(encoding="utf-8")
    if args.text is not None:
        return args.text
    if not sys.stdin.isatty():
        return sys.stdin.read()
    raise SystemExit("No model output provided. Use --text, --file, or pipe input via stdin.")


def configure_logging(settings: Settings, *, verbose: bool) -> None:
    level_name = "DEBUG" if verbose else settings.logging.level
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def main(argv: Optional[list[str]] = None, *, console: Optional[Console] = None) -> int:
    args = parse_args(argv)
    out = console or Console()
    err = Console(stderr=True)

    try:
        settings = load_settings(args.config)
    except DriverError as exc:
        err.print(f"[red]Failed to load config:[/red] {exc}")
        return EXIT_USAGE
    configure_logging(settings, verbose=args.verbose)

    try:
        runtime = build_runtime(settings)
    except DriverError as exc:
        err.print(f"[red]Invalid driver configuration:[/red] {exc}")
        return EXIT_USAGE

    if args.command == "list":
        return _cmd_list(runtime, args, out)
    if args.command == "describe":
        return _cmd_describe(runtime, args, out, err)
    return asyncio.run(_cmd_dispatch(runtime, args, out, err))


def _cmd_list(runtime: DriverRuntime, args: argparse.Namespace, out: Console) -> int:
    metas = runtime.registry.list(args.model)
    if args.json:
        out.print_json(json.dumps([meta.to_dict() for meta in metas]))
        return EXIT_OK
    table = Table(title="Drivers")
    for column in ("id", "prefix", "protocol", "transport", "spec format", "models", "capabilities", "version"):
        table.add_column(column)
    for meta in metas:
        table.add_row(
            meta.id,
            meta.prefix or "",
            meta.protocol,
            meta.transport,
            meta.spec_format,
            ", ".join(meta.target_llms),
            ", ".join(sorted(meta.capabilities)),
            meta.version,
        )
    out.print(table)
    return EXIT_OK


def _cmd_describe(runtime: DriverRuntime, args: argparse.Namespace, out: Console, err: Console) -> int:
    try:
        driver = runtime.registry.lookup(args.driver)
        text = driver.system_message(args.model) if args.system_message else driver.describe(args.model).content
    except DriverError as exc:
        err.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        return EXIT_DRIVER_ERROR
    out.print(text, markup=False, highlight=False)
    return EXIT_OK


async def _cmd_dispatch(runtime: DriverRuntime, args: argparse.Namespace, out: Console, err: Console) -> int:
    text = load_model_output(args)
    try:
        async with runtime:
            if args.all:
                outcomes = await runtime.dispatcher.dispatch_all(text, timeout=args.timeout)
                out.print_json(json.dumps([outcome.to_dict() for outcome in outcomes], default=_jsonable))
                summary = summarize_outcomes(outcomes)
                err.print(f"{summary['ok']} ok, {summary['failed']} failed")
                return EXIT_OK if all(outcome.ok for outcome in outcomes) else EXIT_DRIVER_ERROR
            result = await runtime.dispatcher.dispatch(text, timeout=args.timeout)
    except NoCallFound:
        err.print("No call found in model output.")
        return EXIT_NO_CALL
    except DriverError as exc:
        err.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        out.print_json(json.dumps(exc.to_dict(), default=_jsonable))
        return EXIT_DRIVER_ERROR

    if isinstance(result, str):
        out.print(result, markup=False, highlight=False)
    else:
        out.print_json(json.dumps(result, default=_jsonable))
    return EXIT_OK


def _jsonable(value: Any) -> Any:
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        return dump(mode="json")
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def summarize_outcomes(outcomes: List[Any]) -> Dict[str, int]:
    ok = sum(1 for outcome in outcomes if outcome.ok)
    return {"ok": ok, "failed": len(outcomes) - ok}


if __name__ == "__main__":
    raise SystemExit(main())
