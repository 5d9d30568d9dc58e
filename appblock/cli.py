# appblock/cli.py
# Operator CLI: run the service, inspect the rule store, check configuration.
from __future__ import annotations

import argparse
import asyncio
import json
import sys
import typing as t
from pathlib import Path

import uvicorn

from appblock.logging_setup import configure_logging
from appblock.settings import get_settings
from appblock.store import RuleStore

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_INVALID_USAGE = 64  # EX_USAGE
EXIT_INTERRUPTED = 130


def _print_json(data: t.Any, pretty: bool = True) -> None:
    if pretty:
        print(json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str))


def cmd_serve(host: t.Optional[str], port: t.Optional[int]) -> int:
    settings = get_settings()
    configure_logging(settings)
    from appblock.api.app import create_app

    uvicorn.run(
        create_app(settings),
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_config=None,
        workers=1,  # timers and the rule store live in this process
    )
    return EXIT_OK


def cmd_rules(path: t.Optional[str], pretty: bool) -> int:
    store = RuleStore(Path(path) if path else get_settings().store.path)

    async def _load() -> t.List[t.Dict[str, t.Any]]:
        await store.load(quarantine=False)
        return [r.model_dump(mode="json") for r in await store.snapshot()]

    _print_json(asyncio.run(_load()), pretty)
    return EXIT_OK


def cmd_check_config(pretty: bool) -> int:
    try:
        settings = get_settings()
    except (RuntimeError, ValueError) as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    _print_json(settings.redacted_dict(), pretty)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="appblock", description="App-blocking rules for a UniFi controller")
    p.add_argument("--compact", dest="pretty", action="store_false", help="Single-line JSON output")
    p.set_defaults(pretty=True)
    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    rules = sub.add_parser("rules", help="Print the rules in the store file")
    rules.add_argument("--path", default=None, help="Store file (default: APPBLOCK_STORE__PATH)")

    sub.add_parser("check-config", help="Validate and print the effective settings (secrets redacted)")
    return p


def main(argv: t.Optional[t.List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.cmd == "serve":
            return cmd_serve(args.host, args.port)
        if args.cmd == "rules":
            return cmd_rules(args.path, args.pretty)
        if args.cmd == "check-config":
            return cmd_check_config(args.pretty)
        parser.error("unknown command")
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    return EXIT_INVALID_USAGE


if __name__ == "__main__":
    sys.exit(main())
