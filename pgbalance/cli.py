"""Command-line runner: executes one statement through the proxy."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence, TextIO

from .config import load_config
from .connections import DatabaseConnectionError, DriverError
from .models import ErrorPolicy
from .proxy import DatabaseProxy
from .router import is_read_query


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgbalance", description="Run a query through the balanced proxy.")
    parser.add_argument("query", help="SQL text; use ? for bound parameters")
    parser.add_argument(
        "params",
        nargs="*",
        help="values bound to the ? placeholders; JSON scalars (1, 2.5, true, null) keep their type",
    )
    parser.add_argument("--config", type=Path, default=None, help="path to config.toml")
    parser.add_argument("--master", action="store_true", help="force the query to the master")
    parser.add_argument("--debug", action="store_true", help="print the debug summary to stderr")
    parser.add_argument("--tag", default=None, help="label appended to the query as a comment")
    return parser


def main(
    argv: Sequence[str] | None = None,
    *,
    proxy: DatabaseProxy | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    out = stdout or sys.stdout
    err = stderr or sys.stderr
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)

    if proxy is None:
        config = load_config(args.config).with_error_policy(ErrorPolicy.PROPAGATE_ON_FAILURE)
        if args.debug:
            config = config.with_debug_mode(True)
        proxy = DatabaseProxy(config)
    else:
        proxy.error_policy = ErrorPolicy.PROPAGATE_ON_FAILURE
        if args.debug:
            proxy.debug_mode = True

    try:
        if args.master:
            proxy.next_query_in_master()
        params = [_parse_param(value) for value in args.params] or None
        if is_read_query(args.query):
            rows = proxy.get_all(args.query, params, tag=args.tag)
            _print_rows(rows, out)
        else:
            status = proxy.execute(args.query, params, tag=args.tag)
            print(status, file=out)
    except (DriverError, DatabaseConnectionError) as exc:
        print(f"error: {exc}", file=err)
        return 1
    finally:
        if args.debug:
            summary = proxy.registry.summary()
            print(
                f"queries={summary['queries']} duplicated={summary['duplicated']} errors={summary['errors']}",
                file=err,
            )
        proxy.close()
    return 0


def _parse_param(value: str) -> Any:
    """Decode JSON numbers, booleans and null; anything else binds as text."""

    try:
        decoded = json.loads(value)
    except ValueError:
        return value
    if decoded is None or isinstance(decoded, (bool, int, float)):
        return decoded
    return value


def _print_rows(rows: Sequence[object], out: TextIO) -> None:
    for row in rows:
        if isinstance(row, dict):
            print("\t".join(str(value) for value in row.values()), file=out)
        else:
            print("\t".join(str(value) for value in row), file=out)  # type: ignore[union-attr]


__all__ = ["build_parser", "main"]
