"""
kubeherd/cli/common.py

Pieces shared by the kubeherd CLIs: logging setup and the top-level error
boundary (print `<tool> error: ...` to stderr, exit 1).
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Log at DEBUG level, including remote command output.",
    )


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_cli(
    tool: str,
    handler: Callable[[argparse.Namespace], Awaitable[Any]],
    args: argparse.Namespace,
) -> None:
    configure_logging(getattr(args, "debug", False))
    try:
        asyncio.run(handler(args))
    except Exception as exc:
        print(f"{tool} error: {exc}", file=sys.stderr)
        sys.exit(1)
