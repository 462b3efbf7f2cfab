from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MAX_LINE,
    DEFAULT_MTU,
    PROFILES,
    BridgeConfig,
    LineOverflow,
)
from .errors import UuidParseError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ble-uart-bridge",
        description="Bridge the console to a serial-over-BLE peripheral (Nordic UART, RN4871 transparent UART).",
    )
    parser.add_argument(
        "address",
        nargs="*",
        help="BLE address of the peripheral",
    )
    parser.add_argument(
        "--profile",
        default="nus",
        choices=sorted(PROFILES),
        help="UUID layout of the peripheral (default: nus)",
    )
    parser.add_argument(
        "--tx-uuid",
        default=None,
        help="override the characteristic written with console input",
    )
    parser.add_argument(
        "--rx-uuid",
        action="append",
        default=None,
        help="override the characteristics subscribed for output (repeatable)",
    )
    parser.add_argument(
        "--mtu",
        type=int,
        default=DEFAULT_MTU,
        help=f"bytes per write segment (default: {DEFAULT_MTU})",
    )
    parser.add_argument(
        "--max-line",
        type=int,
        default=DEFAULT_MAX_LINE,
        help=f"longest input line read at once, terminator included (default: {DEFAULT_MAX_LINE})",
    )
    parser.add_argument(
        "--line-overflow",
        default=LineOverflow.SPLIT.value,
        choices=[p.value for p in LineOverflow],
        help="longer lines are sent in pieces (split) or discarded (drop)",
    )
    parser.add_argument(
        "--nul-terminate",
        action="store_true",
        help="append a NUL byte to every line sent",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT,
        help=f"connection timeout in seconds (default: {DEFAULT_CONNECT_TIMEOUT})",
    )
    parser.add_argument(
        "--list-characteristics",
        action="store_true",
        help="print the peripheral's characteristics and exit",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="also write logs to this file (default: stderr only)",
    )
    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    # Diagnostics go to stderr (and the optional file); stdout carries device output
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if len(args.address) != 1:
        parser.print_usage(sys.stdout)
        return 1

    configure_logging(args.log_level, args.log_file)

    try:
        config = BridgeConfig.from_profile(
            args.profile,
            tx_uuid=args.tx_uuid,
            rx_uuids=args.rx_uuid,
            mtu=args.mtu,
            max_line=args.max_line,
            line_overflow=LineOverflow(args.line_overflow),
            nul_terminate=args.nul_terminate,
            connect_timeout=args.connect_timeout,
        )
    except UuidParseError as e:
        logger.error("%s", e)
        return 1
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    from .transport import BleakLink

    address = args.address[0]
    link = BleakLink(address, timeout=config.connect_timeout)

    if args.list_characteristics:
        from .diagnostics import run_listing

        return run_listing(link, config, sys.stdout)

    from .controller import run_bridge

    return run_bridge(link, config)
