"""CLI entry points for kobo-proxy."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from kobo_proxy import __version__
from kobo_proxy.config import DEFAULT_PORT, LOG_LEVELS, ProxyConfig
from kobo_proxy.server import App

log = logging.getLogger("kobo-proxy")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="kobo-proxy",
        description="Reverse proxy for the Kobo store API. Devices pointed at this proxy "
        "keep talking to it because the initialization response is rewritten.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-p", "--port", type=int, default=DEFAULT_PORT, help=f"Listen port (default: {DEFAULT_PORT}, 0 = auto)"
    )
    parser.add_argument(
        "--frontend-url",
        default=None,
        help="URL devices use to reach this proxy, e.g. http://192.168.1.10:3000 (default: http://localhost:<port>)",
    )
    parser.add_argument(
        "--enable-request-logging", action="store_true", help="Log every incoming request with its body"
    )
    parser.add_argument(
        "--enable-response-logging", action="store_true", help="Log every outgoing response with its body"
    )
    parser.add_argument(
        "-l", "--log-level", default="info", type=str.lower, choices=LOG_LEVELS, help="Log level (default: info)"
    )
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ProxyConfig:
    return ProxyConfig(
        port=args.port,
        frontend_url=args.frontend_url,
        enable_request_logging=args.enable_request_logging,
        enable_response_logging=args.enable_response_logging,
        log_level=args.log_level,
    )


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S"))
    log.addHandler(handler)
    log.setLevel(level.upper())
    # Suppress aiohttp access logs unless debugging
    if level != "debug":
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def async_main(config: ProxyConfig) -> int:
    app = App(config)
    try:
        await app.run()
    except OSError as exc:
        log.error(f"Failed to listen on port {config.port}: {exc}")
        return 1
    return 0


def main_entry() -> None:
    """Entry point for the kobo-proxy CLI."""
    args = parse_args()
    try:
        config = config_from_args(args)
    except ValidationError as exc:
        print(f"kobo-proxy: invalid configuration\n{exc}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config.log_level)
    log.info(f"Rewriting initialization URLs to {config.frontend_url}")
    try:
        code = asyncio.run(async_main(config))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)
