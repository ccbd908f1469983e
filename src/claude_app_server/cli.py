"""Command-line entry point for claude-app-server.

Usage:
    claude-app-server                          # stdio (default)
    claude-app-server start                    # websocket on port 3284 + banner
    claude-app-server start --port 4000        # custom port
    claude-app-server --transport ws --port 4000
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import socket
import sys

from .config import (
    ServerConfig,
    default_host,
    default_pair_key,
    default_port,
    generate_pair_key,
    resolve_agent_command,
)
from .errors import AppServerError
from .server import AppServer
from .transport import serve_stdio, serve_websocket

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI options."""
    parser = argparse.ArgumentParser(
        prog="claude-app-server",
        description="JSON-RPC 2.0 app server for the local claude CLI.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["start"],
        help="`start` serves websockets and prints connection details.",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "ws", "websocket"],
        default=None,
        help="Transport to serve (default: stdio, or ws with `start`).",
    )
    parser.add_argument(
        "--host",
        default=default_host(),
        help="Websocket bind address.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Websocket port (default: CLAUDE_APP_SERVER_PORT or 3284).",
    )
    parser.add_argument(
        "--pair-key",
        default=default_pair_key(),
        help="Websocket pair key (default: randomly generated).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log agent argv, I/O and exit codes to stderr.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    transport = "stdio"
    if args.command == "start" or args.transport in ("ws", "websocket"):
        transport = "ws"
    return ServerConfig(
        agent_command=resolve_agent_command(),
        transport=transport,
        host=args.host,
        port=args.port if args.port is not None else default_port(),
        pair_key=args.pair_key or generate_pair_key(),
        show_banner=args.command == "start",
        debug=args.debug,
    )


def configure_logging(debug: bool) -> None:
    # stdout carries the stdio transport; logs always go to stderr.
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if debug else logging.INFO,
        format="[claude-app-server] %(levelname)s %(name)s: %(message)s",
    )


def lan_ip() -> str | None:
    """Best-effort LAN address of this host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("10.255.255.255", 1))
            address = probe.getsockname()[0]
    except OSError:
        return None
    if address.startswith("127."):
        return None
    return address


def print_banner(config: ServerConfig) -> None:
    local_url = f"ws://localhost:{config.port}?key={config.pair_key}"
    lan = lan_ip()
    lines = [
        "",
        "  claude-app-server  ·  WebSocket",
        "  ---------------------------------",
        f"  Local:    {local_url}",
    ]
    if lan:
        lines.append(f"  Network:  ws://{lan}:{config.port}?key={config.pair_key}")
    lines.extend([f"  Pair Key: {config.pair_key}", ""])
    sys.stderr.write("\n".join(lines) + "\n")
    sys.stderr.flush()


async def _serve(config: ServerConfig) -> None:
    server = AppServer(config.agent_command)
    if config.transport == "ws":
        await serve_websocket(
            server,
            host=config.host,
            port=config.port,
            pair_key=config.pair_key,
        )
    else:
        await serve_stdio(server)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.debug)
    try:
        config = build_config(args)
    except AppServerError as exc:
        sys.stderr.write(f"[claude-app-server] ERROR: {exc}\n")
        return 1

    if config.show_banner:
        print_banner(config)
    logger.debug("agent command: %s", config.agent_command)

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        return 130
    return 0
