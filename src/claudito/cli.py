"""Command line entry point: run the Claudito web server.

Usage:
    claudito
    claudito --port 8080 --data-dir ./data
    claudito --host 127.0.0.1 --max-agents 5 --dev
"""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import sys
from typing import List, Optional

from aiohttp import web
from rich.console import Console

from . import __version__
from .config import load_config
from .errors import ConfigError
from .log import setup_logging
from .server import build_services, create_app

logger = logging.getLogger(__name__)

console = Console()


def accessible_urls(host: str, port: int) -> List[str]:
    """URLs a browser can use to reach a server bound to ``host``."""
    if host not in ("0.0.0.0", "::", ""):
        return [f"http://{host}:{port}"]

    urls = [f"http://localhost:{port}"]
    try:
        addresses = {info[4][0] for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)}
    except socket.gaierror:
        addresses = set()
    for address in sorted(addresses):
        if not address.startswith("127."):
            urls.append(f"http://{address}:{port}")
    return urls


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claudito",
        description="Web UI for driving the Claude CLI across projects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  CLAUDITO_HOST, CLAUDITO_PORT, CLAUDITO_DATA_DIR, CLAUDITO_MAX_AGENTS,
  CLAUDITO_DEV_MODE, CLAUDITO_CLAUDE_PATH, CLAUDITO_LOG_LEVEL
        """,
    )
    parser.add_argument("--host", default=None, help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--port", "-p", type=int, default=None, help="Port to listen on (default: 3000)")
    parser.add_argument("--data-dir", default=None, help="Where projects and settings are stored (default: ~/.claudito)")
    parser.add_argument("--max-agents", type=int, default=None, help="Maximum concurrently running agents")
    parser.add_argument("--claude-path", default=None, help="Path of the claude executable")
    parser.add_argument("--dev", action="store_true", default=None, help="Enable dev-only endpoints")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(
            host=args.host,
            port=args.port,
            data_dir=args.data_dir,
            max_concurrent_agents=args.max_agents,
            claude_path=args.claude_path,
            dev_mode=args.dev,
            log_level=args.log_level,
        )
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        sys.exit(2)

    setup_logging(config.log_level)
    services = build_services(config)
    app = create_app(config, services)

    def request_shutdown() -> None:
        # run_app exits on SIGINT/SIGTERM
        signal.raise_signal(signal.SIGTERM)

    services.on_shutdown = request_shutdown

    console.print(f"\n[bold]Claudito[/bold] {__version__} running at:")
    for url in accessible_urls(config.host, config.port):
        console.print(f"  [cyan]{url}[/cyan]")
    console.print(f"  data: {config.data_dir}\n")

    web.run_app(app, host=config.host, port=config.port, print=None)
    logger.info("Server stopped")


if __name__ == "__main__":
    main()
