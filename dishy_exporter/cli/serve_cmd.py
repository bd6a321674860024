"""
Serve subcommand: run the HTTP exporter.
"""

import argparse
import logging
import sys

from ..exceptions import StartupError
from ..server import run_server

logger = logging.getLogger(__name__)


def serve_handler(args: argparse.Namespace) -> int:
    """
    Handle 'serve' command.

    Blocks until SIGINT/SIGTERM. A StartupError (no renderer, unreachable
    transport) is fatal.

    Returns:
        Exit code (0 for clean shutdown, 1 when startup failed)
    """
    try:
        run_server(args.config)
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        if e.details.get("recovery"):
            print(f"Recovery hint: {e.details['recovery']}", file=sys.stderr)
        return 1
    return 0


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    serve_parser = subparsers.add_parser(
        "serve",
        parents=[parent],
        help="Run the HTTP exporter",
        description="Keep one page open and serve /metrics, /json and /health",
        epilog="""
Examples:
  # Default: listen on 0.0.0.0:8055, page http://192.168.100.1
  dishy-exporter serve

  # Attach to a renderer already listening on 9333
  dishy-exporter serve --cdp-port 9333 --listen-port 9817
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    serve_parser.add_argument("--listen-host", help="HTTP listen address (default: 0.0.0.0)")
    serve_parser.add_argument("--listen-port", type=int, help="HTTP listen port (default: 8055)")

    serve_parser.set_defaults(func=serve_handler)
