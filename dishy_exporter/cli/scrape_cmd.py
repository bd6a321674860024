"""
Scrape subcommand: take one snapshot and print it.
"""

import argparse
import asyncio
import json
import sys

from ..encoder import NamingPolicy
from ..exceptions import ExporterError
from ..orchestrator import ScrapeOrchestrator
from ..session import create_session


async def scrape_handler_async(args: argparse.Namespace) -> int:
    """
    Handle 'scrape' command (async implementation).

    Starts a session, acquires one snapshot, prints metrics (or JSON with
    --json) to stdout and shuts the session down.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    config = args.config
    session = create_session(config)
    orchestrator = ScrapeOrchestrator(
        session,
        prefix=config.metric_prefix,
        naming=NamingPolicy(config.naming),
        restart_closed=False,
    )

    try:
        await session.start()
        if args.json:
            data = await orchestrator.snapshot()
            print(json.dumps(data, indent=2))
        else:
            sys.stdout.write(await orchestrator.scrape())
        return 0

    except ExporterError as e:
        if config.log_level.upper() == "DEBUG":
            raise
        print(f"Error: {e}", file=sys.stderr)
        if e.details.get("recovery"):
            print(f"Recovery hint: {e.details['recovery']}", file=sys.stderr)
        return 1

    finally:
        await session.shutdown()


def scrape_handler(args: argparse.Namespace) -> int:
    """Synchronous wrapper for scrape_handler_async."""
    return asyncio.run(scrape_handler_async(args))


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    scrape_parser = subparsers.add_parser(
        "scrape",
        parents=[parent],
        help="Take one snapshot and print it",
        description="Open the status page, wait for a settled update and print it",
        epilog="""
Examples:
  # Print metrics once
  dishy-exporter scrape

  # Print the raw status JSON
  dishy-exporter scrape --json --target-url http://dishy.starlink.com/
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    scrape_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the snapshot as JSON instead of metrics",
    )

    scrape_parser.set_defaults(func=scrape_handler)
