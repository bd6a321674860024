"""
Main CLI entry point for the dishy exporter.

Usage:
    python -m dishy_exporter.cli.main <subcommand> [options]

Subcommands:
    serve   - Run the HTTP exporter (/metrics, /json, /health)
    scrape  - Take one snapshot and print it as metrics or JSON
    encode  - Convert a JSON document to metrics without a browser
"""

import argparse
import sys
from typing import List, Optional

from dishy_exporter.config import Configuration
from dishy_exporter.encoder import NamingPolicy
from dishy_exporter.logging_setup import setup_logging


def create_parent_parser() -> argparse.ArgumentParser:
    """
    Create parent parser with global options shared across all subcommands.

    Options default to None so that only flags given on the command line
    override environment variables and the config file.
    """
    parent = argparse.ArgumentParser(add_help=False)

    parent.add_argument(
        "--config",
        default="~/.dishyrc",
        help="JSON config file (default: ~/.dishyrc)",
    )

    # Page and renderer
    parent.add_argument("--target-url", help="Status page URL (default: http://192.168.100.1)")
    parent.add_argument("--cdp-host", help="Remote debugging host (default: 127.0.0.1)")
    parent.add_argument("--cdp-port", type=int, help="Remote debugging port (default: 9222)")
    parent.add_argument("--chrome-bin", help="Chrome/Chromium binary (default: auto-discover)")
    parent.add_argument("--selector", help="CSS selector of the JSON element (default: .Json-Text)")
    parent.add_argument(
        "--snapshot-timeout",
        type=float,
        help="Seconds allowed for one snapshot (default: 10.0)",
    )

    # Encoding
    parent.add_argument("--prefix", dest="metric_prefix", help="Metric name prefix (default: starlink_)")
    parent.add_argument(
        "--naming",
        choices=[policy.value for policy in NamingPolicy],
        help="Nested key naming policy (default: labeled)",
    )

    # Logging options
    parent.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parent.add_argument(
        "--log-format",
        choices=["text", "json"],
        help="Log format (default: text)",
    )

    verbosity_group = parent.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "--quiet",
        action="store_true",
        help="Only log errors",
    )
    verbosity_group.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    return parent


def create_main_parser(parent: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Create main parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="dishy-exporter",
        description="Prometheus exporter for the Starlink dish status page",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve metrics on :8055
  dishy-exporter serve

  # One-shot scrape, raw JSON
  dishy-exporter scrape --json

  # Encode a saved status document
  dishy-exporter encode status.json --prefix dish_

For more information on subcommands, run: dishy-exporter <subcommand> --help
        """,
    )

    subparsers = parser.add_subparsers(
        dest="subcommand",
        title="subcommands",
        required=True,
    )

    from . import serve_cmd, scrape_cmd, encode_cmd

    serve_cmd.register_subcommand(subparsers, parent)
    scrape_cmd.register_subcommand(subparsers, parent)
    encode_cmd.register_subcommand(subparsers, parent)

    return parser


def build_configuration(args: argparse.Namespace) -> Configuration:
    """Precedence: CLI flags > env vars > config file > defaults."""
    config = Configuration()
    config.load_from_file(args.config)
    config.load_from_env()

    cli_overrides = {
        "target_url": getattr(args, "target_url", None),
        "cdp_host": getattr(args, "cdp_host", None),
        "cdp_port": getattr(args, "cdp_port", None),
        "chrome_bin": getattr(args, "chrome_bin", None),
        "selector": getattr(args, "selector", None),
        "snapshot_timeout": getattr(args, "snapshot_timeout", None),
        "metric_prefix": getattr(args, "metric_prefix", None),
        "naming": getattr(args, "naming", None),
        "listen_host": getattr(args, "listen_host", None),
        "listen_port": getattr(args, "listen_port", None),
        "log_level": getattr(args, "log_level", None),
        "log_format": getattr(args, "log_format", None),
    }
    config.merge(**cli_overrides)

    if getattr(args, "quiet", False):
        config.log_level = "ERROR"
    elif getattr(args, "verbose", False):
        config.log_level = "DEBUG"

    return config


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for CLI.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parent = create_parent_parser()
    parser = create_main_parser(parent)
    args = parser.parse_args(argv)

    config = build_configuration(args)

    setup_logging(log_format=config.log_format, log_level=config.log_level)

    try:
        NamingPolicy(config.naming)
    except ValueError:
        print(f"Error: invalid naming policy {config.naming!r}", file=sys.stderr)
        return 2

    args.config = config

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
