"""
Encode subcommand: JSON document to metrics, no browser involved.
"""

import argparse
import json
import sys

from ..encoder import NamingPolicy, encode
from ..exceptions import EncodingError


def encode_handler(args: argparse.Namespace) -> int:
    """
    Handle 'encode' command.

    Reads JSON from a file or stdin ("-") and writes exposition text to stdout.

    Returns:
        Exit code (0 for success, 1 for unreadable or unencodable input)
    """
    config = args.config
    try:
        if args.input == "-":
            data = json.load(sys.stdin)
        else:
            with open(args.input, "r") as f:
                data = json.load(f)
    except OSError as e:
        print(f"Error: cannot read {args.input}: {e}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as e:
        print(f"Error: invalid JSON in {args.input}: {e}", file=sys.stderr)
        return 1

    try:
        text = encode(data, config.metric_prefix, NamingPolicy(config.naming))
    except EncodingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    sys.stdout.write(text)
    return 0


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    encode_parser = subparsers.add_parser(
        "encode",
        parents=[parent],
        help="Convert a JSON document to metrics",
        description="Encode JSON as Prometheus exposition text using the exporter's naming rules",
        epilog="""
Examples:
  dishy-exporter encode status.json
  curl -s http://localhost:8055/json | dishy-exporter encode - --naming concatenated
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    encode_parser.add_argument(
        "input",
        nargs="?",
        default="-",
        help="JSON file to encode (default: stdin)",
    )

    encode_parser.set_defaults(func=encode_handler)
