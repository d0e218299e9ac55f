"""
Target discovery subcommands.

Implements 'targets' (list attachable targets) and 'version' (browser
metadata and WebSocket URL).
"""

import argparse
import json

from ..exceptions import CDPError
from .common import client_from_args, report_error


def targets_handler(args: argparse.Namespace) -> int:
    """
    Handle 'targets' command.

    Lists Chrome targets with optional filtering by type and URL pattern.
    """
    try:
        targets = client_from_args(args).targets(
            target_type=args.type,
            url_pattern=args.url,
        )
    except CDPError as e:
        return report_error(args, e)

    if args.format == "json":
        print(json.dumps([target.to_dict() for target in targets], indent=2))
    else:
        for target in targets:
            print(f"{target.id}\t{target.type}\t{target.url}\t{target.title}")
    return 0


def version_handler(args: argparse.Namespace) -> int:
    """Handle 'version' command."""
    try:
        version = client_from_args(args).version()
    except CDPError as e:
        return report_error(args, e)

    if args.format == "json":
        print(json.dumps(version.to_dict(), indent=2))
    else:
        print(f"{version.browser}\t{version.protocol_version}\t{version.webSocketDebuggerUrl}")
    return 0


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """
    Register 'targets' and 'version' subcommands.

    Args:
        subparsers: Subparsers from main parser
        parent: Parent parser with global options
    """
    targets_parser = subparsers.add_parser(
        "targets",
        parents=[parent],
        help="List Chrome targets",
        description="List debuggable targets from the /json/list endpoint",
    )
    targets_parser.add_argument(
        "--type",
        choices=["page", "iframe", "worker", "service_worker", "browser", "other"],
        help="Filter by target type",
    )
    targets_parser.add_argument(
        "--url",
        help="Filter by URL substring (case-insensitive)",
    )
    targets_parser.set_defaults(func=targets_handler)

    version_parser = subparsers.add_parser(
        "version",
        parents=[parent],
        help="Show browser version",
        description="Show the /json/version metadata, including the browser WebSocket URL",
    )
    version_parser.set_defaults(func=version_handler)
