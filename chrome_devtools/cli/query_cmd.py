"""
Query subcommand for executing arbitrary CDP commands.

Sends the command on the browser session, or on a child session attached
to --target over the same WebSocket connection.
"""

import argparse
import asyncio
import json
import sys

from ..exceptions import CDPError
from .common import open_browser, report_error


async def query_handler_async(args: argparse.Namespace) -> int:
    """
    Handle 'query' command (async implementation).

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    params = {}
    if args.params:
        try:
            params = json.loads(args.params)
        except json.JSONDecodeError as e:
            print(f"Error: Invalid JSON params: {e}", file=sys.stderr)
            return 1
        if not isinstance(params, dict):
            print("Error: --params must be a JSON object", file=sys.stderr)
            return 1

    try:
        async with await open_browser(args) as browser:
            session = browser
            if args.target:
                session = await browser.attach_to_target(args.target)
            result = await session.unsafe().send_raw(args.method, params)
    except CDPError as e:
        return report_error(args, e)

    if args.format == "json":
        print(json.dumps(result, indent=2))
    else:
        print(json.dumps(result))
    return 0


def query_handler(args: argparse.Namespace) -> int:
    """Synchronous wrapper for query_handler_async."""
    return asyncio.run(query_handler_async(args))


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """
    Register 'query' subcommand.

    Args:
        subparsers: Subparsers from main parser
        parent: Parent parser with global options
    """
    query_parser = subparsers.add_parser(
        "query",
        parents=[parent],
        help="Execute arbitrary CDP command",
        description="Execute any CDP method with custom parameters",
        epilog="""
Examples:
  # Browser-level command
  chrome-devtools query --method Target.getTargets

  # Command on a page target
  chrome-devtools query --target <target-id> --method Runtime.evaluate --params '{"expression":"document.title","returnByValue":true}'
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    query_parser.add_argument(
        "--target",
        help="Target ID to attach to (default: browser session)",
    )
    query_parser.add_argument(
        "--method",
        required=True,
        help="CDP method to execute (e.g., Runtime.evaluate, Target.getTargets)",
    )
    query_parser.add_argument(
        "--params",
        help="JSON-encoded parameters for the CDP method",
    )
    query_parser.set_defaults(func=query_handler)
