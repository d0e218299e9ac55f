"""Helpers shared by CLI subcommands."""

import argparse
import sys

from ..client import ChromeDPClient
from ..exceptions import CDPError
from ..sessions import BrowserSession


def client_from_args(args: argparse.Namespace) -> ChromeDPClient:
    config = args.config
    return ChromeDPClient(
        config.remote_debug_url,
        override_host_header=config.override_host_header,
    )


async def open_browser(args: argparse.Namespace) -> BrowserSession:
    config = args.config
    return await client_from_args(args).web_socket(
        timeout=config.timeout,
        max_size=config.max_size,
        event_buffer_size=config.event_buffer_size,
    )


def report_error(args: argparse.Namespace, error: CDPError) -> int:
    """Print a CDP error with its recovery hint, or re-raise in debug mode."""
    if hasattr(args, "config") and args.config.log_level.upper() == "DEBUG":
        raise error
    print(f"Error: {error}", file=sys.stderr)
    if error.details.get("recovery"):
        print(f"Recovery hint: {error.details['recovery']}", file=sys.stderr)
    return 1
