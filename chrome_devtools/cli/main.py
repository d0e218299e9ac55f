"""
Main CLI entry point for the chrome-devtools tool.

Usage:
    python -m chrome_devtools.cli.main <subcommand> [options]

Subcommands:
    targets - List attachable Chrome targets
    version - Show browser version and WebSocket URL
    query   - Send a raw CDP command
    listen  - Stream CDP events as JSON lines
"""

import argparse
import sys
from typing import List, Optional

from chrome_devtools.config import Configuration
from chrome_devtools.logging_setup import setup_logging


def create_parent_parser() -> argparse.ArgumentParser:
    """
    Create parent parser with global options shared across all subcommands.

    Defaults are None so that unset flags do not override the environment
    or the config file.
    """
    parent = argparse.ArgumentParser(add_help=False)

    parent.add_argument(
        "--chrome-host",
        default=None,
        help="Chrome host (default: localhost)",
    )
    parent.add_argument(
        "--chrome-port",
        type=int,
        default=None,
        help="Chrome debugging port (default: 9222)",
    )
    parent.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Command timeout in seconds (default: 30.0)",
    )
    parent.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    parent.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (default: info)",
    )
    parent.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=None,
        help="Log output format on stderr (default: text)",
    )

    verbosity_group = parent.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress non-essential output (only show results)",
    )
    verbosity_group.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose debug output",
    )

    return parent


def create_main_parser(parent: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """
    Create main parser with all subcommands.

    Args:
        parent: Parent parser with global options
    """
    parser = argparse.ArgumentParser(
        prog="chrome-devtools",
        description="Chrome DevTools Protocol (CDP) client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List all page targets
  chrome-devtools targets --type page

  # Show the browser WebSocket URL
  chrome-devtools version

  # Send a command on the browser session
  chrome-devtools query --method Target.getTargets

  # Send a command on a page session
  chrome-devtools query --target <target-id> --method Runtime.evaluate --params '{"expression":"document.title"}'

  # Stream network events of a page for 30 seconds
  chrome-devtools listen --target <target-id> --enable Network --event 'Network.*' --duration 30

For more information on subcommands, run: chrome-devtools <subcommand> --help
        """,
    )

    subparsers = parser.add_subparsers(
        dest="subcommand",
        title="subcommands",
        description="Available CDP operations",
        required=True,
    )

    from . import listen_cmd, query_cmd, targets_cmd

    targets_cmd.register_subcommand(subparsers, parent)
    query_cmd.register_subcommand(subparsers, parent)
    listen_cmd.register_subcommand(subparsers, parent)

    return parser


def load_configuration(args: argparse.Namespace) -> Configuration:
    """Build configuration with precedence: CLI > env > file > defaults."""
    config = Configuration()
    config.load_from_file("~/.cdprc")
    config.load_from_env()

    cli_overrides = {
        "chrome_host": getattr(args, "chrome_host", None),
        "chrome_port": getattr(args, "chrome_port", None),
        "timeout": getattr(args, "timeout", None),
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

    Args:
        argv: Command-line arguments (default: sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parent = create_parent_parser()
    parser = create_main_parser(parent)
    args = parser.parse_args(argv)

    config = load_configuration(args)
    setup_logging(
        format_type=config.log_format,
        level=config.log_level.upper() if isinstance(config.log_level, str) else "INFO",
        quiet=getattr(args, "quiet", False),
        verbose=getattr(args, "verbose", False),
    )

    args.config = config

    if hasattr(args, "func"):
        try:
            return args.func(args)
        except KeyboardInterrupt:
            print("\nInterrupted by user", file=sys.stderr)
            return 130
        except Exception as e:
            if config.log_level.upper() == "DEBUG":
                raise
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
