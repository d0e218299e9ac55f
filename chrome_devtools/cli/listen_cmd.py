"""
Listen subcommand for streaming CDP events.

Prints one JSON object per event: {"method": ..., "sessionId": ..., "params": ...}.
"""

import argparse
import asyncio
import json
import logging
from typing import Optional

from ..exceptions import CDPError
from .common import open_browser, report_error

logger = logging.getLogger(__name__)


async def listen_handler_async(args: argparse.Namespace) -> int:
    """
    Handle 'listen' command (async implementation).

    Stops after --duration seconds, after --count events, or when the
    connection closes.
    """
    loop = asyncio.get_running_loop()
    deadline: Optional[float] = (
        loop.time() + args.duration if args.duration is not None else None
    )
    received = 0

    try:
        async with await open_browser(args) as browser:
            session = browser
            if args.target:
                session = await browser.attach_to_target(args.target)

            # subscribe first: enabling a domain replays its buffered events
            async with session.subscribe(*args.event) as events:
                for domain in args.enable or []:
                    await session.send_command(f"{domain}.enable")

                while args.count is None or received < args.count:
                    remaining = None
                    if deadline is not None:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            break
                    try:
                        event = await events.next(timeout=remaining)
                    except asyncio.TimeoutError:
                        break
                    except StopAsyncIteration:
                        break
                    received += 1
                    print(
                        json.dumps(
                            {
                                "method": event.method,
                                "sessionId": event.session_id,
                                "params": event.params,
                            }
                        ),
                        flush=True,
                    )
                if events.dropped:
                    logger.warning(f"{events.dropped} event(s) dropped by slow output")
    except CDPError as e:
        return report_error(args, e)

    logger.info(f"Received {received} event(s)")
    return 0


def listen_handler(args: argparse.Namespace) -> int:
    """Synchronous wrapper for listen_handler_async."""
    return asyncio.run(listen_handler_async(args))


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """
    Register 'listen' subcommand.

    Args:
        subparsers: Subparsers from main parser
        parent: Parent parser with global options
    """
    listen_parser = subparsers.add_parser(
        "listen",
        parents=[parent],
        help="Stream CDP events",
        description="Stream events matching the given patterns as JSON lines",
        epilog="""
Examples:
  # Target lifecycle on the browser session
  chrome-devtools listen --event 'Target.*' --duration 60

  # Console of a page
  chrome-devtools listen --target <target-id> --enable Runtime --event Runtime.consoleAPICalled
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    listen_parser.add_argument(
        "--target",
        help="Target ID to attach to (default: browser session)",
    )
    listen_parser.add_argument(
        "--event",
        action="append",
        required=True,
        help="Event method or pattern ('Network.*', '*'); repeatable",
    )
    listen_parser.add_argument(
        "--enable",
        action="append",
        metavar="DOMAIN",
        help="Domain to enable before listening (e.g., Network); repeatable",
    )
    listen_parser.add_argument(
        "--duration",
        type=float,
        help="Stop after this many seconds",
    )
    listen_parser.add_argument(
        "--count",
        type=int,
        help="Stop after this many events",
    )
    listen_parser.set_defaults(func=listen_handler)
