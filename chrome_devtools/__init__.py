"""Python client library for the Chrome DevTools Protocol.

This package provides:
- Dispatcher: request/response correlation and event dispatch over one WebSocket
- BrowserSession / ChildSession: multiplexed sessions on a shared connection
- ChromeDPClient: the debugger HTTP endpoints (/json/version, /json/list, ...)
- CLI: command-line access to targets, raw commands and event streams
"""

from .codec import Envelope, Event, Response
from .dispatcher import Dispatcher, EventSubscription
from .exceptions import (
    AttachFailedError,
    CDPError,
    ConnectionClosedError,
    ConnectionLostError,
    MalformedMessageError,
    ProtocolError,
    SessionClosedError,
)
from .client import ChromeDPClient, ChromeVersion, Target
from .sessions import (
    BrowserSession,
    ChildSession,
    ChromeSession,
    SessionMetaData,
    connect_browser,
)

__version__ = "0.1.0"

__all__ = [
    "AttachFailedError",
    "BrowserSession",
    "CDPError",
    "ChildSession",
    "ChromeDPClient",
    "ChromeSession",
    "ChromeVersion",
    "ConnectionClosedError",
    "ConnectionLostError",
    "Dispatcher",
    "Envelope",
    "Event",
    "EventSubscription",
    "MalformedMessageError",
    "ProtocolError",
    "Response",
    "SessionClosedError",
    "SessionMetaData",
    "Target",
    "connect_browser",
]
