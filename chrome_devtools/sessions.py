"""Caller-facing CDP sessions.

A ``BrowserSession`` is the root session created when connecting to the
browser's debugger WebSocket; it has no session id. ``ChildSession`` objects
are created by attaching to targets (pages, workers, ...) and share the same
connection. Every command and subscription made through a session carries
that session's id automatically.

Closing the browser session closes the connection and therefore every child
session. Detaching or closing a child session never closes the connection.

Usage:
    async with await connect_browser(ws_url) as browser:
        async with await browser.attach_to_new_target("https://example.com") as page:
            await page.send_command("Page.enable")
            async with page.subscribe("Page.loadEventFired") as events:
                event = await events.next(timeout=10)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from .dispatcher import DEFAULT_EVENT_BUFFER_SIZE, Dispatcher, EventSubscription
from .exceptions import (
    AttachFailedError,
    CDPTimeoutError,
    ConnectionClosedError,
    ConnectionLostError,
    ProtocolError,
    SessionClosedError,
)
from .registry import SessionEntry, SessionState
from .transport import DEFAULT_MAX_SIZE, WebSocketTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionMetaData:
    """Info about a child session and its underlying target."""

    session_id: str
    target_id: str
    target_type: Optional[str] = None
    browser_context_id: Optional[str] = None


class ChromeSession(ABC):
    """Base class of browser and child sessions."""

    def __init__(self, dispatcher: Dispatcher, entry: SessionEntry):
        self._dispatcher = dispatcher
        self._entry = entry

    @property
    def session_id(self) -> Optional[str]:
        return self._entry.session_id

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def state(self) -> SessionState:
        if self._dispatcher.is_closed:
            return SessionState.CLOSED
        return self._entry.state

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @abstractmethod
    def _closed_error(self) -> Exception:
        """Error raised by operations on this session once it is closed."""

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise self._closed_error()

    async def send_command(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a command in this session and return its ``result``.

        This is the entry point generated domain bindings call.

        Raises:
            SessionClosedError: If this child session is closed
            ConnectionClosedError: If the connection is closed
            ProtocolError: If Chrome returns an error response
            CDPTimeoutError: If no response arrives in time
        """
        self._ensure_open()
        return await self._dispatcher.send_command(
            method, params, session_id=self.session_id, timeout=timeout
        )

    def subscribe(self, *patterns: str, maxsize: Optional[int] = None) -> EventSubscription:
        """Subscribe to events of this session.

        Patterns are event methods (``"Page.loadEventFired"``), domain
        wildcards (``"Network.*"``) or ``"*"``. Remember to enable the
        corresponding CDP domain first.
        """
        self._ensure_open()
        return self._dispatcher.subscribe(
            patterns, session_id=self.session_id, maxsize=maxsize
        )

    def unsafe(self) -> "UnsafeSession":
        """Untyped access to every protocol method and event.

        This bypasses typed bindings entirely and should only be used for
        protocol surface not covered by them.
        """
        return UnsafeSession(self)

    async def attach_to_target(
        self, target_id: str, *, timeout: Optional[float] = None
    ) -> "ChildSession":
        """Attach to ``target_id`` and return a session parented to this one.

        The new session shares this session's connection.

        Raises:
            AttachFailedError: If the target does not exist, Chrome refuses
                the attachment or the attach command times out
        """
        self._ensure_open()
        registry = self._dispatcher.registry
        entry = registry.begin_attach(self._entry, target_id)
        try:
            try:
                info = await self.send_command(
                    "Target.getTargetInfo", {"targetId": target_id}, timeout=timeout
                )
                result = await self.send_command(
                    "Target.attachToTarget",
                    {"targetId": target_id, "flatten": True},
                    timeout=timeout,
                )
            except (ProtocolError, CDPTimeoutError) as e:
                raise AttachFailedError(
                    f"Failed to attach to target: {e}",
                    target_id=target_id,
                    details={"error": str(e)},
                ) from e

            session_id = result.get("sessionId")
            if not isinstance(session_id, str) or not session_id:
                raise AttachFailedError(
                    "Attach response did not carry a session id", target_id=target_id
                )

            target_info = info.get("targetInfo") or {}
            registry.complete_attach(
                entry,
                session_id,
                target_type=target_info.get("type"),
                browser_context_id=target_info.get("browserContextId"),
            )
        finally:
            if entry.state is SessionState.ATTACHING:
                registry.abort_attach(entry)

        metadata = SessionMetaData(
            session_id=session_id,
            target_id=target_id,
            target_type=entry.target_type,
            browser_context_id=entry.browser_context_id,
        )
        logger.info(
            f"Attached to {metadata.target_type or 'target'} {target_id} "
            f"(session={session_id})"
        )
        return ChildSession(self._dispatcher, entry, parent=self, metadata=metadata)

    async def close_web_socket(self) -> None:
        """Close the shared connection, closing every session on it."""
        await self._dispatcher.close()


class BrowserSession(ChromeSession):
    """Root session attached to the browser target, without a session id."""

    def __init__(self, dispatcher: Dispatcher):
        super().__init__(dispatcher, dispatcher.registry.root)

    def __repr__(self):
        return f"BrowserSession(open={self.is_open})"

    def _closed_error(self) -> Exception:
        error = self._dispatcher.close_error
        if isinstance(error, ConnectionLostError):
            return ConnectionLostError("Browser session lost its connection", cause=error.cause)
        return ConnectionClosedError("Browser session is closed")

    async def attach_to_new_target(
        self,
        url: str = "about:blank",
        *,
        new_browser_context: bool = False,
        timeout: Optional[float] = None,
    ) -> "ChildSession":
        """Create a target (a new tab) and attach to it.

        With ``new_browser_context``, the target is created in a fresh
        browser context owned by the returned session; closing the session
        disposes of that context unless ``keep_browser_context`` is given.
        """
        self._ensure_open()
        params: Dict[str, Any] = {"url": url}
        browser_context_id = None
        if new_browser_context:
            context = await self.send_command("Target.createBrowserContext", timeout=timeout)
            browser_context_id = context["browserContextId"]
            params["browserContextId"] = browser_context_id

        created = await self.send_command("Target.createTarget", params, timeout=timeout)
        child = await self.attach_to_target(created["targetId"], timeout=timeout)
        child.owns_browser_context = browser_context_id is not None
        return child

    async def close(self) -> None:
        """Close this session and the connection. Idempotent."""
        await self._dispatcher.close()

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class ChildSession(ChromeSession):
    """Session attached to a target, multiplexed over the parent's connection.

    Attributes:
        parent: Session this one was attached from
        metadata: Session and target ids, target type, browser context
        owns_browser_context: Whether closing disposes of the browser context
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        entry: SessionEntry,
        parent: Union[BrowserSession, "ChildSession"],
        metadata: SessionMetaData,
        owns_browser_context: bool = False,
    ):
        super().__init__(dispatcher, entry)
        self.parent = parent
        self.metadata = metadata
        self.owns_browser_context = owns_browser_context

    def __repr__(self):
        return (
            f"ChildSession(session_id={self.session_id!r}, "
            f"target_id={self.metadata.target_id!r}, open={self.is_open})"
        )

    @property
    def browser(self) -> BrowserSession:
        if isinstance(self.parent, ChildSession):
            return self.parent.browser
        return self.parent

    def _closed_error(self) -> Exception:
        return SessionClosedError("Session is closed", session_id=self.metadata.session_id)

    async def detach(self) -> None:
        """Detach from the target, closing this session and its children.

        The target stays alive (a page keeps its tab open) and the
        connection stays open for other sessions. Idempotent.
        """
        if not self.is_open:
            return
        try:
            await self.parent.send_command(
                "Target.detachFromTarget", {"sessionId": self.session_id}
            )
        finally:
            self._dispatcher.close_session(self.metadata.session_id)
        logger.info(f"Detached session {self.metadata.session_id}")

    async def close(self, keep_browser_context: bool = False) -> None:
        """Close the target of this session, and this session with it.

        Descendant sessions are closed too. If this session owns its browser
        context and ``keep_browser_context`` is False, the context is
        disposed of, force-closing other targets opened from it. The
        connection stays open. Idempotent.
        """
        if not self.is_open:
            return
        try:
            await self.parent.send_command(
                "Target.closeTarget", {"targetId": self.metadata.target_id}
            )
            context_id = self.metadata.browser_context_id
            if self.owns_browser_context and context_id and not keep_browser_context:
                await self.browser.send_command(
                    "Target.disposeBrowserContext", {"browserContextId": context_id}
                )
        finally:
            self._dispatcher.close_session(self.metadata.session_id)
        logger.info(f"Closed target {self.metadata.target_id}")

    async def __aenter__(self) -> "ChildSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class UnsafeSession:
    """Raw protocol access through a session, without typed bindings.

    Method names and params are passed through unchecked; results and event
    params are plain dicts.
    """

    def __init__(self, session: ChromeSession):
        self._session = session

    async def send_raw(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        return await self._session.send_command(method, params, timeout=timeout)

    def events(self, *patterns: str, maxsize: Optional[int] = None) -> EventSubscription:
        return self._session.subscribe(*patterns, maxsize=maxsize)


async def connect_browser(
    ws_url: str,
    *,
    timeout: Optional[float] = 30.0,
    max_size: int = DEFAULT_MAX_SIZE,
    event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
) -> BrowserSession:
    """Connect to the browser's debugger WebSocket URL.

    The URL is the ``webSocketDebuggerUrl`` of ``/json/version``, e.g.
    ``ws://127.0.0.1:9222/devtools/browser/b0b8a4fb-...``. The caller owns the
    returned session and must close it.

    Raises:
        ConnectionFailedError: If the WebSocket handshake fails
    """
    transport = await WebSocketTransport.connect(ws_url, max_size=max_size)
    dispatcher = Dispatcher(
        transport, command_timeout=timeout, event_buffer_size=event_buffer_size
    )
    dispatcher.start()
    return BrowserSession(dispatcher)
