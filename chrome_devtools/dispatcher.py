"""Request/response correlation and event dispatch over one transport.

The dispatcher is the single reader of the transport. It assigns command
ids, keeps one pending future per in-flight command, and routes inbound
frames: responses resolve the future with the matching id, events are fanned
out to the subscriptions registered for their session.

Usage:
    dispatcher = Dispatcher(transport)
    dispatcher.start()
    result = await dispatcher.send_command("Target.getTargets")
    async with dispatcher.subscribe("Target.*") as events:
        async for event in events:
            print(event.method, event.params)
    await dispatcher.close()
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from . import codec
from .codec import Envelope, Event, Response
from .exceptions import (
    CDPConnectionError,
    CDPTimeoutError,
    ConnectionClosedError,
    ConnectionLostError,
    InvalidCommandError,
    MalformedMessageError,
    ProtocolError,
    SessionClosedError,
)
from .logging_setup import log_with_context
from .registry import SessionEntry, SessionRegistry
from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_EVENT_BUFFER_SIZE = 1000


@dataclass
class PendingCall:
    """One-shot slot for an in-flight command."""

    id: int
    method: str
    session_id: Optional[str]
    future: asyncio.Future


class EventSubscription:
    """Ordered, bounded stream of events for one session.

    Iterate with ``async for``. The buffer keeps at most ``maxsize`` events;
    when a consumer falls behind, the oldest buffered event is dropped and
    counted in ``dropped``. The read loop never waits on a consumer.

    The stream ends when the subscription is closed, when its session closes
    or when the connection closes. If the connection was lost abnormally,
    the ``ConnectionLostError`` is raised once buffered events are drained.
    """

    def __init__(
        self,
        patterns: Tuple[str, ...],
        session_id: Optional[str],
        maxsize: int = DEFAULT_EVENT_BUFFER_SIZE,
        on_close: Optional[Callable[["EventSubscription"], None]] = None,
    ):
        if maxsize < 1:
            raise ValueError(f"maxsize must be at least 1, got {maxsize}")
        self.patterns = patterns
        self.session_id = session_id
        self.dropped = 0
        self._buffer: Deque[Event] = deque(maxlen=maxsize)
        self._ready = asyncio.Event()
        self._ended = False
        self._error: Optional[Exception] = None
        self._on_close = on_close

    def __repr__(self):
        return (
            f"EventSubscription(patterns={self.patterns!r}, "
            f"session_id={self.session_id!r}, ended={self._ended})"
        )

    @property
    def ended(self) -> bool:
        return self._ended

    def matches(self, method: str) -> bool:
        return any(
            pattern == method or fnmatchcase(method, pattern)
            for pattern in self.patterns
        )

    def _push(self, event: Event) -> None:
        if self._ended:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
            if self.dropped == 1:
                logger.warning(
                    f"Event buffer full for {self.patterns} "
                    f"(session={self.session_id}), dropping oldest events"
                )
        self._buffer.append(event)
        self._ready.set()

    def _end(self, error: Optional[Exception] = None) -> None:
        if self._ended:
            return
        self._ended = True
        self._error = error
        self._ready.set()

    def close(self) -> None:
        """Unregister and end the stream. Idempotent."""
        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            on_close(self)
        self._end()

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> Event:
        while not self._buffer:
            if self._ended:
                if self._error is not None:
                    raise self._error
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    async def next(self, timeout: Optional[float] = None) -> Event:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the stream has ended
            asyncio.TimeoutError: If no event arrives within ``timeout``
        """
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def __aenter__(self) -> "EventSubscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class Dispatcher:
    """Multiplexes commands and events of every session over one transport.

    Attributes:
        registry: Sessions sharing this connection
        command_timeout: Default command timeout in seconds (None = no limit)
        event_buffer_size: Default buffer size of new subscriptions
    """

    def __init__(
        self,
        transport: Transport,
        *,
        command_timeout: Optional[float] = None,
        event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
        registry: Optional[SessionRegistry] = None,
    ):
        self._transport = transport
        self.command_timeout = command_timeout
        self.event_buffer_size = event_buffer_size
        self.registry = registry or SessionRegistry()

        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingCall] = {}
        self._read_task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_error: Optional[Exception] = None
        self._close_callbacks: List[Callable[[Optional[Exception]], Any]] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def close_error(self) -> Optional[Exception]:
        """The error that terminated the connection, if it was lost."""
        return self._close_error

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the read loop. Must be called from a running event loop."""
        if self._read_task is not None:
            return
        if self._closed:
            raise ConnectionClosedError("Cannot start a closed dispatcher")
        self._read_task = asyncio.create_task(self._read_loop())

    def add_close_callback(self, callback: Callable[[Optional[Exception]], Any]) -> None:
        """Call ``callback(error)`` once when the connection terminates."""
        if self._closed:
            callback(self._close_error)
        else:
            self._close_callbacks.append(callback)

    async def __aenter__(self) -> "Dispatcher":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def send_command(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a command and wait for its response.

        Args:
            method: CDP method name (e.g., "Runtime.evaluate")
            params: Method parameters
            session_id: Target session, None for the browser session
            timeout: Seconds to wait (default: ``command_timeout``)

        Returns:
            The ``result`` object of the response

        Raises:
            ConnectionClosedError: If the connection is or becomes closed
            ProtocolError: If Chrome returns an error response
            CDPTimeoutError: If no response arrives in time
            InvalidCommandError: If method or params are malformed
        """
        if not isinstance(method, str) or not method:
            raise InvalidCommandError(f"Invalid method name: {method!r}", method=str(method))
        if params is not None and not isinstance(params, Mapping):
            raise InvalidCommandError(
                f"params must be a mapping, got {type(params).__name__}", method=method
            )
        if self._closed:
            raise self._closed_error(f"Cannot send {method}: connection closed")

        cmd_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[cmd_id] = PendingCall(cmd_id, method, session_id, future)
        envelope = Envelope(
            id=cmd_id,
            method=method,
            params=dict(params) if params else None,
            session_id=session_id,
        )

        cmd_timeout = timeout if timeout is not None else self.command_timeout
        try:
            await self._transport.send(codec.encode(envelope))
            logger.debug(f"Sent command {cmd_id}: {method} (session={session_id})")
            if cmd_timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=cmd_timeout)
        except asyncio.TimeoutError:
            raise CDPTimeoutError(
                "Command timed out", command_method=method, timeout=cmd_timeout
            )
        finally:
            # a late response for this id is dropped as unknown
            self._pending.pop(cmd_id, None)

    def subscribe(
        self,
        patterns: Union[str, Iterable[str]],
        *,
        session_id: Optional[str] = None,
        maxsize: Optional[int] = None,
    ) -> EventSubscription:
        """Register a subscription for events of one session.

        Args:
            patterns: Event method, ``"Domain.*"`` or ``"*"``, or several of them
            session_id: Session whose events to receive, None for the browser
            maxsize: Buffer size (default: ``event_buffer_size``)

        Raises:
            ConnectionClosedError: If the connection is closed
            SessionClosedError: If the session is closed
        """
        if isinstance(patterns, str):
            patterns = (patterns,)
        else:
            patterns = tuple(patterns)
        if not patterns:
            raise ValueError("At least one event pattern is required")
        if self._closed:
            raise self._closed_error("Cannot subscribe: connection closed")

        subscription = EventSubscription(
            patterns,
            session_id,
            maxsize=maxsize if maxsize is not None else self.event_buffer_size,
            on_close=lambda sub: self.registry.remove_subscription(session_id, sub),
        )
        self.registry.add_subscription(session_id, subscription)
        logger.debug(f"Subscribed to {patterns} (session={session_id})")
        return subscription

    async def close(self) -> None:
        """Close the transport, fail pending calls and end all subscriptions."""
        if self._closed:
            return
        logger.info("Disconnecting CDP connection")
        await self._transport.close()

        if self._read_task is not None and not self._read_task.done():
            if self._read_task is not asyncio.current_task():
                self._read_task.cancel()
                try:
                    await self._read_task
                except asyncio.CancelledError:
                    pass

        self._terminate(None)
        logger.info("CDP connection closed")

    def close_session(self, session_id: str) -> List[SessionEntry]:
        """Close a child session and its descendants.

        Subscriptions of the closed sessions end and their in-flight
        commands fail with ``SessionClosedError``; a closed target never
        answers them. The connection stays open.
        """
        closed = self.registry.close_tree(session_id)
        closed_ids = {entry.session_id for entry in closed}
        for call in list(self._pending.values()):
            if call.session_id in closed_ids and not call.future.done():
                self._pending.pop(call.id, None)
                call.future.set_exception(
                    SessionClosedError(
                        f"Session closed during {call.method}",
                        session_id=call.session_id,
                    )
                )
        return closed

    def _closed_error(self, message: str) -> ConnectionClosedError:
        if isinstance(self._close_error, ConnectionLostError):
            return ConnectionLostError(message, cause=self._close_error.cause)
        return ConnectionClosedError(message)

    async def _read_loop(self) -> None:
        """Read frames in arrival order until the transport ends."""
        error: Optional[Exception] = None
        try:
            async for frame in self._transport.receive():
                self._handle_frame(frame)
        except ConnectionLostError as e:
            logger.warning(f"WebSocket connection closed: {e}")
            error = e
        except CDPConnectionError as e:
            logger.warning(f"WebSocket connection closed: {e}")
            error = ConnectionLostError(str(e), cause=e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Receive loop error: {e}", exc_info=True)
            error = ConnectionLostError(f"Receive loop error: {e}", cause=e)
        finally:
            self._terminate(error)

    def _handle_frame(self, frame: str) -> None:
        try:
            message = codec.decode(frame)
        except MalformedMessageError as e:
            log_with_context(
                logger, logging.WARNING, f"Dropping malformed CDP message: {e}",
                frame=e.frame,
            )
            if e.message_id is not None:
                call = self._pending.pop(e.message_id, None)
                if call is not None and not call.future.done():
                    call.future.set_exception(e)
            return

        try:
            if isinstance(message, Response):
                self._resolve(message)
            else:
                self._dispatch_event(message)
        except Exception as e:
            # one bad message must not stop the loop
            logger.error(f"Error processing message: {e}", exc_info=True)

    def _resolve(self, response: Response) -> None:
        call = self._pending.pop(response.id, None)
        if call is None or call.future.done():
            log_with_context(
                logger, logging.WARNING,
                f"Dropping response for unknown or completed command id {response.id}",
                id=response.id, session_id=response.session_id,
            )
            return

        if response.session_id != call.session_id:
            log_with_context(
                logger, logging.WARNING,
                f"Response {response.id} for {call.method} has mismatched session id",
                expected=call.session_id, actual=response.session_id,
            )

        if response.error is not None:
            call.future.set_exception(
                ProtocolError(
                    response.error.code,
                    response.error.message,
                    method=call.method,
                    data=response.error.data,
                )
            )
        else:
            call.future.set_result(response.result if response.result is not None else {})

    def _dispatch_event(self, event: Event) -> None:
        logger.debug(f"Received event: {event.method} (session={event.session_id})")
        entry = self.registry.get(event.session_id)
        if entry is not None and entry.is_open:
            for subscription in list(entry.subscriptions):
                if subscription.matches(event.method):
                    subscription._push(event)
        else:
            logger.debug(f"No open session {event.session_id} for {event.method}")

        if event.method == "Target.detachedFromTarget":
            detached_id = event.params.get("sessionId")
            if detached_id is not None and self.registry.is_open(detached_id):
                logger.info(f"Session {detached_id} detached by the browser")
                self.close_session(detached_id)

    def _terminate(self, error: Optional[Exception]) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_error = error

        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if not call.future.done():
                if error is not None:
                    exc: Exception = ConnectionLostError(
                        f"Connection lost during {call.method}",
                        cause=getattr(error, "cause", error),
                    )
                else:
                    exc = ConnectionClosedError(
                        f"Connection closed during {call.method}"
                    )
                call.future.set_exception(exc)

        self.registry.close_all(error)

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Close callback failed: {e}", exc_info=True)
