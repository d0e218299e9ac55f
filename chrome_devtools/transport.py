"""WebSocket transport to the Chrome debugger endpoint.

A transport owns one physical connection. It sends text frames, exposes the
inbound frames as an async iterator, and can be closed any number of times.
"""

import logging
from typing import AsyncIterator, Optional, Protocol

try:
    import websockets
    from websockets.exceptions import ConnectionClosed, ConnectionClosedOK
except ImportError:
    raise ImportError(
        "websockets library not found. Install with: pip3 install websockets"
    )

from .exceptions import ConnectionClosedError, ConnectionFailedError, ConnectionLostError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 2_097_152  # 2MB, large DOM snapshots


class Transport(Protocol):
    """Bidirectional text-frame channel used by the dispatcher."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, text: str) -> None: ...

    def receive(self) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """Transport backed by a ``websockets`` client connection.

    Usage:
        transport = await WebSocketTransport.connect(ws_url)
        await transport.send('{"id": 1, "method": "Browser.getVersion"}')
        async for frame in transport.receive():
            ...
        await transport.close()
    """

    def __init__(self, ws, ws_url: Optional[str] = None):
        self._ws = ws
        self.ws_url = ws_url
        self._closed = False

    @classmethod
    async def connect(
        cls,
        ws_url: str,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        open_timeout: Optional[float] = 10.0,
    ) -> "WebSocketTransport":
        """Open a WebSocket connection to ``ws_url``.

        Raises:
            ValueError: If ``ws_url`` is not a ws:// or wss:// URL
            ConnectionFailedError: If the handshake fails
        """
        if not ws_url.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URL: {ws_url}")

        logger.info(f"Connecting to {ws_url}")
        try:
            ws = await websockets.connect(
                ws_url,
                max_size=max_size,
                open_timeout=open_timeout,
                ping_interval=None,
            )
        except Exception as e:
            raise ConnectionFailedError(
                f"Failed to connect to {ws_url}: {e}",
                details={"url": ws_url, "error": str(e)},
            ) from e
        logger.info("CDP connection established")
        return cls(ws, ws_url)

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        state = getattr(self._ws, "state", None)
        if state is None:
            return True
        return state.name == "OPEN"

    async def send(self, text: str) -> None:
        """Send one text frame.

        Raises:
            ConnectionClosedError: If the connection is no longer open
        """
        if self._closed:
            raise ConnectionClosedError("Cannot send: connection closed")
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise ConnectionClosedError(f"Cannot send: connection closed ({e})") from e

    async def receive(self) -> AsyncIterator[str]:
        """Yield inbound text frames until the connection closes.

        Normal closure ends the iteration; abnormal closure raises
        ``ConnectionLostError``.
        """
        try:
            async for frame in self._ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8", errors="replace")
                yield frame
        except ConnectionClosedOK:
            return
        except ConnectionClosed as e:
            if self._closed:
                return
            raise ConnectionLostError(f"WebSocket connection lost: {e}", cause=e) from e
        except OSError as e:
            raise ConnectionLostError(f"WebSocket connection lost: {e}", cause=e) from e

    async def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except Exception as e:
            logger.warning(f"Error closing WebSocket: {e}")
