"""Exception hierarchy for CDP operations.

All CDP-related exceptions inherit from CDPError base class.
Provides structured error types for connection, session, command, and
message decoding failures.
"""

from typing import Any, Optional


class CDPError(Exception):
    """Base exception for all CDP-related errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class CDPConnectionError(CDPError):
    """WebSocket connection failures.

    Raised when establishing or maintaining CDP WebSocket connection fails.
    """

    pass


class ConnectionFailedError(CDPConnectionError):
    """Initial connection failed.

    Raised when WebSocket connection cannot be established.
    Common causes: wrong port, Chrome not running, network issues.
    """

    pass


class ConnectionClosedError(CDPConnectionError):
    """Operation attempted on a closed connection.

    Every command still waiting for a response fails with this error when
    the connection terminates.
    """

    pass


class ConnectionLostError(ConnectionClosedError):
    """Connection dropped abnormally.

    Raised when the underlying channel fails (Chrome crash, network
    interruption). The original exception is kept in ``cause``.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class SessionClosedError(CDPError):
    """Operation attempted on a detached or closed session."""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.session_id = session_id

    def __str__(self):
        if self.session_id:
            return f"{self.message} (session_id={self.session_id})"
        return super().__str__()


class CDPCommandError(CDPError):
    """Command execution failures."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        error_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.method = method
        self.error_code = error_code


class ProtocolError(CDPCommandError):
    """Chrome returned an error response for a command.

    Example: invalid JavaScript expression in Runtime.evaluate, unknown
    target id in Target.attachToTarget.
    """

    def __init__(
        self,
        code: int,
        message: str,
        method: Optional[str] = None,
        data: Any = None,
    ):
        super().__init__(message, method=method, error_code=code)
        self.code = code
        self.data = data

    def __str__(self):
        prefix = f"{self.method}: " if self.method else ""
        text = f"{prefix}{self.message} (code={self.code})"
        if self.data is not None:
            text += f" {self.data}"
        return text


class InvalidCommandError(CDPCommandError):
    """Malformed command.

    Raised when command is invalid before sending to Chrome.
    Example: empty method name, params that are not a JSON object.
    """

    pass


class CDPTimeoutError(CDPError):
    """Command timed out.

    Raised when CDP command does not receive response within timeout period.
    """

    def __init__(
        self,
        message: str,
        command_method: Optional[str] = None,
        timeout: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.command_method = command_method
        self.timeout = timeout

    def __str__(self):
        if self.command_method and self.timeout:
            return f"Command '{self.command_method}' timed out after {self.timeout}s"
        return self.message


class MalformedMessageError(CDPError):
    """Inbound frame could not be decoded.

    The dispatcher logs and drops such frames. When the frame is a response
    with a readable ``id`` (``message_id``), the command waiting for it fails
    with this error instead of waiting for a response that already came.
    """

    def __init__(
        self,
        message: str,
        frame: Optional[str] = None,
        details: Optional[dict] = None,
        message_id: Optional[int] = None,
    ):
        super().__init__(message, details)
        if frame is not None and len(frame) > 200:
            frame = frame[:200] + "..."
        self.frame = frame
        self.message_id = message_id


class AttachFailedError(CDPError):
    """Attaching to a target failed.

    The target does not exist, Chrome refused the attachment, or the attach
    command timed out.
    """

    def __init__(
        self,
        message: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id

    def __str__(self):
        if self.target_id:
            return f"{self.message} (target_id={self.target_id})"
        return super().__str__()


class CDPTargetNotFoundError(CDPError):
    """Target discovery failures.

    Raised when requested Chrome target cannot be found.
    Example: no page target matching URL filter, invalid target ID.
    """

    def __init__(
        self,
        message: str,
        target_id: Optional[str] = None,
        url_pattern: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.url_pattern = url_pattern

    def __str__(self):
        if self.target_id:
            return f"Target not found: {self.target_id}"
        if self.url_pattern:
            return f"No target matching URL pattern: {self.url_pattern}"
        return self.message
