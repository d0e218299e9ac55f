"""Wire codec for CDP messages.

Outbound commands are encoded from an ``Envelope``; inbound frames decode to
either a ``Response`` (correlated by id) or an ``Event`` (identified by
method name). Unknown fields are ignored so newer protocol revisions keep
decoding.

Wire shapes:
    command:  {"id": 1, "sessionId": "S"?, "method": "Domain.cmd", "params": {...}?}
    success:  {"id": 1, "sessionId": "S"?, "result": {...}}
    failure:  {"id": 1, "sessionId": "S"?, "error": {"code": -32000, "message": "..."}}
    event:    {"method": "Domain.evt", "sessionId": "S"?, "params": {...}}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .exceptions import MalformedMessageError


@dataclass(frozen=True)
class Envelope:
    """Outbound command invocation."""

    id: int
    method: str
    params: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorPayload:
    """The ``error`` object of a failed command response."""

    code: int
    message: str
    data: Any = None


@dataclass(frozen=True)
class Response:
    """Inbound command response, either ``result`` or ``error`` is set."""

    id: int
    session_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[ErrorPayload] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Event:
    """Inbound event notification."""

    method: str
    session_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def domain(self) -> str:
        return self.method.split(".", 1)[0]


DecodedMessage = Union[Response, Event]


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to a JSON text frame.

    ``sessionId`` is omitted for the root session and ``params`` is omitted
    when empty.
    """
    message: Dict[str, Any] = {"id": envelope.id}
    if envelope.session_id is not None:
        message["sessionId"] = envelope.session_id
    message["method"] = envelope.method
    if envelope.params:
        message["params"] = envelope.params
    return json.dumps(message)


def decode(text: Union[str, bytes]) -> DecodedMessage:
    """Decode an inbound text frame.

    Raises:
        MalformedMessageError: If the frame is not a JSON object or has
            neither an ``id`` nor a ``method``
    """
    frame = text.decode("utf-8", errors="replace") if isinstance(text, bytes) else text
    try:
        data = json.loads(frame)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedMessageError(f"Frame is not valid JSON: {e}", frame=frame) from e

    if not isinstance(data, dict):
        raise MalformedMessageError("Frame is not a JSON object", frame=frame)

    session_id = data.get("sessionId")
    if session_id is not None and not isinstance(session_id, str):
        raise MalformedMessageError("sessionId must be a string", frame=frame)

    if "id" in data:
        return _decode_response(data, session_id, frame)
    if "method" in data:
        return _decode_event(data, session_id, frame)

    raise MalformedMessageError("Frame has neither 'id' nor 'method'", frame=frame)


def _decode_response(data: dict, session_id: Optional[str], frame: str) -> Response:
    msg_id = data["id"]
    # bool is an int subclass
    if not isinstance(msg_id, int) or isinstance(msg_id, bool):
        raise MalformedMessageError("Response id must be an integer", frame=frame)

    if "error" in data:
        error = data["error"]
        if not isinstance(error, dict):
            raise MalformedMessageError(
                "Response error must be an object", frame=frame, message_id=msg_id
            )
        code = error.get("code", 0)
        if not isinstance(code, int) or isinstance(code, bool):
            raise MalformedMessageError(
                "Error code must be an integer", frame=frame, message_id=msg_id
            )
        return Response(
            id=msg_id,
            session_id=session_id,
            error=ErrorPayload(
                code=code,
                message=str(error.get("message", "Unknown CDP error")),
                data=error.get("data"),
            ),
        )

    result = data.get("result", {})
    if not isinstance(result, dict):
        raise MalformedMessageError(
            "Response result must be an object", frame=frame, message_id=msg_id
        )
    return Response(id=msg_id, session_id=session_id, result=result)


def _decode_event(data: dict, session_id: Optional[str], frame: str) -> Event:
    method = data["method"]
    if not isinstance(method, str) or not method:
        raise MalformedMessageError("Event method must be a non-empty string", frame=frame)
    params = data.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise MalformedMessageError("Event params must be an object", frame=frame)
    return Event(method=method, session_id=session_id, params=params)
