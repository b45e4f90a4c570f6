"""Wire frames exchanged on the state channel.

Every frame is a JSON array:

* client -> server request: ``[transaction_id, command, *args]``
* ``["init", protocol_version, snapshot]`` once per connection
* ``["store-delta", delta]`` whenever canonical state changes
* ``["reply", transaction_id, result?, error?]``
* ``["error", message]`` to force-fail the connection
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from numbers import Integral
from typing import Any, Dict, List, Optional, Sequence, Union

from hubsync.errors import ProtocolError

INIT_TYPE = "init"
STORE_DELTA_TYPE = "store-delta"
REPLY_TYPE = "reply"
ERROR_TYPE = "error"

PROTOCOL_VERSION = 2


def _is_int(value: Any) -> bool:
    return isinstance(value, Integral) and not isinstance(value, bool)


@dataclass(slots=True)
class CommandRequest:
    transaction_id: int
    command: str
    args: List[Any] = field(default_factory=list)

    def to_wire(self) -> List[Any]:
        return [int(self.transaction_id), self.command, *self.args]

    @classmethod
    def from_wire(cls, data: Sequence[Any]) -> "CommandRequest":
        if not isinstance(data, list) or len(data) < 2:
            raise ProtocolError("request must be [transaction_id, command, ...args]")
        transaction_id, command = data[0], data[1]
        if not _is_int(transaction_id):
            raise ProtocolError("request transaction id must be an integer")
        if not isinstance(command, str) or not command:
            raise ProtocolError("request command must be a non-empty string")
        return cls(transaction_id=int(transaction_id), command=command, args=list(data[2:]))


@dataclass(slots=True)
class InitFrame:
    protocol_version: int
    snapshot: Dict[str, Any]

    def to_wire(self) -> List[Any]:
        return [INIT_TYPE, int(self.protocol_version), self.snapshot]


@dataclass(slots=True)
class StoreDeltaFrame:
    delta: Dict[str, Any]

    def to_wire(self) -> List[Any]:
        return [STORE_DELTA_TYPE, self.delta]


@dataclass(slots=True)
class ReplyFrame:
    transaction_id: int
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.error

    def to_wire(self) -> List[Any]:
        if self.error:
            return [REPLY_TYPE, int(self.transaction_id), None, str(self.error)]
        if self.result is not None:
            return [REPLY_TYPE, int(self.transaction_id), self.result]
        return [REPLY_TYPE, int(self.transaction_id)]


@dataclass(slots=True)
class ErrorFrame:
    message: str

    def to_wire(self) -> List[Any]:
        return [ERROR_TYPE, str(self.message)]


ServerFrame = Union[InitFrame, StoreDeltaFrame, ReplyFrame, ErrorFrame]


def encode_frame(frame: Union[ServerFrame, CommandRequest]) -> str:
    """Serialize a frame; non-JSON values raise ``TypeError``."""

    return json.dumps(frame.to_wire(), separators=(",", ":"), allow_nan=False)


def _load(text: Union[str, bytes]) -> Any:
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame was not UTF-8") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"frame is not valid JSON: {exc.msg}") from exc


def parse_server_frame(text: Union[str, bytes]) -> ServerFrame:
    data = _load(text)
    if not isinstance(data, list) or not data or not isinstance(data[0], str):
        raise ProtocolError("server frame must be a JSON array starting with its type")
    kind = data[0]
    if kind == INIT_TYPE:
        if len(data) < 3 or not _is_int(data[1]) or not isinstance(data[2], dict):
            raise ProtocolError("init frame must be ['init', version, snapshot]")
        return InitFrame(protocol_version=int(data[1]), snapshot=data[2])
    if kind == STORE_DELTA_TYPE:
        if len(data) < 2 or not isinstance(data[1], dict):
            raise ProtocolError("store-delta frame must carry an object")
        return StoreDeltaFrame(delta=data[1])
    if kind == REPLY_TYPE:
        if len(data) < 2 or not _is_int(data[1]):
            raise ProtocolError("reply frame must carry an integer transaction id")
        result = data[2] if len(data) > 2 else None
        error = data[3] if len(data) > 3 else None
        return ReplyFrame(transaction_id=int(data[1]), result=result, error=str(error) if error else None)
    if kind == ERROR_TYPE:
        message = data[1] if len(data) > 1 else "server error"
        return ErrorFrame(message=str(message))
    raise ProtocolError(f"unknown server frame type '{kind}'")


def parse_request(text: Union[str, bytes]) -> CommandRequest:
    return CommandRequest.from_wire(_load(text))


__all__ = [
    "CommandRequest",
    "ERROR_TYPE",
    "ErrorFrame",
    "INIT_TYPE",
    "InitFrame",
    "PROTOCOL_VERSION",
    "REPLY_TYPE",
    "ReplyFrame",
    "STORE_DELTA_TYPE",
    "ServerFrame",
    "StoreDeltaFrame",
    "encode_frame",
    "parse_request",
    "parse_server_frame",
]
