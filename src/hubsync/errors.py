"""Exception hierarchy shared by the client and server halves."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for every error raised by hubsync."""


class ConnectionLost(SyncError):
    """Raised into command futures when the connection is abandoned."""


class CommandError(SyncError):
    """The server answered a command with an error message."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.message = str(message)
        self.command = command


class ProtocolError(SyncError):
    """A frame could not be decoded or the peer speaks an unsupported version."""


class UnknownCommand(ProtocolError):
    """A request named a command kind outside the closed command set."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown command '{name}'")
        self.name = name


class IllegalTransition(SyncError):
    """The connection state machine was asked for a transition it does not allow."""

    def __init__(self, current: object, requested: object) -> None:
        super().__init__(f"illegal connection transition {current} -> {requested}")
        self.current = current
        self.requested = requested


__all__ = [
    "CommandError",
    "ConnectionLost",
    "IllegalTransition",
    "ProtocolError",
    "SyncError",
    "UnknownCommand",
]
