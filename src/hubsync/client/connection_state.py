"""Connection lifecycle states, the legal transitions between them and retry backoff."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Optional

from hubsync.errors import IllegalTransition

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"

    def __str__(self) -> str:
        return self.value


class ConnectionMode(str, enum.Enum):
    ENABLED = "enabled"
    TRY = "try"
    DISABLED = "disabled"

    def __str__(self) -> str:
        return self.value


TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING, ConnectionState.RECONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.INITIALIZING, ConnectionState.RECONNECTING, ConnectionState.IDLE}
    ),
    ConnectionState.INITIALIZING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.RECONNECTING, ConnectionState.IDLE}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.RECONNECTING, ConnectionState.IDLE}),
    ConnectionState.RECONNECTING: frozenset({ConnectionState.CONNECTING, ConnectionState.IDLE}),
}


@dataclass(frozen=True)
class ConnectionStatus:
    """Snapshot of the connection as observed by status listeners."""

    state: ConnectionState = ConnectionState.IDLE
    mode: ConnectionMode = ConnectionMode.DISABLED
    attempts: int = 0
    last_error: Optional[str] = None
    stalling: bool = False

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


def backoff_delay(attempts: int, base_s: float = 0.5, cap_s: float = 16.0) -> float:
    """Exponential retry delay: ``min(base * 2**attempts, cap)``."""

    if attempts < 0:
        raise ValueError("attempts must be >= 0")
    # 2**attempts grows without bound; stop doubling once past the cap.
    if attempts >= 64:
        return float(cap_s)
    return float(min(base_s * (2 ** attempts), cap_s))


class ConnectionFSM:
    """Holds the current ``ConnectionStatus`` and enforces legal transitions."""

    def __init__(self, status: Optional[ConnectionStatus] = None) -> None:
        self._status = status if status is not None else ConnectionStatus()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def state(self) -> ConnectionState:
        return self._status.state

    def can_transition(self, target: ConnectionState) -> bool:
        return target in TRANSITIONS[self._status.state]

    def transition(self, target: ConnectionState) -> ConnectionStatus:
        current = self._status.state
        if target not in TRANSITIONS[current]:
            raise IllegalTransition(current, target)
        logger.debug("connection %s -> %s", current, target)
        self._status = replace(self._status, state=target)
        return self._status

    def force_idle(self) -> ConnectionStatus:
        """Drop to idle from any state; used by the internal disconnect."""

        if self._status.state is not ConnectionState.IDLE:
            logger.debug("connection %s -> idle (forced)", self._status.state)
            self._status = replace(self._status, state=ConnectionState.IDLE)
        return self._status

    def update(self, **changes: object) -> ConnectionStatus:
        """Change non-state fields (attempts, mode, last_error, stalling)."""

        if "state" in changes:
            raise ValueError("use transition() to change the connection state")
        self._status = replace(self._status, **changes)  # type: ignore[arg-type]
        return self._status


__all__ = [
    "ConnectionFSM",
    "ConnectionMode",
    "ConnectionState",
    "ConnectionStatus",
    "TRANSITIONS",
    "backoff_delay",
]
