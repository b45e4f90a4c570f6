"""``SyncClient``: the one object an application holds to talk to a server.

It wires the prediction ledger, command queue, connection manager and
persistence together. There is no module-level instance; create one per
server connection you need (tests create several side by side).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from hubsync.client.command_queue import CommandQueue
from hubsync.client.config import ClientConfig
from hubsync.client.connection_manager import ConnectionManager, StatusListener
from hubsync.client.connection_state import ConnectionMode, ConnectionStatus
from hubsync.client.endpoints import ServerCredentials
from hubsync.client.persistence import DebouncedSaver, Storage, decode_servers, decode_state
from hubsync.client.prediction_ledger import MutateFn, PredictionHandle, PredictionLedger
from hubsync.client.state_view import ChangeHub, ReadOnlyMapping, StateChange, Subscriber
from hubsync.client.transport import Transport, WebsocketTransport
from hubsync.protocol.commands import Command
from hubsync.shared.scheduler import LoopScheduler, Scheduler

logger = logging.getLogger(__name__)

_PERSISTED_ORIGINS = ("canonical", "snapshot")


class SyncClient:
    """Live, optimistically updated copy of one server's state."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        transport: Optional[Transport] = None,
        storage: Optional[Storage] = None,
        on_warning: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config if config is not None else ClientConfig()
        self.scheduler: Scheduler = scheduler if scheduler is not None else LoopScheduler()
        self.hub = ChangeHub()
        self.ledger = PredictionLedger(
            self.scheduler, default_linger_s=self.config.default_linger_s, hub=self.hub
        )
        self.queue = CommandQueue(
            self.scheduler,
            self.ledger,
            reply_timeout_s=self.config.reply_timeout_s,
            stalling_s=self.config.stalling_s,
            default_linger_s=self.config.default_linger_s,
        )
        self.connection = ConnectionManager(
            self.scheduler,
            self.ledger,
            self.queue,
            transport if transport is not None else WebsocketTransport(),
            self.config,
            on_warning=on_warning,
        )
        self._servers: List[ServerCredentials] = []
        self._storage = storage
        self._saver: Optional[DebouncedSaver] = None
        if storage is not None:
            self._restore(storage)
            self._saver = DebouncedSaver(
                self.scheduler, storage, self._persisted_document, delay_s=self.config.persist_debounce_s
            )
            self.hub.subscribe_all(self._on_state_change)

    # ------------------------------------------------------------------
    @property
    def state(self) -> ReadOnlyMapping:
        """Canonical state with live predictions on top, read-only."""

        return self.ledger.view

    @property
    def status(self) -> ConnectionStatus:
        return self.connection.status

    @property
    def servers(self) -> Tuple[ServerCredentials, ...]:
        return tuple(self._servers)

    def subscribe(self, prefix: Sequence[str], callback: Subscriber) -> Callable[[], None]:
        return self.hub.subscribe(prefix, callback)

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        return self.hub.subscribe_all(callback)

    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        return self.connection.subscribe(listener)

    # ------------------------------------------------------------------
    def send(
        self,
        command: Command,
        predict: Optional[MutateFn] = None,
        *,
        linger_s: Optional[float] = None,
    ) -> "asyncio.Future[Any]":
        """Queue ``command``; ``predict`` shows its expected effect right away."""

        if linger_s is None:
            linger_s = self._linger_for(command)
        prediction: Optional[PredictionHandle] = None
        if predict is not None:
            prediction = self.ledger.predict(command.prediction_target(), predict, linger_s=linger_s)
        return self.queue.enqueue(command, prediction=prediction, linger_s=linger_s)

    def predict(self, target: str, mutate_fn: MutateFn, *, linger_s: Optional[float] = None) -> PredictionHandle:
        """A purely local prediction not tied to any command."""

        return self.ledger.predict(target, mutate_fn, linger_s=linger_s)

    def _linger_for(self, command: Command) -> float:
        linger = self.config.default_linger_s
        transition = getattr(command, "transition", None)
        if transition:
            linger += float(transition)
        return linger

    # ------------------------------------------------------------------
    def add_server(self, credentials: ServerCredentials, *, connect: bool = True) -> None:
        """Remember ``credentials`` as the preferred server and try it once."""

        self._servers = [credentials] + [s for s in self._servers if s.key != credentials.key]
        self._request_save()
        if connect:
            self.connection.connect(credentials, ConnectionMode.TRY)

    def remove_server(self, key: str) -> bool:
        before = len(self._servers)
        self._servers = [s for s in self._servers if s.key != key]
        removed = len(self._servers) != before
        if removed:
            current = self.connection.credentials
            if current is not None and current.key == key:
                self.connection.disable("Server removed")
            self._request_save()
        return removed

    def connect(self, credentials: Optional[ServerCredentials] = None) -> None:
        if credentials is None:
            if not self._servers:
                raise ValueError("no server configured")
            credentials = self._servers[0]
        self.connection.connect(credentials, ConnectionMode.ENABLED)

    def disable(self) -> None:
        self.connection.disable()

    def close(self) -> None:
        """Disable the connection and write any pending persistence."""

        self.connection.disable("Client closed")
        if self._saver is not None and self._saver.scheduled:
            self._saver.flush()

    # ------------------------------------------------------------------
    def _restore(self, storage: Storage) -> None:
        data = storage.load()
        self._servers = decode_servers(data)
        state = decode_state(data)
        if state:
            self.ledger.replace_canonical(state)
            logger.info("restored cached state (%d top-level keys)", len(state))

    def _persisted_document(self) -> Dict[str, Any]:
        return {
            "state": self.ledger.canonical_snapshot(),
            "servers": [server.to_dict() for server in self._servers],
        }

    def _on_state_change(self, change: StateChange) -> None:
        if change.origin in _PERSISTED_ORIGINS:
            self._request_save()

    def _request_save(self) -> None:
        if self._saver is not None:
            self._saver.request()


__all__ = ["SyncClient"]
