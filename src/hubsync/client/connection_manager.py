"""Connection lifecycle: endpoint racing, handshake, failure and retry.

The manager is the only writer of ``ConnectionStatus``. It is driven entirely
by transport callbacks and scheduler timers, never by awaiting, so every
transition happens on the event-loop thread in a well-defined order.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional, Union

from hubsync.client.command_queue import CommandQueue
from hubsync.client.config import ClientConfig
from hubsync.client.connection_state import (
    ConnectionFSM,
    ConnectionMode,
    ConnectionState,
    ConnectionStatus,
    backoff_delay,
)
from hubsync.client.endpoints import ServerCredentials, candidate_urls
from hubsync.client.prediction_ledger import PredictionLedger
from hubsync.client.transport import Socket, Transport
from hubsync.errors import IllegalTransition, ProtocolError
from hubsync.protocol.messages import (
    ErrorFrame,
    InitFrame,
    ReplyFrame,
    StoreDeltaFrame,
    parse_server_frame,
)
from hubsync.shared.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4401
CLOSE_REMOTE_FORBIDDEN = 4403


def _maybe_enable_debug_logger() -> bool:
    flag = (os.getenv("HUBSYNC_CLIENT_DEBUG") or "").lower()
    if flag not in ("1", "true", "yes", "on", "dbg", "debug"):
        return False
    has_local = any(getattr(h, "_hubsync_local", False) for h in logger.handlers)
    if not has_local:
        handler = logging.StreamHandler()
        fmt = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
        handler.setFormatter(logging.Formatter(fmt))
        handler.setLevel(logging.DEBUG)
        setattr(handler, "_hubsync_local", True)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return True


_CLIENT_DEBUG = _maybe_enable_debug_logger()


StatusListener = Callable[[ConnectionStatus], None]


class _Attempt:
    """Sockets opened for one connection attempt; events from older attempts are ignored."""

    __slots__ = ("generation", "sockets", "winner", "last_reason")

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self.sockets: List[Socket] = []
        self.winner: Optional[Socket] = None
        self.last_reason: Optional[str] = None


class _Listener:
    __slots__ = ("_manager", "_generation")

    def __init__(self, manager: "ConnectionManager", generation: int) -> None:
        self._manager = manager
        self._generation = generation

    def on_open(self, socket: Socket) -> None:
        self._manager._handle_open(self._generation, socket)

    def on_message(self, socket: Socket, text: Union[str, bytes]) -> None:
        self._manager._handle_message(self._generation, socket, text)

    def on_close(self, socket: Socket, code: int, reason: str) -> None:
        self._manager._handle_close(self._generation, socket, code, reason)


class ConnectionManager:
    """Owns the socket(s) to one server and the connection state machine."""

    def __init__(
        self,
        scheduler: Scheduler,
        ledger: PredictionLedger,
        queue: CommandQueue,
        transport: Transport,
        config: Optional[ClientConfig] = None,
        *,
        on_warning: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._scheduler = scheduler
        self._ledger = ledger
        self._queue = queue
        self._transport = transport
        self._config = config if config is not None else ClientConfig()
        self._on_warning = on_warning
        self._fsm = ConnectionFSM()
        self._listeners: List[StatusListener] = []
        self._credentials: Optional[ServerCredentials] = None
        self._urls: List[str] = []
        self._attempt: Optional[_Attempt] = None
        self._generation = 0
        self._connect_timer: Optional[TimerHandle] = None
        self._handshake_timer: Optional[TimerHandle] = None
        self._retry_timer: Optional[TimerHandle] = None
        self._version_warned = False
        self._server_version: Optional[int] = None
        queue.bind(on_timeout=self._handle_reply_timeout, on_stalling=self._handle_stalling)

    # ------------------------------------------------------------------
    @property
    def status(self) -> ConnectionStatus:
        return self._fsm.status

    @property
    def credentials(self) -> Optional[ServerCredentials]:
        return self._credentials

    @property
    def server_version(self) -> Optional[int]:
        return self._server_version

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    def connect(self, credentials: ServerCredentials, mode: ConnectionMode = ConnectionMode.ENABLED) -> None:
        """Start connecting to ``credentials``; replaces any current connection."""

        mode = ConnectionMode(mode)
        if mode is ConnectionMode.DISABLED:
            raise ValueError("use disable() to stop connecting")
        urls = candidate_urls(credentials, relay_domain=self._config.relay_domain, port=self._config.port)
        if self._fsm.state is not ConnectionState.IDLE:
            self._disconnect()
        self._credentials = credentials
        self._urls = urls
        self._update(mode=mode, attempts=0, last_error=None)
        logger.info("connecting to %s (mode=%s)", credentials.key, mode)
        self._start_attempt()

    def disable(self, reason: str = "Connection disabled") -> None:
        """Stop connecting and reject every outstanding command."""

        self._disconnect()
        self._queue.abandon(reason)
        self._update(mode=ConnectionMode.DISABLED)
        logger.info("connection disabled")

    # ------------------------------------------------------------------
    def _start_attempt(self) -> None:
        assert self._credentials is not None
        self._set_state(ConnectionState.CONNECTING)
        self._generation += 1
        attempt = _Attempt(self._generation)
        self._attempt = attempt
        urls = self._urls
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("attempt %d racing %d endpoint(s): %s", self._fsm.status.attempts, len(urls), urls)
        self._connect_timer = self._scheduler.call_later(
            self._config.connect_timeout_s, self._handle_connect_timeout, attempt.generation
        )
        listener = _Listener(self, attempt.generation)
        for url in urls:
            attempt.sockets.append(self._transport.open(url, listener))

    def _current(self, generation: int) -> Optional[_Attempt]:
        attempt = self._attempt
        if attempt is None or attempt.generation != generation:
            return None
        return attempt

    def _handle_open(self, generation: int, socket: Socket) -> None:
        attempt = self._current(generation)
        if attempt is None or attempt.winner is not None or self._fsm.state is not ConnectionState.CONNECTING:
            socket.close()
            return
        attempt.winner = socket
        for other in attempt.sockets:
            if other is not socket:
                other.close()
        attempt.sockets = [socket]
        self._cancel_timer("_connect_timer")
        logger.info("connected to %s; waiting for init", socket.url)
        self._set_state(ConnectionState.INITIALIZING)
        self._handshake_timer = self._scheduler.call_later(
            self._config.connect_timeout_s, self._handle_handshake_timeout, generation
        )

    def _handle_message(self, generation: int, socket: Socket, text: Union[str, bytes]) -> None:
        attempt = self._current(generation)
        if attempt is None or attempt.winner is not socket:
            logger.debug("ignoring message from stale socket %s", socket.url)
            return
        try:
            frame = parse_server_frame(text)
        except ProtocolError as exc:
            self._fail(f"Protocol error: {exc}")
            return
        if isinstance(frame, InitFrame):
            self._handle_init(socket, frame)
        elif isinstance(frame, StoreDeltaFrame):
            if self._fsm.state is not ConnectionState.CONNECTED:
                self._fail("Protocol error: store-delta before init")
                return
            self._ledger.apply_canonical(frame.delta)
        elif isinstance(frame, ReplyFrame):
            self._queue.handle_reply(frame.transaction_id, frame.result, frame.error)
        elif isinstance(frame, ErrorFrame):
            self._fail(frame.message)

    def _handle_init(self, socket: Socket, frame: InitFrame) -> None:
        if not self._fsm.can_transition(ConnectionState.CONNECTED):
            self._fail(f"Protocol error: {IllegalTransition(self._fsm.state, ConnectionState.CONNECTED)}")
            return
        version = frame.protocol_version
        self._server_version = version
        if version < self._config.min_protocol_version:
            self._fail(
                f"Server protocol version {version} is not supported "
                f"(need {self._config.min_protocol_version} or newer); please upgrade the server"
            )
            return
        if version < self._config.recommended_protocol_version and not self._version_warned:
            self._version_warned = True
            message = (
                f"Server protocol version {version} is older than the recommended "
                f"{self._config.recommended_protocol_version}; consider upgrading the server"
            )
            logger.warning(message)
            if self._on_warning is not None:
                self._on_warning(message)
        self._cancel_timer("_handshake_timer")
        self._ledger.replace_canonical(frame.snapshot)
        mode = self._fsm.status.mode
        if mode is ConnectionMode.TRY:
            mode = ConnectionMode.ENABLED
        self._fsm.update(attempts=0, last_error=None, mode=mode)
        self._set_state(ConnectionState.CONNECTED)
        logger.info("session initialized (protocol %d)", version)
        self._queue.attach_sender(socket.send)
        self._queue.flush()

    def _handle_close(self, generation: int, socket: Socket, code: int, reason: str) -> None:
        attempt = self._current(generation)
        if attempt is None:
            return
        if code == CLOSE_UNAUTHORIZED:
            self._fail("Invalid credentials", give_up=True)
            return
        if code == CLOSE_REMOTE_FORBIDDEN:
            self._fail("Remote access is not allowed for this user", give_up=True)
            return
        message = reason or f"Connection closed (code {code})"
        if attempt.winner is socket:
            self._fail(message)
            return
        if attempt.winner is None and socket in attempt.sockets:
            attempt.sockets.remove(socket)
            attempt.last_reason = message
            logger.debug("endpoint %s failed: %s", socket.url, message)
            if not attempt.sockets:
                self._fail(message)

    def _handle_connect_timeout(self, generation: int) -> None:
        self._connect_timer = None
        attempt = self._current(generation)
        if attempt is not None and self._fsm.state is ConnectionState.CONNECTING:
            self._fail(attempt.last_reason or "Connection timed out")

    def _handle_handshake_timeout(self, generation: int) -> None:
        self._handshake_timer = None
        if self._current(generation) is not None and self._fsm.state is ConnectionState.INITIALIZING:
            self._fail("Server did not send its initial state")

    def _handle_reply_timeout(self, transaction_id: int) -> None:
        if self._fsm.state is ConnectionState.CONNECTED:
            self._fail("Command timed out")

    def _handle_stalling(self, stalling: bool) -> None:
        self._update(stalling=stalling)

    # ------------------------------------------------------------------
    def _fail(self, reason: str, *, give_up: bool = False) -> None:
        status = self._fsm.status
        logger.warning("connection failure: %s (attempts=%d)", reason, status.attempts)
        self._disconnect()
        self._update(last_error=reason)
        if give_up or (status.mode is ConnectionMode.TRY and status.attempts >= 1):
            self._queue.abandon(reason)
            self._update(mode=ConnectionMode.DISABLED)
            return
        delay = backoff_delay(status.attempts, self._config.backoff_base_s, self._config.backoff_cap_s)
        self._set_state(ConnectionState.RECONNECTING)
        logger.info("reconnecting in %.1fs", delay)
        self._retry_timer = self._scheduler.call_later(delay, self._handle_retry)

    def _handle_retry(self) -> None:
        self._retry_timer = None
        if self._fsm.state is not ConnectionState.RECONNECTING:
            return
        self._update(attempts=self._fsm.status.attempts + 1)
        self._start_attempt()

    def _disconnect(self) -> None:
        """Tear down sockets and timers; in-flight commands wait for the next connection."""

        self._cancel_timer("_connect_timer")
        self._cancel_timer("_handshake_timer")
        self._cancel_timer("_retry_timer")
        attempt = self._attempt
        self._attempt = None
        if attempt is not None:
            for socket in attempt.sockets:
                socket.close()
        self._queue.detach_sender()
        self._queue.requeue_in_flight()
        if self._fsm.state is not ConnectionState.IDLE:
            self._fsm.force_idle()
            self._notify()

    def _cancel_timer(self, attr: str) -> None:
        timer = getattr(self, attr)
        setattr(self, attr, None)
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    def _set_state(self, target: ConnectionState) -> None:
        self._fsm.transition(target)
        self._notify()

    def _update(self, **changes: object) -> None:
        before = self._fsm.status
        after = self._fsm.update(**changes)
        if after != before:
            self._notify()

    def _notify(self) -> None:
        status = self._fsm.status
        for listener in tuple(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("connection status listener failed")


__all__ = [
    "CLOSE_REMOTE_FORBIDDEN",
    "CLOSE_UNAUTHORIZED",
    "ConnectionManager",
    "StatusListener",
]
