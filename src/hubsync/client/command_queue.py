"""Outbound command queue with reply correlation and replay after reconnect."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from itertools import count
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from hubsync.client.prediction_ledger import PredictionHandle, PredictionLedger
from hubsync.errors import CommandError, ConnectionLost
from hubsync.protocol.commands import Command
from hubsync.protocol.messages import CommandRequest, encode_frame
from hubsync.shared.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


Sender = Callable[[str], bool]


@dataclass(eq=False)
class PendingCommand:
    command: Command
    future: "asyncio.Future[Any]"
    prediction: Optional[PredictionHandle]
    linger_s: float
    transaction_id: Optional[int] = None
    sent_at: Optional[float] = None
    timeout_timer: Optional[TimerHandle] = None

    def cancel_timer(self) -> None:
        timer = self.timeout_timer
        self.timeout_timer = None
        if timer is not None:
            timer.cancel()


class CommandQueue:
    """Keeps every command until the server acknowledges it.

    Commands wait in ``pending`` until a sender is attached. ``flush`` gives
    each one the next transaction id and moves it to the in-flight map, where
    it stays until ``handle_reply`` or a disconnect. After a disconnect the
    in-flight entries go back to the front of ``pending`` in their original
    order and get fresh ids on the next flush.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        ledger: PredictionLedger,
        *,
        reply_timeout_s: float = 7.0,
        stalling_s: float = 0.5,
        default_linger_s: float = 2.0,
        on_timeout: Optional[Callable[[int], None]] = None,
        on_stalling: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._scheduler = scheduler
        self._ledger = ledger
        self._reply_timeout_s = float(reply_timeout_s)
        self._stalling_s = float(stalling_s)
        self._default_linger_s = float(default_linger_s)
        self._on_timeout = on_timeout
        self._on_stalling = on_stalling
        self._pending: Deque[PendingCommand] = deque()
        self._in_flight: Dict[int, PendingCommand] = {}
        self._ids = count(1)
        self._sender: Optional[Sender] = None
        self._stalling = False
        self._stall_timer: Optional[TimerHandle] = None

    # ------------------------------------------------------------------
    @property
    def stalling(self) -> bool:
        return self._stalling

    @property
    def has_outstanding(self) -> bool:
        return bool(self._pending or self._in_flight)

    @property
    def attached(self) -> bool:
        return self._sender is not None

    def pending_commands(self) -> Tuple[PendingCommand, ...]:
        return tuple(self._pending)

    def in_flight_ids(self) -> Tuple[int, ...]:
        return tuple(self._in_flight.keys())

    # ------------------------------------------------------------------
    def enqueue(
        self,
        command: Command,
        *,
        prediction: Optional[PredictionHandle] = None,
        linger_s: Optional[float] = None,
    ) -> "asyncio.Future[Any]":
        was_idle = not self.has_outstanding
        entry = PendingCommand(
            command=command,
            future=self._scheduler.create_future(),
            prediction=prediction,
            linger_s=self._default_linger_s if linger_s is None else float(linger_s),
        )
        self._pending.append(entry)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "command enqueued: %s pending=%d in_flight=%d",
                command.name,
                len(self._pending),
                len(self._in_flight),
            )
        if was_idle:
            self._arm_stall_timer()
        if self._sender is not None:
            self.flush()
        return entry.future

    def bind(
        self,
        *,
        on_timeout: Optional[Callable[[int], None]] = None,
        on_stalling: Optional[Callable[[bool], None]] = None,
    ) -> None:
        """Install the connection-level callbacks after construction."""

        if on_timeout is not None:
            self._on_timeout = on_timeout
        if on_stalling is not None:
            self._on_stalling = on_stalling

    def attach_sender(self, sender: Sender) -> None:
        self._sender = sender

    def detach_sender(self) -> None:
        self._sender = None

    def flush(self) -> int:
        """Send every pending command through the attached sender."""

        sender = self._sender
        if sender is None:
            return 0
        sent = 0
        while self._pending:
            entry = self._pending[0]
            transaction_id = next(self._ids)
            request = CommandRequest(transaction_id, entry.command.name, entry.command.to_args())
            text = encode_frame(request)
            if not sender(text):
                logger.debug("command flush stopped: sender not ready (pending=%d)", len(self._pending))
                break
            self._pending.popleft()
            entry.transaction_id = transaction_id
            entry.sent_at = self._scheduler.time()
            entry.timeout_timer = self._scheduler.call_later(
                self._reply_timeout_s, self._handle_timeout, transaction_id
            )
            self._in_flight[transaction_id] = entry
            sent += 1
        if sent and logger.isEnabledFor(logging.DEBUG):
            logger.debug("command flush: sent=%d in_flight=%s", sent, list(self._in_flight))
        return sent

    def handle_reply(self, transaction_id: int, result: Any = None, error: Optional[str] = None) -> bool:
        entry = self._in_flight.pop(transaction_id, None)
        if entry is None:
            logger.warning("reply for unknown transaction id %s ignored", transaction_id)
            return False
        entry.cancel_timer()
        if error:
            logger.info("command %s (id=%d) failed: %s", entry.command.name, transaction_id, error)
            if entry.prediction is not None:
                self._ledger.expire_after(entry.prediction, 0)
            if not entry.future.done():
                entry.future.set_exception(CommandError(str(error), command=entry.command.name))
        else:
            if entry.prediction is not None:
                self._ledger.expire_after(entry.prediction, entry.linger_s)
            if not entry.future.done():
                try:
                    value = entry.command.decode_result(result)
                except Exception as exc:
                    entry.future.set_exception(exc)
                else:
                    entry.future.set_result(value)
        self._settle_stalling()
        return True

    def requeue_in_flight(self) -> int:
        """Move in-flight commands back to the front of the pending queue."""

        entries = [self._in_flight[key] for key in sorted(self._in_flight)]
        self._in_flight.clear()
        for entry in entries:
            entry.cancel_timer()
            entry.transaction_id = None
            entry.sent_at = None
        self._pending.extendleft(reversed(entries))
        if entries:
            logger.info("requeued %d in-flight command(s) for replay", len(entries))
        return len(entries)

    def abandon(self, reason: str) -> int:
        """Reject every outstanding command with ``ConnectionLost``."""

        entries: List[PendingCommand] = [self._in_flight[key] for key in sorted(self._in_flight)]
        entries.extend(self._pending)
        self._in_flight.clear()
        self._pending.clear()
        for entry in entries:
            entry.cancel_timer()
            if entry.prediction is not None:
                self._ledger.rollback(entry.prediction)
            if not entry.future.done():
                entry.future.set_exception(ConnectionLost(reason))
        if entries:
            logger.info("abandoned %d command(s): %s", len(entries), reason)
        self._settle_stalling()
        return len(entries)

    # ------------------------------------------------------------------
    def _handle_timeout(self, transaction_id: int) -> None:
        entry = self._in_flight.get(transaction_id)
        if entry is None:
            return
        entry.timeout_timer = None
        logger.warning("command %s (id=%d) timed out", entry.command.name, transaction_id)
        if self._on_timeout is not None:
            self._on_timeout(transaction_id)

    def _arm_stall_timer(self) -> None:
        if self._stall_timer is not None:
            self._stall_timer.cancel()
        self._stall_timer = self._scheduler.call_later(self._stalling_s, self._check_stalling)

    def _check_stalling(self) -> None:
        self._stall_timer = None
        self._set_stalling(self.has_outstanding)

    def _settle_stalling(self) -> None:
        if self.has_outstanding:
            return
        if self._stall_timer is not None:
            self._stall_timer.cancel()
            self._stall_timer = None
        self._set_stalling(False)

    def _set_stalling(self, value: bool) -> None:
        if value == self._stalling:
            return
        self._stalling = value
        logger.debug("stalling=%s", value)
        if self._on_stalling is not None:
            self._on_stalling(value)


__all__ = ["CommandQueue", "PendingCommand", "Sender"]
