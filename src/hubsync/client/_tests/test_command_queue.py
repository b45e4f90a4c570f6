from __future__ import annotations

import json

import pytest

from hubsync.client.command_queue import CommandQueue
from hubsync.client.prediction_ledger import PredictionLedger
from hubsync.errors import CommandError, ConnectionLost
from hubsync.protocol.commands import LightSet, LightState, PermitJoin, SetRemoteAccess
from hubsync.shared.scheduler import ManualScheduler


class _FakeSender:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.frames: list[list] = []

    def __call__(self, text: str) -> bool:
        if not self.accept:
            return False
        self.frames.append(json.loads(text))
        return True


def _setup(**kwargs):
    sched = ManualScheduler()
    ledger = PredictionLedger(sched, initial={"lights": {"0x01": {"lightState": {"on": False}}}})
    queue = CommandQueue(sched, ledger, **kwargs)
    return sched, ledger, queue


def _light(ieee: str, on: bool) -> LightSet:
    return LightSet(ieee, LightState(on=on))


def test_commands_wait_until_sender_attached() -> None:
    _, _, queue = _setup()
    fut = queue.enqueue(_light("0x01", True))
    assert not fut.done()
    assert len(queue.pending_commands()) == 1

    sender = _FakeSender()
    queue.attach_sender(sender)
    assert queue.flush() == 1
    assert sender.frames == [[1, "light.set", "0x01", {"on": True}]]
    assert queue.in_flight_ids() == (1,)

    queue.enqueue(PermitJoin(True))
    assert sender.frames[-1] == [2, "bridge.permit_join", True]


def test_rejecting_sender_stops_flush_without_losing_commands() -> None:
    _, _, queue = _setup()
    sender = _FakeSender(accept=False)
    queue.attach_sender(sender)
    queue.enqueue(_light("0x01", True))
    queue.enqueue(_light("0x02", True))
    assert queue.in_flight_ids() == ()
    assert len(queue.pending_commands()) == 2

    sender.accept = True
    assert queue.flush() == 2
    assert [frame[2] for frame in sender.frames] == ["0x01", "0x02"]


def test_success_reply_resolves_and_lingers_prediction() -> None:
    sched, ledger, queue = _setup()
    queue.attach_sender(_FakeSender())
    handle = ledger.predict("light:0x01", lambda tree: tree["lights"]["0x01"]["lightState"].__setitem__("on", True))
    fut = queue.enqueue(_light("0x01", True), prediction=handle, linger_s=1.0)

    assert queue.handle_reply(1)
    assert fut.result() is None
    assert ledger.is_live(handle)
    sched.advance(1.0)
    assert not ledger.is_live(handle)
    assert not queue.has_outstanding


def test_error_reply_rejects_and_rolls_back_at_once() -> None:
    _, ledger, queue = _setup()
    queue.attach_sender(_FakeSender())
    handle = ledger.predict("light:0x01", lambda tree: tree["lights"]["0x01"]["lightState"].__setitem__("on", True))
    fut = queue.enqueue(_light("0x01", True), prediction=handle)

    queue.handle_reply(1, error="Permission denied")
    assert not ledger.is_live(handle)
    assert ledger.view.lookup("lights", "0x01", "lightState", "on") is False
    with pytest.raises(CommandError) as info:
        fut.result()
    assert info.value.message == "Permission denied"
    assert info.value.command == "light.set"


def test_result_is_decoded_by_command_kind() -> None:
    _, _, queue = _setup()
    queue.attach_sender(_FakeSender())
    fut = queue.enqueue(SetRemoteAccess(True))
    queue.handle_reply(1, result={"allowRemote": False})
    assert fut.result() is False


def test_unknown_reply_is_ignored() -> None:
    _, _, queue = _setup()
    assert not queue.handle_reply(42)


def test_replay_after_disconnect_keeps_order_with_fresh_ids() -> None:
    _, _, queue = _setup()
    first = _FakeSender()
    queue.attach_sender(first)
    futures = [queue.enqueue(_light(ieee, True)) for ieee in ("c1", "c2")]
    queue.detach_sender()
    futures.append(queue.enqueue(_light("c3", True)))

    assert queue.requeue_in_flight() == 2
    assert [entry.command.ieee for entry in queue.pending_commands()] == ["c1", "c2", "c3"]

    second = _FakeSender()
    queue.attach_sender(second)
    queue.flush()
    assert [frame[2] for frame in second.frames] == ["c1", "c2", "c3"]
    assert [frame[0] for frame in second.frames] == [3, 4, 5]

    for transaction_id in (3, 4, 5):
        queue.handle_reply(transaction_id)
    assert all(fut.done() and fut.result() is None for fut in futures)


def test_abandon_rejects_everything_and_rolls_back() -> None:
    _, ledger, queue = _setup()
    queue.attach_sender(_FakeSender())
    handle = ledger.predict("light:0x01", lambda tree: tree["lights"]["0x01"]["lightState"].__setitem__("on", True))
    in_flight = queue.enqueue(_light("0x01", True), prediction=handle)
    queue.detach_sender()
    pending = queue.enqueue(PermitJoin(True))

    assert queue.abandon("Invalid credentials") == 2
    assert not ledger.is_live(handle)
    for fut in (in_flight, pending):
        with pytest.raises(ConnectionLost):
            fut.result()
    assert not queue.has_outstanding


def test_stalling_flag_follows_outstanding_commands() -> None:
    seen: list[bool] = []
    sched, _, queue = _setup(stalling_s=0.5, on_stalling=seen.append)
    queue.attach_sender(_FakeSender())
    queue.enqueue(PermitJoin(True))
    sched.advance(0.4)
    assert not queue.stalling
    sched.advance(0.2)
    assert queue.stalling
    queue.handle_reply(1)
    assert not queue.stalling
    assert seen == [True, False]


def test_quick_reply_never_reports_stalling() -> None:
    seen: list[bool] = []
    sched, _, queue = _setup(stalling_s=0.5, on_stalling=seen.append)
    queue.attach_sender(_FakeSender())
    queue.enqueue(PermitJoin(True))
    queue.handle_reply(1)
    sched.advance(5)
    assert seen == []


def test_reply_timeout_is_reported() -> None:
    timeouts: list[int] = []
    sched, _, queue = _setup(reply_timeout_s=7.0)
    queue.bind(on_timeout=timeouts.append)
    queue.attach_sender(_FakeSender())
    queue.enqueue(PermitJoin(True))
    sched.advance(6.9)
    assert timeouts == []
    sched.advance(0.2)
    assert timeouts == [1]


def test_reply_cancels_timeout() -> None:
    timeouts: list[int] = []
    sched, _, queue = _setup(reply_timeout_s=1.0, on_timeout=timeouts.append)
    queue.attach_sender(_FakeSender())
    queue.enqueue(PermitJoin(False))
    queue.handle_reply(1)
    sched.advance(10)
    assert timeouts == []
