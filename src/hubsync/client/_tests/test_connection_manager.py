from __future__ import annotations

import json
from typing import Any

import pytest

from hubsync.client.command_queue import CommandQueue
from hubsync.client.config import ClientConfig
from hubsync.client.connection_manager import ConnectionManager
from hubsync.client.connection_state import ConnectionMode, ConnectionState, ConnectionStatus
from hubsync.client.endpoints import ServerCredentials
from hubsync.client.prediction_ledger import PredictionLedger
from hubsync.errors import ConnectionLost
from hubsync.protocol.commands import LightSet, LightState, PermitJoin
from hubsync.shared.scheduler import ManualScheduler


class _FakeSocket:
    def __init__(self, url: str, listener) -> None:
        self.url = url
        self.listener = listener
        self.sent: list[Any] = []
        self.closed = False
        self.open = False

    def send(self, text: str) -> bool:
        if self.closed or not self.open:
            return False
        self.sent.append(json.loads(text))
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True

    # test drivers
    def accept(self) -> None:
        self.open = True
        self.listener.on_open(self)

    def deliver(self, frame: Any) -> None:
        self.listener.on_message(self, json.dumps(frame))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self.closed = True
        self.listener.on_close(self, code, reason)


class _FakeTransport:
    def __init__(self) -> None:
        self.sockets: list[_FakeSocket] = []

    def open(self, url: str, listener) -> _FakeSocket:
        sock = _FakeSocket(url, listener)
        self.sockets.append(sock)
        return sock

    def latest(self, count: int) -> list[_FakeSocket]:
        return self.sockets[-count:]


SNAPSHOT = {"lights": {"0x01": {"lightState": {"on": False}}}, "permitJoin": False}


def _setup(**config_overrides):
    sched = ManualScheduler()
    ledger = PredictionLedger(sched)
    cfg = ClientConfig(**config_overrides)
    queue = CommandQueue(sched, ledger, reply_timeout_s=cfg.reply_timeout_s, stalling_s=cfg.stalling_s)
    transport = _FakeTransport()
    warnings: list[str] = []
    manager = ConnectionManager(sched, ledger, queue, transport, cfg, on_warning=warnings.append)
    statuses: list[ConnectionStatus] = []
    manager.subscribe(statuses.append)
    return sched, ledger, queue, transport, manager, statuses, warnings


def _creds(address: str = "hub1") -> ServerCredentials:
    return ServerCredentials(address, "admin", "secret")


def _connect(manager, transport, *, version: int = 2, mode=ConnectionMode.ENABLED) -> _FakeSocket:
    manager.connect(_creds(), mode)
    internal, _external = transport.latest(2)
    internal.accept()
    internal.deliver(["init", version, SNAPSHOT])
    return internal


def test_race_first_open_wins_and_others_are_closed() -> None:
    _, ledger, _, transport, manager, statuses, _ = _setup()
    manager.connect(_creds())
    assert manager.status.state is ConnectionState.CONNECTING
    internal, external = transport.latest(2)
    assert internal.url.startswith("wss://int-hub1.")
    assert external.url.startswith("wss://ext-hub1.")

    external.accept()
    assert internal.closed
    assert manager.status.state is ConnectionState.INITIALIZING

    # A late open from the loser must not steal the session.
    internal.listener.on_open(internal)
    external.deliver(["init", 2, SNAPSHOT])
    assert manager.status.state is ConnectionState.CONNECTED
    assert manager.status.mode is ConnectionMode.ENABLED
    assert ledger.view.lookup("permitJoin") is False
    assert [s.state for s in statuses if s.state is not ConnectionState.IDLE] == [
        ConnectionState.CONNECTING,
        ConnectionState.INITIALIZING,
        ConnectionState.CONNECTED,
    ]


def test_queued_commands_flush_after_init() -> None:
    _, _, queue, transport, manager, _, _ = _setup()
    fut = queue.enqueue(PermitJoin(True))
    sock = _connect(manager, transport)
    assert sock.sent == [[1, "bridge.permit_join", True]]
    sock.deliver(["reply", 1])
    assert fut.result() is None


def test_store_delta_updates_canonical_state() -> None:
    _, ledger, _, transport, manager, _, _ = _setup()
    sock = _connect(manager, transport)
    sock.deliver(["store-delta", {"lights": {"0x01": {"lightState": {"on": True}}}}])
    assert ledger.view.lookup("lights", "0x01", "lightState", "on") is True


def test_old_protocol_version_fails_with_upgrade_message() -> None:
    _, _, _, transport, manager, _, _ = _setup(min_protocol_version=2)
    manager.connect(_creds())
    sock = transport.latest(2)[0]
    sock.accept()
    sock.deliver(["init", 1, {}])
    assert manager.status.state is ConnectionState.RECONNECTING
    assert "upgrade" in manager.status.last_error


def test_below_recommended_version_warns_once() -> None:
    sched, _, _, transport, manager, _, warnings = _setup(min_protocol_version=1, recommended_protocol_version=2)
    sock = _connect(manager, transport, version=1)
    assert manager.status.connected
    assert len(warnings) == 1
    assert manager.server_version == 1

    sock.drop(1006, "network")
    sched.advance(0.5)
    again = transport.latest(2)[0]
    again.accept()
    again.deliver(["init", 1, {}])
    assert manager.status.connected
    assert len(warnings) == 1


def test_try_mode_gives_up_after_second_failure() -> None:
    sched, _, queue, transport, manager, _, _ = _setup()
    fut = queue.enqueue(PermitJoin(True))
    manager.connect(_creds(), ConnectionMode.TRY)
    for sock in transport.latest(2):
        sock.drop(1006, "unreachable")
    assert manager.status.state is ConnectionState.RECONNECTING
    assert manager.status.last_error == "unreachable"

    sched.advance(0.5)
    assert manager.status.attempts == 1
    for sock in transport.latest(2):
        sock.drop(1006, "unreachable")
    assert manager.status.state is ConnectionState.IDLE
    assert manager.status.mode is ConnectionMode.DISABLED
    with pytest.raises(ConnectionLost):
        fut.result()


def test_try_mode_becomes_enabled_once_connected() -> None:
    _, _, _, transport, manager, _, _ = _setup()
    _connect(manager, transport, mode=ConnectionMode.TRY)
    assert manager.status.mode is ConnectionMode.ENABLED


def test_unauthorized_close_gives_up_without_retry() -> None:
    sched, ledger, queue, transport, manager, _, _ = _setup()
    handle = ledger.predict("permitJoin", lambda tree: tree.__setitem__("permitJoin", True))
    fut = queue.enqueue(PermitJoin(True), prediction=handle)
    manager.connect(_creds())
    opened = len(transport.sockets)
    transport.latest(2)[0].drop(4401, "")

    status = manager.status
    assert status.state is ConnectionState.IDLE
    assert status.mode is ConnectionMode.DISABLED
    assert status.last_error == "Invalid credentials"
    assert not ledger.is_live(handle)
    with pytest.raises(ConnectionLost):
        fut.result()
    sched.advance(60)
    assert len(transport.sockets) == opened


def test_remote_forbidden_close_gives_up() -> None:
    _, _, _, transport, manager, _, _ = _setup()
    manager.connect(_creds())
    transport.latest(2)[0].drop(4403, "")
    assert manager.status.mode is ConnectionMode.DISABLED
    assert "Remote access" in manager.status.last_error


def test_reconnect_replays_in_flight_commands_in_order() -> None:
    sched, _, queue, transport, manager, _, _ = _setup()
    first = _connect(manager, transport)
    futures = [queue.enqueue(LightSet(ieee, LightState(on=True))) for ieee in ("c1", "c2")]
    first.drop(1006, "network")
    futures.append(queue.enqueue(LightSet("c3", LightState(on=True))))
    assert manager.status.state is ConnectionState.RECONNECTING

    sched.advance(0.5)
    second = _connect_again(transport)
    assert [frame[2] for frame in second.sent] == ["c1", "c2", "c3"]
    assert [frame[0] for frame in second.sent] == [3, 4, 5]
    assert manager.status.attempts == 0
    assert manager.status.last_error is None

    first.deliver(["reply", 1])
    assert not futures[0].done()
    for frame in second.sent:
        second.deliver(["reply", frame[0]])
    assert all(fut.done() for fut in futures)


def _connect_again(transport: _FakeTransport) -> _FakeSocket:
    sock = transport.latest(2)[0]
    sock.accept()
    sock.deliver(["init", 2, SNAPSHOT])
    return sock


def test_backoff_grows_between_attempts() -> None:
    sched, _, _, transport, manager, _, _ = _setup(backoff_base_s=1.0, backoff_cap_s=3.0)
    manager.connect(_creds())
    for expected_delay in (1.0, 2.0, 3.0, 3.0):
        for sock in transport.latest(2):
            sock.drop()
        before = len(transport.sockets)
        sched.advance(expected_delay / 2)
        assert len(transport.sockets) == before
        sched.advance(expected_delay / 2)
        assert len(transport.sockets) == before + 2


def test_connect_timeout_fails_attempt() -> None:
    sched, _, _, transport, manager, _, _ = _setup(connect_timeout_s=4.0)
    manager.connect(_creds())
    sockets = transport.latest(2)
    sched.advance(4.0)
    assert all(sock.closed for sock in sockets)
    assert manager.status.state is ConnectionState.RECONNECTING
    assert manager.status.last_error == "Connection timed out"


def test_missing_init_times_out() -> None:
    sched, _, _, transport, manager, _, _ = _setup(connect_timeout_s=2.0)
    manager.connect(_creds())
    transport.latest(2)[0].accept()
    sched.advance(2.0)
    assert manager.status.state is ConnectionState.RECONNECTING


def test_duplicate_init_and_early_delta_are_protocol_failures() -> None:
    _, _, _, transport, manager, _, _ = _setup()
    sock = _connect(manager, transport)
    sock.deliver(["init", 2, SNAPSHOT])
    assert manager.status.state is ConnectionState.RECONNECTING
    assert manager.status.last_error.startswith("Protocol error")

    _, _, _, transport, manager, _, _ = _setup()
    manager.connect(_creds())
    early = transport.latest(2)[0]
    early.accept()
    early.deliver(["store-delta", {"permitJoin": True}])
    assert manager.status.last_error == "Protocol error: store-delta before init"


def test_messages_from_stale_socket_are_ignored() -> None:
    sched, ledger, _, transport, manager, _, _ = _setup()
    first = _connect(manager, transport)
    first.drop(1006, "network")
    sched.advance(0.5)
    second = _connect_again(transport)

    first.deliver(["store-delta", {"permitJoin": True}])
    first.drop(1006, "late")
    assert ledger.view.lookup("permitJoin") is False
    assert manager.status.connected
    assert second.sent == []


def test_server_error_frame_fails_connection() -> None:
    _, _, _, transport, manager, _, _ = _setup()
    sock = _connect(manager, transport)
    sock.deliver(["error", "shutting down"])
    assert manager.status.last_error == "shutting down"
    assert sock.closed


def test_reply_timeout_reconnects() -> None:
    sched, _, queue, transport, manager, _, _ = _setup(reply_timeout_s=7.0)
    _connect(manager, transport)
    queue.enqueue(PermitJoin(True))
    sched.advance(7.0)
    assert manager.status.last_error == "Command timed out"
    assert queue.pending_commands()[0].command == PermitJoin(True)


def test_stalling_is_reflected_in_status() -> None:
    sched, _, queue, transport, manager, _, _ = _setup(stalling_s=0.5)
    sock = _connect(manager, transport)
    queue.enqueue(PermitJoin(True))
    sched.advance(0.5)
    assert manager.status.stalling
    sock.deliver(["reply", 1])
    assert not manager.status.stalling


def test_disable_rejects_commands_and_stops() -> None:
    sched, _, queue, transport, manager, _, _ = _setup()
    sock = _connect(manager, transport)
    fut = queue.enqueue(PermitJoin(True))
    manager.disable("bye")
    assert sock.closed
    assert manager.status.state is ConnectionState.IDLE
    assert manager.status.mode is ConnectionMode.DISABLED
    with pytest.raises(ConnectionLost):
        fut.result()
    with pytest.raises(ValueError):
        manager.connect(_creds(), ConnectionMode.DISABLED)


def test_literal_address_races_every_candidate() -> None:
    _, _, _, transport, manager, _, _ = _setup()
    manager.connect(ServerCredentials("192.168.1.5", "admin", "x", external_address="hub.example.org"))
    assert [sock.url.split("?")[0] for sock in transport.sockets] == [
        "ws://192.168.1.5:43597/api",
        "ws://hub.example.org:43597/api",
    ]


@pytest.mark.parametrize("address", ["", "hub.example:notaport"])
def test_unusable_address_fails_without_leaving_state(address: str) -> None:
    sched, _, _, transport, manager, statuses, _ = _setup()
    with pytest.raises(ValueError):
        manager.connect(_creds(address))
    sched.advance(60)
    assert manager.status.state is ConnectionState.IDLE
    assert manager.status.mode is ConnectionMode.DISABLED
    assert transport.sockets == []
    assert statuses == []

    _connect(manager, transport)
    assert manager.status.state is ConnectionState.CONNECTED
    sock_count = len(transport.sockets)
    with pytest.raises(ValueError):
        manager.connect(_creds("hub.example:notaport"))
    assert manager.status.state is ConnectionState.CONNECTED
    assert len(transport.sockets) == sock_count
