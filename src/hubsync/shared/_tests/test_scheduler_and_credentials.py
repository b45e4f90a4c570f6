from __future__ import annotations

import asyncio

import pytest

from hubsync.shared.credentials import hash_secret, is_local_address, normalize_address, secrets_match
from hubsync.shared.scheduler import LoopScheduler, ManualScheduler


def test_manual_scheduler_fires_in_deadline_then_insertion_order() -> None:
    sched = ManualScheduler()
    fired: list[str] = []
    sched.call_later(2.0, fired.append, "late")
    sched.call_later(1.0, fired.append, "a")
    sched.call_later(1.0, fired.append, "b")
    sched.call_soon(fired.append, "now")

    assert sched.advance(0.5) == 1
    assert fired == ["now"]
    assert sched.next_deadline() == 1.0
    sched.advance(1.0)
    assert fired == ["now", "a", "b"]
    assert sched.time() == pytest.approx(1.5)
    sched.advance(10)
    assert fired[-1] == "late"
    assert sched.pending() == 0


def test_manual_scheduler_cancel_and_nested_scheduling() -> None:
    sched = ManualScheduler()
    fired: list[float] = []
    handle = sched.call_later(1.0, fired.append, 1.0)
    handle.cancel()

    def _chain() -> None:
        fired.append(sched.time())
        sched.call_later(0.5, fired.append, 99.0)

    sched.call_later(2.0, _chain)
    sched.advance(3.0)
    assert fired == [2.0, 99.0]
    assert handle.cancelled()


def test_manual_scheduler_futures_resolve_without_running_loop() -> None:
    sched = ManualScheduler()
    fut = sched.create_future()
    fut.set_result("ok")
    assert fut.done() and fut.result() == "ok"
    sched.close()


def test_loop_scheduler_uses_running_loop() -> None:
    async def _main() -> list[str]:
        sched = LoopScheduler()
        seen: list[str] = []
        fut = sched.create_future()
        sched.call_later(0.01, fut.set_result, "done")
        sched.call_soon(seen.append, "soon")
        seen.append(await fut)
        return seen

    assert asyncio.run(_main()) == ["soon", "done"]


def test_hash_secret_is_salted_by_lowercased_user() -> None:
    a = hash_secret("Admin", "pw")
    assert a == hash_secret("admin", "pw")
    assert a != hash_secret("guest", "pw")
    assert len(a) == 64
    assert hash_secret("admin", "") == ""


def test_secrets_match_rejects_empty_values() -> None:
    assert secrets_match("abc", "abc")
    assert not secrets_match("abc", "abd")
    assert not secrets_match("", "")
    assert not secrets_match(None, "abc")


@pytest.mark.parametrize(
    "address,local",
    [
        ("127.0.0.1", True),
        ("::1", True),
        ("::ffff:192.168.1.20", True),
        ("10.1.2.3", True),
        ("172.20.0.1", True),
        ("172.32.0.1", False),
        ("fd12::1", True),
        ("8.8.8.8", False),
        ("2001:db8::1", False),
        (None, False),
        ("garbage", False),
    ],
)
def test_local_address_classification(address, local) -> None:
    assert is_local_address(address) is local


def test_normalize_address_strips_mapped_prefix() -> None:
    assert normalize_address(" ::ffff:10.0.0.1 ") == "10.0.0.1"
    assert normalize_address("") is None
