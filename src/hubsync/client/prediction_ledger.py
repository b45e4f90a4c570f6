"""Speculative, reversible edits layered on top of canonical state.

The ledger owns the live state tree. Canonical updates from the server and
speculative updates from the local user both land in that one tree:

* ``predict`` runs a mutation through a recording proxy and keeps the forward
  writes plus their inverse, keyed by a logical target (``"light:0x01"``).
  A newer prediction for the same target first reverses the older one.
* ``apply_canonical`` lifts every live prediction off the tree (newest first),
  applies the server delta to the bare canonical values, then replays the
  predictions in creation order. Canonical changes therefore land underneath
  and predictions stay visible on top until they are retired.
* ``rollback``/``expire_after`` retire a prediction by reversing it;
  ``commit`` retires it while keeping its effect.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Callable, Dict, Iterator, List, MutableMapping, Optional, Sequence, Tuple

from hubsync.client.state_view import ChangeHub, Path, ReadOnlyMapping, StateChange, delta_paths
from hubsync.protocol import delta as delta_codec
from hubsync.shared.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<missing>"

    def __copy__(self) -> "_Missing":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Missing":
        return self


MISSING: Any = _Missing()


@dataclass(frozen=True)
class PatchOp:
    """Set ``path`` to ``value``; ``MISSING`` deletes the key."""

    path: Path
    value: Any


def _apply_op(tree: MutableMapping[str, Any], op: PatchOp) -> List[PatchOp]:
    """Apply one op and return the ops that undo it, in application order."""

    undo: List[PatchOp] = []
    node: MutableMapping[str, Any] = tree
    for depth, key in enumerate(op.path[:-1]):
        child = node.get(key, MISSING)
        if not isinstance(child, MutableMapping):
            if op.value is MISSING:
                return undo
            undo.append(PatchOp(op.path[: depth + 1], copy.deepcopy(child)))
            child = {}
            node[key] = child
        node = child
    leaf = op.path[-1]
    previous = node.get(leaf, MISSING)
    if op.value is MISSING:
        if previous is MISSING:
            return undo
        del node[leaf]
    else:
        node[leaf] = copy.deepcopy(op.value)
    undo.append(PatchOp(op.path, copy.deepcopy(previous)))
    return undo


def _apply_ops(tree: MutableMapping[str, Any], ops: Sequence[PatchOp]) -> List[PatchOp]:
    undo: List[PatchOp] = []
    for op in ops:
        undo.extend(_apply_op(tree, op))
    return undo


def _revert(tree: MutableMapping[str, Any], undo: Sequence[PatchOp]) -> None:
    for op in reversed(undo):
        _apply_op(tree, op)


class _Recorder:
    def __init__(self, tree: MutableMapping[str, Any]) -> None:
        self.tree = tree
        self.forward: List[PatchOp] = []
        self.undo: List[PatchOp] = []

    def write(self, path: Path, value: Any) -> None:
        op = PatchOp(path, copy.deepcopy(value) if value is not MISSING else MISSING)
        self.forward.append(op)
        self.undo.extend(_apply_op(self.tree, op))


class RecordingMapping(MutableMapping[str, Any]):
    """Mutable proxy handed to prediction functions; every write is recorded.

    Nested dicts are returned as further proxies. Lists are returned as
    copies, so a changed list must be assigned back to be recorded.
    """

    def __init__(self, recorder: _Recorder, node: MutableMapping[str, Any], path: Path) -> None:
        self._recorder = recorder
        self._node = node
        self._path = path

    def __getitem__(self, key: str) -> Any:
        value = self._node[key]
        if isinstance(value, MutableMapping):
            return RecordingMapping(self._recorder, value, self._path + (key,))
        if isinstance(value, list):
            return copy.deepcopy(value)
        return value

    def __setitem__(self, key: str, value: Any) -> None:
        self._recorder.write(self._path + (key,), value)

    def __delitem__(self, key: str) -> None:
        if key not in self._node:
            raise KeyError(key)
        self._recorder.write(self._path + (key,), MISSING)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._node))

    def __len__(self) -> int:
        return len(self._node)

    def ensure(self, *path: str) -> "RecordingMapping":
        """Return the proxy at ``path``, creating empty dicts along the way."""

        node: RecordingMapping = self
        for key in path:
            if not isinstance(node._node.get(key), MutableMapping):
                node[key] = {}
            node = node[key]
        return node


@dataclass(eq=False)
class PredictionHandle:
    target: str
    seq: int
    forward: List[PatchOp]
    undo: List[PatchOp]
    created_at: float
    _ledger: "PredictionLedger" = field(repr=False)
    _timer: Optional[TimerHandle] = field(default=None, repr=False)

    @property
    def paths(self) -> Tuple[Path, ...]:
        return tuple(op.path for op in self.forward)


MutateFn = Callable[[RecordingMapping], Any]


class PredictionLedger:
    """Owns the live tree and the live prediction per logical target."""

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        default_linger_s: float = 2.0,
        hub: Optional[ChangeHub] = None,
        initial: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._scheduler = scheduler
        self._default_linger_s = float(default_linger_s)
        self._hub = hub if hub is not None else ChangeHub()
        self._tree: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._live: Dict[str, PredictionHandle] = {}
        self._seq = count(1)

    # ------------------------------------------------------------------
    @property
    def hub(self) -> ChangeHub:
        return self._hub

    @property
    def view(self) -> ReadOnlyMapping:
        return ReadOnlyMapping(self._tree)

    def live_targets(self) -> Tuple[str, ...]:
        return tuple(self._live.keys())

    def live_handle(self, target: str) -> Optional[PredictionHandle]:
        return self._live.get(target)

    def is_live(self, handle: PredictionHandle) -> bool:
        return self._live.get(handle.target) is handle

    # ------------------------------------------------------------------
    def predict(self, target: str, mutate_fn: MutateFn, *, linger_s: Optional[float] = None) -> PredictionHandle:
        """Speculatively apply ``mutate_fn`` and return a handle bound to ``target``."""

        previous = self._live.get(target)
        if previous is not None:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("prediction superseded: target=%s seq=%d", target, previous.seq)
            self.rollback(previous)

        recorder = _Recorder(self._tree)
        try:
            mutate_fn(RecordingMapping(recorder, self._tree, ()))
        except Exception:
            _revert(self._tree, recorder.undo)
            raise

        handle = PredictionHandle(
            target=target,
            seq=next(self._seq),
            forward=recorder.forward,
            undo=recorder.undo,
            created_at=self._scheduler.time(),
            _ledger=self,
        )
        self._live[target] = handle
        self._arm(handle, self._default_linger_s if linger_s is None else float(linger_s))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "prediction add: target=%s seq=%d writes=%d live=%d",
                target,
                handle.seq,
                len(handle.forward),
                len(self._live),
            )
        self._hub.publish(StateChange("prediction", handle.paths))
        return handle

    def commit(self, handle: PredictionHandle) -> bool:
        """Retire ``handle`` without reversing its effect."""

        self._check_owner(handle)
        if not self.is_live(handle):
            return False
        self._cancel_timer(handle)
        del self._live[handle.target]
        logger.debug("prediction commit: target=%s seq=%d", handle.target, handle.seq)
        return True

    def rollback(self, handle: PredictionHandle) -> bool:
        """Reverse ``handle`` and retire it. Returns False if it was not live."""

        self._check_owner(handle)
        if not self.is_live(handle):
            return False
        self._cancel_timer(handle)
        ordered = list(self._live.values())
        newer = ordered[ordered.index(handle) + 1 :]
        for other in reversed(newer):
            _revert(self._tree, other.undo)
        _revert(self._tree, handle.undo)
        del self._live[handle.target]
        for other in newer:
            other.undo = _apply_ops(self._tree, other.forward)
        logger.debug("prediction rollback: target=%s seq=%d", handle.target, handle.seq)
        self._hub.publish(StateChange("rollback", handle.paths))
        return True

    def expire_after(self, handle: PredictionHandle, delay_s: float) -> None:
        """(Re)arm the linger timer; a zero delay rolls back immediately."""

        self._check_owner(handle)
        if not self.is_live(handle):
            return
        if delay_s <= 0:
            self.rollback(handle)
            return
        self._arm(handle, delay_s)

    def rollback_all(self) -> int:
        handles = list(self._live.values())
        for handle in reversed(handles):
            self.rollback(handle)
        return len(handles)

    # ------------------------------------------------------------------
    def apply_canonical(self, delta: Dict[str, Any]) -> None:
        """Apply an authoritative delta underneath the live predictions."""

        if delta_codec.is_empty(delta):
            return
        with self._lifted():
            delta_codec.apply(self._tree, delta)
        self._hub.publish(StateChange("canonical", tuple(delta_paths(delta))))

    def replace_canonical(self, snapshot: Dict[str, Any]) -> None:
        """Replace the whole public canonical tree (private keys survive)."""

        with self._lifted():
            previous = delta_codec.clone(self._tree)
            for key in [k for k in self._tree if not delta_codec.is_private_key(k)]:
                del self._tree[key]
            delta_codec.apply(self._tree, snapshot)
        paths = set(previous) | {k for k in self._tree if not delta_codec.is_private_key(k)}
        self._hub.publish(StateChange("snapshot", tuple((key,) for key in sorted(paths))))

    def canonical_snapshot(self) -> Dict[str, Any]:
        """Public copy of the canonical tree, with live predictions lifted off."""

        tree = copy.deepcopy(self._tree)
        for handle in reversed(list(self._live.values())):
            _revert(tree, handle.undo)
        return delta_codec.clone(tree)

    # ------------------------------------------------------------------
    def _lifted(self) -> "_Lifted":
        return _Lifted(self)

    def _arm(self, handle: PredictionHandle, delay_s: float) -> None:
        self._cancel_timer(handle)
        handle._timer = self._scheduler.call_later(delay_s, self._expire, handle)

    def _expire(self, handle: PredictionHandle) -> None:
        handle._timer = None
        if self.is_live(handle):
            logger.debug("prediction expired: target=%s seq=%d", handle.target, handle.seq)
            self.rollback(handle)

    @staticmethod
    def _cancel_timer(handle: PredictionHandle) -> None:
        timer = handle._timer
        handle._timer = None
        if timer is not None:
            timer.cancel()

    def _check_owner(self, handle: PredictionHandle) -> None:
        if handle._ledger is not self:
            raise ValueError(f"prediction for '{handle.target}' was not issued by this ledger")


class _Lifted:
    """Context manager: predictions off on enter, replayed on exit."""

    def __init__(self, ledger: PredictionLedger) -> None:
        self._ledger = ledger

    def __enter__(self) -> None:
        ledger = self._ledger
        for handle in reversed(list(ledger._live.values())):
            _revert(ledger._tree, handle.undo)

    def __exit__(self, *exc: object) -> None:
        ledger = self._ledger
        for handle in ledger._live.values():
            handle.undo = _apply_ops(ledger._tree, handle.forward)


__all__ = [
    "MISSING",
    "PatchOp",
    "PredictionHandle",
    "PredictionLedger",
    "RecordingMapping",
]
