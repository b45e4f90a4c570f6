"""Read-only views over the live state tree plus explicit change subscriptions."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Sequence, Tuple

Path = Tuple[str, ...]

logger = logging.getLogger(__name__)


def freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return ReadOnlyMapping(value)
    if isinstance(value, list):
        return tuple(freeze(item) for item in value)
    return value


class ReadOnlyMapping(Mapping[str, Any]):
    """Live, read-only window onto a dict owned by the sync engine.

    Nested dicts come back as further read-only views and lists as tuples, so
    callers can read freely but every mutation has to go through
    ``SyncClient.send``/``predict``.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Dict[str, Any]) -> None:
        self._data = data

    def __getitem__(self, key: str) -> Any:
        return freeze(self._data[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ReadOnlyMapping({self._data!r})"

    def lookup(self, *path: str, default: Any = None) -> Any:
        node: Any = self._data
        for key in path:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return freeze(node)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


@dataclass(frozen=True)
class StateChange:
    """One observable change to the live tree.

    ``origin`` is ``"snapshot"`` (full ``init``), ``"canonical"`` (server
    delta), ``"prediction"`` (speculative write) or ``"rollback"``.
    """

    origin: str
    paths: Tuple[Path, ...]

    def touches(self, prefix: Sequence[str]) -> bool:
        prefix = tuple(prefix)
        if not prefix:
            return True
        for path in self.paths:
            n = min(len(path), len(prefix))
            if path[:n] == prefix[:n]:
                return True
        return False


Subscriber = Callable[[StateChange], None]


class ChangeHub:
    """Publish/subscribe registry for ``StateChange`` events."""

    def __init__(self) -> None:
        self._subscribers: List[Tuple[Path, Subscriber]] = []

    def subscribe(self, prefix: Sequence[str], callback: Subscriber) -> Callable[[], None]:
        if not callable(callback):
            raise TypeError("ChangeHub subscriber must be callable")
        entry = (tuple(prefix), callback)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        return self.subscribe((), callback)

    def publish(self, change: StateChange) -> None:
        if not change.paths:
            return
        for prefix, callback in tuple(self._subscribers):
            if not change.touches(prefix):
                continue
            try:
                callback(change)
            except Exception:
                logger.exception("state subscriber failed (origin=%s)", change.origin)


def delta_paths(delta: Mapping[str, Any], prefix: Path = ()) -> List[Path]:
    """Leaf paths touched by a delta (dicts are descended, other values are leaves)."""

    paths: List[Path] = []
    for key, value in delta.items():
        path = prefix + (key,)
        if isinstance(value, Mapping) and value:
            paths.extend(delta_paths(value, path))
        else:
            paths.append(path)
    return paths


__all__ = [
    "ChangeHub",
    "Path",
    "ReadOnlyMapping",
    "StateChange",
    "Subscriber",
    "delta_paths",
    "freeze",
]
