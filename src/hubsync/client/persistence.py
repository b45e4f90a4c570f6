"""Load/save of the cached canonical state and the known server list."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from hubsync.client.endpoints import ServerCredentials
from hubsync.shared.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def load(self) -> Optional[Dict[str, Any]]: ...

    def save(self, data: Dict[str, Any]) -> None: ...


class MemoryStorage:
    """Storage that keeps the last saved document in memory."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self.data = data
        self.saves = 0

    def load(self) -> Optional[Dict[str, Any]]:
        return json.loads(json.dumps(self.data)) if self.data is not None else None

    def save(self, data: Dict[str, Any]) -> None:
        self.data = json.loads(json.dumps(data))
        self.saves += 1


class JsonFileStorage:
    """Storage backed by one JSON file, replaced atomically on save."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("ignoring unreadable state cache %s", self.path, exc_info=True)
            return None
        if not isinstance(data, dict):
            logger.warning("ignoring state cache %s: not a JSON object", self.path)
            return None
        return data

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)
        logger.debug("state cache written: %s", self.path)


def decode_servers(data: Optional[Dict[str, Any]]) -> List[ServerCredentials]:
    servers: List[ServerCredentials] = []
    for item in (data or {}).get("servers") or ():
        try:
            servers.append(ServerCredentials.from_dict(item))
        except (KeyError, TypeError):
            logger.warning("skipping malformed cached server entry: %r", item)
    return servers


def decode_state(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    state = (data or {}).get("state")
    return state if isinstance(state, dict) else {}


class DebouncedSaver:
    """Coalesces save requests; the document is built when the timer fires."""

    def __init__(
        self,
        scheduler: Scheduler,
        storage: Storage,
        build: Callable[[], Dict[str, Any]],
        *,
        delay_s: float = 0.5,
    ) -> None:
        self._scheduler = scheduler
        self._storage = storage
        self._build = build
        self._delay_s = float(delay_s)
        self._timer: Optional[TimerHandle] = None

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    def request(self) -> None:
        if self._timer is None:
            self._timer = self._scheduler.call_later(self._delay_s, self.flush)

    def flush(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()
        try:
            self._storage.save(self._build())
        except OSError:
            logger.warning("failed to persist client state", exc_info=True)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


__all__ = [
    "DebouncedSaver",
    "JsonFileStorage",
    "MemoryStorage",
    "Storage",
    "decode_servers",
    "decode_state",
]
