"""hubsync client: live, optimistically updated copy of a controller's state."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = ["ClientConfig", "ServerCredentials", "SyncClient", "load_client_config"]


def _lazy_attr(name: str) -> Any:
    module_map = {
        "ClientConfig": ("hubsync.client.config", "ClientConfig"),
        "ServerCredentials": ("hubsync.client.endpoints", "ServerCredentials"),
        "SyncClient": ("hubsync.client.session", "SyncClient"),
        "load_client_config": ("hubsync.client.config", "load_client_config"),
    }
    if name not in module_map:
        raise AttributeError(name)
    module_path, attr = module_map[name]
    module = import_module(module_path)
    return getattr(module, attr)


def __getattr__(name: str) -> Any:  # pragma: no cover - trivial delegation
    return _lazy_attr(name)
