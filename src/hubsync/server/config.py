"""Server configuration values and their environment overrides."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from hubsync.protocol.messages import PROTOCOL_VERSION
from hubsync.utils.env import env_bool, env_int, env_str


@dataclass(frozen=True)
class ServerConfig:
    """Top-level server configuration values."""

    host: str = "0.0.0.0"
    port: int = 43597
    users_path: Optional[str] = None
    protocol_version: int = PROTOCOL_VERSION
    allow_remote: bool = False


def load_server_config(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Load server configuration from environment (no side effects).

    Environment keys consulted:
    - HUBSYNC_HOST, HUBSYNC_PORT
    - HUBSYNC_USERS_PATH (JSON file holding the user table)
    - HUBSYNC_PROTOCOL_VERSION (advertised in ``init``; testing only)
    - HUBSYNC_ALLOW_REMOTE (initial ``config.allowRemote``)
    """

    d = ServerConfig()
    return ServerConfig(
        host=env_str("HOST", d.host, env) or d.host,
        port=env_int("PORT", d.port, env),
        users_path=env_str("USERS_PATH", d.users_path, env) or None,
        protocol_version=max(1, env_int("PROTOCOL_VERSION", d.protocol_version, env)),
        allow_remote=env_bool("ALLOW_REMOTE", d.allow_remote, env),
    )


__all__ = ["ServerConfig", "load_server_config"]
