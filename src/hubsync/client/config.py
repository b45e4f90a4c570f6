"""Client configuration values and their environment overrides."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from hubsync.client.endpoints import DEFAULT_PORT, DEFAULT_RELAY_DOMAIN
from hubsync.utils.env import env_float, env_int, env_str


@dataclass(frozen=True)
class ClientConfig:
    """Timings and addresses used by the sync client."""

    connect_timeout_s: float = 4.0
    reply_timeout_s: float = 7.0
    stalling_s: float = 0.5
    backoff_base_s: float = 0.5
    backoff_cap_s: float = 16.0
    default_linger_s: float = 2.0
    min_protocol_version: int = 1
    recommended_protocol_version: int = 2
    port: int = DEFAULT_PORT
    relay_domain: str = DEFAULT_RELAY_DOMAIN
    storage_path: Optional[str] = None
    persist_debounce_s: float = 0.5


def load_client_config(env: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Load client configuration from environment (no side effects).

    Environment keys consulted:
    - HUBSYNC_CONNECT_TIMEOUT, HUBSYNC_REPLY_TIMEOUT, HUBSYNC_STALLING_DELAY
    - HUBSYNC_BACKOFF_BASE, HUBSYNC_BACKOFF_CAP, HUBSYNC_LINGER
    - HUBSYNC_MIN_PROTOCOL, HUBSYNC_RECOMMENDED_PROTOCOL
    - HUBSYNC_PORT, HUBSYNC_RELAY_DOMAIN
    - HUBSYNC_STORAGE_PATH, HUBSYNC_PERSIST_DEBOUNCE
    """

    d = ClientConfig()
    min_protocol = max(1, env_int("MIN_PROTOCOL", d.min_protocol_version, env))
    return ClientConfig(
        connect_timeout_s=max(0.1, env_float("CONNECT_TIMEOUT", d.connect_timeout_s, env)),
        reply_timeout_s=max(0.1, env_float("REPLY_TIMEOUT", d.reply_timeout_s, env)),
        stalling_s=max(0.0, env_float("STALLING_DELAY", d.stalling_s, env)),
        backoff_base_s=max(0.0, env_float("BACKOFF_BASE", d.backoff_base_s, env)),
        backoff_cap_s=max(0.0, env_float("BACKOFF_CAP", d.backoff_cap_s, env)),
        default_linger_s=max(0.0, env_float("LINGER", d.default_linger_s, env)),
        min_protocol_version=min_protocol,
        recommended_protocol_version=max(
            min_protocol, env_int("RECOMMENDED_PROTOCOL", d.recommended_protocol_version, env)
        ),
        port=env_int("PORT", d.port, env),
        relay_domain=env_str("RELAY_DOMAIN", d.relay_domain, env) or d.relay_domain,
        storage_path=env_str("STORAGE_PATH", d.storage_path, env) or None,
        persist_debounce_s=max(0.0, env_float("PERSIST_DEBOUNCE", d.persist_debounce_s, env)),
    )


__all__ = ["ClientConfig", "load_client_config"]
