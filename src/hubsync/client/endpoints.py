"""Server credentials and expansion of a server address into candidate URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

DEFAULT_PORT = 43597
DEFAULT_RELAY_DOMAIN = "lightlynx.eu"
API_PATH = "/api"

_INSTANCE_ID = re.compile(r"^[A-Za-z0-9-]+$")


@dataclass(frozen=True)
class ServerCredentials:
    """How to reach and authenticate against one server.

    ``local_address`` is either a literal ``host[:port]`` or an instance id
    (letters, digits and dashes, no dots) that is resolved through the relay
    domain. ``secret`` is the already-hashed secret sent in the handshake.
    """

    local_address: str
    user_name: str
    secret: str
    external_address: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.user_name}@{self.local_address}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "localAddress": self.local_address,
            "userName": self.user_name,
            "secret": self.secret,
        }
        if self.external_address:
            data["externalAddress"] = self.external_address
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerCredentials":
        return cls(
            local_address=str(data["localAddress"]),
            user_name=str(data["userName"]),
            secret=str(data.get("secret") or ""),
            external_address=data.get("externalAddress") or None,
        )


def is_instance_id(address: str) -> bool:
    return "." not in address and ":" not in address and address != "localhost" and bool(
        _INSTANCE_ID.match(address)
    )


def split_host_port(address: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    address = address.strip()
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
        return host, int(port) if port else default_port
    if address.count(":") == 1:
        host, port = address.split(":")
        return host, int(port) if port else default_port
    return address, default_port


def _format_host(host: str) -> str:
    return f"[{host}]" if ":" in host else host


def _handshake_query(credentials: ServerCredentials) -> str:
    return urlencode({"user": credentials.user_name, "secret": credentials.secret})


def candidate_urls(
    credentials: ServerCredentials,
    *,
    relay_domain: str = DEFAULT_RELAY_DOMAIN,
    port: int = DEFAULT_PORT,
) -> List[str]:
    """Every URL worth racing for ``credentials``, handshake query included."""

    query = _handshake_query(credentials)
    address = credentials.local_address.strip()
    if is_instance_id(address):
        ident = address.lower()
        return [
            f"wss://int-{ident}.{relay_domain}:{port}{API_PATH}?{query}",
            f"wss://ext-{ident}.{relay_domain}:{port}{API_PATH}?{query}",
        ]
    urls = []
    for literal in (address, credentials.external_address):
        if not literal:
            continue
        host, host_port = split_host_port(literal, port)
        url = f"ws://{_format_host(host)}:{host_port}{API_PATH}?{query}"
        if url not in urls:
            urls.append(url)
    if not urls:
        raise ValueError("server credentials carry no address")
    return urls


__all__ = [
    "API_PATH",
    "DEFAULT_PORT",
    "DEFAULT_RELAY_DOMAIN",
    "ServerCredentials",
    "candidate_urls",
    "is_instance_id",
    "split_host_port",
]
