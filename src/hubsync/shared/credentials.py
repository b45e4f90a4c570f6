"""Secret hashing and client address classification."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
from typing import Optional

SALT_PREFIX = "LightLynx-Salt-v1-"
PBKDF2_ROUNDS = 100_000


def hash_secret(user_name: str, password: str) -> str:
    """Derive the hex secret sent on the wire from a user's password.

    The salt is bound to the lowercased user name so the same password yields
    different secrets for different users. An empty password hashes to ``""``.
    """

    if not password:
        return ""
    salt = (SALT_PREFIX + user_name.strip().lower()).encode("utf-8")
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ROUNDS, dklen=32)
    return digest.hex()


def secrets_match(expected: Optional[str], presented: Optional[str]) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(str(expected), str(presented))


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Strip IPv4-mapped IPv6 prefixes and surrounding whitespace."""

    if not address:
        return None
    text = str(address).strip()
    if text.lower().startswith("::ffff:") and "." in text:
        text = text[7:]
    return text or None


def is_local_address(address: Optional[str]) -> bool:
    """True for loopback, RFC1918 and unique-local IPv6 addresses."""

    text = normalize_address(address)
    if text is None:
        return False
    if text == "localhost":
        return True
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return False
    if ip.is_loopback:
        return True
    if ip.version == 4:
        return ip in ipaddress.ip_network("10.0.0.0/8") or ip in ipaddress.ip_network(
            "172.16.0.0/12"
        ) or ip in ipaddress.ip_network("192.168.0.0/16")
    return ip in ipaddress.ip_network("fc00::/7")


__all__ = [
    "PBKDF2_ROUNDS",
    "SALT_PREFIX",
    "hash_secret",
    "is_local_address",
    "normalize_address",
    "secrets_match",
]
