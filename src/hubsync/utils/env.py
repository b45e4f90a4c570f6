"""Environment parsing helpers for ``HUBSYNC_*`` configuration overrides.

Every helper takes the unprefixed setting name (``"PORT"``) and reads
``HUBSYNC_PORT``. An explicit ``environ`` mapping may be passed so config
loaders can be exercised without touching ``os.environ``.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

ENV_PREFIX = "HUBSYNC_"

logger = logging.getLogger(__name__)


def _raw(name: str, environ: Optional[Mapping[str, str]]) -> Optional[str]:
    source = os.environ if environ is None else environ
    return source.get(ENV_PREFIX + name)


def env_str(name: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    v = _raw(name, environ)
    return v if v is not None else default


def env_bool(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    v = _raw(name, environ)
    if v is None:
        return default
    s = v.strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    logger.warning("ignoring %s%s=%r: not a boolean", ENV_PREFIX, name, v)
    return default


def env_int(name: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    v = _raw(name, environ)
    if not v:
        return default
    try:
        return int(v, 10)
    except ValueError:
        logger.warning("ignoring %s%s=%r: not an integer", ENV_PREFIX, name, v)
        return default


def env_float(name: str, default: float, environ: Optional[Mapping[str, str]] = None) -> float:
    v = _raw(name, environ)
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        logger.warning("ignoring %s%s=%r: not a number", ENV_PREFIX, name, v)
        return default


__all__ = ["ENV_PREFIX", "env_bool", "env_float", "env_int", "env_str"]
