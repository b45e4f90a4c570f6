"""Wire protocol for hubsync: deltas, frames and command kinds."""

from __future__ import annotations

from .commands import *  # noqa: F401,F403
from .delta import apply, clone, deep_equal, diff, is_empty, is_private_key
from .messages import *  # noqa: F401,F403

__all__ = [name for name in globals().keys() if not name.startswith("_")]
