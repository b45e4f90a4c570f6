"""Authoritative state holder that multicasts deltas to every open session.

Mutations are batched per event-loop tick: handlers mutate ``state`` and call
``mark_changed``; one flush at the end of the tick diffs the whole tree
against the last broadcast and sends each session its redacted view of that
delta. Non-admin sessions never see ``config.users``, and every session gets
its own ``me`` entry describing the user it authenticated as.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from hubsync.protocol import delta as delta_codec
from hubsync.protocol.messages import StoreDeltaFrame
from hubsync.shared.scheduler import Scheduler, TimerHandle

if TYPE_CHECKING:  # pragma: no cover
    from hubsync.server.sessions import Session

logger = logging.getLogger(__name__)


def users_table(state: Mapping[str, Any]) -> Dict[str, Any]:
    config = state.get("config")
    if not isinstance(config, dict):
        return {}
    users = config.get("users")
    return users if isinstance(users, dict) else {}


def me_view(state: Mapping[str, Any], user_name: str) -> Optional[Dict[str, Any]]:
    """Public description of ``user_name`` (no secret), or None if it no longer exists."""

    record = users_table(state).get(user_name)
    if not isinstance(record, dict):
        return None
    view = delta_codec.clone(record)
    view["name"] = user_name
    return view


def redact(tree: Dict[str, Any], *, is_admin: bool) -> Dict[str, Any]:
    """Strip the privileged user table for non-admins (shallow copies only)."""

    if is_admin:
        return tree
    config = tree.get("config")
    if not isinstance(config, dict) or "users" not in config:
        return tree
    out = dict(tree)
    config = dict(config)
    del config["users"]
    if config:
        out["config"] = config
    else:
        del out["config"]
    return out


class DeltaBroadcaster:
    def __init__(self, scheduler: Scheduler, state: Optional[Dict[str, Any]] = None) -> None:
        self._scheduler = scheduler
        self.state: Dict[str, Any] = state if state is not None else {}
        self._last: Dict[str, Any] = delta_codec.clone(self.state)
        self._sessions: List["Session"] = []
        self._flush_handle: Optional[TimerHandle] = None

    # ------------------------------------------------------------------
    @property
    def sessions(self) -> tuple:
        return tuple(self._sessions)

    def attach(self, session: "Session") -> None:
        if session not in self._sessions:
            self._sessions.append(session)

    def detach(self, session: "Session") -> None:
        if session in self._sessions:
            self._sessions.remove(session)

    # ------------------------------------------------------------------
    def mark_changed(self) -> None:
        """Schedule one flush at the end of the current tick."""

        if self._flush_handle is None:
            self._flush_handle = self._scheduler.call_soon(self._scheduled_flush)

    def _scheduled_flush(self) -> None:
        self._flush_handle = None
        self.flush()

    def flush(self) -> Dict[str, Any]:
        """Broadcast everything that changed since the last flush."""

        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        delta = delta_codec.diff(self.state, self._last)
        self._last = delta_codec.clone(self.state)
        sent = 0
        for session in tuple(self._sessions):
            out = self._session_delta(session, delta)
            if out and session.send_frame(StoreDeltaFrame(out)):
                sent += 1
        if logger.isEnabledFor(logging.DEBUG) and delta:
            logger.debug("store-delta: keys=%s sessions=%d", sorted(delta), sent)
        return delta

    def snapshot_for(self, session: "Session") -> Dict[str, Any]:
        """Redacted full state for ``session``'s ``init`` frame."""

        me = me_view(self.state, session.user_name)
        session.last_me = me
        snapshot = redact(delta_codec.clone(self.state), is_admin=bool(me and me.get("isAdmin")))
        if me is not None:
            snapshot["me"] = me
        return snapshot

    # ------------------------------------------------------------------
    def _session_delta(self, session: "Session", delta: Dict[str, Any]) -> Dict[str, Any]:
        previous = session.last_me
        me = me_view(self.state, session.user_name)
        was_admin = bool(previous and previous.get("isAdmin"))
        is_admin = bool(me and me.get("isAdmin"))
        out = redact(delta, is_admin=is_admin)
        if is_admin and not was_admin:
            # Newly promoted: the delta alone would leave the user table incomplete.
            out = dict(out)
            config = dict(out.get("config") or {})
            config["users"] = delta_codec.clone(users_table(self.state))
            out["config"] = config
        elif was_admin and not is_admin:
            out = dict(out)
            config = dict(out.get("config") or {})
            config["users"] = None
            out["config"] = config
        if not delta_codec.deep_equal(me, previous):
            out = dict(out)
            if me is None or previous is None:
                out["me"] = me
            else:
                out["me"] = delta_codec.diff(me, previous)
            session.last_me = me
        return out


__all__ = ["DeltaBroadcaster", "me_view", "redact", "users_table"]
