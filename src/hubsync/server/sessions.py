"""Per-connection sessions, authentication and inbound command dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from itertools import count
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Union

from hubsync.errors import ProtocolError, SyncError
from hubsync.protocol.commands import decode_command
from hubsync.protocol.messages import (
    PROTOCOL_VERSION,
    InitFrame,
    ReplyFrame,
    ServerFrame,
    encode_frame,
    parse_request,
)
from hubsync.server.broadcaster import DeltaBroadcaster, users_table
from hubsync.server.command_registry import CommandRegistry, CommandRejected
from hubsync.shared.credentials import is_local_address, secrets_match

logger = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4401
CLOSE_REMOTE_FORBIDDEN = 4403

PERMISSION_DENIED = "Permission denied"


class AuthRejected(SyncError):
    """Handshake refused; ``code`` is the websocket close code to use."""

    def __init__(self, code: int, reason: str) -> None:
        super().__init__(reason)
        self.code = int(code)
        self.reason = str(reason)


@dataclass(frozen=True)
class Identity:
    user_name: str
    is_admin: bool = False
    allowed_group_ids: FrozenSet[int] = frozenset()
    allow_remote: bool = False

    @classmethod
    def from_record(cls, user_name: str, record: Mapping[str, Any]) -> "Identity":
        groups = record.get("allowedGroupIds") or ()
        return cls(
            user_name=user_name,
            is_admin=bool(record.get("isAdmin")),
            allowed_group_ids=frozenset(int(g) for g in groups),
            allow_remote=bool(record.get("allowRemote")),
        )

    def may_control_group(self, group_id: int) -> bool:
        return self.is_admin or int(group_id) in self.allowed_group_ids


class Session:
    """One authenticated websocket connection; frames are queued in ``outbox``."""

    _ids = count(1)

    def __init__(self, user_name: str, address: Optional[str] = None) -> None:
        self.id = next(Session._ids)
        self.user_name = user_name
        self.address = address
        self.outbox: asyncio.Queue[str] = asyncio.Queue()
        self.last_me: Optional[Dict[str, Any]] = None
        self.closed = False

    def __repr__(self) -> str:
        return f"Session(id={self.id}, user={self.user_name!r})"

    def send_frame(self, frame: ServerFrame) -> bool:
        if self.closed:
            return False
        self.outbox.put_nowait(encode_frame(frame))
        return True


@dataclass
class HandlerContext:
    """What a command handler may touch."""

    session: Session
    identity: Identity
    broadcaster: DeltaBroadcaster
    on_users_changed: Optional[Callable[[], None]] = None

    @property
    def state(self) -> Dict[str, Any]:
        return self.broadcaster.state

    def mark_changed(self) -> None:
        self.broadcaster.mark_changed()

    def users_changed(self) -> None:
        self.broadcaster.mark_changed()
        if self.on_users_changed is not None:
            self.on_users_changed()

    def require_admin(self) -> None:
        if not self.identity.is_admin:
            raise CommandRejected(PERMISSION_DENIED, code="command.forbidden")


class SessionMultiplexer:
    def __init__(
        self,
        broadcaster: DeltaBroadcaster,
        registry: CommandRegistry,
        *,
        protocol_version: int = PROTOCOL_VERSION,
        on_users_changed: Optional[Callable[[], None]] = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.registry = registry
        self.protocol_version = int(protocol_version)
        self._on_users_changed = on_users_changed

    @property
    def sessions(self) -> tuple:
        return self.broadcaster.sessions

    # ------------------------------------------------------------------
    def identity_for(self, user_name: str) -> Optional[Identity]:
        record = users_table(self.broadcaster.state).get(user_name)
        if not isinstance(record, dict):
            return None
        return Identity.from_record(user_name, record)

    def authenticate(self, user_name: Optional[str], secret: Optional[str], address: Optional[str]) -> Identity:
        record = users_table(self.broadcaster.state).get(user_name or "")
        if not isinstance(record, dict) or not secrets_match(record.get("_secret"), secret):
            logger.info("rejecting %r from %s: invalid credentials", user_name, address)
            raise AuthRejected(CLOSE_UNAUTHORIZED, "Invalid credentials")
        identity = Identity.from_record(str(user_name), record)
        if not identity.allow_remote and not is_local_address(address):
            logger.info("rejecting %r from %s: remote access not allowed", user_name, address)
            raise AuthRejected(CLOSE_REMOTE_FORBIDDEN, "Remote access not allowed")
        return identity

    def open_session(self, identity: Identity, address: Optional[str] = None) -> Session:
        session = Session(identity.user_name, address)
        self.broadcaster.attach(session)
        session.send_frame(InitFrame(self.protocol_version, self.broadcaster.snapshot_for(session)))
        logger.info("session %d opened for %s (%s)", session.id, identity.user_name, address)
        return session

    def close_session(self, session: Session) -> None:
        if session.closed:
            return
        session.closed = True
        self.broadcaster.detach(session)
        logger.info("session %d closed (%s)", session.id, session.user_name)

    # ------------------------------------------------------------------
    async def handle_text(self, session: Session, text: Union[str, bytes]) -> None:
        try:
            request = parse_request(text)
        except ProtocolError as exc:
            logger.warning("session %d sent a malformed request: %s", session.id, exc)
            return

        def _reply(result: Any = None, error: Optional[str] = None) -> None:
            session.send_frame(ReplyFrame(request.transaction_id, result, error))

        try:
            command = decode_command(request.command, request.args)
        except ProtocolError as exc:
            _reply(error=str(exc))
            return

        registration = self.registry.get(command.name)
        if registration is None:
            _reply(error=f"Unknown command '{command.name}'")
            return
        identity = self.identity_for(session.user_name)
        if identity is None or (registration.admin_only and not identity.is_admin):
            _reply(error=PERMISSION_DENIED)
            return

        ctx = HandlerContext(session, identity, self.broadcaster, self._on_users_changed)
        try:
            result = await registration.handler(ctx, command)
        except CommandRejected as exc:
            logger.info("command %s rejected for %s: %s", command.name, session.user_name, exc.message)
            _reply(error=exc.message)
            return
        except Exception:
            logger.exception("command handler failed", extra={"command": command.name})
            _reply(error="Internal server error")
            return
        _reply(result=result)


__all__ = [
    "AuthRejected",
    "CLOSE_REMOTE_FORBIDDEN",
    "CLOSE_UNAUTHORIZED",
    "HandlerContext",
    "Identity",
    "PERMISSION_DENIED",
    "Session",
    "SessionMultiplexer",
]
