"""Websocket server exposing the state channel at ``/api`` plus its CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import secrets
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.exceptions import ConnectionClosed

from hubsync.server.broadcaster import DeltaBroadcaster, users_table
from hubsync.server.command_registry import CommandRegistry
from hubsync.server.config import ServerConfig, load_server_config
from hubsync.server.reference_handlers import demo_state, install_reference_handlers
from hubsync.server.sessions import AuthRejected, Session, SessionMultiplexer
from hubsync.shared.credentials import hash_secret, normalize_address
from hubsync.shared.scheduler import LoopScheduler

logger = logging.getLogger(__name__)

API_PATH = "/api"
CLOSE_NOT_FOUND = 4404


def _maybe_enable_debug_logger() -> bool:
    flag = (os.getenv("HUBSYNC_SERVER_DEBUG") or "").lower()
    if flag not in ("1", "true", "yes", "on", "dbg", "debug"):
        return False
    has_local = any(getattr(h, "_hubsync_local", False) for h in logger.handlers)
    if not has_local:
        handler = logging.StreamHandler()
        fmt = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
        handler.setFormatter(logging.Formatter(fmt))
        handler.setLevel(logging.DEBUG)
        setattr(handler, "_hubsync_local", True)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return True


_SERVER_DEBUG = _maybe_enable_debug_logger()


def load_users(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not path.exists():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    users = data.get("users") if isinstance(data, dict) else None
    return users if isinstance(users, dict) else {}


def save_users(path: Optional[Path], users: Dict[str, Any]) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    # Secrets are private keys; dump the raw records, not a wire clone.
    tmp.write_text(json.dumps({"users": users}, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


def seed_admin(users: Dict[str, Any]) -> Optional[str]:
    """Create an ``admin`` user when none can log in; returns the new password."""

    admin = users.get("admin")
    if isinstance(admin, dict) and admin.get("_secret"):
        return None
    password = secrets.token_hex(16)
    users["admin"] = {
        "isAdmin": True,
        "allowedGroupIds": [],
        "allowRemote": True,
        "_secret": hash_secret("admin", password),
    }
    return password


def parse_handshake(path: str) -> Tuple[str, Optional[str], Optional[str]]:
    parts = urlsplit(path)
    query = parse_qs(parts.query)
    user = (query.get("user") or [None])[0]
    secret = (query.get("secret") or [None])[0]
    return parts.path, user, secret


class SyncServer:
    """Serves one authoritative state tree to many websocket sessions."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        *,
        state: Optional[Dict[str, Any]] = None,
        registry: Optional[CommandRegistry] = None,
    ) -> None:
        self.config = config if config is not None else ServerConfig()
        self._users_path = Path(self.config.users_path).expanduser() if self.config.users_path else None
        self._initial_state = state
        self._registry = registry
        self.broadcaster: Optional[DeltaBroadcaster] = None
        self.multiplexer: Optional[SessionMultiplexer] = None
        self._server: Optional[websockets.Server] = None

    @property
    def port(self) -> int:
        if self._server is None:
            return self.config.port
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return self.config.port

    async def start(self) -> None:
        state = self._initial_state if self._initial_state is not None else demo_state(self.config.allow_remote)
        users = users_table(state)
        if not users:
            state.setdefault("config", {})["users"] = users = load_users(self._users_path)
        password = seed_admin(users)
        if password is not None:
            logger.warning("Created default 'admin' user with password: %s", password)
            save_users(self._users_path, users)
        registry = self._registry if self._registry is not None else install_reference_handlers(CommandRegistry())
        self.broadcaster = DeltaBroadcaster(LoopScheduler(), state)
        self.multiplexer = SessionMultiplexer(
            self.broadcaster,
            registry,
            protocol_version=self.config.protocol_version,
            on_users_changed=self._persist_users,
        )
        self._server = await websockets.serve(self._handle, self.config.host, self.config.port, compression=None)
        logger.info("hubsync server listening on %s:%d%s", self.config.host, self.port, API_PATH)

    async def stop(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            await server.wait_closed()

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    def _persist_users(self) -> None:
        if self.broadcaster is None:
            return
        try:
            save_users(self._users_path, users_table(self.broadcaster.state))
        except OSError:
            logger.warning("failed to save users to %s", self._users_path, exc_info=True)

    async def _handle(self, ws: websockets.ServerConnection) -> None:
        mux = self.multiplexer
        assert mux is not None
        path, user, secret = parse_handshake(ws.request.path)
        if path != API_PATH:
            await ws.close(code=CLOSE_NOT_FOUND, reason="Not found")
            return
        remote = ws.remote_address
        address = normalize_address(remote[0] if remote else None)
        try:
            identity = mux.authenticate(user, secret, address)
        except AuthRejected as exc:
            await ws.close(code=exc.code, reason=exc.reason)
            return
        session = mux.open_session(identity, address)
        sender = asyncio.create_task(self._sender(ws, session))
        try:
            async for msg in ws:
                await mux.handle_text(session, msg)
        except ConnectionClosed as exc:
            logger.debug("session %d connection closed: %s", session.id, exc)
        finally:
            mux.close_session(session)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    async def _sender(self, ws: websockets.ServerConnection, session: Session) -> None:
        while True:
            text = await session.outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed:
                logger.debug("session %d send failed; connection closed", session.id)
                return


def main():
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="hubsync reference state server")
    parser.add_argument("--host", default=None, help="Bind address (default: $HUBSYNC_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: $HUBSYNC_PORT or 43597)")
    parser.add_argument("--users", default=None, help="JSON file holding the user table")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s")

    cfg = load_server_config()
    overrides: Dict[str, Any] = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.users is not None:
        overrides["users_path"] = args.users
    if overrides:
        cfg = replace(cfg, **overrides)
    logger.debug("Resolved ServerConfig: %s", cfg)

    try:
        asyncio.run(SyncServer(cfg).serve_forever())
    except KeyboardInterrupt:
        logger.info("Server interrupted")


if __name__ == "__main__":
    main()
