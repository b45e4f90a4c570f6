from __future__ import annotations

import asyncio
import json

from hubsync.client.config import ClientConfig
from hubsync.client.connection_state import ConnectionMode, ConnectionState
from hubsync.client.endpoints import ServerCredentials
from hubsync.client.session import SyncClient
from hubsync.protocol.commands import LightSet, LightState, SetRemoteAccess
from hubsync.server.app import SyncServer, load_users, parse_handshake, save_users, seed_admin
from hubsync.server.config import ServerConfig, load_server_config
from hubsync.server.reference_handlers import demo_state
from hubsync.shared.credentials import hash_secret


def test_parse_handshake_reads_query() -> None:
    assert parse_handshake("/api?user=admin&secret=abc") == ("/api", "admin", "abc")
    assert parse_handshake("/other") == ("/other", None, None)


def test_seed_admin_only_when_missing() -> None:
    users: dict = {}
    password = seed_admin(users)
    assert password and len(password) == 32
    assert users["admin"]["isAdmin"] is True
    assert users["admin"]["_secret"] == hash_secret("admin", password)
    assert seed_admin(users) is None


def test_users_file_keeps_secrets(tmp_path) -> None:
    path = tmp_path / "users.json"
    assert load_users(path) == {}
    users = {"admin": {"isAdmin": True, "_secret": "abc"}}
    save_users(path, users)
    assert json.loads(path.read_text(encoding="utf-8")) == {"users": users}
    assert load_users(path) == users
    save_users(None, users)


def test_server_config_from_env() -> None:
    assert load_server_config({}) == ServerConfig()
    cfg = load_server_config(
        {"HUBSYNC_HOST": "127.0.0.1", "HUBSYNC_PORT": "9000", "HUBSYNC_ALLOW_REMOTE": "yes", "HUBSYNC_PROTOCOL_VERSION": "0"}
    )
    assert cfg.host == "127.0.0.1"
    assert cfg.port == 9000
    assert cfg.allow_remote is True
    assert cfg.protocol_version == 1


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _admin_users() -> dict:
    return {
        "admin": {
            "isAdmin": True,
            "allowedGroupIds": [],
            "allowRemote": True,
            "_secret": hash_secret("admin", "pw"),
        }
    }


def test_loopback_session_end_to_end(tmp_path) -> None:
    async def _main() -> None:
        server = SyncServer(
            ServerConfig(host="127.0.0.1", port=0, users_path=str(tmp_path / "users.json")),
            state=demo_state(users=_admin_users()),
        )
        await server.start()
        client = SyncClient(ClientConfig(port=server.port, default_linger_s=0.2))
        try:
            client.connect(ServerCredentials("127.0.0.1", "admin", hash_secret("admin", "pw")))
            await _wait_for(lambda: client.status.connected)
            assert client.state.lookup("me", "name") == "admin"
            assert client.state.lookup("lights", "0x0001", "lightState", "on") is False

            def _predict(tree) -> None:
                tree["lights"]["0x0001"]["lightState"]["on"] = True

            fut = client.send(LightSet("0x0001", LightState(on=True)), _predict)
            assert client.state.lookup("lights", "0x0001", "lightState", "on") is True
            assert await asyncio.wait_for(fut, 5) is None
            await _wait_for(lambda: client.ledger.canonical_snapshot()["lights"]["0x0001"]["lightState"]["on"])
            await _wait_for(lambda: not client.ledger.live_targets())
            assert client.state.lookup("lights", "0x0001", "lightState", "on") is True

            assert await asyncio.wait_for(client.send(SetRemoteAccess(True)), 5) is True
        finally:
            client.close()
            await server.stop()

    asyncio.run(_main())


def test_loopback_rejects_bad_credentials() -> None:
    async def _main() -> None:
        server = SyncServer(ServerConfig(host="127.0.0.1", port=0), state=demo_state(users=_admin_users()))
        await server.start()
        client = SyncClient(ClientConfig(port=server.port))
        try:
            client.connect(ServerCredentials("127.0.0.1", "admin", hash_secret("admin", "wrong")))
            await _wait_for(lambda: client.status.mode is ConnectionMode.DISABLED)
            assert client.status.state is ConnectionState.IDLE
            assert client.status.last_error == "Invalid credentials"
        finally:
            client.close()
            await server.stop()

    asyncio.run(_main())
