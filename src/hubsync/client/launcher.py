"""
Command-line client: connect to a server, log connection status and state changes.

Optional ``--light IEEE=on|off`` arguments are sent once the session is up,
with a prediction so the local state flips immediately.
"""

import argparse
import asyncio
import logging
import os
from typing import List, Optional, Tuple

from hubsync.client.config import load_client_config
from hubsync.client.connection_state import ConnectionState, ConnectionStatus
from hubsync.client.endpoints import ServerCredentials
from hubsync.client.persistence import JsonFileStorage
from hubsync.client.session import SyncClient
from hubsync.client.state_view import StateChange
from hubsync.errors import SyncError
from hubsync.protocol.commands import LightSet, LightState
from hubsync.shared.credentials import hash_secret

logger = logging.getLogger(__name__)


def _parse_light(spec: str) -> Tuple[str, bool]:
    ieee, _, value = spec.partition("=")
    value = value.strip().lower()
    if not ieee or value not in ("on", "off"):
        raise argparse.ArgumentTypeError(f"expected IEEE=on|off, got {spec!r}")
    return ieee.strip(), value == "on"


def _light_prediction(ieee: str, on: bool):
    def _apply(tree) -> None:
        tree.ensure("lights", ieee, "lightState")["on"] = on

    return _apply


async def run_client(
    credentials: ServerCredentials,
    *,
    storage_path: Optional[str] = None,
    lights: Optional[List[Tuple[str, bool]]] = None,
) -> None:
    config = load_client_config()
    path = storage_path or config.storage_path
    storage = JsonFileStorage(path) if path else None
    client = SyncClient(config, storage=storage, on_warning=lambda msg: logger.warning("%s", msg))
    pending_lights = list(lights or ())
    done = asyncio.get_running_loop().create_future()

    def _on_status(status: ConnectionStatus) -> None:
        logger.info(
            "status: %s mode=%s attempts=%d stalling=%s error=%s",
            status.state,
            status.mode,
            status.attempts,
            status.stalling,
            status.last_error,
        )
        if status.state is ConnectionState.CONNECTED and pending_lights:
            for ieee, on in pending_lights:
                fut = client.send(LightSet(ieee, LightState(on=on)), _light_prediction(ieee, on))
                fut.add_done_callback(_report(ieee))
            pending_lights.clear()
        if status.state is ConnectionState.IDLE and status.last_error and not done.done():
            done.set_exception(SyncError(status.last_error))

    def _report(ieee: str):
        def _done(fut: "asyncio.Future[object]") -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.warning("light %s: %s", ieee, exc)
            else:
                logger.info("light %s: ok", ieee)

        return _done

    def _on_change(change: StateChange) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("state %s: %s", change.origin, [".".join(p) for p in change.paths])
        else:
            logger.info("state %s: %d path(s)", change.origin, len(change.paths))

    client.subscribe_status(_on_status)
    client.subscribe_all(_on_change)
    client.add_server(credentials)
    try:
        await done
    finally:
        client.close()


def main():
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="hubsync state client")
    parser.add_argument(
        "--server",
        required=True,
        help="Server address: host[:port] or instance id",
    )
    parser.add_argument("--external", default=None, help="Optional external host:port to race")
    parser.add_argument("--user", default="admin", help="User name (default: admin)")
    parser.add_argument(
        "--password",
        default=os.getenv("HUBSYNC_PASSWORD"),
        help="Password (default: $HUBSYNC_PASSWORD)",
    )
    parser.add_argument("--storage", default=None, help="JSON file used to cache state and servers")
    parser.add_argument(
        "--light",
        action="append",
        type=_parse_light,
        default=[],
        help="Send light.set IEEE=on|off after connecting (repeatable)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=level, format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s")

    credentials = ServerCredentials(
        local_address=args.server,
        user_name=args.user,
        secret=hash_secret(args.user, args.password or ""),
        external_address=args.external,
    )
    try:
        asyncio.run(run_client(credentials, storage_path=args.storage, lights=args.light))
    except KeyboardInterrupt:
        logger.info("Client interrupted")
    except SyncError as exc:
        logger.error("Client stopped: %s", exc)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
