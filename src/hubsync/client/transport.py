"""Websocket transport: one socket per candidate URL, reported as plain callbacks.

The connection manager never awaits anything itself. It asks a transport to
``open`` a URL and receives ``on_open``/``on_message``/``on_close`` events for
that socket, which keeps the manager synchronous and lets tests substitute a
fake transport.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

logger = logging.getLogger(__name__)

CLOSE_ABNORMAL = 1006


class Socket(Protocol):
    url: str

    def send(self, text: str) -> bool: ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...


class SocketListener(Protocol):
    def on_open(self, socket: Socket) -> None: ...

    def on_message(self, socket: Socket, text: Union[str, bytes]) -> None: ...

    def on_close(self, socket: Socket, code: int, reason: str) -> None: ...


class Transport(Protocol):
    def open(self, url: str, listener: SocketListener) -> Socket: ...


class WebsocketSocket:
    """A single client websocket driven by its own task."""

    def __init__(self, url: str, listener: SocketListener, loop: asyncio.AbstractEventLoop) -> None:
        self.url = url
        self._listener = listener
        self._loop = loop
        self._ws: Optional[websockets.ClientConnection] = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._closed_locally = False
        self._task = loop.create_task(self._run())

    def __repr__(self) -> str:
        return f"WebsocketSocket({self.url!r})"

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed_locally

    def send(self, text: str) -> bool:
        if not self.is_open:
            return False
        self._outbox.put_nowait(text)
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed_locally:
            return
        self._closed_locally = True
        ws = self._ws
        if ws is None:
            self._task.cancel()
            return
        self._loop.create_task(self._close_ws(ws, code, reason))

    async def _close_ws(self, ws: websockets.ClientConnection, code: int, reason: str) -> None:
        try:
            await ws.close(code=code, reason=reason)
        except Exception:
            logger.debug("socket close failed: %s", self.url, exc_info=True)
        self._task.cancel()

    async def _sender(self, ws: websockets.ClientConnection) -> None:
        while True:
            msg = await self._outbox.get()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("send -> %s: %s", self.url, msg)
            await ws.send(msg)

    async def _run(self) -> None:
        code, reason = CLOSE_ABNORMAL, ""
        send_task: Optional[asyncio.Task[None]] = None
        try:
            async with websockets.connect(self.url, open_timeout=None, compression=None) as ws:
                self._ws = ws
                if self._closed_locally:
                    return
                self._listener.on_open(self)
                send_task = asyncio.create_task(self._sender(ws))
                async for msg in ws:
                    if self._closed_locally:
                        break
                    self._listener.on_message(self, msg)
                code = ws.close_code if ws.close_code is not None else CLOSE_ABNORMAL
                reason = ws.close_reason or ""
        except asyncio.CancelledError:
            return
        except ConnectionClosed as exc:
            rcvd = exc.rcvd
            code = rcvd.code if rcvd is not None else CLOSE_ABNORMAL
            reason = rcvd.reason if rcvd is not None else str(exc)
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as exc:
            reason = str(exc) or exc.__class__.__name__
            logger.debug("socket failed: %s (%s)", self.url, reason)
        finally:
            if send_task is not None:
                send_task.cancel()
                await asyncio.gather(send_task, return_exceptions=True)
            self._ws = None
        if not self._closed_locally:
            self._closed_locally = True
            self._listener.on_close(self, code, reason)


class WebsocketTransport:
    """Opens ``WebsocketSocket`` instances on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def open(self, url: str, listener: SocketListener) -> WebsocketSocket:
        loop = self._loop if self._loop is not None else asyncio.get_running_loop()
        logger.debug("opening %s", url)
        return WebsocketSocket(url, listener, loop)


__all__ = [
    "CLOSE_ABNORMAL",
    "Socket",
    "SocketListener",
    "Transport",
    "WebsocketSocket",
    "WebsocketTransport",
]
