"""
aiohttp-backed push socket.

Adapts an aiohttp client websocket to the event-socket contract the
connection core expects: on_open / on_message / on_error / on_close
callbacks plus a ready_state. Callbacks run on the event loop that called
connect() and are looked up at fire time, so clearing them detaches the
owner immediately.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Optional

import aiohttp

from .errors import TransportFailure
from .types import SocketState

DEFAULT_HEARTBEAT_S = 20.0


class AiohttpPushSocket:
    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat_s: Optional[float] = DEFAULT_HEARTBEAT_S,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url
        self._log = logger or logging.getLogger(__name__)
        self._client_session = session
        self._owns_session = session is None
        self._heartbeat_s = heartbeat_s
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._outgoing: asyncio.Queue[str] = asyncio.Queue()
        self._writer: Optional[asyncio.Task[None]] = None
        self._state = SocketState.CONNECTING

        self.on_open: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[BaseException | None], None]] = None
        self.on_close: Optional[Callable[[], None]] = None

    @property
    def ready_state(self) -> SocketState:
        return self._state

    def connect(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def send(self, data: str) -> None:
        if self._state is not SocketState.OPEN or self._ws is None:
            raise TransportFailure(f"push socket is {self._state.name}")
        self._outgoing.put_nowait(data)

    def close(self) -> None:
        """Start closing the socket. Safe to call multiple times."""
        if self._state in (SocketState.CLOSING, SocketState.CLOSED):
            return
        if self._task is None:
            self._state = SocketState.CLOSED
            return
        self._state = SocketState.CLOSING
        self._task.cancel()

    # --------------------------
    # Internals
    # --------------------------

    async def _run(self) -> None:
        session = self._client_session
        if session is None:
            session = aiohttp.ClientSession()
            self._client_session = session
        try:
            try:
                ws = await session.ws_connect(self.url, heartbeat=self._heartbeat_s)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                self._log.debug("push connect to %s failed: %s", self.url, e)
                self._state = SocketState.CLOSED
                self._fire(self.on_error, e)
                return
            self._ws = ws
            self._state = SocketState.OPEN
            self._writer = asyncio.get_running_loop().create_task(self._write_loop(ws))
            self._fire(self.on_open)
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._fire(self.on_message, msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._fire(self.on_message, msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._state = SocketState.CLOSED
                    self._fire(self.on_error, ws.exception())
                    return
        finally:
            await self._shutdown(session)
        self._fire(self.on_close)

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            data = await self._outgoing.get()
            try:
                await ws.send_str(data)
            except (aiohttp.ClientError, ConnectionError) as e:
                self._log.warning("push send failed: %s", e)

    async def _shutdown(self, session: aiohttp.ClientSession) -> None:
        self._state = SocketState.CLOSED
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            with contextlib.suppress(aiohttp.ClientError, ConnectionError):
                await ws.close()
        if self._owns_session:
            await session.close()

    def _fire(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            self._log.warning("push socket callback failed", exc_info=True)


def aiohttp_socket_factory(
    session: Optional[aiohttp.ClientSession] = None,
) -> Callable[[str], AiohttpPushSocket]:
    """Return a socket factory, optionally sharing one aiohttp ClientSession."""

    def _factory(url: str) -> AiohttpPushSocket:
        return AiohttpPushSocket(url, session=session)

    return _factory
