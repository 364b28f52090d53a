"""
Admin command protocol.

Each command opens its own logical channel over the session, collects every
byte delivered on it, and resolves with the UTF-8 text once the channel closes.
Concurrent commands are independent; multiplexing is the session's job.

The reply future comes from `new_waiter`, so the owner of the session can
reject commands still in flight when that session goes away.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .const import CHANNEL_COLS, CHANNEL_PRIORITY, CHANNEL_ROWS
from .errors import PeerbookError, TransportFailure
from .interfaces import SessionTransport

EnsureSession = Callable[[], Awaitable[SessionTransport]]
WaiterFactory = Callable[[SessionTransport], "asyncio.Future[None]"]


class AdminChannel:
    def __init__(
        self,
        ensure_session: EnsureSession,
        *,
        new_waiter: Optional[WaiterFactory] = None,
        priority: int = CHANNEL_PRIORITY,
        cols: int = CHANNEL_COLS,
        rows: int = CHANNEL_ROWS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ensure_session = ensure_session
        self._new_waiter = new_waiter
        self._priority = priority
        self._cols = cols
        self._rows = rows
        self._log = logger or logging.getLogger(__name__)

    def _waiter_for(self, session: SessionTransport) -> asyncio.Future[None]:
        if self._new_waiter is not None:
            return self._new_waiter(session)
        return asyncio.get_running_loop().create_future()

    async def execute(self, command: str, *args: str) -> str:
        """Run one admin command and return its full reply text."""
        session = await self._ensure_session()
        tokens = [command, *args]

        try:
            channel = await session.open_channel(tokens, self._priority, self._cols, self._rows)
        except PeerbookError:
            raise
        except Exception as e:
            self._log.warning("Admin channel open failed for %r: %s", command, e)
            raise TransportFailure(f"channel open failed for {command}: {e}") from e

        closed = self._waiter_for(session)
        reply = bytearray()

        def _on_message(data: bytes) -> None:
            reply.extend(data)

        def _on_close() -> None:
            if not closed.done():
                closed.set_result(None)

        channel.on_message = _on_message
        channel.on_close = _on_close
        try:
            await closed
        finally:
            channel.on_message = None
            channel.on_close = None

        ret = reply.decode("utf-8", errors="replace")
        self._log.debug("cmd %s closed with %d bytes: %s", command, len(reply), ret)
        return ret
