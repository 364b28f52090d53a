"""
Outbound push message queue.

Messages sent while the push socket is down are buffered here and flushed,
in FIFO order, once per socket-open event after a short coalescing delay.

Delivery is best-effort: a flush drains the whole queue even if individual
sends fail. The queue is bounded; when full, the oldest message is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Optional

from .const import FLUSH_DELAY_S, OUTBOUND_CAPACITY

SendFn = Callable[[Any], None]


class OutboundQueue:
    def __init__(
        self,
        *,
        capacity: int = OUTBOUND_CAPACITY,
        flush_delay_s: float = FLUSH_DELAY_S,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._log = logger or logging.getLogger(__name__)
        self._items: deque[Any] = deque()
        self._capacity = capacity
        self._flush_delay_s = flush_delay_s
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def flush_scheduled(self) -> bool:
        return self._flush_handle is not None

    def pending(self) -> list[Any]:
        """Return a copy of the queued messages, oldest first."""
        return list(self._items)

    def enqueue(self, message: Any) -> None:
        if len(self._items) >= self._capacity:
            self._items.popleft()
            self.dropped += 1
            self._log.warning(
                "Outbound queue full (capacity=%s); dropped oldest message (total dropped=%s)",
                self._capacity,
                self.dropped,
            )
        self._items.append(message)

    def schedule_flush(
        self, send_fn: SendFn, *, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> bool:
        """Schedule a delayed flush unless one is pending or there is nothing to send."""
        if self._flush_handle is not None or not self._items:
            return False
        loop = loop or asyncio.get_running_loop()
        self._flush_handle = loop.call_later(self._flush_delay_s, self.flush, send_fn)
        return True

    def flush(self, send_fn: SendFn) -> int:
        """Send every queued message in order, then leave the queue empty."""
        self._flush_handle = None
        items = list(self._items)
        self._items.clear()
        sent = 0
        for message in items:
            try:
                send_fn(message)
            except Exception as e:
                self._log.warning("Outbound flush send failed: %s", e, exc_info=True)
                continue
            sent += 1
        if items:
            self._log.debug("Outbound flush sent %d of %d queued messages", sent, len(items))
        return sent

    def cancel_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    def clear(self) -> None:
        self.cancel_flush()
        self._items.clear()
