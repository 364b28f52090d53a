"""Status indicator signal for the push connection (the UI "spinner")."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .types import PushStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[PushStatus, bool], None]


class StatusIndicator:
    """
    Tracks what the UI should show for the registry connection.

    No rendering happens here; listeners receive (status, spinning) on change.
    """

    def __init__(self, listener: Optional[StatusListener] = None) -> None:
        self.status = PushStatus.UNKNOWN
        self.spinning = False
        self._listener = listener

    def set_listener(self, listener: Optional[StatusListener]) -> None:
        self._listener = listener

    def set_status(self, status: PushStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self._notify()

    def start_spinner(self) -> None:
        if self.spinning:
            return
        self.spinning = True
        self.status = PushStatus.OPEN
        self._notify()

    def stop_spinner(self) -> None:
        if not self.spinning:
            return
        self.spinning = False
        self._notify()

    def _notify(self) -> None:
        if self._listener is None:
            return
        try:
            self._listener(self.status, self.spinning)
        except Exception:
            logger.warning("Status listener failed", exc_info=True)
