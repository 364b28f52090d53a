"""
Collaborator contracts consumed by the connection core.

These are structural (typing.Protocol) so tests and applications can pass
plain objects. Nothing here performs I/O.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence

from .types import CustomerInfo, SocketState

SessionStateHandler = Callable[[str, Optional[object]], None]

SESSION_CONNECTED = "connected"
SESSION_FAILED = "failed"


class Channel(Protocol):
    """One logical command channel opened over a session."""

    on_message: Optional[Callable[[bytes], None]]
    on_close: Optional[Callable[[], None]]


class SessionTransport(Protocol):
    """Multiplexed session to the registry (e.g. WebRTC over HTTP signalling)."""

    on_state_change: Optional[SessionStateHandler]

    def connect(self) -> None: ...

    async def open_channel(
        self, command: Sequence[str], priority: int, cols: int, rows: int
    ) -> Channel: ...

    def close(self) -> None: ...


SessionFactory = Callable[[str, Mapping[str, str]], SessionTransport]


class PushSocket(Protocol):
    """Event socket carrying registry push updates."""

    on_open: Optional[Callable[[], None]]
    on_message: Optional[Callable[[str], None]]
    on_error: Optional[Callable[[BaseException | None], None]]
    on_close: Optional[Callable[[], None]]

    @property
    def ready_state(self) -> SocketState: ...

    def connect(self) -> None: ...

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...


PushSocketFactory = Callable[[str], PushSocket]


class SubscriptionProvider(Protocol):
    async def log_in(self, app_user_id: str) -> Any: ...

    async def get_customer_info(self) -> Mapping[str, Any] | CustomerInfo: ...

    async def purchase_package(self, package: Any) -> Mapping[str, Any] | CustomerInfo: ...


class Operator(Protocol):
    """The text UI the flows talk to."""

    async def ask_value(self, prompt: str, default: Optional[str] = None) -> str:
        """Return the operator's answer; raise errors.Cancelled on abort."""
        ...

    def write_line(self, text: str) -> None: ...

    def print_prompt(self) -> None: ...

    async def escape_active_form(self) -> None: ...

    def start_watchdog(self, timeout_s: float) -> Awaitable[None]:
        """Return an awaitable raising TimeoutError if it elapses before stop_watchdog()."""
        ...

    def stop_watchdog(self) -> None: ...


class IdentityProvider(Protocol):
    async def get_fingerprint(self) -> str: ...

    async def get_device_name(self) -> str: ...
