"""Public types for peerbook_lib."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import quote

from .const import (
    CHANNEL_COLS,
    CHANNEL_PRIORITY,
    CHANNEL_ROWS,
    DEFAULT_ENTITLEMENT,
    DEFAULT_HOST,
    DEFAULT_PEER_KIND,
    FLUSH_DELAY_S,
    OUTBOUND_CAPACITY,
    PUSH_PATH,
    RECONNECT_MAX_DELAY_S,
    SESSION_PATH,
    WATCHDOG_TIMEOUT_S,
)


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """
    Immutable client configuration.

    Provided once at construction time and treated as read-only thereafter.
    """

    host: str = DEFAULT_HOST
    insecure: bool = False
    entitlement: str = DEFAULT_ENTITLEMENT
    peer_kind: str = DEFAULT_PEER_KIND
    outbound_capacity: int = OUTBOUND_CAPACITY
    flush_delay_s: float = FLUSH_DELAY_S
    watchdog_timeout_s: float = WATCHDOG_TIMEOUT_S
    channel_priority: int = CHANNEL_PRIORITY
    channel_cols: int = CHANNEL_COLS
    channel_rows: int = CHANNEL_ROWS
    push_reconnect: bool = False
    reconnect_max_delay_s: float = RECONNECT_MAX_DELAY_S
    logger_name: Optional[str] = None

    @property
    def session_url(self) -> str:
        scheme = "http" if self.insecure else "https"
        return f"{scheme}://{self.host}{SESSION_PATH}"

    def push_url(self, fingerprint: str) -> str:
        scheme = "ws" if self.insecure else "wss"
        return f"{scheme}://{self.host}{PUSH_PATH}?fp={quote(fingerprint, safe='')}"


class ConnectionState(str, Enum):
    """Logical configurations of the registry connection."""

    IDLE = "idle"
    SESSION_CONNECTING = "session_connecting"
    SESSION_OPEN = "session_open"
    IDENTIFIED = "identified"
    ACTIVE = "active"
    FAILED = "failed"


class SocketState(int, Enum):
    """Push socket ready states (WebSocket numbering)."""

    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


class PushStatus(str, Enum):
    """What the status indicator shows."""

    UNKNOWN = "unknown"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CustomerInfo:
    """
    Entitlement snapshot from the subscription provider.
    """

    original_app_user_id: str
    active_entitlements: frozenset[str] = field(default_factory=frozenset)

    def is_active(self, entitlement: str) -> bool:
        return entitlement in self.active_entitlements
