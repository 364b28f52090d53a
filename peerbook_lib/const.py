"""Constants for peerbook_lib."""

from __future__ import annotations

# Registry identifier values.
UID_UNSET = ""
UID_SENTINEL = "TBD"

# Push messages carrying a numeric code at or above this are registry errors.
ERROR_CODE_THRESHOLD = 400

DEFAULT_HOST = "api.peerbook.io"
DEFAULT_ENTITLEMENT = "peerbook"
DEFAULT_PEER_KIND = "webexec"

# Admin channels ride the shared terminal channel abstraction.
CHANNEL_PRIORITY = 0
CHANNEL_COLS = 80
CHANNEL_ROWS = 24

OUTBOUND_CAPACITY = 256
FLUSH_DELAY_S = 0.01
WATCHDOG_TIMEOUT_S = 3.0
RECONNECT_MAX_DELAY_S = 300.0

SESSION_PATH = "/we"
PUSH_PATH = "/ws"

ADMIN_PING = "ping"
ADMIN_REGISTER = "register"
ADMIN_VERIFY = "verify"
VERIFY_OK = "1"

PB = "\U0001F4D6"
