"""Client-side connection manager for the PeerBook registry."""

from .client import PeerbookClient
from .config import load_config, load_config_file
from .connection import PeerbookConnection
from .errors import (
    Cancelled,
    ConfigError,
    PeerbookError,
    ProtocolError,
    TransportFailure,
    Unregistered,
    VerificationRejected,
)
from .identity import DeviceIdentity
from .outbound import OutboundQueue
from .peers import Peer, PeerIndex
from .push import AiohttpPushSocket, aiohttp_socket_factory
from .registration import RegistrationFlow
from .status import StatusIndicator
from .subscription import SubscriptionGate
from .types import ClientConfig, ConnectionState, CustomerInfo, PushStatus, SocketState
from .verification import VerificationLoop

__all__ = [
    "AiohttpPushSocket",
    "Cancelled",
    "ClientConfig",
    "ConfigError",
    "ConnectionState",
    "CustomerInfo",
    "DeviceIdentity",
    "OutboundQueue",
    "Peer",
    "PeerIndex",
    "PeerbookClient",
    "PeerbookConnection",
    "PeerbookError",
    "ProtocolError",
    "PushStatus",
    "RegistrationFlow",
    "SocketState",
    "StatusIndicator",
    "SubscriptionGate",
    "TransportFailure",
    "Unregistered",
    "VerificationLoop",
    "VerificationRejected",
    "aiohttp_socket_factory",
    "load_config",
    "load_config_file",
]
