"""
peerbook_lib/errors.py

Error hierarchy for the registry client.

Policy:
- Connection establishment failures propagate to the caller of connect()/register().
- VerificationRejected never leaves the verification loop.
- Flows (registration, subscription) catch PeerbookError at their boundary.
"""

from __future__ import annotations


class PeerbookError(Exception):
    """Base exception for everything raised by peerbook_lib."""


class Unregistered(PeerbookError):
    """The registry identifier is still the sentinel (device not paired yet)."""

    def __init__(self, message: str = "Unregistered") -> None:
        super().__init__(message)


class TransportFailure(PeerbookError):
    """Session, channel or push socket failure."""

    def __init__(self, detail: object | None = None) -> None:
        self.detail = detail
        super().__init__(f"Transport failure: {detail}" if detail else "Transport failure")


class VerificationRejected(PeerbookError):
    """The registry rejected a one-time code."""


class Cancelled(PeerbookError):
    """The operator aborted a prompt."""


class ProtocolError(PeerbookError):
    """A reply from the registry or the subscription provider was malformed."""


class ConfigError(PeerbookError):
    """Configuration failed validation."""


__all__ = [
    "Cancelled",
    "ConfigError",
    "PeerbookError",
    "ProtocolError",
    "TransportFailure",
    "Unregistered",
    "VerificationRejected",
]
