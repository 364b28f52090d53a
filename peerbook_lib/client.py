"""
Stable client facade for the PeerBook registry.

Wires the connection, the entitlement gate, the enrollment flow and the peer
index together around injected collaborators (session transport, push socket
factory, subscription provider, operator UI, device identity).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from .connection import PeerbookConnection
from .identity import DeviceIdentity
from .interfaces import (
    IdentityProvider,
    Operator,
    PushSocketFactory,
    SessionFactory,
    SubscriptionProvider,
)
from .peers import Peer, PeerIndex
from .registration import RegistrationFlow
from .status import StatusIndicator
from .subscription import SubscriptionGate
from .types import ClientConfig, CustomerInfo
from .verification import VerificationLoop

__all__ = ["PeerbookClient"]


class PeerbookClient:
    """
    Application-facing API.

    Incoming push updates are merged into `peers`; callers that want the raw
    messages can pass `on_update`.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        fingerprint: str,
        session_factory: SessionFactory,
        operator: Operator,
        subscription: SubscriptionProvider,
        identity: Optional[IdentityProvider] = None,
        socket_factory: Optional[PushSocketFactory] = None,
        on_update: Optional[Callable[[dict[str, Any]], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._log = logger or logging.getLogger(self.config.logger_name or __name__)
        self._on_update = on_update
        self.status = StatusIndicator()
        self.peers = PeerIndex(self.config.peer_kind, logger=self._log)
        self.connection = PeerbookConnection(
            self.config,
            fingerprint=fingerprint,
            session_factory=session_factory,
            socket_factory=socket_factory,
            subscription=subscription,
            status=self.status,
            logger=self._log,
        )
        self.connection.on_update = self._handle_update
        self.verification = VerificationLoop(self.connection, operator, logger=self._log)
        self.registration = RegistrationFlow(
            self.connection,
            operator,
            identity or DeviceIdentity(),
            subscription=subscription,
            verification=self.verification,
            watchdog_timeout_s=self.config.watchdog_timeout_s,
            logger=self._log,
        )
        self.gate = SubscriptionGate(
            self.connection,
            subscription,
            operator=operator,
            entitlement=self.config.entitlement,
            logger=self._log,
        )

    @classmethod
    async def create(
        cls,
        config: ClientConfig | None = None,
        *,
        identity: Optional[IdentityProvider] = None,
        **kwargs: Any,
    ) -> "PeerbookClient":
        """Build a client, reading the fingerprint from the identity provider."""
        identity = identity or DeviceIdentity()
        fingerprint = await identity.get_fingerprint()
        return cls(config, fingerprint=fingerprint, identity=identity, **kwargs)

    def _handle_update(self, message: dict[str, Any]) -> None:
        self.peers.handle_update(message)
        if self._on_update is not None:
            self._on_update(message)

    # --------------------------
    # Connection
    # --------------------------

    async def connect(self, token: Optional[str] = None) -> None:
        await self.connection.connect(token)

    def close(self) -> None:
        self.connection.close()

    def is_open(self) -> bool:
        return self.connection.is_open()

    def send(self, message: Any) -> None:
        self.connection.send(message)

    async def admin_command(self, command: str, *args: str) -> str:
        return await self.connection.admin_command(command, *args)

    # --------------------------
    # Flows
    # --------------------------

    async def register(self) -> bool:
        return await self.registration.register()

    async def verify(self, fingerprint: str, prompt: Optional[str] = None) -> bool:
        return await self.verification.verify(fingerprint, prompt)

    async def on_entitlements(self, data: Mapping[str, Any] | CustomerInfo) -> None:
        await self.gate.on_entitlements(data)

    async def update_customer_info(self) -> None:
        await self.gate.update_customer_info()

    async def purchase(self, package: Any) -> None:
        await self.gate.purchase(package)

    def list_peers(self) -> list[Peer]:
        return self.peers.peers
