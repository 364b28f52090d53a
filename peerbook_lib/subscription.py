"""
Entitlement gate.

Starts or stops the registry connection as subscription entitlement
snapshots arrive. Overlapping notifications are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import voluptuous as vol

from .const import DEFAULT_ENTITLEMENT
from .connection import PeerbookConnection
from .errors import ProtocolError
from .interfaces import Operator, SubscriptionProvider
from .types import CustomerInfo

CUSTOMER_INFO_SCHEMA = vol.Schema(
    {
        vol.Required("originalAppUserId"): vol.All(vol.Coerce(str), vol.Length(min=1)),
        vol.Optional("entitlements"): vol.Schema(
            {vol.Optional("active"): vol.Any(dict, list)},
            extra=vol.ALLOW_EXTRA,
        ),
    },
    extra=vol.ALLOW_EXTRA,
)


def parse_customer_info(data: Mapping[str, Any] | CustomerInfo) -> CustomerInfo:
    """Accept a provider payload ({"customerInfo": {...}} or the bare object)."""
    if isinstance(data, CustomerInfo):
        return data
    payload: Any = data.get("customerInfo", data) if isinstance(data, Mapping) else data
    if isinstance(payload, Mapping):
        payload = dict(payload)
    try:
        payload = CUSTOMER_INFO_SCHEMA(payload)
    except vol.Invalid as e:
        raise ProtocolError(f"customer info is malformed: {e}") from e
    active = payload.get("entitlements", {}).get("active", {})
    return CustomerInfo(
        original_app_user_id=payload["originalAppUserId"],
        active_entitlements=frozenset(str(name) for name in active),
    )


class SubscriptionGate:
    def __init__(
        self,
        connection: PeerbookConnection,
        provider: SubscriptionProvider,
        *,
        operator: Optional[Operator] = None,
        entitlement: str = DEFAULT_ENTITLEMENT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._connection = connection
        self._provider = provider
        self._operator = operator
        self._entitlement = entitlement
        self._log = logger or logging.getLogger(__name__)
        self._updating = False

    @property
    def updating(self) -> bool:
        return self._updating

    async def on_entitlements(self, data: Mapping[str, Any] | CustomerInfo) -> None:
        """Handle an entitlement snapshot. Never raises."""
        if self._updating:
            self._log.info("got another entitlement update while updating; ignoring")
            return
        self._updating = True
        try:
            await self._apply(data)
            # Notifications fired in the same loop turn are dropped as well.
            await asyncio.sleep(0)
        finally:
            self._updating = False

    async def _apply(self, data: Mapping[str, Any] | CustomerInfo) -> None:
        try:
            info = parse_customer_info(data)
        except ProtocolError as e:
            self._log.warning("Ignoring entitlement update: %s", e)
            return
        if not info.is_active(self._entitlement):
            self._log.info("%s entitlement inactive; closing connection", self._entitlement)
            self._connection.close()
            return
        if self._operator is not None:
            self._operator.stop_watchdog()
        uid = info.original_app_user_id
        self._log.info("Subscribed to PB")
        try:
            await self._connection.connect(uid)
        except Exception as e:
            self._log.warning("Failed to connect: %s", e)

    async def update_customer_info(self) -> None:
        """Fetch the current snapshot from the provider and act on it."""
        try:
            data = await self._provider.get_customer_info()
        except Exception as e:
            self._log.warning("Failed to get customer info: %s", e)
            return
        await self.on_entitlements(data)

    async def purchase(self, package: Any) -> None:
        """Buy a package and act on the resulting snapshot; purchase errors propagate."""
        try:
            data = await self._provider.purchase_package(package)
        except Exception as e:
            self._log.warning("purchase failed: %s", e)
            raise
        await self.on_entitlements(data)
