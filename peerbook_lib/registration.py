"""
First-time enrollment with the registry.

Sequence: ask for a device name and recovery email, run the `register`
admin command, show the pairing code, verify this device's fingerprint with
a one-time code, log in to the subscription provider, then open the push
connection. Every failure ends the flow with one status line and a fresh
prompt; nothing propagates to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import voluptuous as vol

from .const import ADMIN_REGISTER, PB, WATCHDOG_TIMEOUT_S
from .connection import PeerbookConnection
from .errors import Cancelled, PeerbookError, ProtocolError
from .interfaces import IdentityProvider, Operator, SubscriptionProvider
from .verification import VerificationLoop

REGISTER_REPLY_SCHEMA = vol.Schema(
    {
        vol.Required("QR"): vol.All(str, vol.Length(min=1)),
        vol.Required("ID"): vol.All(str, vol.Length(min=1)),
    },
    extra=vol.ALLOW_EXTRA,
)

REGISTRATION_FAILED = f"{PB} Registration failed\n    Please try again and if persists, `support`"


@dataclass(frozen=True, slots=True)
class Registration:
    pairing_code: str
    uid: str


def parse_register_reply(reply: str) -> Registration:
    """Parse the JSON reply of the `register` admin command."""
    try:
        data: Any = json.loads(reply)
    except ValueError as e:
        raise ProtocolError(f"register reply is not JSON: {e}") from e
    try:
        data = REGISTER_REPLY_SCHEMA(data)
    except vol.Invalid as e:
        raise ProtocolError(f"register reply is malformed: {e}") from e
    return Registration(pairing_code=data["QR"], uid=data["ID"])


class RegistrationFlow:
    def __init__(
        self,
        connection: PeerbookConnection,
        operator: Operator,
        identity: IdentityProvider,
        *,
        subscription: Optional[SubscriptionProvider] = None,
        verification: Optional[VerificationLoop] = None,
        watchdog_timeout_s: float = WATCHDOG_TIMEOUT_S,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._connection = connection
        self._operator = operator
        self._identity = identity
        self._subscription = subscription
        self._log = logger or logging.getLogger(__name__)
        self._verification = verification or VerificationLoop(
            connection, operator, logger=self._log
        )
        self._watchdog_timeout_s = watchdog_timeout_s

    def _echo(self, text: str) -> None:
        self._operator.write_line(text)

    def _fail(self, text: str) -> None:
        self._operator.write_line(text)
        self._operator.print_prompt()

    async def register(self) -> bool:
        """Run the enrollment flow; return True when the device ends up registered."""
        self._echo("Registering with PeerBook")
        try:
            default_name: Optional[str] = await self._identity.get_device_name()
        except Exception as e:
            self._log.warning("Failed to get device name: %s", e)
            default_name = None
        try:
            peer_name = await self._operator.ask_value("Peer name", default_name)
            email = await self._operator.ask_value("Recovery email")
        except Cancelled:
            self._log.info("Registration cancelled")
            self._echo("Cancelled. Use `subscribe` to try again")
            await self._operator.escape_active_form()
            return False

        try:
            reply = await self._connection.admin_command(ADMIN_REGISTER, email, peer_name)
            registration = parse_register_reply(reply)
        except PeerbookError as e:
            self._log.warning("Registration failed: %s", e)
            self._fail(REGISTRATION_FAILED)
            return False

        self._connection.adopt_uid(registration.uid)
        self._echo("Please scan this QR code with your OTP app")
        self._echo(registration.pairing_code)
        self._echo("")
        self._echo("and use it to generate a One Time Password")

        watchdog = asyncio.ensure_future(self._watch_enrollment())
        try:
            try:
                fingerprint = await self._identity.get_fingerprint()
            except Exception as e:
                self._log.warning("Failed to get fingerprint: %s", e)
                self._fail("Failed to get fingerprint")
                return False
            try:
                verified = await self._verification.verify(fingerprint, "OTP")
            except PeerbookError as e:
                self._log.warning("error verifying OTP: %s", e)
                self._fail("Failed to verify OTP")
                return False
        finally:
            self._operator.stop_watchdog()
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog
        if not verified:
            self._fail("Verification cancelled. Use `subscribe` to try again")
            return False

        # Without a live session, connect() logs in once the identifier is confirmed.
        if self._subscription is not None and self._connection.session is not None:
            try:
                await self._subscription.log_in(registration.uid)
            except Exception as e:
                self._log.warning("Subscription login failed: %s", e)
        self._echo("Validated! Use `install` to install on a server")
        try:
            await self._connection.connect()
            await self._connection.connect_push()
        except Exception as e:
            self._log.warning("Failed to connect to PeerBook: %s", e)
            self._echo("Failed to connect to PeerBook")
        self._operator.print_prompt()
        return True

    async def _watch_enrollment(self) -> None:
        try:
            await self._operator.start_watchdog(self._watchdog_timeout_s)
        except Exception as e:
            self._log.debug("Enrollment watchdog ended: %r", e)
            self._echo("Timed out waiting for OTP")
            self._operator.print_prompt()
