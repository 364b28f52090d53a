"""One-time-password verification loop."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from .const import ADMIN_VERIFY, VERIFY_OK
from .errors import Cancelled, PeerbookError, VerificationRejected
from .interfaces import Operator

DEFAULT_PROMPT = "Enter OTP to verify gate"


class _AdminCommander(Protocol):
    async def admin_command(self, command: str, *args: str) -> str: ...


class VerificationLoop:
    """
    Prompt for one-time codes until the registry accepts one.

    Retries are unbounded; only the operator cancelling the prompt ends the
    loop without success.
    """

    def __init__(
        self,
        connection: _AdminCommander,
        operator: Operator,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._connection = connection
        self._operator = operator
        self._log = logger or logging.getLogger(__name__)

    async def verify(self, fingerprint: str, prompt: Optional[str] = None) -> bool:
        """Return True once verified, False if the operator cancelled."""
        while True:
            self._log.debug("Verifying FP %s", fingerprint)
            try:
                otp = await self._operator.ask_value(prompt or DEFAULT_PROMPT)
            except Cancelled:
                self._log.debug("Verification cancelled")
                return False
            try:
                await self._submit(fingerprint, otp)
            except VerificationRejected:
                self._operator.write_line("Invalid OTP, please try again")
                continue
            except PeerbookError as e:
                self._log.info("verify: failed to verify: %s", e)
                self._operator.write_line("Failed to verify, please try again")
                continue
            return True

    async def _submit(self, fingerprint: str, otp: str) -> None:
        # admin_command connects first when there is no session.
        data = await self._connection.admin_command(ADMIN_VERIFY, fingerprint, otp)
        self._log.debug("Got verify reply %r", data[:1])
        if data[:1] != VERIFY_OK:
            raise VerificationRejected(f"verify replied {data[:1]!r}")
