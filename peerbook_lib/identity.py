"""Device identity helpers (fingerprint and default device name)."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import socket
from pathlib import Path
from typing import Any, Optional

import psutil

logger = logging.getLogger(__name__)

_NULL_MACS = {"", "00:00:00:00:00:00", "00-00-00-00-00-00"}


class DeviceIdentity:
    """
    Stable per-device identity.

    The fingerprint is derived from the first hardware address found on a
    network interface. Without one, a random value is generated and, when a
    path is given, persisted so it survives restarts.
    """

    def __init__(self, *, store_path: Optional[str | Path] = None, device_name: Optional[str] = None) -> None:
        self._store_path = Path(store_path) if store_path is not None else None
        self._device_name = device_name
        self._fingerprint: Optional[str] = None

    async def get_fingerprint(self) -> str:
        if self._fingerprint is None:
            self._fingerprint = await asyncio.to_thread(self._load_fingerprint)
        return self._fingerprint

    async def get_device_name(self) -> str:
        return self._device_name or socket.gethostname()

    def _load_fingerprint(self) -> str:
        mac = _get_primary_mac()
        if mac:
            return fingerprint_from_mac(mac)
        if self._store_path is not None:
            try:
                stored = self._store_path.read_text(encoding="utf-8").strip()
            except OSError:
                stored = ""
            if stored:
                return stored
        fp = _generate_fingerprint()
        if self._store_path is not None:
            try:
                self._store_path.parent.mkdir(parents=True, exist_ok=True)
                self._store_path.write_text(fp, encoding="utf-8")
            except OSError as e:
                logger.debug("Could not persist fingerprint to %s: %s", self._store_path, e)
        return fp


def fingerprint_from_mac(mac: str) -> str:
    normalized = _normalize_mac(mac)
    return hashlib.sha256(normalized.encode("ascii")).hexdigest().upper()


def _get_primary_mac() -> str | None:
    try:
        addresses = psutil.net_if_addrs()
    except (OSError, RuntimeError):
        return None
    for name in sorted(addresses):
        if name.startswith("lo"):
            continue
        mac = _extract_mac(addresses[name])
        if mac:
            return mac
    return None


def _extract_mac(addrs: list[Any]) -> str | None:
    mac_families = {
        getattr(psutil, "AF_LINK", None),
        getattr(socket, "AF_PACKET", None),
        getattr(socket, "AF_LINK", None),
    }
    mac_families.discard(None)
    for addr in addrs:
        if addr.family in mac_families and addr.address and addr.address not in _NULL_MACS:
            return addr.address
    return None


def _normalize_mac(mac: str) -> str:
    return "".join(ch for ch in mac if ch.isalnum()).lower()


def _generate_fingerprint() -> str:
    return secrets.token_hex(32).upper()
