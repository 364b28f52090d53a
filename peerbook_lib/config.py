"""Configuration loading for peerbook_lib."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import voluptuous as vol

from .const import (
    CHANNEL_COLS,
    CHANNEL_PRIORITY,
    CHANNEL_ROWS,
    DEFAULT_ENTITLEMENT,
    DEFAULT_HOST,
    DEFAULT_PEER_KIND,
    FLUSH_DELAY_S,
    OUTBOUND_CAPACITY,
    RECONNECT_MAX_DELAY_S,
    WATCHDOG_TIMEOUT_S,
)
from .errors import ConfigError
from .types import ClientConfig

CONF_HOST = "host"
CONF_INSECURE = "insecure"
CONF_ENTITLEMENT = "entitlement"
CONF_PEER_KIND = "peer_kind"
CONF_OUTBOUND_CAPACITY = "outbound_capacity"
CONF_FLUSH_DELAY = "flush_delay_s"
CONF_WATCHDOG_TIMEOUT = "watchdog_timeout_s"
CONF_CHANNEL_PRIORITY = "channel_priority"
CONF_CHANNEL_COLS = "channel_cols"
CONF_CHANNEL_ROWS = "channel_rows"
CONF_PUSH_RECONNECT = "push_reconnect"
CONF_RECONNECT_MAX_DELAY = "reconnect_max_delay_s"
CONF_LOGGER_NAME = "logger_name"

_POSITIVE_INT = vol.All(vol.Coerce(int), vol.Range(min=1))
_NON_NEGATIVE_FLOAT = vol.All(vol.Coerce(float), vol.Range(min=0))

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_HOST, default=DEFAULT_HOST): vol.All(str, vol.Length(min=1)),
        vol.Optional(CONF_INSECURE, default=False): vol.Boolean(),
        vol.Optional(CONF_ENTITLEMENT, default=DEFAULT_ENTITLEMENT): str,
        vol.Optional(CONF_PEER_KIND, default=DEFAULT_PEER_KIND): str,
        vol.Optional(CONF_OUTBOUND_CAPACITY, default=OUTBOUND_CAPACITY): _POSITIVE_INT,
        vol.Optional(CONF_FLUSH_DELAY, default=FLUSH_DELAY_S): _NON_NEGATIVE_FLOAT,
        vol.Optional(CONF_WATCHDOG_TIMEOUT, default=WATCHDOG_TIMEOUT_S): _NON_NEGATIVE_FLOAT,
        vol.Optional(CONF_CHANNEL_PRIORITY, default=CHANNEL_PRIORITY): vol.Coerce(int),
        vol.Optional(CONF_CHANNEL_COLS, default=CHANNEL_COLS): _POSITIVE_INT,
        vol.Optional(CONF_CHANNEL_ROWS, default=CHANNEL_ROWS): _POSITIVE_INT,
        vol.Optional(CONF_PUSH_RECONNECT, default=False): vol.Boolean(),
        vol.Optional(CONF_RECONNECT_MAX_DELAY, default=RECONNECT_MAX_DELAY_S): _NON_NEGATIVE_FLOAT,
        vol.Optional(CONF_LOGGER_NAME): vol.Any(None, str),
    }
)


def load_config(data: Mapping[str, Any] | None = None) -> ClientConfig:
    """Validate a plain mapping and return the matching ClientConfig."""
    try:
        validated = CONFIG_SCHEMA(dict(data or {}))
    except vol.Invalid as err:
        raise ConfigError(f"Invalid configuration: {err}") from err
    return ClientConfig(**validated)


def load_config_file(path: str | Path) -> ClientConfig:
    """Read a JSON configuration file."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
        data = json.loads(raw)
    except (OSError, ValueError) as err:
        raise ConfigError(f"Failed to read configuration from {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {path} must be a JSON object.")
    return load_config(data)
