# Socksy
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Socksy.
#
# Socksy is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Layered proxy configuration.

Every setting is resolved from four ordered layers, lowest precedence
first:

  1. Built-in defaults
  2. YAML config file (optional, --config or SOCKSY_CONFIG)
  3. Environment variables (SOCKSY_LISTEN_ADDRESS, SOCKSY_BIND_INTERFACE, ...)
  4. Command line arguments

A key present in a higher layer wins. A key missing from a layer (or set
to None) leaves the lower value in place.

The result is a frozen ProxyConfig that is built once at startup and
shared, read-only, by every connection handler.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil
import yaml

from .errors import ConfigurationError

logger = logging.getLogger("socksy.config")

ENV_PREFIX = "SOCKSY_"
CONFIG_PATH_ENV = ENV_PREFIX + "CONFIG"

DEFAULT_LISTEN_ADDRESS = "127.0.0.1:8888"
DEFAULT_LOG_LEVEL = "INFO"

CONFIG_KEYS: tuple[str, ...] = ("listen_address", "bind_interface", "log_level")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR")

# bind_interface has no default
DEFAULTS: dict[str, Any] = {
    "listen_address": DEFAULT_LISTEN_ADDRESS,
    "log_level": DEFAULT_LOG_LEVEL,
}


@dataclass(frozen=True)
class ProxyConfig:
    """Resolved, immutable proxy configuration."""

    bind_interface: str
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def listen_host(self) -> str:
        return parse_listen_address(self.listen_address)[0]

    @property
    def listen_port(self) -> int:
        return parse_listen_address(self.listen_address)[1]


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises:
        ConfigurationError: If the address has no port or the port is invalid.
    """
    text = address.strip()
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ConfigurationError(f"Invalid listen address: {address!r}")
        port_str = rest[1:]
    else:
        host, sep, port_str = text.rpartition(":")
        if not sep or ":" in host:
            raise ConfigurationError(
                f"Invalid listen address: {address!r} (expected host:port or [v6]:port)"
            )

    if not host:
        raise ConfigurationError(f"Invalid listen address: {address!r} (missing host)")

    try:
        port = int(port_str)
    except ValueError:
        raise ConfigurationError(f"Invalid port in listen address: {address!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"Port out of range in listen address: {address!r}")
    return host, port


def merge_layers(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge value layers, later layers overriding earlier ones.

    None values never override, so an unset CLI flag keeps the
    environment or default value.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is not None:
                merged[key] = value
    return merged


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect SOCKSY_* variables for every known key."""
    env = os.environ if environ is None else environ
    values = {}
    for key in CONFIG_KEYS:
        var = ENV_PREFIX + key.upper()
        if var in env:
            values[key] = env[var]
    return values


def load_config_file(path: Path | str) -> dict[str, Any]:
    """Load a flat YAML mapping of config keys.

    Dashed spellings (``listen-address``) are accepted alongside
    underscored ones. Unknown keys are ignored with a warning.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to read config file {config_path}: {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid config file {config_path} (not a mapping)")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        normalized = str(key).replace("-", "_").lower()
        if normalized not in CONFIG_KEYS:
            logger.warning("Ignoring unknown config key %r in %s", key, config_path)
            continue
        values[normalized] = value
    logger.debug("Loaded %d config values from %s", len(values), config_path)
    return values


def build_config(values: Mapping[str, Any]) -> ProxyConfig:
    """Turn a merged value mapping into a validated ProxyConfig."""
    bind_interface = values.get("bind_interface")
    if bind_interface is None:
        raise ConfigurationError(
            "bind_interface is required (--bind-interface or SOCKSY_BIND_INTERFACE)"
        )
    bind_interface = str(bind_interface).strip()
    if not bind_interface:
        raise ConfigurationError("bind_interface must not be empty")

    listen_address = str(values.get("listen_address", DEFAULT_LISTEN_ADDRESS)).strip()
    parse_listen_address(listen_address)

    log_level = str(values.get("log_level", DEFAULT_LOG_LEVEL)).upper()
    if log_level not in LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level {log_level!r} (expected one of {', '.join(LOG_LEVELS)})"
        )

    return ProxyConfig(
        bind_interface=bind_interface,
        listen_address=listen_address,
        log_level=log_level,
    )


def resolve_config(
    cli_values: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    config_path: Path | str | None = None,
) -> ProxyConfig:
    """Resolve the effective configuration from all layers.

    Args:
        cli_values: Values parsed from the command line (None = not given).
        environ: Environment mapping, defaults to os.environ.
        config_path: Explicit config file. Falls back to SOCKSY_CONFIG.
    """
    env = os.environ if environ is None else environ
    path = config_path or env.get(CONFIG_PATH_ENV)
    file_values = load_config_file(path) if path else {}

    merged = merge_layers(DEFAULTS, file_values, env_overrides(env), cli_values)
    return build_config(merged)


def list_interfaces() -> set[str]:
    """Return the names of the host's network interfaces."""
    return set(psutil.net_if_addrs())


def validate_interface(
    config: ProxyConfig,
    enumerate_interfaces: Callable[[], Iterable[str]] = list_interfaces,
) -> None:
    """Require config.bind_interface to exist on this host.

    If the host cannot enumerate its interfaces at all, validation is
    skipped with a warning.

    Raises:
        ConfigurationError: If the interface is not among the enumerated ones.
    """
    try:
        names = set(enumerate_interfaces())
    except (OSError, psutil.Error) as exc:
        logger.warning(
            "Failed to fetch network interfaces for configuration validation, skipping. %s",
            exc,
        )
        return

    if config.bind_interface not in names:
        raise ConfigurationError(f"{config.bind_interface} is not a known network interface")
    logger.debug("Bind interface %s validated", config.bind_interface)
