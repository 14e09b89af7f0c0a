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
"""Socksy exception hierarchy.

Only ConfigurationError is fatal for the process. Every other error is
scoped to a single client connection: the handler logs it and the proxy
keeps accepting.
"""

from __future__ import annotations


class SocksyError(Exception):
    """Base class for all Socksy errors."""


class ConfigurationError(SocksyError):
    """Missing or invalid configuration, or an unknown bind interface."""


class ProtocolError(SocksyError):
    """The client sent bytes that do not follow SOCKS5."""


class HandshakeError(ProtocolError):
    """Method negotiation failed."""


class CommandParseError(ProtocolError):
    """The command frame could not be parsed."""


class ProtocolStateError(SocksyError):
    """A protocol operation was called in the wrong connection phase."""


class ResolutionError(SocksyError):
    """A target domain could not be resolved, or resolved to nothing."""


class InterfaceBindError(SocksyError):
    """An outbound socket could not be pinned to the configured interface."""


class ConnectError(SocksyError):
    """The outbound connect attempt failed."""


class ReplyError(SocksyError):
    """Sending the SOCKS5 reply frame failed."""


class RelayError(SocksyError):
    """An I/O error interrupted the byte relay."""

    def __init__(self, message: str, bytes_up: int = 0, bytes_down: int = 0) -> None:
        super().__init__(message)
        self.bytes_up = bytes_up
        self.bytes_down = bytes_down
