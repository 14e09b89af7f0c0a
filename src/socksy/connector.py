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
"""Interface-bound outbound connector.

Resolves a CONNECT target and opens a TCP socket pinned to the
configured network interface with SO_BINDTODEVICE. If the pin cannot
be applied the connection fails; it never falls back to the default
route.
"""

from __future__ import annotations

import logging
import socket
import sys

from .errors import ConnectError, InterfaceBindError, ResolutionError
from .protocol import Address, DomainAddress

logger = logging.getLogger("socksy.connector")


def resolve_target(address: Address) -> tuple[socket.AddressFamily, tuple]:
    """Resolve a SOCKS address into (family, sockaddr).

    Domain names go through the system resolver and only the first
    returned address is used.

    Raises:
        ResolutionError: If resolution fails or yields no addresses.
    """
    if not isinstance(address, DomainAddress):
        return address.family, (address.host, address.port)

    try:
        infos = socket.getaddrinfo(address.domain, address.port, type=socket.SOCK_STREAM)
    except (OSError, UnicodeError) as exc:
        raise ResolutionError(f"Unable to resolve {address.domain}: {exc}") from exc
    if not infos:
        raise ResolutionError(f"Resolving {address.domain} returned 0 results")

    family, _type, _proto, _canonname, sockaddr = infos[0]
    logger.debug("Resolved %s to %s (%d candidates)", address.domain, sockaddr[0], len(infos))
    return family, sockaddr


def bind_to_interface(sock: socket.socket, interface: str) -> None:
    """Pin a socket's egress to a named interface."""
    if not hasattr(socket, "SO_BINDTODEVICE"):
        raise InterfaceBindError(f"Binding to an interface is not supported on {sys.platform}")
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, interface.encode())
    except OSError as exc:
        raise InterfaceBindError(f"Unable to bind to {interface}: {exc}") from exc


def open_bound_connection(
    family: socket.AddressFamily, sockaddr: tuple, interface: str
) -> socket.socket:
    """Create a socket of the target's family, pin it, and connect it.

    Raises:
        InterfaceBindError: If the interface pin could not be applied.
        ConnectError: If the connect attempt itself failed.
    """
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        bind_to_interface(sock, interface)
        sock.connect(sockaddr)
    except InterfaceBindError:
        sock.close()
        raise
    except OSError as exc:
        sock.close()
        raise ConnectError(f"Connect to {sockaddr[0]}:{sockaddr[1]} failed: {exc}") from exc
    return sock
