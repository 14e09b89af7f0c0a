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
"""Per-connection handling: handshake, command dispatch, reply.

Flow for one accepted client:

  authenticate --> wait_for_command --> Connect   --> connector --> relay
                                    --> Bind      --> COMMAND_NOT_SUPPORTED
                                    --> Associate --> COMMAND_NOT_SUPPORTED

Every command receives exactly one reply frame before the connection
is closed, including when the target cannot be resolved. All errors
raised here are scoped to the one connection; SocksProxyHandler logs
them and the server keeps accepting.
"""

from __future__ import annotations

import logging
import socketserver

from .config import ProxyConfig
from .connector import open_bound_connection, resolve_target
from .errors import (
    CommandParseError,
    ConnectError,
    HandshakeError,
    InterfaceBindError,
    ReplyError,
    ResolutionError,
    SocksyError,
)
from .protocol import (
    Address,
    Associate,
    Bind,
    Connect,
    IncomingConnection,
    Reply,
    SocketAddress,
    unspecified_address,
)
from .relay import relay

logger = logging.getLogger("socksy.handler")


class SocksProxyHandler(socketserver.BaseRequestHandler):
    """Request handler run in its own thread for each accepted client.

    The resolved ProxyConfig is read from ``self.server.config``; it is
    frozen, so handlers share it without locking.
    """

    def handle(self) -> None:
        conn = IncomingConnection(self.request, self.client_address)
        try:
            handle_connection(conn, self.server.config)
        except SocksyError as exc:
            logger.error("%s: %s", _peer(conn), exc)


def handle_connection(conn: IncomingConnection, config: ProxyConfig) -> None:
    """Drive one connection from handshake to close."""
    try:
        conn.authenticate()
    except HandshakeError:
        conn.shutdown()
        raise
    logger.debug("%s: authenticated", _peer(conn))

    try:
        command = conn.wait_for_command()
    except CommandParseError:
        conn.shutdown()
        raise

    if isinstance(command, Connect):
        logger.info("%s: CONNECT %s", _peer(conn), command.address)
        handle_connect(conn, command.address, config)
    elif isinstance(command, Bind):
        logger.info("%s: BIND %s", _peer(conn), command.address)
        handle_unsupported(conn)
    elif isinstance(command, Associate):
        logger.info("%s: UDP ASSOCIATE %s", _peer(conn), command.address)
        handle_unsupported(conn)
    else:
        raise TypeError(f"Unhandled SOCKS command: {command!r}")


def handle_connect(conn: IncomingConnection, address: Address, config: ProxyConfig) -> None:
    """CONNECT: dial the target through the bound interface, then relay."""
    try:
        family, sockaddr = resolve_target(address)
        target = open_bound_connection(family, sockaddr, config.bind_interface)
    except ResolutionError:
        reply_and_close(conn, Reply.HOST_UNREACHABLE)
        raise
    except InterfaceBindError:
        reply_and_close(conn, Reply.GENERAL_FAILURE)
        raise
    except ConnectError as exc:
        logger.info("%s: %s", _peer(conn), exc)
        reply_and_close(conn, Reply.HOST_UNREACHABLE)
        return

    try:
        local = SocketAddress.from_sockaddr(target.getsockname())
    except OSError as exc:
        target.close()
        reply_and_close(conn, Reply.GENERAL_FAILURE)
        raise ConnectError(f"Unable to read local address for {address}: {exc}") from exc

    try:
        conn.reply(Reply.SUCCEEDED, local)
    except ReplyError:
        conn.close()
        target.close()
        raise

    logger.info(
        "%s: connected to %s via %s (local %s)", _peer(conn), address, config.bind_interface, local
    )
    try:
        stats = relay(conn.socket, target)
    finally:
        conn.close()
    logger.info(
        "%s: disconnected from %s (up=%d down=%d bytes)",
        _peer(conn),
        address,
        stats.bytes_up,
        stats.bytes_down,
    )


def handle_unsupported(conn: IncomingConnection) -> None:
    """BIND and UDP ASSOCIATE: always answer COMMAND_NOT_SUPPORTED."""
    reply_and_close(conn, Reply.COMMAND_NOT_SUPPORTED)


def reply_and_close(conn: IncomingConnection, status: Reply) -> None:
    """Send a failure reply with the unspecified address, then close.

    The connection is closed even if the reply itself fails; the
    ReplyError still propagates.
    """
    try:
        conn.reply(status, unspecified_address())
    finally:
        conn.close()


def _peer(conn: IncomingConnection) -> str:
    if not conn.peer:
        return "<unknown>"
    return str(SocketAddress.from_sockaddr(conn.peer))
