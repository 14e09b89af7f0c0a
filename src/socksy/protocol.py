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
"""SOCKS5 server-side protocol engine (RFC 1928).

Wraps one accepted client socket in an IncomingConnection that walks
through a fixed sequence of phases:

  NEED_AUTHENTICATE --authenticate()--> NEED_COMMAND
  NEED_COMMAND --wait_for_command()--> NEED_REPLY
  NEED_REPLY --reply()--> REPLIED --close()--> CLOSED

Calling an operation from the wrong phase raises ProtocolStateError
immediately, so a reply can never go out before the command is read,
or twice. shutdown() and close() are valid in every phase.

Only the "no authentication required" method is offered.
"""

from __future__ import annotations

import enum
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from typing import Union

from .errors import CommandParseError, HandshakeError, ProtocolStateError, ReplyError

logger = logging.getLogger("socksy.protocol")

SOCKS_VERSION = 5

# Authentication methods
NO_AUTH = 0x00
NO_ACCEPTABLE_METHODS = 0xFF

# Commands
CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

# Address types
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04


class Reply(enum.IntEnum):
    """Reply field values of a SOCKS5 reply frame."""

    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class Phase(enum.Enum):
    NEED_AUTHENTICATE = "need_authenticate"
    NEED_COMMAND = "need_command"
    NEED_REPLY = "need_reply"
    REPLIED = "replied"
    FAILED = "failed"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SocketAddress:
    """A literal IPv4 or IPv6 address and port."""

    host: str
    port: int

    @property
    def family(self) -> socket.AddressFamily:
        if ipaddress.ip_address(self.host).version == 6:
            return socket.AF_INET6
        return socket.AF_INET

    @classmethod
    def from_sockaddr(cls, sockaddr: tuple) -> SocketAddress:
        """Build from a socket-module address tuple (v4 or v6 form)."""
        return cls(host=sockaddr[0], port=sockaddr[1])

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class DomainAddress:
    """A domain name and port, resolved later by the connector."""

    domain: str
    port: int

    def __str__(self) -> str:
        return f"{self.domain}:{self.port}"


Address = Union[SocketAddress, DomainAddress]


def unspecified_address() -> SocketAddress:
    return SocketAddress("0.0.0.0", 0)


def encode_address(address: Address) -> bytes:
    """Encode ATYP + address + port as they appear on the wire."""
    port = struct.pack("!H", address.port)
    if isinstance(address, DomainAddress):
        raw = address.domain.encode("utf-8")
        if len(raw) > 255:
            raise ValueError(f"Domain name too long for SOCKS5: {len(raw)} bytes")
        return bytes([ATYP_DOMAIN, len(raw)]) + raw + port

    ip = ipaddress.ip_address(address.host)
    atyp = ATYP_IPV4 if ip.version == 4 else ATYP_IPV6
    return bytes([atyp]) + ip.packed + port


# ---------------------------------------------------------------------------
# Commands -- closed set of three variants
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Connect:
    address: Address


@dataclass(frozen=True)
class Bind:
    address: Address


@dataclass(frozen=True)
class Associate:
    address: Address


Command = Union[Connect, Bind, Associate]

_COMMANDS = {
    CMD_CONNECT: Connect,
    CMD_BIND: Bind,
    CMD_UDP_ASSOCIATE: Associate,
}


# ---------------------------------------------------------------------------
# Connection state machine
# ---------------------------------------------------------------------------
class IncomingConnection:
    """One accepted SOCKS5 client connection.

    The handler that accepted the socket is its only owner; the object
    is never shared between threads.
    """

    def __init__(self, sock: socket.socket, peer: tuple | None = None) -> None:
        self._sock = sock
        self.peer = peer
        self._phase = Phase.NEED_AUTHENTICATE

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def socket(self) -> socket.socket:
        """The client socket, available for relaying once a reply was sent."""
        self._expect("relay", Phase.REPLIED)
        return self._sock

    def authenticate(self) -> int:
        """Negotiate the authentication method.

        Returns:
            The selected method (always NO_AUTH).

        Raises:
            HandshakeError: On a bad greeting, no acceptable method, or I/O failure.
        """
        self._expect("authenticate", Phase.NEED_AUTHENTICATE)
        try:
            version, nmethods = self._read_exact(2, HandshakeError, "greeting")
            if version != SOCKS_VERSION:
                raise HandshakeError(f"Unsupported SOCKS version {version}")
            methods = self._read_exact(nmethods, HandshakeError, "method list")
            if NO_AUTH not in methods:
                self._sock.sendall(bytes([SOCKS_VERSION, NO_ACCEPTABLE_METHODS]))
                raise HandshakeError("Client offered no acceptable authentication method")
            self._sock.sendall(bytes([SOCKS_VERSION, NO_AUTH]))
        except HandshakeError:
            self._phase = Phase.FAILED
            raise
        except OSError as exc:
            self._phase = Phase.FAILED
            raise HandshakeError(f"Handshake I/O failed: {exc}") from exc

        self._phase = Phase.NEED_COMMAND
        return NO_AUTH

    def wait_for_command(self) -> Command:
        """Read the single command frame of this connection.

        Raises:
            CommandParseError: On a malformed frame or I/O failure.
        """
        self._expect("wait for a command", Phase.NEED_COMMAND)
        try:
            version, cmd, _reserved, atyp = self._read_exact(4, CommandParseError, "request")
            if version != SOCKS_VERSION:
                raise CommandParseError(f"Unsupported SOCKS version {version} in request")
            command_cls = _COMMANDS.get(cmd)
            if command_cls is None:
                self._send_failure(Reply.COMMAND_NOT_SUPPORTED)
                raise CommandParseError(f"Unknown command {cmd:#04x}")
            address = self._read_address(atyp)
        except CommandParseError:
            self._phase = Phase.FAILED
            raise
        except OSError as exc:
            self._phase = Phase.FAILED
            raise CommandParseError(f"Request I/O failed: {exc}") from exc

        self._phase = Phase.NEED_REPLY
        return command_cls(address)

    def reply(self, status: Reply, address: Address) -> None:
        """Send the one and only reply frame.

        Raises:
            ReplyError: If the frame could not be written.
        """
        self._expect("reply", Phase.NEED_REPLY)
        frame = bytes([SOCKS_VERSION, int(status), 0x00]) + encode_address(address)
        try:
            self._sock.sendall(frame)
        except OSError as exc:
            self._phase = Phase.FAILED
            raise ReplyError(f"Failed to send {status.name} reply: {exc}") from exc
        self._phase = Phase.REPLIED
        logger.debug("Replied %s (%s) to %s", status.name, address, self.peer)

    def shutdown(self) -> None:
        """Close the write half. Best effort: the peer may already be gone."""
        try:
            self._sock.shutdown(socket.SHUT_WR)
        except OSError as exc:
            logger.debug("Shutdown of %s failed: %s", self.peer, exc)

    def close(self) -> None:
        """Shut down and close the socket. Safe to call more than once."""
        if self._phase is Phase.CLOSED:
            return
        self.shutdown()
        self._sock.close()
        self._phase = Phase.CLOSED

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------
    def _expect(self, operation: str, *phases: Phase) -> None:
        if self._phase not in phases:
            raise ProtocolStateError(f"Cannot {operation} in phase {self._phase.name}")

    def _read_exact(self, size: int, error_cls: type[Exception], what: str) -> bytes:
        buf = b""
        while len(buf) < size:
            chunk = self._sock.recv(size - len(buf))
            if not chunk:
                raise error_cls(f"Connection closed while reading {what}")
            buf += chunk
        return buf

    def _read_address(self, atyp: int) -> Address:
        if atyp == ATYP_IPV4:
            raw = self._read_exact(4, CommandParseError, "IPv4 address")
            host = socket.inet_ntop(socket.AF_INET, raw)
        elif atyp == ATYP_IPV6:
            raw = self._read_exact(16, CommandParseError, "IPv6 address")
            host = socket.inet_ntop(socket.AF_INET6, raw)
        elif atyp == ATYP_DOMAIN:
            (length,) = self._read_exact(1, CommandParseError, "domain length")
            raw = self._read_exact(length, CommandParseError, "domain name")
            port = struct.unpack("!H", self._read_exact(2, CommandParseError, "port"))[0]
            return DomainAddress(raw.decode("utf-8", errors="replace"), port)
        else:
            self._send_failure(Reply.ADDRESS_TYPE_NOT_SUPPORTED)
            raise CommandParseError(f"Unknown address type {atyp:#04x}")

        port = struct.unpack("!H", self._read_exact(2, CommandParseError, "port"))[0]
        return SocketAddress(host, port)

    def _send_failure(self, status: Reply) -> None:
        frame = bytes([SOCKS_VERSION, int(status), 0x00]) + encode_address(unspecified_address())
        try:
            self._sock.sendall(frame)
        except OSError as exc:
            logger.debug("Could not send %s to %s: %s", status.name, self.peer, exc)
