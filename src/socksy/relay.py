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
"""Bidirectional byte relay between a client and its target.

Each direction is copied by its own pump so a slow reader on one side
never stalls the other. End-of-stream in one direction is forwarded as
a write-half close to the other socket; the relay finishes once both
directions have reached end-of-stream, or on the first I/O error. An
error aborts both sockets so the surviving pump wakes up. Whatever ends
it, both sockets are shut down and closed before the relay returns or
raises.

There is no idle timeout.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass

from .errors import RelayError

logger = logging.getLogger("socksy.relay")

# Buffer size for each recv
_RELAY_BUFSIZE = 65536


@dataclass
class RelayStats:
    """Bytes moved in each direction."""

    bytes_up: int = 0  # client -> target
    bytes_down: int = 0  # target -> client


def relay(client: socket.socket, target: socket.socket) -> RelayStats:
    """Copy bytes both ways until both directions finish.

    The client -> target direction runs in a helper thread, the
    target -> client direction in the calling thread.

    Raises:
        RelayError: On an I/O error, after both sockets were closed.
    """
    stats = RelayStats()
    errors: list[OSError] = []

    upstream = threading.Thread(
        target=_pump,
        args=(client, target, stats, "up", errors),
        name="socksy-relay-up",
        daemon=True,
    )
    upstream.start()
    try:
        _pump(target, client, stats, "down", errors)
    finally:
        upstream.join()
        close_pair(client, target)

    if errors:
        raise RelayError(
            f"Relay interrupted after {stats.bytes_up}/{stats.bytes_down} bytes: {errors[0]}",
            stats.bytes_up,
            stats.bytes_down,
        ) from errors[0]
    return stats


def close_pair(first: socket.socket, second: socket.socket) -> None:
    """Write-half close, then close, both sockets independently."""
    for sock in (first, second):
        try:
            sock.shutdown(socket.SHUT_WR)
        except OSError as exc:
            logger.debug("Shutdown failed on fd %d: %s", sock.fileno(), exc)
        sock.close()


def _pump(
    src: socket.socket,
    dst: socket.socket,
    stats: RelayStats,
    direction: str,
    errors: list[OSError],
) -> None:
    """Copy src to dst until end-of-stream, then half-close dst."""
    try:
        while True:
            data = src.recv(_RELAY_BUFSIZE)
            if not data:
                break
            dst.sendall(data)
            if direction == "up":
                stats.bytes_up += len(data)
            else:
                stats.bytes_down += len(data)
    except OSError as exc:
        logger.debug("Relay %s failed: %s", direction, exc)
        errors.append(exc)
        _abort(src, dst)
        return
    _half_close(dst)


def _abort(*socks: socket.socket) -> None:
    # Unblocks the other pump's recv or sendall
    for sock in socks:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("Abort shutdown failed: %s", exc)


def _half_close(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError as exc:
        # Peer already gone; the other direction will report it.
        logger.debug("Half-close failed: %s", exc)
