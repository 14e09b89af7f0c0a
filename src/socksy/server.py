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
"""SOCKS5 listener.

A single accept loop hands every accepted client to its own daemon
thread (socketserver.ThreadingTCPServer) and goes straight back to
accepting. There is no cap on concurrent connections.

Usage:
    server = SocksProxyServer(config)
    server.serve_forever()          # foreground, as the CLI does

    server.start()                  # or in a background thread
    ...
    server.stop()
"""

from __future__ import annotations

import logging
import socket
import socketserver
import threading

from .config import ProxyConfig, parse_listen_address
from .handler import SocksProxyHandler

logger = logging.getLogger("socksy.server")


class _ThreadingSocksServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False

    def __init__(
        self,
        server_address: tuple[str, int],
        config: ProxyConfig,
        address_family: socket.AddressFamily,
    ) -> None:
        self.address_family = address_family
        self.config = config
        super().__init__(server_address, SocksProxyHandler)

    def process_request(self, request, client_address) -> None:
        logger.info("Connection received from %s:%s", client_address[0], client_address[1])
        super().process_request(request, client_address)

    def handle_error(self, request, client_address) -> None:
        logger.exception("Unexpected error while handling %s", client_address)


class SocksProxyServer:
    """Listens on config.listen_address and serves SOCKS5 clients.

    The listening socket is bound in the constructor, so a bad or busy
    listen address raises OSError before anything is served.
    """

    def __init__(self, config: ProxyConfig) -> None:
        self._config = config
        host, port = parse_listen_address(config.listen_address)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        self._server = _ThreadingSocksServer((host, port), config, family)
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def server_address(self) -> tuple[str, int]:
        """The bound (host, port); the port is real even if 0 was requested."""
        address = self._server.server_address
        return address[0], address[1]

    @property
    def is_running(self) -> bool:
        return self._running

    def serve_forever(self) -> None:
        """Accept connections in the calling thread until stop() is called."""
        host, port = self.server_address
        logger.info(
            "Server started on %s:%d (bind_interface=%s)", host, port, self._config.bind_interface
        )
        self._running = True
        try:
            self._server.serve_forever()
        finally:
            self._running = False

    def start(self) -> None:
        """Serve in a background thread."""
        if self._running:
            logger.warning("SOCKS proxy already running")
            return
        self._thread = threading.Thread(target=self.serve_forever, name="socksy-accept", daemon=True)
        self._running = True
        self._thread.start()

    def stop(self) -> None:
        """Stop accepting and close the listening socket.

        In-flight relays are not drained; their daemon threads end when
        their peers close.
        """
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._running = False
        self._server.server_close()
        logger.info("Server stopped")
