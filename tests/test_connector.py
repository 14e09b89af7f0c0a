# Socksy
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for target resolution and interface-bound connects."""

import socket
from unittest.mock import MagicMock, patch

import pytest

from conftest import LOOPBACK_INTERFACE, requires_bind_to_device
from socksy.connector import bind_to_interface, open_bound_connection, resolve_target
from socksy.errors import ConnectError, InterfaceBindError, ResolutionError
from socksy.protocol import DomainAddress, SocketAddress


def _addrinfo(*hosts):
    return [
        (
            socket.AF_INET6 if ":" in h else socket.AF_INET,
            socket.SOCK_STREAM,
            6,
            "",
            (h, 443, 0, 0) if ":" in h else (h, 443),
        )
        for h in hosts
    ]


class TestResolveTarget:
    def test_ipv4_literal_not_resolved(self):
        with patch("socksy.connector.socket.getaddrinfo") as gai:
            family, sockaddr = resolve_target(SocketAddress("10.0.0.1", 80))
        gai.assert_not_called()
        assert family == socket.AF_INET
        assert sockaddr == ("10.0.0.1", 80)

    def test_ipv6_literal_family(self):
        family, sockaddr = resolve_target(SocketAddress("::1", 80))
        assert family == socket.AF_INET6
        assert sockaddr == ("::1", 80)

    @pytest.mark.parametrize("count", [1, 2, 5])
    def test_domain_uses_first_result_only(self, count):
        hosts = [f"192.0.2.{i + 1}" for i in range(count)]
        with patch("socksy.connector.socket.getaddrinfo", return_value=_addrinfo(*hosts)):
            family, sockaddr = resolve_target(DomainAddress("example.com", 443))
        assert family == socket.AF_INET
        assert sockaddr == ("192.0.2.1", 443)

    def test_family_follows_first_result(self):
        infos = _addrinfo("2001:db8::7", "192.0.2.1")
        with patch("socksy.connector.socket.getaddrinfo", return_value=infos):
            family, sockaddr = resolve_target(DomainAddress("dual.example", 443))
        assert family == socket.AF_INET6
        assert sockaddr[0] == "2001:db8::7"

    def test_resolver_error(self):
        error = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        with patch("socksy.connector.socket.getaddrinfo", side_effect=error):
            with pytest.raises(ResolutionError, match="Unable to resolve nowhere.invalid"):
                resolve_target(DomainAddress("nowhere.invalid", 80))

    def test_zero_results(self):
        with patch("socksy.connector.socket.getaddrinfo", return_value=[]):
            with pytest.raises(ResolutionError, match="0 results"):
                resolve_target(DomainAddress("empty.example", 80))


class TestBindToInterface:
    def test_setsockopt_failure_is_fatal(self):
        sock = MagicMock()
        sock.setsockopt.side_effect = PermissionError(1, "Operation not permitted")
        with patch.object(socket, "SO_BINDTODEVICE", 25, create=True):
            with pytest.raises(InterfaceBindError, match="Unable to bind to eth9"):
                bind_to_interface(sock, "eth9")

    def test_platform_without_device_binding(self, monkeypatch):
        monkeypatch.delattr(socket, "SO_BINDTODEVICE", raising=False)
        with pytest.raises(InterfaceBindError, match="not supported"):
            bind_to_interface(MagicMock(), "eth0")

    def test_passes_interface_name(self):
        sock = MagicMock()
        with patch.object(socket, "SO_BINDTODEVICE", 25, create=True):
            bind_to_interface(sock, "wg0")
        sock.setsockopt.assert_called_once_with(socket.SOL_SOCKET, 25, b"wg0")


class TestOpenBoundConnection:
    def test_bind_failure_never_connects(self):
        with patch(
            "socksy.connector.bind_to_interface", side_effect=InterfaceBindError("no such device")
        ), patch("socksy.connector.socket.socket") as sock_cls:
            with pytest.raises(InterfaceBindError):
                open_bound_connection(socket.AF_INET, ("127.0.0.1", 1), "eth9")
        sock = sock_cls.return_value
        sock.connect.assert_not_called()
        sock.close.assert_called_once()

    def test_socket_family_matches_target(self):
        with patch("socksy.connector.bind_to_interface"), patch(
            "socksy.connector.socket.socket"
        ) as sock_cls:
            open_bound_connection(socket.AF_INET6, ("::1", 80, 0, 0), "lo")
        sock_cls.assert_called_once_with(socket.AF_INET6, socket.SOCK_STREAM)

    def test_refused_maps_to_connect_error(self, refused_port):
        with patch("socksy.connector.bind_to_interface"):
            with pytest.raises(ConnectError, match="failed"):
                open_bound_connection(socket.AF_INET, ("127.0.0.1", refused_port), "lo")

    @requires_bind_to_device
    def test_connects_through_loopback(self, echo_server):
        sock = open_bound_connection(socket.AF_INET, echo_server.address, LOOPBACK_INTERFACE)
        with sock:
            sock.sendall(b"ping")
            assert sock.recv(4) == b"ping"
