"""Pytest configuration and shared fixtures for socksy tests."""

import socket
import struct
import sys
import threading
from pathlib import Path

import pytest

# Ensure src/socksy is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

LOOPBACK_INTERFACE = "lo"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: end-to-end test through a running proxy")


def _can_bind_to_device(interface: str) -> bool:
    if not hasattr(socket, "SO_BINDTODEVICE"):
        return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, interface.encode())
        except OSError:
            return False
    return True


requires_bind_to_device = pytest.mark.skipif(
    not _can_bind_to_device(LOOPBACK_INTERFACE),
    reason=f"SO_BINDTODEVICE on {LOOPBACK_INTERFACE!r} not available here",
)


def find_free_port() -> int:
    """Find an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def recv_exact(sock: socket.socket, size: int) -> bytes:
    buf = b""
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def recv_until_eof(sock: socket.socket) -> bytes:
    buf = b""
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return buf
        buf += chunk


def socks_greet(sock: socket.socket, methods: bytes = b"\x00") -> bytes:
    """Send the method-selection greeting and return the 2-byte answer."""
    sock.sendall(bytes([5, len(methods)]) + methods)
    return recv_exact(sock, 2)


def socks_request(sock: socket.socket, cmd: int, host: str, port: int) -> None:
    """Send a request frame; IPv4 literals as ATYP 1, anything else as a domain."""
    try:
        addr = b"\x01" + socket.inet_aton(host)
    except OSError:
        raw = host.encode()
        addr = bytes([3, len(raw)]) + raw
    sock.sendall(bytes([5, cmd, 0]) + addr + struct.pack("!H", port))


def read_reply(sock: socket.socket) -> tuple[int, str, int]:
    """Read an IPv4 reply frame and return (status, bound host, bound port)."""
    head = recv_exact(sock, 4)
    assert len(head) == 4, f"short reply header: {head!r}"
    assert head[0] == 5
    assert head[3] == 1
    body = recv_exact(sock, 6)
    host = socket.inet_ntoa(body[:4])
    (port,) = struct.unpack("!H", body[4:])
    return head[1], host, port


class EchoServer:
    """Threaded TCP echo server that records when each connection ends."""

    def __init__(self) -> None:
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(16)
        self.address = self._listener.getsockname()
        self.connections_closed = threading.Event()
        self.peers: list[tuple] = []
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def _accept_loop(self) -> None:
        while True:
            try:
                conn, addr = self._listener.accept()
            except OSError:
                return
            self.peers.append(addr)
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    def _echo(self, conn: socket.socket) -> None:
        with conn:
            try:
                while True:
                    data = conn.recv(65536)
                    if not data:
                        break
                    conn.sendall(data)
            except OSError:
                pass
        self.connections_closed.set()

    def close(self) -> None:
        self._listener.close()


@pytest.fixture
def echo_server():
    server = EchoServer()
    yield server
    server.close()


@pytest.fixture
def refused_port() -> int:
    """A loopback port with nothing listening on it."""
    return find_free_port()
