"""
Brief: Tests for lodestar.servers.transports.udp.udp_query.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest

from lodestar.servers.transports.udp import UDPError, udp_query


@pytest.fixture
def udp_echo_server():
    """
    Brief: Local UDP server echoing one datagram back with a prefix.

    Inputs:
      - None

    Outputs:
      - (host, port) tuple of the bound server.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)

    def serve():
        try:
            data, addr = sock.recvfrom(4096)
            sock.sendto(b"echo:" + data, addr)
        except OSError:
            pass

    t = threading.Thread(target=serve, daemon=True)
    t.start()
    yield sock.getsockname()
    sock.close()
    t.join(timeout=2.0)


def test_udp_query_roundtrip(udp_echo_server) -> None:
    """
    Brief: udp_query returns the first datagram sent back by the upstream.

    Inputs:
      - udp_echo_server: fixture

    Outputs:
      - None
    """
    host, port = udp_echo_server
    assert udp_query(host, port, b"\x12\x34hello", timeout_ms=1000) == b"echo:\x12\x34hello"


def test_udp_query_timeout_raises_udperror() -> None:
    """
    Brief: A silent upstream produces UDPError once the timeout passes.

    Inputs:
      - None

    Outputs:
      - None
    """
    silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    silent.bind(("127.0.0.1", 0))
    try:
        host, port = silent.getsockname()
        with pytest.raises(UDPError):
            udp_query(host, port, b"\x00\x01", timeout_ms=100)
    finally:
        silent.close()


def test_udp_query_wraps_socket_errors(monkeypatch) -> None:
    class _BadSocket:
        def __init__(self, *a, **kw):
            raise OSError("no sockets for you")

    monkeypatch.setattr(socket, "socket", _BadSocket)
    with pytest.raises(UDPError, match="no sockets for you"):
        udp_query("127.0.0.1", 53, b"q", timeout_ms=100)
