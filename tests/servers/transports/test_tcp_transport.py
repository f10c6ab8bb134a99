"""
Brief: Tests for lodestar.servers.transports.tcp.tcp_query.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading
from typing import Callable

import pytest

from lodestar.servers.transports.tcp import TCPError, _recv_exact, tcp_query


def _serve_once(handler: Callable[[socket.socket], None]):
    """
    Brief: Start a one-shot TCP listener running handler on the first connection.

    Inputs:
      - handler: callable receiving the accepted socket.

    Outputs:
      - (host, port, listener_socket, thread)
    """
    lsock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    lsock.bind(("127.0.0.1", 0))
    lsock.listen(1)
    lsock.settimeout(2.0)

    def run():
        try:
            conn, _ = lsock.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(2.0)
            handler(conn)

    t = threading.Thread(target=run, daemon=True)
    t.start()
    host, port = lsock.getsockname()
    return host, port, lsock, t


def test_tcp_query_uses_length_framing() -> None:
    """
    Brief: tcp_query sends a 2-byte length prefix and reads a framed reply.

    Inputs:
      - None

    Outputs:
      - None
    """
    seen = {}

    def handler(conn):
        ln = int.from_bytes(_recv_exact(conn, 2), "big")
        seen["query"] = _recv_exact(conn, ln)
        body = b"reply:" + seen["query"]
        conn.sendall(len(body).to_bytes(2, "big") + body)

    host, port, lsock, t = _serve_once(handler)
    try:
        assert tcp_query(host, port, b"\xab\xcdq", timeout_ms=1000) == b"reply:\xab\xcdq"
        assert seen["query"] == b"\xab\xcdq"
    finally:
        lsock.close()
        t.join(timeout=2.0)


def test_tcp_query_short_body_raises() -> None:
    def handler(conn):
        ln = int.from_bytes(_recv_exact(conn, 2), "big")
        _recv_exact(conn, ln)
        conn.sendall((10).to_bytes(2, "big") + b"abc")

    host, port, lsock, t = _serve_once(handler)
    try:
        with pytest.raises(TCPError, match="short read on body"):
            tcp_query(host, port, b"q", timeout_ms=1000)
    finally:
        lsock.close()
        t.join(timeout=2.0)


def test_tcp_query_closed_before_header_raises() -> None:
    def handler(conn):
        _recv_exact(conn, 3)

    host, port, lsock, t = _serve_once(handler)
    try:
        with pytest.raises(TCPError, match="short read on length header"):
            tcp_query(host, port, b"q", timeout_ms=1000)
    finally:
        lsock.close()
        t.join(timeout=2.0)


def test_tcp_query_connection_refused_raises() -> None:
    """
    Brief: Nothing listening on the port maps to TCPError.

    Inputs:
      - None

    Outputs:
      - None
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    with pytest.raises(TCPError):
        tcp_query("127.0.0.1", port, b"q", timeout_ms=500)


def test_tcp_query_times_out_on_silent_upstream() -> None:
    release = threading.Event()

    def handler(conn):
        release.wait(2.0)

    host, port, lsock, t = _serve_once(handler)
    try:
        with pytest.raises(TCPError):
            tcp_query(host, port, b"q", timeout_ms=150)
    finally:
        release.set()
        lsock.close()
        t.join(timeout=2.0)
