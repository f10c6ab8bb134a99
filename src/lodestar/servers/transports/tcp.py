import socket
import time


class TCPError(Exception):
    """
    A DNS-over-TCP upstream exchange error.

    Inputs:
      - message: Error description.
    Outputs:
      - Exception instance.

    Brief: Raised for connect/read/write errors, timeouts, or framing errors.
    """

    pass


def tcp_query(host: str, port: int, query: bytes, *, timeout_ms: int = 2000) -> bytes:
    """
    Perform a single DNS-over-TCP exchange using two-byte length framing (RFC 7766).

    Inputs:
      - host: Upstream resolver host/IP.
      - port: Upstream TCP port.
      - query: Wire-format DNS query bytes.
      - timeout_ms: Deadline for the whole exchange (connect, write and read).
    Outputs:
      - bytes: Wire-format DNS response.

    Example:
      >>> resp = tcp_query('8.8.8.8', 53, b'\x12\x34...')
    """
    deadline = time.monotonic() + timeout_ms / 1000.0

    def _remaining() -> float:
        left = deadline - time.monotonic()
        if left <= 0:
            raise socket.timeout("timed out")
        return left

    payload = len(query).to_bytes(2, byteorder="big") + query
    try:
        with socket.create_connection((host, int(port)), timeout=_remaining()) as sock:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(_remaining())
            sock.sendall(payload)
            sock.settimeout(_remaining())
            hdr = _recv_exact(sock, 2)
            if len(hdr) != 2:
                raise TCPError(f"short read on length header from {host}:{port}")
            resp_len = int.from_bytes(hdr, byteorder="big")
            sock.settimeout(_remaining())
            resp = _recv_exact(sock, resp_len)
            if len(resp) != resp_len:
                raise TCPError(f"short read on body from {host}:{port}")
            return resp
    except OSError as e:
        raise TCPError(f"Network error talking to {host}:{port}: {e}") from e


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    """
    Receive exactly n bytes from a blocking socket.

    Inputs:
      - sock: Socket
      - n: Number of bytes
    Outputs:
      - bytes: Exactly n bytes unless EOF occurs.

    Example:
      >>> _recv_exact(sock, 2)
    """
    remaining = n
    chunks = []
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
