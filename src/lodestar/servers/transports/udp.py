import socket

# Largest datagram we are willing to accept from an upstream.
MAX_UDP_RESPONSE = 65535


class UDPError(Exception):
    """
    Brief: DNS-over-UDP upstream exchange error (socket error or timeout).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


def _family_for(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def udp_query(host: str, port: int, query: bytes, *, timeout_ms: int = 2000) -> bytes:
    """
    Brief: Send one wire-format query over UDP and return the first datagram back.

    Inputs:
    - host: upstream resolver host/IP (IPv4 or IPv6 literal, or hostname)
    - port: upstream UDP port
    - query: wire-format DNS query bytes
    - timeout_ms: socket timeout in milliseconds, covering send and receive

    Outputs:
    - bytes: wire-format DNS response (possibly truncated, TC=1)

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 53, b'\x00\x01', timeout_ms=100)
        ... except UDPError:
        ...     pass
    """
    try:
        with socket.socket(_family_for(host), socket.SOCK_DGRAM) as s:
            s.settimeout(timeout_ms / 1000.0)
            s.connect((host, int(port)))
            s.send(query)
            return s.recv(MAX_UDP_RESPONSE)
    except OSError as e:
        raise UDPError(f"UDP error talking to {host}:{port}: {e}") from e
