import asyncio
import logging
import socket
import socketserver
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger("lodestar.tcp")

Resolver = Callable[[bytes, str], bytes]


async def _read_exact(reader: asyncio.StreamReader, n: int) -> bytes:
    """
    Read exactly n bytes from an asyncio StreamReader.

    Inputs:
      - reader: asyncio.StreamReader
      - n: Number of bytes to read
    Outputs:
      - bytes: Exactly n bytes unless EOF occurs early.
    """
    data = b""
    while len(data) < n:
        chunk = await reader.read(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


async def _handle_conn(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    resolver: Resolver,
    idle_timeout: float = 15.0,
    executor: Optional[Executor] = None,
) -> None:
    """
    Serve length-prefixed DNS queries on one TCP connection until EOF or idle.

    Inputs:
      - reader/writer: Connection streams.
      - resolver: Callable (query_bytes, client_ip) -> response_bytes; run in
        executor so slow upstream exchanges do not block the loop.
      - idle_timeout: Seconds to wait for the next query before closing.
      - executor: Pool running the resolver; None means the loop default.
    Outputs:
      - None

    An empty response from the resolver closes the connection without a reply.
    """
    peer = writer.get_extra_info("peername")
    client_ip = peer[0] if isinstance(peer, tuple) else "0.0.0.0"
    try:
        while True:
            hdr = await asyncio.wait_for(_read_exact(reader, 2), timeout=idle_timeout)
            if len(hdr) != 2:
                break
            ln = int.from_bytes(hdr, byteorder="big")
            if ln <= 0:
                break
            query = await asyncio.wait_for(
                _read_exact(reader, ln), timeout=idle_timeout
            )
            if len(query) != ln:
                break
            response = await asyncio.get_running_loop().run_in_executor(
                executor, resolver, query, client_ip
            )
            if not response:
                break
            writer.write(len(response).to_bytes(2, "big") + response)
            await writer.drain()
    except asyncio.TimeoutError:
        logger.debug("Closing idle TCP connection from %s", client_ip)
    except (ConnectionError, OSError) as e:
        logger.debug("TCP connection from %s ended: %s", client_ip, e)
    finally:
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def serve_tcp(
    host: str,
    port: int,
    resolver: Resolver,
    *,
    idle_timeout: float = 15.0,
    max_workers: int = 128,
    ready: Optional[threading.Event] = None,
) -> None:
    """
    Serve DNS-over-TCP on host:port until the task is cancelled.

    Inputs:
      - host, port: Listen address.
      - resolver: Callable mapping (query_bytes, client_ip) -> response_bytes.
      - idle_timeout: Per-connection idle timeout in seconds.
      - max_workers: Size of the thread pool resolving queries; bounds how
        many TCP queries are answered concurrently.
      - ready: Optional event set once the socket is bound.
    Outputs:
      - None (runs forever). Bind failures propagate as OSError.

    Example:
      >>> asyncio.run(serve_tcp('127.0.0.1', 5353, resolver))
    """
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lodestar-tcp")
    try:
        server = await asyncio.start_server(
            lambda r, w: _handle_conn(r, w, resolver, idle_timeout, executor), host, port
        )
        logger.debug(
            "DNS TCP server bound to %s", [s.getsockname() for s in server.sockets]
        )
        if ready is not None:
            ready.set()
        async with server:
            await server.serve_forever()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


class DNSTCPHandler(socketserver.BaseRequestHandler):
    """Threaded fallback: serve framed queries on one accepted connection."""

    resolver: Resolver
    idle_timeout: float = 15.0

    def handle(self) -> None:
        sock: socket.socket = self.request
        client_ip = self.client_address[0]
        sock.settimeout(self.idle_timeout)
        try:
            while True:
                hdr = _recv_exact(sock, 2)
                if len(hdr) != 2:
                    return
                ln = int.from_bytes(hdr, "big")
                query = _recv_exact(sock, ln)
                if ln <= 0 or len(query) != ln:
                    return
                response = self.resolver(query, client_ip)
                if not response:
                    return
                sock.sendall(len(response).to_bytes(2, "big") + response)
        except OSError as e:
            logger.debug("TCP connection from %s ended: %s", client_ip, e)


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def make_tcp_server_threaded(
    host: str, port: int, resolver: Resolver, *, idle_timeout: float = 15.0
) -> socketserver.ThreadingTCPServer:
    """
    Bind a thread-per-connection DNS-over-TCP server (not yet serving).

    Inputs:
      - host, port: Listen address.
      - resolver: Callable mapping (query_bytes, client_ip) -> response_bytes.
      - idle_timeout: Per-connection idle timeout in seconds.
    Outputs:
      - Bound ThreadingTCPServer; call serve_forever() to run it.
    """
    handler = type(
        "BoundDNSTCPHandler",
        (DNSTCPHandler,),
        {"resolver": staticmethod(resolver), "idle_timeout": idle_timeout},
    )
    return _ThreadingTCPServer((host, port), handler)

