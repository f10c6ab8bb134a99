import logging
import socketserver
from typing import Callable, Tuple

logger = logging.getLogger("lodestar.udp")

Resolver = Callable[[bytes, str], bytes]


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles one UDP DNS datagram on its own thread.

    The bound ``resolver`` maps (query_bytes, client_ip) -> response_bytes.
    An empty response means "drop": nothing is sent back.

    Example use:
        Instantiated by socketserver for every datagram received by a
        UDPListener; not normally created directly.
    """

    resolver: Resolver

    def handle(self) -> None:
        data, sock = self.request
        client_ip = (
            self.client_address[0]
            if isinstance(self.client_address, tuple)
            else "0.0.0.0"
        )
        wire = self.resolver(data, client_ip)
        if not wire:
            return
        try:
            sock.sendto(wire, self.client_address)
        except OSError as e:
            logger.warning("Failed to respond to %s: %s", self.client_address, e)


def _handler_for(resolver: Resolver) -> type:
    # One handler subclass per listener so resolvers never leak between servers.
    return type(
        "BoundDNSUDPHandler",
        (DNSUDPHandler,),
        {"resolver": staticmethod(resolver)},
    )


class UDPListener:
    """A threaded UDP DNS listener.

    Inputs (constructor):
      - host, port: Bind address; port 0 picks a free port.
      - resolver: Callable (query_bytes, client_ip) -> response_bytes.

    Outputs:
      - UDPListener; the socket is bound on construction so bind failures
        surface immediately as OSError.

    Example use:
        >>> import threading
        >>> listener = UDPListener("127.0.0.1", 0, engine.resolve_query_bytes)
        >>> threading.Thread(target=listener.serve_forever, daemon=True).start()
        >>> listener.stop()
    """

    def __init__(self, host: str, port: int, resolver: Resolver) -> None:
        try:
            self.server = socketserver.ThreadingUDPServer(
                (host, port), _handler_for(resolver)
            )
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        self.server.daemon_threads = True
        self._serving = False
        logger.debug("DNS UDP server bound to %s:%d", *self.server_address)

    @property
    def server_address(self) -> Tuple[str, int]:
        return self.server.server_address[:2]

    def serve_forever(self) -> None:
        """Run the receive loop until stop() is called."""
        self._serving = True
        try:
            self.server.serve_forever()
        finally:
            self._serving = False

    def stop(self) -> None:
        """Stop the receive loop (if running) and close the socket."""
        try:
            if self._serving:
                self.server.shutdown()
        finally:
            self.server.server_close()
