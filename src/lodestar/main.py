import argparse
import asyncio
import functools
import logging
import signal
import threading
import time
from typing import Callable, Dict, List, Optional

from .config.config_parser import ZoneConfig, load_zone_config
from .config.logging_config import init_logging
from .servers.server import ZoneResolver
from .servers.tcp_server import make_tcp_server_threaded, serve_tcp
from .servers.udp_server import UDPListener
from .servers.webserver import start_webserver

logger = logging.getLogger("lodestar.main")

# Seconds to wait for the TCP listener to report a bound socket.
TCP_READY_TIMEOUT = 5.0


class _ListenerThread(threading.Thread):
    """Daemon thread running one listener; records the exception that ended it."""

    def __init__(self, name: str, target: Callable[[], None]) -> None:
        super().__init__(name=name, daemon=True)
        self._target_fn = target
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self._target_fn()
        except Exception as e:
            self.error = e
            logger.error("Listener %s failed: %s", self.name, e)


def _wait_ready(ready: threading.Event, thread: threading.Thread, timeout: float) -> bool:
    """Wait until ready is set; give up early if the thread has already died."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if ready.wait(0.05):
            return thread.is_alive()
        if not thread.is_alive():
            return False
    return False


def _tcp_runner(
    zone: ZoneConfig, resolver: Callable[[bytes, str], bytes], ready: threading.Event
) -> Callable[[], None]:
    def runner() -> None:
        try:
            loop = asyncio.new_event_loop()
        except PermissionError:
            # Restricted environments (seccomp) can forbid the asyncio self-pipe.
            logger.warning("asyncio unavailable; using threaded TCP listener")
            server = make_tcp_server_threaded(
                zone.host, zone.port, resolver, idle_timeout=zone.tcp_idle_timeout
            )
            ready.set()
            try:
                server.serve_forever()
            finally:
                server.server_close()
            return
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(
                serve_tcp(
                    zone.host,
                    zone.port,
                    resolver,
                    idle_timeout=zone.tcp_idle_timeout,
                    max_workers=zone.tcp_workers,
                    ready=ready,
                )
            )
        finally:
            loop.close()

    return runner


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DNS server.
    Parses arguments, loads configuration, starts the UDP and TCP listeners
    and the admin webserver, then supervises them until shutdown.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown, 1 on configuration errors or when
        any listener fails to bind or stops unexpectedly.

    Example use:
        CLI:
            PYTHONPATH=src python -m lodestar.main --config config.yaml
    """
    parser = argparse.ArgumentParser(
        description="Authoritative zone DNS server with upstream fallback"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides environment and config vars)",
    )
    args = parser.parse_args(argv)

    try:
        cfg, zone = load_zone_config(args.config, cli_vars=args.var)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    init_logging(cfg.get("logging"))
    logger.info("Loaded config from %s", args.config)
    logger.info(
        "Zone %s: %d records, authority NS %s",
        zone.name,
        len(zone.records),
        zone.nameserver_host,
    )
    logger.info(
        "Nameservers: [%s]",
        ", ".join(f"{ns.address}/{ns.transport} {ns.timeout}s" for ns in zone.nameservers),
    )

    engine = ZoneResolver(zone)

    try:
        udp = UDPListener(
            zone.host, zone.port, functools.partial(engine.resolve_query_bytes, listener="udp")
        )
    except OSError as e:
        logger.error("Failed to bind UDP listener on %s:%d: %s", zone.host, zone.port, e)
        return 1

    threads: Dict[str, _ListenerThread] = {}
    web_handle = None
    shutdown_event = threading.Event()
    previous_handlers: Dict[int, object] = {}
    exit_code = 0

    def _request_shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down", signum)
        shutdown_event.set()

    try:
        logger.info("DNS on %s:%d (udp, tcp)", zone.host, zone.port)
        threads["udp"] = _ListenerThread("lodestar-udp", udp.serve_forever)
        threads["udp"].start()

        tcp_ready = threading.Event()
        threads["tcp"] = _ListenerThread(
            "lodestar-tcp",
            _tcp_runner(
                zone,
                functools.partial(engine.resolve_query_bytes, listener="tcp"),
                tcp_ready,
            ),
        )
        threads["tcp"].start()
        if not _wait_ready(tcp_ready, threads["tcp"], TCP_READY_TIMEOUT):
            logger.error("TCP listener on %s:%d did not start", zone.host, zone.port)
            return 1

        if "http" in cfg:
            try:
                web_handle = start_webserver(zone, cfg.get("http") or {})
            except Exception as e:
                logger.error("Failed to start webserver: %s", e)
                return 1

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                previous_handlers[sig] = signal.signal(sig, _request_shutdown)
            except ValueError:  # pragma: no cover - not on the main thread
                logger.debug("Cannot install handler for signal %s", sig)

        logger.info("Startup Completed")

        while not shutdown_event.wait(1.0):
            dead = [name for name, t in threads.items() if not t.is_alive()]
            if dead:
                logger.error("DNS server crashed: %s listener stopped", ", ".join(dead))
                exit_code = 1
                break
            if web_handle is not None and not web_handle.is_running():
                logger.error("Admin webserver stopped unexpectedly")
                exit_code = 1
                break
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        for sig, handler in previous_handlers.items():
            if handler is not None:
                signal.signal(sig, handler)
        udp.stop()
        if web_handle is not None:
            web_handle.stop()

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
