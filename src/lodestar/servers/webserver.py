"""Admin HTTP server for lodestar (owned-record management, health).

This module provides a small FastAPI application over the shared RecordStore
and helpers to run it with uvicorn in a background thread alongside the DNS
listeners.

Routes:
  - GET    /api/records          list (snapshot)
  - POST   /api/records          create from a NamedRecord       [secret]
  - GET    /api/records/{name}   show one record
  - PUT    /api/records/{name}   create or replace a Record      [secret]
  - DELETE /api/records/{name}   remove a record (no-op if absent) [secret]
  - GET    /health               liveness
"""

from __future__ import annotations

import hmac
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status

from ..config.config_parser import ZoneConfig, zone_record_key
from ..records import NamedRecord, Record

logger = logging.getLogger("lodestar.webserver")

SECRET_HEADER = "Secret"


class _Suppress2xxAccessFilter(logging.Filter):
    """Logging filter that drops uvicorn access records for HTTP 2xx responses.

    Inputs:
      - record: logging.LogRecord from the uvicorn.access logger.

    Outputs:
      - bool: False for 2xx access records, True otherwise.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        status_code = getattr(record, "status_code", None)
        if status_code is None and isinstance(record.args, tuple) and len(record.args) >= 5:
            status_code = record.args[4]
        try:
            return not 200 <= int(status_code) < 300
        except (TypeError, ValueError):
            return True


def install_uvicorn_2xx_suppression() -> None:
    """Attach _Suppress2xxAccessFilter to the uvicorn.access logger once."""

    access_logger = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, _Suppress2xxAccessFilter) for f in access_logger.filters):
        access_logger.addFilter(_Suppress2xxAccessFilter())


def record_key(name: str, zone: str) -> str:
    """Brief: Normalize an admin-supplied name to a zone-relative RecordStore key.

    Inputs:
      - name: Relative label ("mail") or FQDN ("mail.example.com.").
      - zone: Owned zone name.

    Outputs:
      - str key without the zone suffix; raises HTTPException 422 for an
        empty name or the zone apex.
    """

    try:
        return zone_record_key(name, zone)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _build_secret_dependency(secret: str):
    """Build a FastAPI dependency enforcing the shared-secret header.

    Inputs:
      - secret: Configured admin secret.

    Outputs:
      - Dependency callable usable with FastAPI Depends(); raises 403 when
        the ``Secret`` header does not match.
    """

    expected = str(secret or "").encode("utf-8")

    async def _check_secret(request: Request) -> None:
        provided = (request.headers.get(SECRET_HEADER) or "").encode("utf-8")
        if not hmac.compare_digest(provided, expected):
            logger.info(
                "Rejected %s %s: incorrect shared secret",
                request.method,
                request.url.path,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Incorrect shared secret",
            )

    return _check_secret


def create_app(config: ZoneConfig) -> FastAPI:
    """Create the FastAPI app exposing record management endpoints.

    Inputs:
      - config: Shared ZoneConfig; its RecordStore is the only state touched.

    Outputs:
      - Configured FastAPI application instance.

    Example:
      >>> from fastapi.testclient import TestClient
      >>> client = TestClient(create_app(zone_config))
      >>> client.get("/api/records").status_code
      200
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        install_uvicorn_2xx_suppression()
        yield

    app = FastAPI(title="lodestar admin HTTP API", lifespan=lifespan)
    app.state.zone_config = config
    store = config.records
    check_secret = _build_secret_dependency(config.secret)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "zone": config.name,
            "server_time": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/records")
    def list_records() -> Dict[str, Record]:
        return store.snapshot()

    @app.post(
        "/api/records",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(check_secret)],
    )
    def create_record(payload: NamedRecord) -> NamedRecord:
        key = record_key(payload.name, config.name)
        store.set(key, payload.record())
        logger.info("Created record %s -> %s (ttl %d)", key, payload.address, payload.ttl)
        return NamedRecord(name=key, address=payload.address, ttl=payload.ttl)

    @app.get("/api/records/{name}")
    def show_record(name: str) -> Record:
        record = store.get(record_key(name, config.name))
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
        return record

    @app.put("/api/records/{name}", dependencies=[Depends(check_secret)])
    def update_record(name: str, payload: Record) -> Record:
        key = record_key(name, config.name)
        store.set(key, payload)
        logger.info("Updated record %s -> %s (ttl %d)", key, payload.address, payload.ttl)
        return payload

    @app.delete(
        "/api/records/{name}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=[Depends(check_secret)],
    )
    def delete_record(name: str) -> Response:
        key = record_key(name, config.name)
        store.delete(key)
        logger.info("Deleted record %s", key)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


class WebServerHandle:
    """Handle for a background admin webserver thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: uvicorn.Server instance (or any object with should_exit).

    Outputs:
      - WebServerHandle instance with stop() and is_running().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to exit and wait for the thread to finish."""
        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)


def start_webserver(
    config: ZoneConfig, http_cfg: Optional[Dict[str, Any]] = None
) -> Optional[WebServerHandle]:
    """Start the admin HTTP server with uvicorn in a daemon thread.

    Inputs:
      - config: Shared ZoneConfig.
      - http_cfg: The ``http`` block of config.yaml (enabled/host/port).

    Outputs:
      - WebServerHandle, or None when ``http.enabled`` is false.

    Example:
      >>> handle = start_webserver(zone_config, {"enabled": True, "port": 8081})
      >>> handle.is_running()
      True
    """

    import uvicorn

    http_cfg = http_cfg or {}
    if not bool(http_cfg.get("enabled", True)):
        return None

    host = str(http_cfg.get("host", "127.0.0.1"))
    port = int(http_cfg.get("port", 8081))
    if not config.secret:
        logger.warning(
            "Admin webserver has no shared secret configured; mutating routes accept an empty Secret header"
        )

    server = uvicorn.Server(
        uvicorn.Config(create_app(config), host=host, port=port, log_level="info")
    )

    def _runner() -> None:
        try:
            server.run()
        except Exception:  # pragma: no cover - surfaced through is_running()
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="lodestar-webserver", daemon=True)
    thread.start()
    logger.info("Started admin webserver on %s:%d", host, port)
    return WebServerHandle(thread, server)
