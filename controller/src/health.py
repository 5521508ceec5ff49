from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


def _no_campaigns() -> int:
    return 0


@dataclass(frozen=True)
class HealthStatus:
    """What the health endpoints report: the watch readiness flag and running campaign count.

    Readiness follows the watch alone; running campaigns appear in the body
    but never change the status code.
    """

    ready: threading.Event
    active_campaigns: Callable[[], int] = field(default=_no_campaigns)

    def readiness(self) -> tuple[int, bytes]:
        is_ready = self.ready.is_set()
        body = f"ready={'true' if is_ready else 'false'} campaigns={self.active_campaigns()}"
        return (200 if is_ready else 503), body.encode()


class HealthRequestHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics``; anything else is a 404."""

    routes = {
        "/healthz": "_liveness",
        "/readyz": "_readiness",
        "/metrics": "_metrics",
    }

    def __init__(self, *args: Any, status: HealthStatus, **kwargs: Any) -> None:
        # The base class handles the request inside __init__.
        self.status = status
        super().__init__(*args, **kwargs)

    def _respond(self, code: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(code)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _liveness(self) -> None:
        self._respond(200, b"ok")

    def _readiness(self) -> None:
        self._respond(*self.status.readiness())

    def _metrics(self) -> None:
        self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        route = self.routes.get(urlsplit(self.path).path)
        if route is None:
            self._respond(404)
            return
        getattr(self, route)()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    ready: threading.Event, port: int, active_campaigns: Callable[[], int] | None = None
) -> ThreadingHTTPServer:
    """Serve health checks and metrics from a daemon thread; the caller owns ``shutdown()``."""
    status = HealthStatus(ready=ready, active_campaigns=active_campaigns or _no_campaigns)
    server = ThreadingHTTPServer(
        ("0.0.0.0", port),  # noqa: S104
        functools.partial(HealthRequestHandler, status=status),
    )
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
