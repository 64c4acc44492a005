from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

LOGGER = logging.getLogger(__name__)

_TEXT = "text/plain; charset=utf-8"


@dataclass(frozen=True)
class Probe:
    """What the probe endpoints report on.

    ``leader`` is None when leader election is disabled, in which case this
    replica always counts as leading.
    """

    synced: threading.Event
    registry: CollectorRegistry
    leader: threading.Event | None = None

    @property
    def leading(self) -> bool:
        return self.leader is None or self.leader.is_set()


Response = tuple[int, bytes, str]


class HealthServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, address: tuple[str, int], probe: Probe) -> None:
        super().__init__(address, _ProbeHandler)
        self.probe = probe


class _ProbeHandler(BaseHTTPRequestHandler):
    server: HealthServer

    def _healthz(self, probe: Probe) -> Response:
        return 200, b"ok", _TEXT

    def _leadz(self, probe: Probe) -> Response:
        if probe.leading:
            return 200, b"ok", _TEXT
        return 503, b"not leader", _TEXT

    def _readyz(self, probe: Probe) -> Response:
        synced = probe.synced.is_set()
        leading = probe.leading
        body = f"synced={str(synced).lower()} leader={str(leading).lower()}"
        return (200 if synced and leading else 503), body.encode(), _TEXT

    def _metrics(self, probe: Probe) -> Response:
        return 200, generate_latest(probe.registry), CONTENT_TYPE_LATEST

    def do_GET(self) -> None:
        routes: dict[str, Callable[[Probe], Response]] = {
            "/healthz": self._healthz,
            "/leadz": self._leadz,
            "/readyz": self._readyz,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path.split("?", 1)[0])
        status, body, content_type = route(self.server.probe) if route else (404, b"", _TEXT)
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    synced: threading.Event,
    registry: CollectorRegistry,
    port: int,
    leader: threading.Event | None = None,
) -> HealthServer:
    """Serve ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics`` on *port* from a daemon thread.

    ``/readyz`` succeeds once the rule cache has synced and, with leader
    election enabled, while this replica leads.
    """
    server = HealthServer(("0.0.0.0", port), Probe(synced, registry, leader))  # noqa: S104
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
