"""Prometheus exposition handler.

Serves a ``prometheus_client`` registry in whichever format the client asks
for, gzip-compressed when accepted. Like promhttp in other ecosystems the
handler instruments itself with
``promhttp_metric_handler_requests_total{code}`` and
``promhttp_metric_handler_requests_in_flight``, registered on the served
registry.
"""
from __future__ import annotations

import gzip
import threading
import weakref
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge
from prometheus_client.exposition import choose_encoder, gzip_accepted

from ..web.mux import Handler, Request, Response, error
from .logging import get_logger

log = get_logger(__name__)

# Cache created metrics per registry to avoid duplicate registration errors
# when several handlers are built for the same registry (e.g. in tests).
_INSTRUMENTS: "weakref.WeakKeyDictionary[CollectorRegistry, tuple[Counter, Gauge]]" = (
    weakref.WeakKeyDictionary()
)
_LOCK = threading.Lock()


def _instruments(registry: CollectorRegistry) -> tuple[Counter, Gauge]:
    with _LOCK:
        if registry not in _INSTRUMENTS:
            total = Counter(
                "promhttp_metric_handler_requests_total",
                "Total number of scrapes by HTTP status code.",
                ["code"],
                registry=registry,
            )
            in_flight = Gauge(
                "promhttp_metric_handler_requests_in_flight",
                "Current number of scrapes being served.",
                registry=registry,
            )
            # Expose the common codes at zero before the first scrape.
            for code in ("200", "500", "503"):
                total.labels(code=code)
            _INSTRUMENTS[registry] = (total, in_flight)
        return _INSTRUMENTS[registry]


def metrics_handler(registry: Optional[CollectorRegistry] = None) -> Handler:
    """Build a handler exposing ``registry`` (the default registry if None)."""
    registry = registry if registry is not None else REGISTRY
    total, in_flight = _instruments(registry)

    def handle(request: Request) -> Response:
        in_flight.inc()
        try:
            resp = _render(registry, request)
        finally:
            in_flight.dec()
        total.labels(code=str(resp.status)).inc()
        return resp

    return handle


def _render(registry: CollectorRegistry, request: Request) -> Response:
    encoder, content_type = choose_encoder(request.header("Accept"))
    names = request.args().get("name[]")
    target = registry.restricted_registry(names) if names else registry
    try:
        body = encoder(target)
    except Exception as exc:
        log.error("error gathering metrics: %s", exc)
        return error(500, f"An error has occurred while serving metrics:\n\n{exc}")
    headers = {"Content-Type": content_type}
    if gzip_accepted(request.header("Accept-Encoding")):
        body = gzip.compress(body)
        headers["Content-Encoding"] = "gzip"
        headers["Vary"] = "Accept-Encoding"
    return Response(status=200, body=body, headers=headers)
