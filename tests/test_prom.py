from __future__ import annotations

import gzip

from prometheus_client import CollectorRegistry, Counter, Gauge

from flexmetrics.telemetry.prom import metrics_handler
from flexmetrics.web.mux import Request


def _registry() -> CollectorRegistry:
    reg = CollectorRegistry()
    Counter("jobs_total", "Jobs.", registry=reg).inc(2)
    Gauge("queue_depth", "Depth.", registry=reg).set(7)
    return reg


def _get(handler, query: str = "", headers: dict | None = None):
    return handler(Request(method="GET", path="/metrics", query=query, headers=headers or {}))


def test_text_exposition():
    resp = _get(metrics_handler(_registry()))
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("text/plain")
    text = resp.body.decode()
    assert "jobs_total 2.0" in text
    assert "queue_depth 7.0" in text


def test_self_instrumentation_counts_scrapes():
    reg = _registry()
    handler = metrics_handler(reg)
    _get(handler)
    _get(handler)
    assert reg.get_sample_value("promhttp_metric_handler_requests_total", {"code": "200"}) == 2.0
    assert reg.get_sample_value("promhttp_metric_handler_requests_in_flight") == 0.0
    # A second handler on the same registry shares the instruments.
    _get(metrics_handler(reg))
    assert reg.get_sample_value("promhttp_metric_handler_requests_total", {"code": "200"}) == 3.0


def test_name_filter():
    resp = _get(metrics_handler(_registry()), "name[]=queue_depth")
    text = resp.body.decode()
    assert "queue_depth 7.0" in text
    assert "jobs_total" not in text


def test_openmetrics_negotiation():
    resp = _get(metrics_handler(_registry()), headers={"Accept": "application/openmetrics-text; version=1.0.0"})
    assert resp.headers["Content-Type"].startswith("application/openmetrics-text")
    assert resp.body.decode().rstrip().endswith("# EOF")


def test_gzip():
    resp = _get(metrics_handler(_registry()), headers={"Accept-Encoding": "gzip, deflate"})
    assert resp.headers["Content-Encoding"] == "gzip"
    assert b"jobs_total" in gzip.decompress(resp.body)


def test_identity_without_gzip_in_accept_encoding():
    for accept in ("", "deflate", "br"):
        resp = _get(metrics_handler(_registry()), headers={"Accept-Encoding": accept} if accept else None)
        assert "Content-Encoding" not in resp.headers
        assert b"jobs_total" in resp.body
