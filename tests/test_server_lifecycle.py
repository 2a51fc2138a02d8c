from __future__ import annotations

import gzip
import http.client
import socket
import threading
import time
import urllib.error
import urllib.request

import pytest
from prometheus_client import CollectorRegistry, Counter

from flexmetrics import (
    SERVER_ADDR_KEY,
    ShutdownError,
    State,
    background,
    new,
    with_addr,
    with_logger,
    with_path,
    with_registry,
)
from flexmetrics.core.errors import AddressError, FlexmetricsError, ShutdownCancelled
from flexmetrics.web.mux import Response
from flexmetrics.utils.net import split_host_port


class CaptureLogger:
    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self.lines: list[str] = []

    def info(self, msg, *args):  # noqa: ANN001, ANN002
        self.lines.append(self.prefix + (msg % args))


def _start(srv, ctx=None):
    errors: list[BaseException] = []

    def target() -> None:
        try:
            srv.run(ctx)
        except BaseException as e:  # noqa: BLE001 - reported by the test
            errors.append(e)

    t = threading.Thread(target=target, daemon=True)
    t.start()
    deadline = time.monotonic() + 5.0
    while not srv.listener_addr and not errors and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not errors, errors
    assert srv.listener_addr
    return t, errors


def _get(url: str, headers: dict | None = None):
    req = urllib.request.Request(url, headers=headers or {})
    with urllib.request.urlopen(req, timeout=5) as resp:
        return resp.status, dict(resp.headers), resp.read()


def _registry() -> CollectorRegistry:
    reg = CollectorRegistry()
    c = Counter("flexmetrics_test_events_total", "Test events.", registry=reg)
    c.inc(3)
    return reg


def test_ephemeral_port_serves_metrics():
    srv = new(with_addr("127.0.0.1:0"), with_registry(_registry()), with_logger(CaptureLogger("")), environ={})
    t, errors = _start(srv)
    try:
        host, port = split_host_port(srv.listener_addr)
        assert host == "127.0.0.1"
        assert port != 0
        assert srv.state is State.SERVING

        status, headers, body = _get(f"http://{srv.listener_addr}{srv.path}")
        assert status == 200
        assert headers["Content-Type"].startswith("text/plain")
        text = body.decode()
        assert "flexmetrics_test_events_total 3.0" in text
        assert "promhttp_metric_handler_requests_in_flight" in text
    finally:
        srv.halt(background().with_timeout(5))
    t.join(5)
    assert not t.is_alive()
    assert not errors
    assert srv.state is State.STOPPED


def test_routes_and_404():
    srv = new(with_addr("127.0.0.1:0"), with_path("custom"), with_logger(CaptureLogger("")), environ={})
    t, _ = _start(srv)
    try:
        base = f"http://{srv.listener_addr}"
        assert _get(base + "/custom")[0] == 200
        status, headers, body = _get(base + "/debug/pprof/")
        assert status == 200
        assert headers["Content-Type"].startswith("text/html")
        assert b"profile" in body
        assert _get(base + "/debug/pprof/cmdline")[0] == 200
        assert _get(base + "/debug/pprof/symbol")[2] == b"num_symbols: 1\n"
        assert _get(base + "/debug/pprof/trace?seconds=0.1")[0] == 200
        assert _get(base + "/debug/pprof/threads")[0] == 200

        for path in ("/metrics", "/", "/debug/pprof/unknown", "/nope"):
            with pytest.raises(urllib.error.HTTPError) as ei:
                _get(base + path)
            assert ei.value.code == 404, path
    finally:
        srv.halt(background().with_timeout(5))
    t.join(5)


def test_default_profile_duration_exceeds_write_timeout():
    srv = new(with_addr("127.0.0.1:0"), with_logger(CaptureLogger("")), environ={})
    t, _ = _start(srv)
    try:
        with pytest.raises(urllib.error.HTTPError) as ei:
            _get(f"http://{srv.listener_addr}/debug/pprof/profile")
        assert ei.value.code == 400
        assert b"WriteTimeout" in ei.value.read()
        status, _, body = _get(f"http://{srv.listener_addr}/debug/pprof/profile?seconds=1")
        assert status == 200
    finally:
        srv.halt(background().with_timeout(5))
    t.join(5)


def test_metrics_gzip():
    srv = new(with_addr("127.0.0.1:0"), with_registry(_registry()), with_logger(CaptureLogger("")), environ={})
    t, _ = _start(srv)
    try:
        status, headers, body = _get(f"http://{srv.listener_addr}/metrics", {"Accept-Encoding": "gzip"})
        assert status == 200
        assert headers["Content-Encoding"] == "gzip"
        assert b"flexmetrics_test_events_total" in gzip.decompress(body)
    finally:
        srv.halt(background().with_timeout(5))
    t.join(5)


def test_logger_sees_start_and_stop_lines_in_order():
    logger = CaptureLogger("TEST_LOGGER: ")
    srv = new(with_addr("127.0.0.1:"), with_logger(logger), environ={})
    ctx = background().with_cancel()
    ctx.cancel()
    t, _ = _start(srv, ctx)
    srv.halt(ctx)
    t.join(5)

    assert len(logger.lines) == 2
    start, stop = logger.lines
    url = f"http://{srv.listener_addr}/metrics"
    assert start == f"TEST_LOGGER: serving profiling and prometheus metrics over http on {url}"
    assert stop == f"TEST_LOGGER: stopping serving profiling and prometheus metrics over http on {url}"


def test_halt_is_idempotent():
    logger = CaptureLogger("")
    srv = new(with_addr("127.0.0.1:0"), with_logger(logger), environ={})
    t, _ = _start(srv)
    srv.halt()
    t.join(5)
    srv.halt()
    srv.halt(background().with_timeout(0))
    assert srv.state is State.STOPPED
    assert len(logger.lines) == 2


def test_halt_without_run_fails():
    srv = new(with_addr("127.0.0.1:0"), with_logger(CaptureLogger("")), environ={})
    with pytest.raises(ShutdownError):
        srv.halt()


def test_bind_failure_is_returned_and_fatal():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        port = blocker.getsockname()[1]
        srv = new(with_addr(f"127.0.0.1:{port}"), with_logger(CaptureLogger("")), environ={})
        with pytest.raises(OSError):
            srv.run()
        assert srv.state is State.STOPPED
        assert srv.listener_addr == ""
        with pytest.raises(ShutdownError):
            srv.halt()
        with pytest.raises(FlexmetricsError):
            srv.run()
    finally:
        blocker.close()


def test_malformed_address_fails_at_run():
    srv = new(with_addr("no-port-here"), with_logger(CaptureLogger("")), environ={})
    with pytest.raises(AddressError):
        srv.run()
    assert srv.state is State.STOPPED


def test_run_twice_rejected():
    srv = new(with_addr("127.0.0.1:0"), with_logger(CaptureLogger("")), environ={})
    t, _ = _start(srv)
    try:
        with pytest.raises(FlexmetricsError):
            srv.run()
    finally:
        srv.halt()
    t.join(5)


def test_request_context_carries_listener_address():
    seen: dict = {}
    srv = new(with_addr("127.0.0.1:0"), with_logger(CaptureLogger("")), environ={})
    original = srv.build_mux

    def build_mux():
        mux = original()

        def inspect_context(request):
            seen["addr"] = request.context.value(SERVER_ADDR_KEY)
            seen["marker"] = request.context.value("marker")
            return Response.text("ok")

        mux.handle("/context", inspect_context)
        return mux

    srv.build_mux = build_mux  # type: ignore[method-assign]
    t, _ = _start(srv, background().with_value("marker", "from-caller"))
    try:
        assert _get(f"http://{srv.listener_addr}/context")[2] == b"ok"
    finally:
        srv.halt()
    t.join(5)
    assert seen == {"addr": srv.listener_addr, "marker": "from-caller"}


def test_halt_cancelled_with_request_in_flight():
    logger = CaptureLogger("")
    srv = new(with_addr("127.0.0.1:0"), with_logger(logger), environ={})
    entered = threading.Event()
    release = threading.Event()
    original = srv.build_mux

    def build_mux():
        mux = original()

        def slow(request):
            entered.set()
            release.wait(10)
            return Response.text("late")

        mux.handle("/slow", slow)
        return mux

    srv.build_mux = build_mux  # type: ignore[method-assign]
    t, errors = _start(srv)

    def client() -> None:
        try:
            _get(f"http://{srv.listener_addr}/slow")
        except (OSError, http.client.HTTPException):
            pass

    ct = threading.Thread(target=client, daemon=True)
    ct.start()
    assert entered.wait(5)
    try:
        start = time.monotonic()
        with pytest.raises(ShutdownCancelled):
            srv.halt(background().with_timeout(0.2))
        assert time.monotonic() - start < 3
        assert srv.state is State.STOPPED
        srv.halt()
        assert len(logger.lines) == 2
    finally:
        release.set()
    t.join(5)
    ct.join(5)
    assert errors == []
