"""Metrics server: configuration resolution and run/halt lifecycle.

Usage::

    srv = new(with_addr("127.0.0.1:0"), with_logger(my_logger))
    threading.Thread(target=srv.run, daemon=True).start()
    ...
    srv.halt(background().with_timeout(5))

Resolution order, lowest to highest precedence: built-in defaults,
``METRICS_ADDR`` / ``METRICS_PROMETHEUS_PATH``, then options in the order
given. Default timeouts apply only to the server's own HTTP server, never to
one passed with :func:`with_server`.
"""
from __future__ import annotations

import enum
import threading
from typing import Callable, Mapping, Optional

from prometheus_client import CollectorRegistry

from . import config
from .context import Context, background
from .core.errors import FlexmetricsError, ServerClosed, ShutdownError
from .telemetry import pprof
from .telemetry.logging import Logger, default_logger, get_logger
from .telemetry.prom import metrics_handler
from .web.mux import ServeMux
from .web.server import HTTPServer

# Context key under which request handlers find the bound listener address.
SERVER_ADDR_KEY = "serverAddr"

log = get_logger(__name__)


class State(enum.Enum):
    CREATED = "created"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


Option = Callable[["Server"], None]


def with_path(path: str) -> Option:
    """Serve metrics on ``path``; overrides METRICS_PROMETHEUS_PATH."""

    def apply(s: "Server") -> None:
        s.path = path

    return apply


def with_addr(addr: str) -> Option:
    """Bind to ``addr``; overrides METRICS_ADDR."""

    def apply(s: "Server") -> None:
        s.http_server.addr = addr

    return apply


def with_server(server: HTTPServer) -> Option:
    """Use your own HTTP server, timeouts and address included."""

    def apply(s: "Server") -> None:
        s.http_server = server

    return apply


def with_logger(logger: Logger) -> Option:
    def apply(s: "Server") -> None:
        s.logger = logger

    return apply


def with_registry(registry: CollectorRegistry) -> Option:
    """Expose ``registry`` instead of the default prometheus_client registry."""

    def apply(s: "Server") -> None:
        s.registry = registry

    return apply


class Server:
    """Serves Prometheus metrics and profiling endpoints over HTTP.

    Built by :func:`new`. Single use: once :meth:`halt` has returned the
    server cannot be run again.
    """

    def __init__(self, path: str, http_server: HTTPServer, logger: Logger) -> None:
        self.path = path
        self.http_server = http_server
        self.logger = logger
        self.registry: Optional[CollectorRegistry] = None
        self.listener_addr = ""
        self._state = State.CREATED
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Server(addr={self.addr!r}, path={self.path!r}, state={self.state.value})"

    @property
    def addr(self) -> str:
        return self.http_server.addr

    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    def _set_state(self, state: State) -> None:
        with self._lock:
            self._state = state

    def build_mux(self) -> ServeMux:
        mux = ServeMux()
        mux.handle(self.path, metrics_handler(self.registry))
        mux.handle(pprof.PREFIX, pprof.index)
        mux.handle(pprof.PREFIX + "cmdline", pprof.cmdline)
        mux.handle(pprof.PREFIX + "profile", pprof.profile)
        mux.handle(pprof.PREFIX + "symbol", pprof.symbol)
        mux.handle(pprof.PREFIX + "trace", pprof.trace)
        return mux

    def run(self, ctx: Optional[Context] = None) -> None:
        """Bind, then serve until :meth:`halt`. Blocks the calling thread.

        ``ctx`` is handed to every request, carrying the bound address under
        ``"serverAddr"``. A bind failure raises the OSError from the socket
        layer; any serve failure other than the shutdown itself raises
        ServeError.
        """
        ctx = ctx or background()
        with self._lock:
            if self._state is not State.CREATED:
                raise FlexmetricsError(f"server already {self._state.value}")
            self._state = State.SERVING

        try:
            listener_addr = self.http_server.listen()
        except Exception:
            self._set_state(State.STOPPED)
            raise
        try:
            self.http_server.base_context = lambda addr: ctx.with_value(SERVER_ADDR_KEY, addr)
            self.http_server.handler = self.build_mux()
        except Exception:
            self.http_server.close()
            self._set_state(State.STOPPED)
            raise
        self.logger.info(
            "serving profiling and prometheus metrics over http on http://%s%s",
            listener_addr,
            self.path,
        )
        # halt keys off listener_addr, so the start line always precedes its own.
        with self._lock:
            self.listener_addr = listener_addr
        try:
            self.http_server.serve()
        except ServerClosed:
            log.debug("server on %s closed", listener_addr)
        except Exception:
            self._set_state(State.STOPPED)
            raise

    def halt(self, ctx: Optional[Context] = None) -> None:
        """Gracefully shut down, waiting for in-flight requests until ``ctx`` is done.

        Raises ShutdownError if the server never bound a listener and
        ShutdownCancelled if ``ctx`` ended first (remaining connections are
        then closed forcibly). Halting a stopped server is a no-op.
        """
        with self._lock:
            listener_addr = self.listener_addr
            if not listener_addr:
                raise ShutdownError("listener address not found")
            if self._state in (State.STOPPED, State.SHUTTING_DOWN):
                return
            self._state = State.SHUTTING_DOWN

        self.logger.info(
            "stopping serving profiling and prometheus metrics over http on http://%s%s",
            listener_addr,
            self.path,
        )
        try:
            self.http_server.shutdown(ctx)
        finally:
            self._set_state(State.STOPPED)


def new(
    *options: Option,
    environ: Optional[Mapping[str, str]] = None,
) -> Server:
    """Resolve defaults, environment and ``options`` into a :class:`Server`.

    ``environ`` defaults to ``os.environ``. Never fails; a bad address is
    reported by :meth:`Server.run`.
    """
    path, addr = config.env_defaults(environ)
    t = config.DEFAULT_TIMEOUTS
    server = Server(
        path=path,
        http_server=HTTPServer(
            addr=addr,
            read_timeout=t.read,
            read_header_timeout=t.read_header,
            idle_timeout=t.idle,
            write_timeout=t.write,
        ),
        logger=default_logger(),
    )
    for option in options:
        option(server)
    server.path = config.normalize_path(server.path)
    if server.logger is None:
        server.logger = default_logger()
    return server
