"""Embedded HTTP server with graceful shutdown.

Thin layer over ``http.server.ThreadingHTTPServer`` (one daemon thread per
connection, HTTP/1.1 keep-alive). On top of it this adds:

- per-phase socket timeouts (request headers, body, response, keep-alive idle)
- a listen/serve split so callers can learn the bound address before serving
- connection tracking, so :meth:`HTTPServer.shutdown` can close idle
  keep-alive connections and wait for in-flight requests, bounded by a
  :class:`~flexmetrics.context.Context`
"""
from __future__ import annotations

import http.server
import socket
import socketserver
import threading
from typing import Callable, Dict, Optional, Set
from urllib.parse import urlsplit

from ..context import Context, background
from ..core.errors import ServeError, ServerClosed, ShutdownCancelled
from ..telemetry.logging import get_logger
from ..utils.net import address_family, join_host_port, split_host_port
from .mux import Handler, Request, Response, error, not_found

# Context key under which handlers find the serving HTTPServer.
SERVER_CONTEXT_KEY = "httpServer"

MAX_BODY_BYTES = 1 << 20

_SHUTDOWN_POLL = 0.05
_SERVE_POLL = 0.1

log = get_logger(__name__)


def _positive(*vals: Optional[float]) -> Optional[float]:
    for v in vals:
        if v:
            return float(v)
    return None


class _RequestHandler(http.server.BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = "flexmetrics"

    server: "_Listener"

    def setup(self) -> None:
        super().setup()
        self.server.owner._track(self.connection)

    def finish(self) -> None:
        try:
            super().finish()
        finally:
            self.server.owner._untrack(self.connection)

    def handle(self) -> None:
        owner = self.server.owner
        self.close_connection = True
        first = True
        while True:
            if first:
                self.connection.settimeout(owner.header_timeout())
            else:
                self.connection.settimeout(owner.idle_wait_timeout())
            self.handle_one_request()
            first = False
            if self.close_connection:
                break

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch()

    def do_HEAD(self) -> None:  # noqa: N802
        self._dispatch()

    def do_POST(self) -> None:  # noqa: N802
        self._dispatch()

    def _read_body(self) -> Optional[bytes]:
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            # Chunked bodies are not decoded; the connection cannot be reused.
            self.close_connection = True
            return b""
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            return None
        if length < 0:
            return None
        if length > MAX_BODY_BYTES:
            self.close_connection = True
            return None
        if length == 0:
            return b""
        return self.rfile.read(length)

    def _dispatch(self) -> None:
        owner = self.server.owner
        owner._set_active(self.connection, True)
        try:
            self.connection.settimeout(_positive(owner.read_timeout))
            body = self._read_body()
            self.connection.settimeout(_positive(owner.write_timeout))
            if body is None:
                self.close_connection = True
                self._write(error(400, "400 Bad Request"))
                return
            url = urlsplit(self.path)
            request = Request(
                method=self.command,
                path=url.path or "/",
                query=url.query,
                headers=dict(self.headers.items()),
                body=body,
                context=owner.request_context(),
                remote_addr=join_host_port(*self.client_address[:2]),
            )
            try:
                response = (owner.handler or not_found)(request)
            except Exception:
                owner.log.exception("error serving %s %s for %s", request.method, self.path, request.remote_addr)
                response = error(500, "Internal Server Error")
            if owner.shutting_down:
                self.close_connection = True
            self._write(response)
            owner.log.debug('%s "%s %s" %d', request.remote_addr, request.method, self.path, response.status)
        finally:
            owner._set_active(self.connection, False)

    def _write(self, response: Response) -> None:
        self.send_response(response.status)
        for k, v in response.headers.items():
            self.send_header(k, v)
        self.send_header("Content-Length", str(len(response.body)))
        if self.close_connection:
            self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD" and response.body:
            self.wfile.write(response.body)

    def log_request(self, code="-", size="-") -> None:  # noqa: ANN001
        # Access lines are written by _dispatch, which knows the request.
        pass

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        self.server.owner.log.debug("%s - %s", self.address_string(), format % args)


class _Listener(http.server.ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, address: tuple[str, int], owner: "HTTPServer") -> None:
        self.address_family = address_family(address[0])
        self.owner = owner
        super().__init__(address, _RequestHandler)

    def server_bind(self) -> None:
        # Skip HTTPServer's reverse DNS lookup of the bind host.
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = host
        self.server_port = port

    def handle_error(self, request, client_address) -> None:  # noqa: ANN001
        self.owner.log.debug("connection error from %s", client_address, exc_info=True)


class HTTPServer:
    """An HTTP server bound to one TCP listener.

    Timeouts are in seconds; ``None`` or 0 disables one. The read-header and
    idle timeouts fall back to ``read_timeout`` when unset.
    """

    def __init__(
        self,
        addr: str = "",
        handler: Optional[Handler] = None,
        read_timeout: Optional[float] = None,
        read_header_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
        base_context: Optional[Callable[[str], Context]] = None,
    ) -> None:
        self.addr = addr
        self.handler = handler
        self.read_timeout = read_timeout
        self.read_header_timeout = read_header_timeout
        self.idle_timeout = idle_timeout
        self.write_timeout = write_timeout
        self.base_context = base_context
        self.listener_addr = ""
        self.log = log

        self._cond = threading.Condition()
        self._listener: Optional[_Listener] = None
        self._ctx: Context = background()
        self._conns: Dict[socket.socket, bool] = {}
        self._closing: Set[socket.socket] = set()
        self._serving = False
        self._shutting_down = False

    def __repr__(self) -> str:
        return f"HTTPServer(addr={self.addr!r}, listener={self.listener_addr!r})"

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def header_timeout(self) -> Optional[float]:
        return _positive(self.read_header_timeout, self.read_timeout)

    def idle_wait_timeout(self) -> Optional[float]:
        return _positive(self.idle_timeout, self.read_timeout)

    def request_context(self) -> Context:
        return self._ctx

    # Lifecycle

    def listen(self) -> str:
        """Bind and listen on ``addr``; return the concrete ``host:port``.

        Raises AddressError for a malformed address and OSError when the
        bind itself fails.
        """
        host, port = split_host_port(self.addr)
        with self._cond:
            if self._shutting_down:
                raise ServerClosed()
            if self._listener is not None:
                raise ServeError(f"already listening on {self.listener_addr}")
        listener = _Listener((host, port), self)
        bound = listener.socket.getsockname()
        with self._cond:
            self._listener = listener
            self.listener_addr = join_host_port(bound[0], bound[1])
            self.log = get_logger(__name__, {"addr": self.listener_addr})
        return self.listener_addr

    def serve(self) -> None:
        """Accept connections until :meth:`shutdown`.

        Always raises: ServerClosed after a shutdown, ServeError otherwise.
        """
        with self._cond:
            listener = self._listener
            if listener is None:
                raise ServeError("serve called before listen")
            if self._shutting_down:
                listener.server_close()
                raise ServerClosed()
            self._serving = True
        base = self.base_context(self.listener_addr) if self.base_context else background()
        self._ctx = base.with_value(SERVER_CONTEXT_KEY, self)
        try:
            listener.serve_forever(poll_interval=_SERVE_POLL)
        except Exception as exc:
            listener.server_close()
            raise ServeError(f"serve on {self.listener_addr}: {exc}") from exc
        finally:
            with self._cond:
                self._serving = False
                self._cond.notify_all()
        if self.shutting_down:
            raise ServerClosed()
        listener.server_close()
        raise ServeError(f"serve on {self.listener_addr}: accept loop exited")

    def shutdown(self, ctx: Optional[Context] = None) -> None:
        """Stop accepting, close idle connections and wait for active ones.

        If ``ctx`` is done before the active connections finish, they are
        closed forcibly and ShutdownCancelled is raised. The listener is
        closed in every case.
        """
        ctx = ctx or background()
        with self._cond:
            first = not self._shutting_down
            self._shutting_down = True
            listener = self._listener
            serving = self._serving
        if listener is not None and first:
            if serving:
                listener.shutdown()
            listener.server_close()

        with self._cond:
            while True:
                self._close_idle_locked()
                if not self._conns:
                    return
                if ctx.done():
                    break
                self._cond.wait(_SHUTDOWN_POLL)
            remaining = len(self._conns)
            for conn in list(self._conns):
                _hard_close(conn)
        self.log.debug("forced close of %d connection(s)", remaining)
        raise ShutdownCancelled(ctx.reason or "context canceled")

    def close(self) -> None:
        """Close the listener and every connection without waiting."""
        with self._cond:
            self._shutting_down = True
            listener = self._listener
            serving = self._serving
            for conn in list(self._conns):
                _hard_close(conn)
        if listener is not None:
            if serving:
                listener.shutdown()
            listener.server_close()

    # Connection tracking, called from handler threads

    def _track(self, conn: socket.socket) -> None:
        with self._cond:
            self._conns[conn] = False

    def _untrack(self, conn: socket.socket) -> None:
        with self._cond:
            self._conns.pop(conn, None)
            self._closing.discard(conn)
            self._cond.notify_all()

    def _set_active(self, conn: socket.socket, active: bool) -> None:
        with self._cond:
            if conn in self._conns:
                self._conns[conn] = active
            self._cond.notify_all()

    def _close_idle_locked(self) -> None:
        for conn, active in self._conns.items():
            if not active and conn not in self._closing:
                self._closing.add(conn)
                _hard_close(conn)


def _hard_close(conn: socket.socket) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Peer already gone or socket already closed.
        pass
