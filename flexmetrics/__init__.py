"""flexmetrics: Prometheus metrics and profiling endpoints over HTTP.

Embed it as a background service::

    from flexmetrics import new, with_addr

    srv = new(with_addr("127.0.0.1:0"))
    threading.Thread(target=srv.run, daemon=True).start()
    ...
    srv.halt()
"""

from .context import Context, background
from .core.errors import (
    AddressError,
    FlexmetricsError,
    ServeError,
    ServerClosed,
    ShutdownCancelled,
    ShutdownError,
)
from .server import (
    SERVER_ADDR_KEY,
    Server,
    State,
    new,
    with_addr,
    with_logger,
    with_path,
    with_registry,
    with_server,
)
from .web.server import HTTPServer

__all__ = [
    "AddressError",
    "Context",
    "FlexmetricsError",
    "HTTPServer",
    "SERVER_ADDR_KEY",
    "ServeError",
    "Server",
    "ServerClosed",
    "ShutdownCancelled",
    "ShutdownError",
    "State",
    "background",
    "new",
    "with_addr",
    "with_logger",
    "with_path",
    "with_registry",
    "with_server",
]
