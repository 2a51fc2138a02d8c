"""Common exceptions for flexmetrics."""
from __future__ import annotations


class FlexmetricsError(Exception):
    pass


class AddressError(FlexmetricsError, ValueError):
    """A listen address could not be parsed as ``host:port``."""


class ServerClosed(FlexmetricsError):
    """Raised by the serve loop once a shutdown has closed the listener."""

    def __init__(self, msg: str = "http: Server closed") -> None:
        super().__init__(msg)


class ServeError(FlexmetricsError):
    pass


class ShutdownError(FlexmetricsError):
    pass


class ShutdownCancelled(ShutdownError):
    """The shutdown scope ended before in-flight requests drained."""
