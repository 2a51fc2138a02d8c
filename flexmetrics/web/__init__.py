"""HTTP plumbing: request multiplexer and the embedded server."""

from .mux import Request, Response, ServeMux
from .server import HTTPServer

__all__ = ["HTTPServer", "Request", "Response", "ServeMux"]
