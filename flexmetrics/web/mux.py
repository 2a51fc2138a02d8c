"""Request multiplexer.

Routing is by path only. A pattern without a trailing slash matches that
path exactly; a pattern ending in ``/`` matches the whole subtree below it.
When several patterns match, the longest one wins. Anything unmatched is a
404.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs

from ..context import Context, background


@dataclass
class Request:
    method: str
    path: str
    query: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    context: Context = field(default_factory=background)
    remote_addr: str = ""

    def header(self, name: str, default: str = "") -> str:
        want = name.lower()
        for k, v in self.headers.items():
            if k.lower() == want:
                return v
        return default

    def args(self) -> Dict[str, List[str]]:
        return parse_qs(self.query, keep_blank_values=True)

    def arg(self, name: str, default: str = "") -> str:
        vals = self.args().get(name)
        return vals[0] if vals else default


@dataclass
class Response:
    status: int = 200
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def text(cls, body: str, status: int = 200) -> "Response":
        return cls(
            status=status,
            body=body.encode("utf-8"),
            headers={"Content-Type": "text/plain; charset=utf-8"},
        )


Handler = Callable[[Request], Response]


def error(status: int, msg: str) -> Response:
    resp = Response.text(msg + "\n", status=status)
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp


def not_found(request: Request) -> Response:  # noqa: ARG001
    return error(404, "404 page not found")


class ServeMux:
    def __init__(self) -> None:
        self._routes: Dict[str, Handler] = {}
        self._lock = threading.Lock()

    def handle(self, pattern: str, handler: Handler) -> None:
        if not pattern or not pattern.startswith("/"):
            raise ValueError(f"invalid pattern {pattern!r}")
        with self._lock:
            if pattern in self._routes:
                raise ValueError(f"multiple registrations for {pattern}")
            self._routes[pattern] = handler

    def patterns(self) -> List[str]:
        with self._lock:
            return sorted(self._routes)

    def match(self, path: str) -> Optional[Handler]:
        best: Optional[str] = None
        with self._lock:
            for pattern in self._routes:
                if pattern.endswith("/"):
                    ok = path.startswith(pattern)
                else:
                    ok = path == pattern
                if ok and (best is None or len(pattern) > len(best)):
                    best = pattern
            return self._routes[best] if best is not None else None

    def __call__(self, request: Request) -> Response:
        handler = self.match(request.path) or not_found
        return handler(request)
