"""Defaults for the metrics server.

Environment variables (read once, when a server is built):
- METRICS_ADDR: TCP bind address, ``host:port`` (default 0.0.0.0:9090)
- METRICS_PROMETHEUS_PATH: URL path of the Prometheus exposition (default /metrics)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from .utils.env import env_str

ENV_ADDR = "METRICS_ADDR"
ENV_PATH = "METRICS_PROMETHEUS_PATH"

# Port we listen on by default. 9090 is the port Prometheus itself documents.
DEFAULT_ADDR = "0.0.0.0:9090"
DEFAULT_PATH = "/metrics"

# Timeouts are in seconds.
DEFAULT_READ_TIMEOUT = 5.0
DEFAULT_READ_HEADER_TIMEOUT = 1.0
DEFAULT_IDLE_TIMEOUT = 1.0
DEFAULT_WRITE_TIMEOUT = 15.0


@dataclass(slots=True)
class Timeouts:
    read: Optional[float] = DEFAULT_READ_TIMEOUT
    read_header: Optional[float] = DEFAULT_READ_HEADER_TIMEOUT
    idle: Optional[float] = DEFAULT_IDLE_TIMEOUT
    write: Optional[float] = DEFAULT_WRITE_TIMEOUT


DEFAULT_TIMEOUTS = Timeouts()


def env_defaults(environ: Optional[Mapping[str, str]] = None) -> tuple[str, str]:
    """Return ``(path, addr)`` after applying the environment over the defaults."""
    path = env_str(ENV_PATH, DEFAULT_PATH, environ)
    addr = env_str(ENV_ADDR, DEFAULT_ADDR, environ)
    return path, addr


def normalize_path(path: str) -> str:
    if not path:
        return DEFAULT_PATH
    if not path.startswith("/"):
        path = "/" + path
    return path
