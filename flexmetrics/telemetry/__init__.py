"""Telemetry subpackage.

Prometheus exposition, profiling handlers and logging helpers.
"""

from .logging import default_logger, get_logger
from .prom import metrics_handler

__all__ = [
    "default_logger",
    "get_logger",
    "metrics_handler",
]
