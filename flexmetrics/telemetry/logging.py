from __future__ import annotations

"""Lightweight logging utilities.

The package logger is named ``flexmetrics`` and writes to stderr with the
prefix ``flexmetrics: `` unless the host already attached handlers to it.
Module loggers propagate to it, and it propagates to the host's root logger.

Environment variables:
- FLEXMETRICS_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
"""

import logging
import sys
import threading
from typing import Any, Dict, Optional, Protocol

from ..utils.env import env_level

ROOT_LOGGER = "flexmetrics"
PREFIX = "flexmetrics: "

_CONFIGURED = False
_LOCK = threading.Lock()


class Logger(Protocol):
    """Anything able to log a %-style format string at info level."""

    def info(self, msg: str, *args: Any) -> None: ...


def _configure_once() -> None:
    global _CONFIGURED
    with _LOCK:
        if _CONFIGURED:
            return
        root = logging.getLogger(ROOT_LOGGER)
        if not root.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(PREFIX + "%(message)s"))
            root.addHandler(handler)
        root.setLevel(getattr(logging, env_level("FLEXMETRICS_LOG_LEVEL")))
        _CONFIGURED = True


def default_logger() -> logging.Logger:
    """Process-wide fallback logger used when no logger option is given."""
    _configure_once()
    return logging.getLogger(ROOT_LOGGER)


class _ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):  # type: ignore[override]
        ctx = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"[{ctx}] {msg}", kwargs


def get_logger(name: str, context: Optional[Dict[str, object]] = None) -> logging.Logger:
    """Module logger under ``flexmetrics``; ``context`` items prefix each message as ``[k=v ...]``."""
    _configure_once()
    logger = logging.getLogger(name)
    if context:
        return _ContextAdapter(logger, dict(context))  # type: ignore[return-value]
    return logger
