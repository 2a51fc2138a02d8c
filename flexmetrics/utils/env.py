"""Environment parsing helpers.

Small helpers to consistently parse env vars with sane defaults. Each takes an
optional ``environ`` mapping so callers can resolve against a snapshot.
"""
from __future__ import annotations

from typing import Mapping, Optional
import os


def env_str(name: str, default: str, environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    val = env.get(name)
    if not val:
        return default
    return val


def env_level(name: str, default: str = "INFO", environ: Optional[Mapping[str, str]] = None) -> str:
    """Read a logging level name; unknown names fall back to ``default``."""
    level = env_str(name, default, environ).strip().upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        return default.upper()
    return level
