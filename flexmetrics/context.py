"""Cancellation scopes shared between the caller, the server and its handlers.

A :class:`Context` is done once it, or any parent, is cancelled or passes its
deadline. Contexts also carry immutable key/value data: the server stores the
bound listener address under ``"serverAddr"`` for request handlers.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Optional


class Context:
    def __init__(
        self,
        parent: Optional["Context"] = None,
        deadline: Optional[float] = None,
        values: Optional[dict[str, Any]] = None,
    ) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._values = dict(values or {})
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    # Derivation

    def with_cancel(self) -> "Context":
        return Context(parent=self)

    def with_timeout(self, seconds: float) -> "Context":
        return Context(parent=self, deadline=time.monotonic() + seconds)

    def with_value(self, key: str, value: Any) -> "Context":
        return Context(parent=self, values={key: value})

    # Cancellation

    def cancel(self, reason: str = "context canceled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def done(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel("context deadline exceeded")
            return True
        if self._parent is not None and self._parent.done():
            self.cancel(self._parent.reason or "context canceled")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        """Why the context is done, or ``None`` while it is live."""
        if not self.done():
            return None
        return self._reason

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None, poll: float = 0.05) -> bool:
        """Block until the context is done or ``timeout`` elapses.

        Returns True when the context is done. Parents are polled every
        ``poll`` seconds since their events are not shared with children.
        """
        end = None if timeout is None else time.monotonic() + timeout
        while not self.done():
            step = poll
            rem = self.remaining()
            if rem is not None:
                step = min(step, rem)
            if end is not None:
                left = end - time.monotonic()
                if left <= 0:
                    return False
                step = min(step, left)
            self._event.wait(step)
        return True

    # Values

    def value(self, key: str, default: Any = None) -> Any:
        ctx: Optional[Context] = self
        while ctx is not None:
            if key in ctx._values:
                return ctx._values[key]
            ctx = ctx._parent
        return default

    def __repr__(self) -> str:
        state = self._reason if self._event.is_set() else "live"
        return f"Context({state}, keys={sorted(self._values)})"


def background() -> Context:
    """A fresh root context that is never done unless cancelled."""
    return Context()
