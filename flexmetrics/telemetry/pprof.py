"""On-demand profiling endpoints under ``/debug/pprof/``.

The Python counterparts of the usual pprof suite:

- ``/debug/pprof/``          HTML index; ``/debug/pprof/<name>`` serves a named profile
- ``/debug/pprof/cmdline``   process command line, NUL separated
- ``/debug/pprof/profile``   sampled CPU profile of every thread, folded stacks
- ``/debug/pprof/symbol``    resolve ``module:qualname`` symbols to source locations
- ``/debug/pprof/trace``     timeline of thread stack samples, Chrome trace-event JSON

Sampling walks ``sys._current_frames()`` at a fixed interval, so it sees every
thread without installing a tracer. The duration of ``profile`` and ``trace``
must stay below the serving HTTP server's write timeout.
"""
from __future__ import annotations

import gc
import html
import inspect
import json
import os
import sys
import threading
import time
import tracemalloc
from collections import Counter
from types import FrameType
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote

from ..context import Context
from ..web.mux import Handler, Request, Response, error
from ..web.server import SERVER_CONTEXT_KEY
from .logging import get_logger

PREFIX = "/debug/pprof/"

SAMPLE_INTERVAL = 0.01  # 100 Hz
DEFAULT_PROFILE_SECONDS = 30
DEFAULT_TRACE_SECONDS = 1.0
HEAP_TOP = 50

log = get_logger(__name__)


def _frame_label(frame: FrameType) -> str:
    code = frame.f_code
    name = getattr(code, "co_qualname", code.co_name)
    module = frame.f_globals.get("__name__", "?")
    return f"{module}.{name}"


def _stack(frame: Optional[FrameType]) -> List[str]:
    """Frame labels, outermost first."""
    out: List[str] = []
    while frame is not None:
        out.append(_frame_label(frame))
        frame = frame.f_back
    out.reverse()
    return out


def _thread_names() -> Dict[int, str]:
    return {t.ident: t.name for t in threading.enumerate() if t.ident is not None}


def sample_stacks(
    ctx: Context,
    seconds: float,
    on_sample: Callable[[float, int, List[str]], None],
    interval: float = SAMPLE_INTERVAL,
) -> int:
    """Sample every other thread's stack until ``seconds`` pass or ``ctx`` is done.

    ``on_sample(elapsed, thread_id, stack)`` is called once per thread per
    tick. Returns the number of ticks taken.
    """
    me = threading.get_ident()
    start = time.monotonic()
    end = start + seconds
    ticks = 0
    while True:
        now = time.monotonic()
        if now >= end:
            break
        for tid, frame in sys._current_frames().items():
            if tid != me:
                on_sample(now - start, tid, _stack(frame))
        ticks += 1
        if ctx.wait(timeout=min(interval, max(0.0, end - time.monotonic()))):
            break
    return ticks


def _duration_error(request: Request, seconds: float) -> Optional[Response]:
    server = request.context.value(SERVER_CONTEXT_KEY)
    write_timeout = getattr(server, "write_timeout", None)
    if write_timeout and seconds >= write_timeout:
        return error(400, "profile duration exceeds server's WriteTimeout")
    return None


def _attachment(body: bytes, content_type: str, filename: str) -> Response:
    return Response(
        status=200,
        body=body,
        headers={
            "Content-Type": content_type,
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Content-Type-Options": "nosniff",
        },
    )


def cmdline(request: Request) -> Response:  # noqa: ARG001
    resp = Response.text("\x00".join([sys.executable] + sys.argv[1:]))
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp


def profile(request: Request) -> Response:
    try:
        seconds = int(request.arg("seconds"))
    except ValueError:
        seconds = 0
    if seconds <= 0:
        seconds = DEFAULT_PROFILE_SECONDS
    bad = _duration_error(request, seconds)
    if bad is not None:
        return bad

    names = _thread_names()
    folded: Counter[str] = Counter()

    def record(_elapsed: float, tid: int, stack: List[str]) -> None:
        root = names.get(tid, f"thread-{tid}")
        folded[";".join([root] + stack)] += 1

    ticks = sample_stacks(request.context, seconds, record)
    log.debug("cpu profile: %d ticks, %d distinct stacks", ticks, len(folded))
    lines = [f"{stack} {count}" for stack, count in sorted(folded.items())]
    body = ("\n".join(lines) + "\n" if lines else "").encode("utf-8")
    return _attachment(body, "text/plain; charset=utf-8", "profile")


def trace(request: Request) -> Response:
    try:
        seconds = float(request.arg("seconds"))
    except ValueError:
        seconds = 0.0
    if seconds <= 0:
        seconds = DEFAULT_TRACE_SECONDS
    bad = _duration_error(request, seconds)
    if bad is not None:
        return bad

    pid = os.getpid()
    seen: Dict[int, bool] = {}
    events: List[dict] = []

    def record(elapsed: float, tid: int, stack: List[str]) -> None:
        seen[tid] = True
        events.append(
            {
                "name": stack[-1] if stack else "?",
                "ph": "i",
                "s": "t",
                "ts": int(elapsed * 1e6),
                "pid": pid,
                "tid": tid,
                "args": {"stack": stack},
            }
        )

    sample_stacks(request.context, seconds, record)
    names = _thread_names()
    meta = [
        {"name": "thread_name", "ph": "M", "pid": pid, "tid": tid, "args": {"name": names.get(tid, str(tid))}}
        for tid in seen
    ]
    doc = {"traceEvents": meta + events, "displayTimeUnit": "ms"}
    return _attachment(json.dumps(doc).encode("utf-8"), "application/json", "trace.json")


def _resolve(symbol: str) -> Optional[str]:
    module_name, sep, qualname = symbol.partition(":")
    module = sys.modules.get(module_name)
    if module is None:
        return None
    obj: object = module
    if sep:
        for part in qualname.split("."):
            obj = getattr(obj, part, None)
            if obj is None:
                return None
    obj = inspect.unwrap(obj) if callable(obj) else obj
    try:
        filename = inspect.getsourcefile(obj)  # type: ignore[arg-type]
        _, lineno = inspect.getsourcelines(obj)  # type: ignore[arg-type]
    except (TypeError, OSError):
        return None
    if filename is None:
        return None
    return f"{filename}:{max(lineno, 1)}"


def symbol(request: Request) -> Response:
    """Report ``num_symbols: 1``, then one ``symbol location`` line per resolved input.

    Input is a ``+``-separated list of ``module:qualname`` read from the POST
    body or the query string. Unresolvable symbols are left out. Only modules
    that are already imported are consulted.
    """
    if request.method == "POST":
        raw = request.body.decode("utf-8", errors="replace")
    else:
        raw = request.query
    lines = ["num_symbols: 1"]
    for word in raw.strip().split("+"):
        word = unquote(word).strip()
        if not word:
            continue
        location = _resolve(word)
        if location is not None:
            lines.append(f"{word} {location}")
    resp = Response.text("\n".join(lines) + "\n")
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp


def _debug_level(request: Request) -> int:
    try:
        return int(request.arg("debug", "0"))
    except ValueError:
        return 0


def threads_profile(request: Request) -> Response:
    """Stacks of every live thread.

    ``debug`` below 2 groups identical stacks with a count; ``debug=2``
    prints each thread separately.
    """
    names = _thread_names()
    stacks = {tid: _stack(frame) for tid, frame in sys._current_frames().items()}
    out: List[str] = []
    if _debug_level(request) >= 2:
        for tid, stack in sorted(stacks.items()):
            out.append(f"thread {tid} [{names.get(tid, '?')}]:")
            out.extend(f"\t{label}" for label in reversed(stack))
            out.append("")
    else:
        grouped: Counter[tuple] = Counter(tuple(s) for s in stacks.values())
        out.append(f"threads profile: total {len(stacks)}")
        for stack, count in grouped.most_common():
            out.append(f"{count} @")
            out.extend(f"#\t{label}" for label in reversed(stack))
            out.append("")
    return Response.text("\n".join(out) + "\n")


def heap_profile(request: Request) -> Response:
    """Top allocation sites from ``tracemalloc``; ``gc=1`` collects first."""
    if not tracemalloc.is_tracing():
        return error(503, "heap profile unavailable: tracemalloc is not tracing (set PYTHONTRACEMALLOC=1)")
    if request.arg("gc") not in ("", "0"):
        gc.collect()
    snapshot = tracemalloc.take_snapshot()
    stats = snapshot.statistics("lineno")
    size = sum(s.size for s in stats)
    count = sum(s.count for s in stats)
    out = [f"heap profile: {count} blocks, {size} bytes"]
    for stat in stats[:HEAP_TOP]:
        frame = stat.traceback[0]
        out.append(f"{stat.count}: {stat.size} [{frame.filename}:{frame.lineno}]")
    current, peak = tracemalloc.get_traced_memory()
    out.append("")
    out.append(f"# traced current={current} peak={peak}")
    return Response.text("\n".join(out) + "\n")


PROFILES: Dict[str, tuple[Handler, str]] = {
    "heap": (heap_profile, "Top allocation sites traced by tracemalloc. Use gc=1 to collect garbage first."),
    "threads": (threads_profile, "Stack traces of all current threads. Use debug=2 for one trace per thread."),
}

_ENDPOINTS = [
    ("cmdline", "The command line invocation of the current program."),
    ("profile", "Sampled CPU profile of all threads in folded-stack format. Use seconds=N for the duration."),
    ("symbol", "Resolves module:qualname symbols to their source location."),
    ("trace", "Timeline of thread stack samples as Chrome trace-event JSON. Use seconds=N for the duration."),
]


def _profile_count(name: str) -> str:
    if name == "threads":
        return str(threading.active_count())
    if name == "heap" and tracemalloc.is_tracing():
        return str(tracemalloc.get_traced_memory()[0])
    return ""


def index(request: Request) -> Response:
    """The profile index, or a named profile for ``/debug/pprof/<name>``."""
    name = request.path[len(PREFIX):] if request.path.startswith(PREFIX) else ""
    if name:
        entry = PROFILES.get(name)
        if entry is None:
            return error(404, "Unknown profile")
        return entry[0](request)

    rows = []
    for pname, (_, desc) in sorted(PROFILES.items()):
        rows.append((_profile_count(pname), pname, pname + "?debug=1", desc))
    for pname, desc in _ENDPOINTS:
        rows.append(("", pname, pname, desc))
    items = "\n".join(
        f'<tr><td>{html.escape(count)}</td><td><a href="{html.escape(href)}">{html.escape(pname)}</a></td></tr>'
        for count, pname, href, _ in rows
    )
    descs = "\n".join(
        f"<li><div class=profile-name>{html.escape(pname)}: </div> {html.escape(desc)}</li>"
        for _, pname, _, desc in rows
    )
    page = f"""<html>
<head>
<title>/debug/pprof/</title>
</head>
<body>
/debug/pprof/
<br>
<p>Set debug=1 as a query parameter to export in legacy text format</p>
<br>
Types of profiles available:
<table>
<thead><td>Count</td><td>Profile</td></thead>
{items}
</table>
<br>
<p>
Profile Descriptions:
<ul>
{descs}
</ul>
</p>
</body>
</html>
"""
    resp = Response(status=200, body=page.encode("utf-8"), headers={"Content-Type": "text/html; charset=utf-8"})
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp
