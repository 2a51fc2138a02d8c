"""flexmetrics CLI: serve metrics and profiling endpoints until interrupted."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from .context import background
from .core.errors import ShutdownCancelled, ShutdownError
from .server import new, with_addr, with_path
from .telemetry.logging import default_logger


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="flexmetrics", description=__doc__)
    p.add_argument("--addr", default=None, help="Bind address host:port (default: METRICS_ADDR or 0.0.0.0:9090)")
    p.add_argument("--path", default=None, help="Metrics path (default: METRICS_PROMETHEUS_PATH or /metrics)")
    p.add_argument(
        "--shutdown-timeout",
        type=float,
        default=5.0,
        help="Seconds to wait for in-flight requests on shutdown",
    )
    p.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override FLEXMETRICS_LOG_LEVEL",
    )
    return p


def _cmd_serve(args: argparse.Namespace) -> int:
    logger = default_logger()
    if args.log_level:
        logger.setLevel(getattr(logging, args.log_level))

    options = []
    if args.addr is not None:
        options.append(with_addr(args.addr))
    if args.path is not None:
        options.append(with_path(args.path))
    srv = new(*options)

    stop = threading.Event()
    errors: list[BaseException] = []

    def _on_signal(signum, frame):  # noqa: ANN001, ARG001
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    def _serve() -> None:
        try:
            srv.run()
        except Exception as e:
            errors.append(e)
        finally:
            stop.set()

    t = threading.Thread(target=_serve, name="flexmetrics-run", daemon=True)
    t.start()
    while not stop.wait(0.5):
        pass

    # A signal may arrive before run has bound; give it the shutdown budget to do so.
    ctx = background().with_timeout(args.shutdown_timeout)
    while not srv.listener_addr and t.is_alive() and not ctx.wait(0.05):
        pass
    if errors:
        logger.error("server failed: %s", errors[0])
        return 1
    try:
        srv.halt(ctx)
    except ShutdownCancelled as e:
        logger.warning("shutdown did not finish in %.1fs: %s", args.shutdown_timeout, e)
        return 1
    except ShutdownError as e:
        logger.warning("nothing to stop: %s", e)
        return 0
    t.join(timeout=args.shutdown_timeout)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return _cmd_serve(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
