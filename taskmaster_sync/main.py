"""Command-line entry point for taskmaster-sync.

Parses arguments, resolves configuration and logging, then serves the FastAPI
application (BroadcastSink + WebSocketTransport + RealtimeTaskSync) with uvicorn.

uvicorn owns SIGINT/SIGTERM; its shutdown runs the application lifespan, which
stops every watcher and closes client connections. A periodic housekeeping timer
checks observer health and reports process usage next to sync statistics.
Cleanup also runs from ``atexit`` and the ``finally`` block around the server.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from typing import List, Optional, Tuple

try:
    import uvicorn

    from taskmaster_sync import __version__
    from taskmaster_sync.broadcast import BroadcastSink
    from taskmaster_sync.config import load_config
    from taskmaster_sync.server import WebSocketTransport, create_app
    from taskmaster_sync.sync import RealtimeTaskSync
except ImportError as e:
    # Only third-party import failures get the friendly message
    if any(name in str(e) for name in ("watchdog", "fastapi", "uvicorn")):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

try:
    import resource
except ImportError:
    resource = None  # type: ignore

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

HOUSEKEEPING_INTERVAL = 60.0

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

# Process-wide usage figures above these are reported as anomalies
RSS_WARN_MB = 200.0
CPU_WARN_PERCENT = 10.0
BASE_THREAD_BUDGET = 10
USAGE_INFO_INTERVAL = 300.0


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Route log records to stdout and, optionally, a rotating file.

    Levels used across the package: INFO for lifecycle (initialize, repository
    added/removed, shutdown), WARNING for recoverable conditions (missing tasks
    file, repository limit), ERROR for watch I/O failures and broadcasts before
    initialization, DEBUG for raw filesystem events and payload details.

    Raises:
        ValueError: ``log_level`` does not name a logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        try:
            parent = os.path.dirname(log_file)
            if parent:
                os.makedirs(parent, exist_ok=True)
            handlers.append(
                RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)
            )
        except OSError as e:
            # No handlers exist yet to report this through
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


class _UsageSampler:
    """Turns successive ``getrusage`` snapshots into RSS and CPU figures."""

    def __init__(self) -> None:
        self.previous = None
        self.previous_at = 0.0
        self.last_info_at = 0.0

    def sample(self, now: float) -> Tuple[Optional[float], Optional[float], str]:
        """Return ``(max_rss_mb, cpu_percent, times)``; figures are None when unavailable."""
        if resource is None:
            return None, None, ""
        try:
            usage = resource.getrusage(resource.RUSAGE_SELF)
        except OSError as e:
            logger.debug(f"Failed to get resource usage: {e}")
            return None, None, ""

        # ru_maxrss: bytes on macOS, kilobytes elsewhere
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        rss_mb = usage.ru_maxrss / divisor

        cpu = 0.0
        if self.previous is None:
            self.previous, self.previous_at = usage, now
        elif now - self.previous_at > 1.0:
            busy = (usage.ru_utime - self.previous.ru_utime) + (usage.ru_stime - self.previous.ru_stime)
            cpu = busy / (now - self.previous_at) * 100
            self.previous, self.previous_at = usage, now

        return rss_mb, cpu, f", User Time={usage.ru_utime:.2f}s, Sys Time={usage.ru_stime:.2f}s"


_sampler = _UsageSampler()


def _format_sync_stats(sync: RealtimeTaskSync) -> str:
    stats = sync.get_stats()
    watchers = stats.get("watcherStats", {})
    fields = [
        ("Repositories", stats.get("monitoredRepositories", 0)),
        ("Watchers", watchers.get("activeWatchers", 0)),
        ("PendingDebounces", watchers.get("pendingDebounces", 0)),
        ("ParseErrors", watchers.get("parseErrors", 0)),
        ("ReadErrors", watchers.get("readErrors", 0)),
        ("Clients", stats.get("connectedClients", 0)),
    ]
    return "".join(f", {name}={value}" for name, value in fields)


def log_resource_usage(sync: Optional[RealtimeTaskSync] = None) -> None:
    """Report process usage together with sync statistics.

    Anomalies go out as WARNING, a regular summary as INFO every five minutes,
    and DEBUG in between. RSS and CPU need the Unix-only ``resource`` module.
    """
    now = time.monotonic()
    rss_mb, cpu, details = _sampler.sample(now)
    if sync:
        details += _format_sync_stats(sync)

    threads = threading.active_count()
    # A pending debounce holds a timer thread per repository
    thread_budget = BASE_THREAD_BUDGET + (sync.max_repositories if sync else 0)
    anomaly = (
        (rss_mb or 0.0) > RSS_WARN_MB
        or (cpu or 0.0) > CPU_WARN_PERCENT
        or threads > thread_budget
    )

    rss_text = "N/A" if rss_mb is None else f"{rss_mb:.2f}MB"
    cpu_text = "N/A" if cpu is None else f"{cpu:.2f}%"
    msg = (
        f"Resource Usage (PID={os.getpid()}) [{'ANOMALY' if anomaly else 'OK'}]: "
        f"Max RSS={rss_text}, CPU={cpu_text}, Threads={threads}{details}"
    )

    if anomaly:
        logger.warning(f"High resource usage detected: {msg}")
        _sampler.last_info_at = now
    elif now - _sampler.last_info_at > USAGE_INFO_INTERVAL:
        logger.info(msg)
        _sampler.last_info_at = now
    else:
        logger.debug(msg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Broadcast TaskMaster tasks.json changes to WebSocket clients in real time."
    )
    parser.add_argument("--host", type=str, default=None, help="Interface to bind (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: 3001).")
    parser.add_argument(
        "--repository",
        dest="repositories",
        action="append",
        default=None,
        metavar="PATH",
        help="Repository to monitor on startup (repeatable).",
    )
    parser.add_argument(
        "--debounce-seconds", type=float, default=None, help="Time in seconds to debounce file events."
    )
    parser.add_argument(
        "--max-repositories", type=int, default=None, help="Maximum number of monitored repositories."
    )
    parser.add_argument(
        "--max-consecutive-errors",
        type=int,
        default=None,
        help="Stop monitoring a repository after this many watch errors in a row (0 = never).",
    )
    parser.add_argument(
        "--use-polling", action="store_const", const=True, default=None, help="Poll instead of native events."
    )
    parser.add_argument(
        "--polling-interval", type=float, default=None, help="Polling interval in seconds."
    )
    parser.add_argument(
        "--disable",
        dest="enabled",
        action="store_const",
        const=False,
        default=None,
        help="Start the server with real-time sync disabled.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    return parser


class _Housekeeping:
    """Repeating daemon timer that checks observer health and logs usage."""

    def __init__(self, sync: RealtimeTaskSync, interval: float = HOUSEKEEPING_INTERVAL) -> None:
        self.sync = sync
        self.interval = interval
        self._stopped = threading.Event()
        self._timer: Optional[threading.Timer] = None

    def start(self) -> None:
        if self._stopped.is_set():
            return
        self._timer = threading.Timer(self.interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        if self._stopped.is_set():
            return
        try:
            self.sync.registry.check_health()
            log_resource_usage(self.sync)
        except Exception as e:
            logger.error(f"Housekeeping failed: {e}")
        self.start()


def main(argv: Optional[List[str]] = None) -> None:
    """Run taskmaster-sync until uvicorn is told to stop.

    Exits through ``SystemExit`` on a configuration error, or with code 1 when the
    server dies unexpectedly.

    Example:
        $ taskmaster-sync --repository ./my-project --port 3001 --log-level DEBUG
    """
    args = build_parser().parse_args(argv)

    # Minimal stdout logging so config loading can report before setup_logging runs
    early_handler = logging.StreamHandler(sys.stdout)
    early_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO, handlers=[early_handler], force=True
    )

    try:
        config = load_config(vars(args))
        logger.debug(f"Resolved configuration: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    logger.info(f"Starting taskmaster-sync v{__version__} (PID: {os.getpid()})")

    sink = BroadcastSink()
    sync = RealtimeTaskSync.from_config(config, sink)
    transport = WebSocketTransport()
    app = create_app(sync, sink, transport, repositories=config.repositories)
    housekeeping = _Housekeeping(sync)

    def cleanup() -> None:
        """Idempotent teardown shared by atexit and the finally block."""
        housekeeping.stop()
        for name, close in (("sync service", sync.shutdown), ("broadcast sink", sink.close)):
            try:
                close()
            except Exception as e:
                logger.error(f"Error stopping {name} during cleanup: {e}")

    atexit.register(cleanup)
    housekeeping.start()

    try:
        logger.info(f"Serving WebSocket on ws://{config.host}:{config.port}{transport.path}")
        uvicorn.Server(uvicorn.Config(app, host=config.host, port=config.port, log_config=None)).run()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        logger.critical(f"Server terminated unexpectedly: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
