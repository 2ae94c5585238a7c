"""
File watch registry for TaskMaster task files using watchdog.

Responsibility:
    This module owns every OS-level watch on ``<repository>/.taskmaster/tasks/tasks.json``.
    It debounces raw filesystem notifications per repository, reads and best-effort-parses
    the settled file, and publishes normalized :class:`WatchEvent` objects onto a single
    channel owned by the subscriber (the sync orchestrator). It never talks to clients.

Design:
    - **Event-Driven**: One shared ``watchdog`` observer; each repository schedules a
      non-recursive watch on the directory holding its tasks file, so atomic saves
      (write to temp file, rename over target) are seen.
    - **Debouncing**: Each :class:`WatchEntry` owns one :class:`DebounceTimer`. Every raw
      event reschedules it; the file is read only after the window passes quietly.
    - **Liveness over completeness**: Malformed JSON is not an error; the change event is
      published without content. Only stat/read failures become ``error`` events.

Key Invariants:
    - An entry exists for a repository iff that repository is watched.
    - No event is published for an entry after ``unwatch``/``shutdown_all`` returned.
    - At most one read/parse per repository is in flight at any time.
    - The watcher never modifies the watched file (read-only).

Locking:
    watchdog dispatches handlers while holding the observer's internal lock, so the raw
    event path must never take the registry lock. It only touches the entry's timer.
"""

from __future__ import annotations

import functools
import json
import logging
import os
import queue
import stat
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.polling import PollingObserver

from taskmaster_sync.exceptions import InvalidRepositoryPathError, NotInitializedError

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "CHANGE_ADD",
    "CHANGE_CHANGE",
    "CHANGE_UNLINK",
    "DebounceTimer",
    "FileWatchRegistry",
    "TasksFileEventHandler",
    "WatchEntry",
    "WatchEvent",
    "normalize_repository_path",
    "tasks_file_path",
]

TASKS_FILE_PARTS = (".taskmaster", "tasks", "tasks.json")
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB

CHANGE_ADD = "add"
CHANGE_CHANGE = "change"
CHANGE_UNLINK = "unlink"

EVENT_FILE_CHANGED = "file_changed"
EVENT_ERROR = "error"
EVENT_READY = "ready"

if orjson:
    JSON_DECODE_EXCEPTIONS: Tuple[Type[Exception], ...] = (ValueError, orjson.JSONDecodeError, RecursionError)
    json_loads = orjson.loads
else:
    JSON_DECODE_EXCEPTIONS = (ValueError, RecursionError)
    json_loads = json.loads


def normalize_repository_path(repository_path: str) -> str:
    """Return the key a repository is tracked under: absolute, user-expanded, no trailing slash."""
    return os.path.abspath(os.path.expanduser(repository_path))


def tasks_file_path(repository_path: str) -> Path:
    """Return the absolute path of the tasks file inside a repository."""
    return Path(repository_path).absolute().joinpath(*TASKS_FILE_PARTS)


class DebounceTimer:
    """Trailing-edge debouncer backed by one long-lived worker thread.

    Each :meth:`schedule` call moves the deadline to ``interval`` seconds from now.
    Callbacks run on that thread one at a time; scheduling again from inside the
    callback queues one more cycle.

    Attributes:
        interval (float): Quiet period in seconds before the callback runs.
        callback (Callable[[], None]): Invoked once the deadline passes.
    """

    __slots__ = ('interval', 'callback', 'name', '_condition', '_target_time', '_active', '_stopped', '_thread')

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "DebounceTimer") -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self._condition = threading.Condition()
        self._target_time = 0.0
        self._active = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_pending(self) -> bool:
        """Return True while a firing is scheduled but has not started."""
        with self._condition:
            return self._active and not self._stopped

    @property
    def is_stopped(self) -> bool:
        with self._condition:
            return self._stopped

    def schedule(self) -> None:
        """Arm the timer, or push an armed deadline back."""
        with self._condition:
            if self._stopped:
                return
            self._target_time = time.monotonic() + self.interval
            if not self._active:
                self._active = True
                self._start_thread()
            else:
                self._condition.notify()

    def stop(self) -> None:
        """Stop the timer. A pending firing is discarded; the timer cannot be reused."""
        with self._condition:
            self._stopped = True
            self._active = False
            self._condition.notify_all()

    def __repr__(self) -> str:
        return f"<DebounceTimer name={self.name} interval={self.interval} active={self._active}>"

    def _start_thread(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            try:
                self._thread = threading.Thread(target=self._run, name=self.name)
                self._thread.daemon = True
                self._thread.start()
            except Exception:
                # Leave the timer unarmed so the next schedule() can try again
                self._active = False
                logger.error(f"Could not start debounce thread {self.name}", exc_info=True)

    def _run(self) -> None:
        with self._condition:
            while self._active and not self._stopped:
                wait_time = self._target_time - time.monotonic()

                if wait_time <= 0:
                    self._active = False
                    self._condition.release()
                    try:
                        self.callback()
                    except Exception:
                        logger.error(f"Debounce callback for {self.name} raised", exc_info=True)
                    finally:
                        self._condition.acquire()

                    # schedule() during the callback re-armed us
                    if self._active:
                        continue
                    break

                self._condition.wait(wait_time)

            self._thread = None


@dataclass
class WatchEvent:
    """A normalized event published by the registry.

    Attributes:
        kind (str): ``"file_changed"``, ``"error"`` or ``"ready"``.
        repository_path (str): The repository the event belongs to.
        timestamp (datetime): When the registry produced the event (UTC).
        change_type (Optional[str]): ``add``, ``change`` or ``unlink`` for file changes.
        file_path (Optional[str]): Absolute path of the tasks file.
        content (Any): Parsed JSON content. Only meaningful when ``parsed`` is True.
        parsed (bool): True when the file was read and parsed as JSON, which
            tells a literal ``null`` apart from missing or malformed content.
        error (Optional[str]): Error description for ``error`` events.
    """

    kind: str
    repository_path: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    change_type: Optional[str] = None
    file_path: Optional[str] = None
    content: Any = None
    parsed: bool = False
    error: Optional[str] = None


@dataclass(eq=False)
class WatchEntry:
    """One repository's watch handle and debounce timer."""

    repository_path: str
    target_file: Path
    timer: Optional[DebounceTimer] = None
    handler: Optional[TasksFileEventHandler] = None
    watch: Optional[ObservedWatch] = None
    pending_change: Optional[str] = None
    exists: bool = True
    closed: bool = False
    match_paths: Set[str] = field(default_factory=set)


class TasksFileEventHandler(FileSystemEventHandler):
    """Translate watchdog events on a repository's tasks directory into change types.

    Only events that concern the tasks file itself are forwarded; other files in the
    directory and directory events are ignored.
    """

    def __init__(self, registry: FileWatchRegistry, entry: WatchEntry) -> None:
        super().__init__()
        self.registry = registry
        self.entry = entry

    def _is_target(self, raw_path: Any) -> bool:
        if not raw_path:
            return False
        path = os.fsdecode(raw_path)
        if path in self.entry.match_paths:
            return True
        return os.path.abspath(path) in self.entry.match_paths

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_target(event.src_path):
            self.registry._on_raw_event(self.entry, CHANGE_ADD)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_target(event.src_path):
            self.registry._on_raw_event(self.entry, CHANGE_CHANGE)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_target(event.src_path):
            self.registry._on_raw_event(self.entry, CHANGE_UNLINK)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        # Atomic save: temp file renamed over the target
        if self._is_target(getattr(event, "dest_path", "")):
            self.registry._on_raw_event(self.entry, CHANGE_CHANGE)
        elif self._is_target(event.src_path):
            self.registry._on_raw_event(self.entry, CHANGE_UNLINK)

    def __repr__(self) -> str:
        return f"<TasksFileEventHandler target={self.entry.target_file}>"


class FileWatchRegistry:
    """Own the mapping from repository path to :class:`WatchEntry`.

    Attributes:
        debounce_seconds (float): Quiet period before a settled file is read.
        use_polling (bool): Use watchdog's polling observer instead of native events.
        polling_interval (float): Polling interval in seconds (polling observer only).
        max_file_bytes (int): Files larger than this are reported without content.
        read_retries (int): Extra reads attempted when the file is found empty.

    Example:
        >>> channel = queue.Queue()
        >>> registry = FileWatchRegistry(debounce_seconds=0.5)
        >>> registry.subscribe(channel)
        >>> registry.initialize()
        >>> registry.watch("/path/to/repo")
        >>> channel.get().kind
        'ready'
        >>> registry.shutdown_all()
    """

    def __init__(
        self,
        debounce_seconds: float = 0.5,
        use_polling: bool = False,
        polling_interval: float = 0.1,
        max_file_bytes: int = MAX_FILE_SIZE_BYTES,
        read_retries: int = 3,
        observer_factory: Optional[Callable[[], BaseObserver]] = None,
    ) -> None:
        if debounce_seconds < 0:
            raise ValueError(f"debounce_seconds must be non-negative, got {debounce_seconds}")
        self.debounce_seconds = debounce_seconds
        self.use_polling = use_polling
        self.polling_interval = polling_interval
        self.max_file_bytes = max_file_bytes
        self.read_retries = max(0, read_retries)
        self._observer_factory = observer_factory

        self._lock = threading.RLock()
        self._entries: Dict[str, WatchEntry] = {}
        self._observer: Optional[BaseObserver] = None
        self._channel: Optional[queue.Queue[WatchEvent]] = None
        self._initialized = False

        self.parse_errors = 0
        self.read_errors = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _create_observer(self) -> BaseObserver:
        if self._observer_factory is not None:
            return self._observer_factory()
        if self.use_polling:
            return PollingObserver(timeout=self.polling_interval)
        return Observer()

    def initialize(self) -> None:
        """Start the shared observer. Subsequent calls are no-ops.

        Raises:
            OSError: If the observer cannot be started.
        """
        with self._lock:
            if self._initialized:
                logger.debug("FileWatchRegistry already initialized")
                return

            logger.info("Initializing FileWatchRegistry...")
            observer = self._create_observer()
            observer.start()
            self._observer = observer
            self._initialized = True
            logger.info(f"FileWatchRegistry initialized ({type(observer).__name__})")

    def subscribe(self, channel: queue.Queue[WatchEvent]) -> None:
        """Register the channel that receives every published :class:`WatchEvent`."""
        with self._lock:
            self._channel = channel

    def watch(self, repository_path: str) -> None:
        """Start watching the tasks file of a repository.

        Watching is opportunistic: if the tasks file does not exist, a warning is logged
        and no entry is created. Watching an already watched repository is a no-op.

        Args:
            repository_path (str): The repository directory.

        Raises:
            InvalidRepositoryPathError: If the path is empty or not a string.
            NotInitializedError: If :meth:`initialize` has not been called.
        """
        if not repository_path or not isinstance(repository_path, str):
            raise InvalidRepositoryPathError("Repository path is required and must be a string")

        repository_path = normalize_repository_path(repository_path)
        target_file = tasks_file_path(repository_path)

        with self._lock:
            if not self._initialized or self._observer is None:
                raise NotInitializedError("FileWatchRegistry not initialized")

            if repository_path in self._entries:
                logger.debug(f"Already watching tasks file for: {repository_path}")
                return

            try:
                target_exists = target_file.is_file()
            except OSError as e:
                logger.warning(f"Could not check tasks file {target_file}: {e}")
                target_exists = False
            if not target_exists:
                logger.warning(f"Tasks file not found: {target_file}")
                return

            entry = WatchEntry(repository_path=repository_path, target_file=target_file)
            entry.match_paths.add(str(target_file))
            try:
                entry.match_paths.add(str(target_file.resolve()))
            except (OSError, RuntimeError):
                pass
            entry.timer = DebounceTimer(
                self.debounce_seconds,
                functools.partial(self._on_debounce_fired, entry),
                name=f"DebounceTimer[{target_file.parent.parent.parent.name}]",
            )
            entry.handler = TasksFileEventHandler(self, entry)

            try:
                entry.watch = self._observer.schedule(
                    entry.handler, str(target_file.parent), recursive=False
                )
            except OSError as e:
                logger.error(
                    f"Failed to watch {target_file}: {e} (Check inotify limits?)"
                )
                entry.timer.stop()
                self.read_errors += 1
                self._publish(
                    WatchEvent(
                        kind=EVENT_ERROR,
                        repository_path=repository_path,
                        file_path=str(target_file),
                        error=str(e),
                    )
                )
                return

            self._entries[repository_path] = entry
            logger.info(f"Watching tasks file: {target_file}")
            self._publish(
                WatchEvent(kind=EVENT_READY, repository_path=repository_path, file_path=str(target_file))
            )

    def unwatch(self, repository_path: str) -> None:
        """Stop watching a repository. Unknown repositories are ignored."""
        repository_path = normalize_repository_path(repository_path)
        with self._lock:
            entry = self._entries.pop(repository_path, None)
            if entry is None:
                logger.debug(f"No watcher found for: {repository_path}")
                return
            self._close_entry(entry)
        logger.info(f"Watcher stopped for: {repository_path}")

    def get_watched_repositories(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def is_watching(self, repository_path: str) -> bool:
        repository_path = normalize_repository_path(repository_path)
        with self._lock:
            return repository_path in self._entries

    def get_stats(self) -> Dict[str, int]:
        """Return watcher statistics.

        Returns:
            Dict[str, int]: ``watchedRepositories`` (entries), ``activeWatchers`` (entries
            holding a scheduled watch), ``pendingDebounces`` (timers waiting to fire),
            plus ``parseErrors`` and ``readErrors`` counters.
        """
        with self._lock:
            entries = list(self._entries.values())
            return {
                "watchedRepositories": len(entries),
                "activeWatchers": sum(1 for e in entries if e.watch is not None),
                "pendingDebounces": sum(
                    1 for e in entries if e.timer is not None and e.timer.is_pending
                ),
                "parseErrors": self.parse_errors,
                "readErrors": self.read_errors,
            }

    def check_health(self) -> None:
        """Restart the observer if its thread died and reschedule every watch.

        Repositories whose watch cannot be rescheduled keep their entry and get an
        ``error`` event, so a later health check can try again.
        """
        with self._lock:
            if not self._initialized:
                return
            if self._observer is not None and self._observer.is_alive():
                return

            logger.critical("Watchdog observer found dead. Restarting...")
            observer = self._create_observer()
            try:
                observer.start()
            except OSError as e:
                logger.error(f"Failed to restart observer: {e}")
                for entry in self._entries.values():
                    self._publish_error(entry, f"Observer restart failed: {e}")
                return
            self._observer = observer

            for entry in self._entries.values():
                entry.watch = None
                try:
                    entry.watch = observer.schedule(
                        entry.handler, str(entry.target_file.parent), recursive=False
                    )
                except OSError as e:
                    logger.error(f"Failed to reschedule watch for {entry.repository_path}: {e}")
                    self._publish_error(entry, str(e))

    def shutdown_all(self) -> None:
        """Stop every timer and watch, stop the observer and empty the registry."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            for entry in entries:
                self._close_entry(entry)
            observer = self._observer
            self._observer = None
            was_initialized = self._initialized
            self._initialized = False

        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=5.0)
                if observer.is_alive():
                    logger.warning("Observer thread did not terminate within timeout.")
            except RuntimeError as e:
                # join() on a thread that was never started
                logger.debug(f"Error stopping observer: {e}")

        if was_initialized:
            logger.info("FileWatchRegistry shutdown complete")

    def _close_entry(self, entry: WatchEntry) -> None:
        """Close an entry. Must be called with the registry lock held."""
        entry.closed = True
        if entry.timer is not None:
            entry.timer.stop()
        if entry.watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(entry.watch)
            except (KeyError, OSError) as e:
                logger.debug(f"Failed to unschedule watch for {entry.repository_path}: {e}")
        entry.watch = None

    def _publish(self, event: WatchEvent) -> None:
        channel = self._channel
        if channel is None:
            logger.debug(f"No subscriber, dropping {event.kind} event for {event.repository_path}")
            return
        channel.put(event)

    def _publish_error(self, entry: WatchEntry, message: str) -> None:
        self.read_errors += 1
        self._publish(
            WatchEvent(
                kind=EVENT_ERROR,
                repository_path=entry.repository_path,
                file_path=str(entry.target_file),
                error=message,
            )
        )

    def _on_raw_event(self, entry: WatchEntry, change_type: str) -> None:
        """Record a raw change and restart the entry's debounce window.

        Runs on the observer thread. See the module docstring for why no registry lock
        is taken here.
        """
        if entry.closed or entry.timer is None:
            return
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Raw {change_type} event for {entry.target_file}")
        entry.pending_change = change_type
        entry.timer.schedule()

    def _on_debounce_fired(self, entry: WatchEntry) -> None:
        """Read the settled file and publish one event (runs on the entry's timer thread)."""
        with self._lock:
            if entry.closed:
                return
            raw_change = entry.pending_change
            entry.pending_change = None

        # I/O outside the lock
        event = self._read_settled_state(entry)
        if event is None:
            return

        with self._lock:
            if entry.closed:
                logger.debug(f"Dropping event for removed repository: {entry.repository_path}")
                return
            if event.kind == EVENT_ERROR:
                self.read_errors += 1
            else:
                entry.exists = event.change_type != CHANGE_UNLINK
            self._publish(event)

        if event.kind == EVENT_FILE_CHANGED:
            logger.info(
                f"Tasks file {event.change_type} detected: {entry.target_file} (last raw event: {raw_change})"
            )

    def _read_settled_state(self, entry: WatchEntry) -> Optional[WatchEvent]:
        """Stat and read the tasks file after the debounce window.

        The change type comes from the file state, not the raw events: a file present
        before and after the burst is a ``change`` even if the observer reported the
        atomic save as a delete followed by a create.

        Returns:
            Optional[WatchEvent]: The event to publish, or None if the entry was closed
            while reading.
        """
        path = entry.target_file

        def changed(kind: str, parsed: Tuple[bool, Any] = (False, None)) -> WatchEvent:
            return WatchEvent(
                kind=EVENT_FILE_CHANGED,
                repository_path=entry.repository_path,
                change_type=kind,
                file_path=str(path),
                parsed=parsed[0],
                content=parsed[1],
            )

        def failed(message: str) -> WatchEvent:
            return WatchEvent(
                kind=EVENT_ERROR,
                repository_path=entry.repository_path,
                file_path=str(path),
                error=message,
            )

        backoff = 0.05
        for attempt in range(self.read_retries + 1):
            if entry.closed:
                return None
            try:
                file_stat = path.stat()
            except FileNotFoundError:
                return changed(CHANGE_UNLINK)
            except OSError as e:
                logger.error(f"Failed to stat tasks file {path}: {e}")
                return failed(f"Failed to stat tasks file: {e}")

            change_type = CHANGE_CHANGE if entry.exists else CHANGE_ADD

            if not stat.S_ISREG(file_stat.st_mode):
                logger.warning(f"Tasks path is not a regular file, skipping read: {path}")
                return changed(change_type)

            if file_stat.st_size > self.max_file_bytes:
                logger.warning(
                    f"Tasks file {path} is too large ({file_stat.st_size} bytes), "
                    f"publishing change without content."
                )
                return changed(change_type)

            try:
                with path.open("rb") as f:
                    raw = f.read(self.max_file_bytes + 1)
            except FileNotFoundError:
                return changed(CHANGE_UNLINK)
            except OSError as e:
                logger.error(f"Error reading tasks file {path}: {e}")
                return failed(f"Failed to read tasks file: {e}")

            if len(raw) > self.max_file_bytes:
                logger.warning(f"Tasks file {path} grew past {self.max_file_bytes} bytes while reading.")
                return changed(change_type)

            if raw.strip() or attempt == self.read_retries:
                return changed(change_type, self._parse(raw, path))

            # Truncate-then-write editors expose an empty file mid-save
            logger.debug(f"Tasks file {path} is empty, retrying in {backoff}s...")
            time.sleep(backoff)
            backoff *= 2

        return changed(change_type)

    def _parse(self, raw: bytes, path: Path) -> Tuple[bool, Any]:
        """Parse file bytes as JSON, returning ``(parsed, content)``."""
        if raw.startswith(b"\xef\xbb\xbf"):
            raw = raw[3:]
        if not raw.strip():
            return False, None
        try:
            return True, json_loads(raw)
        except JSON_DECODE_EXCEPTIONS as e:
            with self._lock:
                self.parse_errors += 1
            logger.warning(f"Malformed JSON in {path}, publishing change without content.")
            if logger.isEnabledFor(logging.DEBUG):
                snippet = raw[:50].decode("utf-8", errors="replace").replace("\n", "\\n")
                logger.debug(f"JSON Decode Error: {e}; snippet: '{snippet}'")
            return False, None

    def __repr__(self) -> str:
        return f"<FileWatchRegistry watched={len(self._entries)} initialized={self._initialized}>"
