"""Real-time task synchronization orchestrator.

Connects the :class:`~taskmaster_sync.watcher.FileWatchRegistry` with the
:class:`~taskmaster_sync.broadcast.BroadcastSink`:

    registry --(WatchEvent channel)--> RealtimeTaskSync --(SyncMessage)--> sink

Key Responsibilities:
    - Admission control: a bounded set of monitored repositories. Adding beyond
      ``max_repositories`` is ignored with a warning, not an error.
    - Translation: ``file_changed`` events become ``TASKS_UPDATED``, ``error`` events
      become ``TASKS_ERROR``; add/remove produce ``REPOSITORY_ADDED``/``REPOSITORY_REMOVED``.
    - Serialization: registry events are consumed by a single dispatch thread.
    - Shutdown is terminal: once :meth:`RealtimeTaskSync.shutdown` returns, nothing that
      was scheduled before it can broadcast.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Dict, List, Optional

from taskmaster_sync.broadcast import BroadcastSink
from taskmaster_sync.exceptions import InvalidRepositoryPathError, NotInitializedError
from taskmaster_sync.messages import NO_TASKS, SyncMessage
from taskmaster_sync.watcher import (
    EVENT_ERROR,
    EVENT_FILE_CHANGED,
    EVENT_READY,
    FileWatchRegistry,
    WatchEvent,
    normalize_repository_path,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["RealtimeTaskSync"]


class RealtimeTaskSync:
    """Monitor a bounded set of repositories and broadcast their task changes.

    Attributes:
        sink (BroadcastSink): Where sync messages are sent.
        registry (FileWatchRegistry): The watch registry driven by this orchestrator.
        enabled (bool): If False, :meth:`initialize` does nothing.
        max_repositories (int): Admission limit for monitored repositories.
        max_consecutive_errors (int): Remove a repository after this many watch errors
            in a row; 0 keeps failing repositories registered.

    Example:
        >>> sink = BroadcastSink()
        >>> sync = RealtimeTaskSync(sink, debounce_seconds=0.5)
        >>> sync.initialize()
        >>> sync.add_repository("/path/to/repo")
        True
        >>> sync.get_monitored_repositories()
        ['/path/to/repo']
        >>> sync.shutdown()
    """

    def __init__(
        self,
        sink: BroadcastSink,
        enabled: bool = True,
        debounce_seconds: float = 0.5,
        max_repositories: int = 10,
        max_consecutive_errors: int = 0,
        registry: Optional[FileWatchRegistry] = None,
    ) -> None:
        if max_repositories < 1:
            raise ValueError(f"max_repositories must be at least 1, got {max_repositories}")
        self.sink = sink
        self.enabled = enabled
        self.max_repositories = max_repositories
        self.max_consecutive_errors = max(0, max_consecutive_errors)
        self.registry = registry or FileWatchRegistry(debounce_seconds=debounce_seconds)

        self._lock = threading.RLock()
        # dict as an insertion-ordered set
        self._repositories: Dict[str, None] = {}
        self._error_counts: Dict[str, int] = {}
        self._channel: queue.Queue[Optional[WatchEvent]] = queue.Queue()
        self._dispatch_thread: Optional[threading.Thread] = None
        self._initialized = False

    @classmethod
    def from_config(cls, config: Any, sink: BroadcastSink) -> RealtimeTaskSync:
        """Build an orchestrator and its registry from a :class:`~taskmaster_sync.config.Config`."""
        registry = FileWatchRegistry(
            debounce_seconds=config.debounce_seconds,
            use_polling=config.use_polling,
            polling_interval=config.polling_interval,
        )
        return cls(
            sink,
            enabled=config.enabled,
            max_repositories=config.max_repositories,
            max_consecutive_errors=config.max_consecutive_errors,
            registry=registry,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Initialize the registry and start consuming its events.

        No-op if already initialized or if disabled by configuration.
        """
        with self._lock:
            if self._initialized:
                logger.debug("RealtimeTaskSync already initialized")
                return

            if not self.enabled:
                logger.info("RealtimeTaskSync disabled by configuration")
                return

            logger.info("Initializing RealtimeTaskSync...")
            self.registry.initialize()

            self._channel = queue.Queue()
            self.registry.subscribe(self._channel)
            self._dispatch_thread = threading.Thread(
                target=self._dispatch_loop,
                args=(self._channel,),
                name="RealtimeTaskSyncDispatch",
                daemon=True,
            )
            self._dispatch_thread.start()

            self._initialized = True
            logger.info("RealtimeTaskSync initialized successfully")

    def add_repository(self, repository_path: str) -> bool:
        """Start monitoring a repository.

        Args:
            repository_path (str): The repository directory.

        Returns:
            bool: True if the repository was newly added, False if it was already
            monitored or the repository limit was reached.

        Raises:
            NotInitializedError: If called before :meth:`initialize`.
            InvalidRepositoryPathError: If the path is empty or not a string.
        """
        with self._lock:
            if not self._initialized:
                raise NotInitializedError("RealtimeTaskSync not initialized")

            if not repository_path or not isinstance(repository_path, str):
                raise InvalidRepositoryPathError("Repository path is required and must be a string")
            repository_path = normalize_repository_path(repository_path)

            if len(self._repositories) >= self.max_repositories:
                logger.warning(
                    f"Maximum repositories limit ({self.max_repositories}) reached. "
                    f"Cannot add {repository_path}"
                )
                return False

            if repository_path in self._repositories:
                logger.debug(f"Repository already being monitored: {repository_path}")
                return False

            # Added before watching so errors published by watch() are not dropped
            self._repositories[repository_path] = None
            try:
                self.registry.watch(repository_path)
            except Exception:
                self._repositories.pop(repository_path, None)
                logger.error(f"Failed to add repository for monitoring: {repository_path}")
                raise

            logger.info(f"Started real-time monitoring for: {repository_path}")
            self._broadcast(SyncMessage.repository_added(repository_path))
            return True

    def remove_repository(self, repository_path: str) -> bool:
        """Stop monitoring a repository.

        Returns:
            bool: True if the repository was monitored and has been removed.
        """
        if not repository_path or not isinstance(repository_path, str):
            return False
        repository_path = normalize_repository_path(repository_path)
        with self._lock:
            if repository_path not in self._repositories:
                logger.debug(f"Repository not being monitored: {repository_path}")
                return False

            self.registry.unwatch(repository_path)
            del self._repositories[repository_path]
            self._error_counts.pop(repository_path, None)

            logger.info(f"Stopped real-time monitoring for: {repository_path}")
            self._broadcast(SyncMessage.repository_removed(repository_path))
            return True

    def get_monitored_repositories(self) -> List[str]:
        with self._lock:
            return list(self._repositories)

    def is_monitoring(self, repository_path: str) -> bool:
        if not repository_path or not isinstance(repository_path, str):
            return False
        repository_path = normalize_repository_path(repository_path)
        with self._lock:
            return repository_path in self._repositories

    def get_stats(self) -> Dict[str, Any]:
        """Return service statistics.

        Returns:
            Dict[str, Any]: ``isInitialized``, ``enabled``, ``monitoredRepositories``
            (count), ``watcherStats`` (registry stats) and ``connectedClients``.
        """
        with self._lock:
            return {
                "isInitialized": self._initialized,
                "enabled": bool(self.enabled),
                "monitoredRepositories": len(self._repositories),
                "watcherStats": self.registry.get_stats(),
                "connectedClients": self.sink.get_client_count(),
            }

    def shutdown(self) -> None:
        """Remove every repository, stop the registry and the dispatch thread.

        Idempotent. Events already queued from the registry are handled before this
        returns; nothing is broadcast afterwards.
        """
        with self._lock:
            was_initialized = self._initialized
            if was_initialized:
                logger.info("Shutting down RealtimeTaskSync...")

            for repository_path in list(self._repositories):
                self.remove_repository(repository_path)

            self.registry.shutdown_all()
            self._repositories.clear()
            self._error_counts.clear()
            self._initialized = False

            thread = self._dispatch_thread
            self._dispatch_thread = None
            channel = self._channel

        # Join outside the lock: the dispatch thread may need it to finish
        if thread is not None:
            channel.put(None)
            if thread is not threading.current_thread():
                thread.join(timeout=5.0)
                if thread.is_alive():
                    logger.warning("Dispatch thread did not terminate within timeout.")

        if was_initialized:
            logger.info("RealtimeTaskSync shutdown complete")

    def __enter__(self) -> RealtimeTaskSync:
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return (
            f"<RealtimeTaskSync repositories={len(self._repositories)} "
            f"initialized={self._initialized} enabled={self.enabled}>"
        )

    def _dispatch_loop(self, channel: queue.Queue[Optional[WatchEvent]]) -> None:
        """Consume registry events until the shutdown sentinel arrives."""
        while True:
            event = channel.get()
            if event is None:
                break
            try:
                self._handle_watch_event(event)
            except Exception as e:
                logger.error(f"Error handling {event.kind} event: {e}", exc_info=True)

    def _handle_watch_event(self, event: WatchEvent) -> None:
        repository_path = event.repository_path

        if event.kind == EVENT_READY:
            logger.info(f"File watcher ready for: {repository_path}")
            return

        with self._lock:
            if repository_path not in self._repositories:
                logger.debug(f"Ignoring {event.kind} event for unmonitored repository: {repository_path}")
                return

            if event.kind == EVENT_FILE_CHANGED:
                self._error_counts.pop(repository_path, None)
                logger.info(f"Task file {event.change_type} detected for: {repository_path}")
                self._broadcast(
                    SyncMessage.tasks_updated(
                        repository_path,
                        event.change_type or "change",
                        event.file_path or "",
                        event.content if event.parsed else NO_TASKS,
                    )
                )
            elif event.kind == EVENT_ERROR:
                logger.error(f"File watcher error for {repository_path}: {event.error}")
                self._broadcast(
                    SyncMessage.tasks_error(
                        repository_path, event.error or "Unknown file watcher error"
                    )
                )
                self._record_error(repository_path)
            else:
                logger.warning(f"Unknown watch event kind: {event.kind}")

    def _record_error(self, repository_path: str) -> None:
        """Count consecutive errors and drop chronically failing repositories if configured."""
        if not self.max_consecutive_errors:
            return
        count = self._error_counts.get(repository_path, 0) + 1
        self._error_counts[repository_path] = count
        if count >= self.max_consecutive_errors:
            logger.warning(
                f"Repository {repository_path} reported {count} consecutive watch errors, "
                f"removing it from monitoring"
            )
            self.remove_repository(repository_path)

    def _broadcast(self, message: SyncMessage) -> None:
        logger.debug(f"Broadcasting {message.event} for: {message.repository_path}")
        try:
            self.sink.broadcast({"event": message.event, "data": message.to_dict()})
        except Exception as e:
            logger.error(f"Failed to broadcast message: {e}")
