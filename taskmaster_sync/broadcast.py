"""Broadcast sink fanning sync messages out to connected clients.

The sink is transport-agnostic: a :class:`Transport` accepts connections and reports
connects, incoming messages and disconnects back to the sink; each :class:`Connection`
only needs ``is_open``, a non-blocking ``send`` and ``close``.

Envelopes are serialized once per broadcast and delivered by a dedicated worker
thread, so callers (the sync orchestrator) are never blocked by client I/O.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from typing import Any, Dict, Iterable, Optional, Protocol

from taskmaster_sync.messages import dumps, utc_timestamp

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["BroadcastSink", "Connection", "Transport", "CONNECTED_MESSAGE"]

CONNECTED_MESSAGE = "Connected to TaskMaster UI"
INVALID_MESSAGE = "Invalid message format"


class Connection(Protocol):
    """A client connection as seen by the sink."""

    @property
    def is_open(self) -> bool: ...

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...


class Transport(Protocol):
    """A connection-accepting transport (e.g. a WebSocket server)."""

    def attach(self, sink: BroadcastSink) -> None: ...

    def close(self) -> None: ...


class BroadcastSink:
    """Own the set of live connections and push envelopes to all of them.

    Attributes:
        send_errors (int): Number of failed sends (the connection is dropped).
        messages_broadcast (int): Number of envelopes accepted for delivery.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # dict keeps insertion order; delivery follows it
        self._clients: Dict[Connection, None] = {}
        self._transport: Optional[Transport] = None
        self._queue: queue.Queue[Optional[str]] = queue.Queue()
        self._worker_thread: Optional[threading.Thread] = None
        self.send_errors = 0
        self.messages_broadcast = 0

    @property
    def is_initialized(self) -> bool:
        return self._transport is not None

    def initialize(self, transport: Transport) -> None:
        """Attach to a transport, replacing (and closing) any previous one.

        Connections accepted through the previous transport are closed and forgotten.
        """
        with self._lock:
            previous = self._transport
            if previous is transport:
                logger.debug("Broadcast sink already attached to this transport")
                return
            stale = list(self._clients)
            self._clients.clear()
            self._transport = transport
            self._start_worker()

        if previous is not None:
            logger.info(f"Replacing transport, closing {len(stale)} previous connection(s)")
            self._close_connections(stale)
            try:
                previous.close()
            except Exception as e:
                logger.error(f"Error closing previous transport: {e}")

        transport.attach(self)
        logger.info("Broadcast sink initialized")

    def handle_connect(self, connection: Connection) -> None:
        """Greet a new connection and register it.

        The greeting is sent before registration so it always precedes broadcasts.
        """
        greeting = dumps(
            {
                "type": "connection",
                "message": CONNECTED_MESSAGE,
                "timestamp": utc_timestamp(),
            }
        )
        if not self._send(connection, greeting):
            return
        with self._lock:
            self._clients[connection] = None
            count = len(self._clients)
        logger.info(f"New client connection established ({count} connected)")

    def handle_message(self, connection: Connection, text: str) -> None:
        """Echo a client message back, or answer with an error envelope if it is not JSON."""
        try:
            message = json.loads(text)
        except ValueError:
            logger.debug("Received invalid client message")
            envelope: Dict[str, Any] = {
                "type": "error",
                "message": INVALID_MESSAGE,
                "timestamp": utc_timestamp(),
            }
        else:
            logger.debug(f"Received client message: {message!r}")
            envelope = {"type": "echo", "data": message, "timestamp": utc_timestamp()}
        self._send(connection, dumps(envelope))

    def handle_disconnect(self, connection: Connection) -> None:
        """Forget a connection that closed or failed."""
        with self._lock:
            removed = connection in self._clients
            self._clients.pop(connection, None)
            count = len(self._clients)
        if removed:
            logger.info(f"Client connection closed ({count} connected)")

    def handle_send_error(self, connection: Connection, error: Optional[BaseException] = None) -> None:
        """Count a failed send and forget the connection it was meant for."""
        with self._lock:
            self.send_errors += 1
        logger.debug(f"Send failed, dropping connection: {error!r}")
        self.handle_disconnect(connection)

    def broadcast(self, message: Any) -> bool:
        """Queue ``{"type": "broadcast", "data": message, "timestamp"}`` for every open connection.

        Returns:
            bool: False (and an error log) if the sink has no transport yet.
        """
        with self._lock:
            if self._transport is None:
                logger.error("Broadcast sink not initialized, dropping message")
                return False
            data = dumps({"type": "broadcast", "data": message, "timestamp": utc_timestamp()})
            self.messages_broadcast += 1
            self._queue.put(data)
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued envelope has been handed to the connections.

        Returns:
            bool: False if the timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        done = self._queue.all_tasks_done
        with done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                done.wait(remaining)
        return True

    def get_client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def close(self) -> None:
        """Close the transport and every connection. Safe to call repeatedly."""
        with self._lock:
            transport = self._transport
            self._transport = None
            worker = self._worker_thread
            self._worker_thread = None
            work_queue = self._queue

        if worker is not None:
            # Sentinel after any pending envelopes
            work_queue.put(None)
            if worker.is_alive():
                worker.join(timeout=1.0)

        with self._lock:
            clients = list(self._clients)
            self._clients.clear()

        if transport is None and worker is None and not clients:
            return

        self._close_connections(clients)

        if transport is not None:
            try:
                transport.close()
            except Exception as e:
                logger.error(f"Error closing transport: {e}")
        logger.info("Broadcast sink closed")

    def _start_worker(self) -> None:
        """Start the delivery worker. Must be called with the lock held."""
        if self._worker_thread is not None and self._worker_thread.is_alive():
            return
        self._queue = queue.Queue()
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            args=(self._queue,),
            name="BroadcastSinkWorker",
            daemon=True,
        )
        self._worker_thread.start()

    def _worker_loop(self, work_queue: queue.Queue[Optional[str]]) -> None:
        """Worker thread loop delivering envelopes from the queue."""
        while True:
            item = work_queue.get()
            try:
                if item is None:  # Sentinel for shutdown
                    break
                self._deliver(item)
            except Exception as e:
                logger.error(f"Error in broadcast worker: {e}", exc_info=True)
            finally:
                work_queue.task_done()

    def _deliver(self, data: str) -> None:
        with self._lock:
            targets = list(self._clients)
        for connection in targets:
            if not connection.is_open:
                continue
            self._send(connection, data)

    def _send(self, connection: Connection, data: str) -> bool:
        try:
            connection.send(data)
        except Exception as e:
            self.handle_send_error(connection, e)
            return False
        return True

    def _close_connections(self, connections: Iterable[Connection]) -> None:
        for connection in connections:
            try:
                connection.close()
            except Exception as e:
                logger.debug(f"Error closing connection: {e}")

    def __repr__(self) -> str:
        return f"<BroadcastSink clients={len(self._clients)} initialized={self.is_initialized}>"
