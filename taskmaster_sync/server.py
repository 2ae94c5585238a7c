"""WebSocket transport and FastAPI application for taskmaster-sync.

The broadcast sink delivers from its own worker thread while every WebSocket lives on
the server's event loop. :class:`WebSocketConnection` bridges the two: ``send`` hands
the text to the loop with :func:`asyncio.run_coroutine_threadsafe` and returns at once,
so a slow peer never delays delivery to the others.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from fastapi import APIRouter, FastAPI, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from taskmaster_sync import __version__
from taskmaster_sync.broadcast import BroadcastSink
from taskmaster_sync.exceptions import InvalidRepositoryPathError, NotInitializedError
from taskmaster_sync.sync import RealtimeTaskSync

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["WebSocketConnection", "WebSocketTransport", "create_app"]

# RFC 6455 "Try Again Later"
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketConnection:
    """Thread-safe, non-blocking handle on one accepted WebSocket.

    Attributes:
        websocket (WebSocket): The accepted FastAPI/Starlette WebSocket.
        loop (asyncio.AbstractEventLoop): The loop serving the WebSocket.
        send_timeout (float): Seconds a single send may take before the peer is dropped.
    """

    def __init__(
        self,
        websocket: WebSocket,
        loop: asyncio.AbstractEventLoop,
        on_error: Optional[Callable[[WebSocketConnection, BaseException], None]] = None,
        send_timeout: float = 5.0,
    ) -> None:
        self.websocket = websocket
        self.loop = loop
        self.on_error = on_error
        self.send_timeout = send_timeout
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and not self.loop.is_closed()
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    def send(self, data: str) -> None:
        """Schedule ``data`` for sending and return immediately.

        Raises:
            ConnectionError: If the connection is no longer open.
        """
        if not self.is_open:
            raise ConnectionError("WebSocket is not open")
        future = asyncio.run_coroutine_threadsafe(self._send(data), self.loop)
        future.add_done_callback(self._on_sent)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._schedule_close()

    def _schedule_close(self) -> None:
        if self.loop.is_closed():
            return
        future = asyncio.run_coroutine_threadsafe(self._close(), self.loop)
        future.add_done_callback(self._on_closed)

    async def _send(self, data: str) -> None:
        await asyncio.wait_for(self.websocket.send_text(data), timeout=self.send_timeout)

    async def _close(self) -> None:
        if self.websocket.application_state == WebSocketState.CONNECTED:
            await asyncio.wait_for(self.websocket.close(), timeout=self.send_timeout)

    def _on_sent(self, future: concurrent.futures.Future[Any]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        logger.debug(f"WebSocket send failed: {exc!r}")
        if not self._closed:
            self._closed = True
            # Drop the socket as well; clients reconnect on disconnect
            self._schedule_close()
        if self.on_error is not None:
            self.on_error(self, exc)

    def _on_closed(self, future: concurrent.futures.Future[Any]) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.debug(f"Error closing WebSocket: {future.exception()!r}")

    def __repr__(self) -> str:
        client = getattr(self.websocket, "client", None)
        return f"<WebSocketConnection client={client} open={self.is_open}>"


class WebSocketTransport:
    """Accept WebSocket clients on ``path`` and report them to the attached sink.

    Attributes:
        path (str): The WebSocket route.
        router (APIRouter): Router holding the WebSocket route; include it in an app.
    """

    def __init__(self, path: str = "/ws", send_timeout: float = 5.0) -> None:
        self.path = path
        self.send_timeout = send_timeout
        self._sink: Optional[BroadcastSink] = None
        self.router = APIRouter()
        self.router.add_api_websocket_route(path, self.endpoint)

    @property
    def is_attached(self) -> bool:
        return self._sink is not None

    def attach(self, sink: BroadcastSink) -> None:
        self._sink = sink
        logger.info(f"WebSocket transport accepting connections on {self.path}")

    def close(self) -> None:
        if self._sink is not None:
            logger.info("WebSocket transport closed")
        self._sink = None

    async def endpoint(self, websocket: WebSocket) -> None:
        sink = self._sink
        if sink is None:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        await websocket.accept()
        connection = WebSocketConnection(
            websocket,
            asyncio.get_running_loop(),
            on_error=sink.handle_send_error,
            send_timeout=self.send_timeout,
        )
        sink.handle_connect(connection)
        try:
            while True:
                text = await websocket.receive_text()
                sink.handle_message(connection, text)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning(f"WebSocket error: {e}")
        finally:
            connection.mark_closed()
            sink.handle_disconnect(connection)


def _stop(sync: RealtimeTaskSync, sink: BroadcastSink) -> None:
    sync.shutdown()
    sink.flush(timeout=1.0)
    sink.close()


def create_app(
    sync: RealtimeTaskSync,
    sink: BroadcastSink,
    transport: Optional[WebSocketTransport] = None,
    repositories: Iterable[str] = (),
) -> FastAPI:
    """Create the FastAPI application serving the sync WebSocket.

    The lifespan attaches the sink to the transport, initializes the orchestrator,
    adds the startup repositories and shuts everything down on exit.

    Args:
        sync (RealtimeTaskSync): The orchestrator.
        sink (BroadcastSink): The sink the orchestrator broadcasts to.
        transport (Optional[WebSocketTransport]): Defaults to a transport on ``/ws``.
        repositories (Iterable[str]): Repositories to monitor on startup.

    Returns:
        FastAPI: The application, with ``app.state.sync`` and ``app.state.sink`` set.
    """
    transport = transport or WebSocketTransport()
    startup_repositories = list(repositories)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sink.initialize(transport)
        sync.initialize()
        if sync.is_initialized:
            for repository_path in startup_repositories:
                try:
                    sync.add_repository(repository_path)
                except (InvalidRepositoryPathError, NotInitializedError) as e:
                    logger.error(f"Could not monitor {repository_path}: {e}")
        try:
            yield
        finally:
            # Joins watcher and worker threads; keep it off the event loop
            await run_in_threadpool(_stop, sync, sink)

    app = FastAPI(title="taskmaster-sync", version=__version__, lifespan=lifespan)
    app.include_router(transport.router)
    app.state.sync = sync
    app.state.sink = sink

    @app.get("/api/realtime/status")
    def realtime_status() -> dict:
        return {"success": True, "data": sync.get_stats()}

    @app.get("/api/realtime/repositories")
    def realtime_repositories() -> dict:
        repositories = sync.get_monitored_repositories()
        return {
            "success": True,
            "data": {"repositories": repositories, "count": len(repositories)},
        }

    return app
