from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Generator, Tuple
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from taskmaster_sync.broadcast import CONNECTED_MESSAGE, BroadcastSink
from taskmaster_sync.server import (
    CLOSE_TRY_AGAIN_LATER,
    WebSocketConnection,
    WebSocketTransport,
    _stop,
    create_app,
)
from taskmaster_sync.sync import RealtimeTaskSync
from taskmaster_sync.watcher import EVENT_FILE_CHANGED, FileWatchRegistry, WatchEvent, tasks_file_path


def mock_observer() -> MagicMock:
    observer = MagicMock()
    observer.is_alive.return_value = False
    return observer


@pytest.fixture
def components() -> Tuple[RealtimeTaskSync, BroadcastSink]:
    sink = BroadcastSink()
    registry = FileWatchRegistry(debounce_seconds=30.0, observer_factory=mock_observer)
    return RealtimeTaskSync(sink, registry=registry), sink


@pytest.fixture
def client(
    components: Tuple[RealtimeTaskSync, BroadcastSink], repo: Path
) -> Generator[TestClient, None, None]:
    sync, sink = components
    app = create_app(sync, sink, repositories=[str(repo)])
    with TestClient(app) as test_client:
        yield test_client


def test_lifespan_initializes_and_adds_repositories(
    client: TestClient, components: Tuple[RealtimeTaskSync, BroadcastSink], repo: Path
) -> None:
    sync, sink = components
    assert sync.is_initialized
    assert sink.is_initialized
    assert sync.get_monitored_repositories() == [str(repo)]


def test_lifespan_shutdown(components: Tuple[RealtimeTaskSync, BroadcastSink], repo: Path) -> None:
    sync, sink = components
    with TestClient(create_app(sync, sink, repositories=[str(repo)])):
        pass

    assert not sync.is_initialized
    assert not sink.is_initialized
    assert sync.get_monitored_repositories() == []


def test_lifespan_stops_components_off_the_event_loop(
    components: Tuple[RealtimeTaskSync, BroadcastSink], repo: Path
) -> None:
    sync, sink = components
    with patch("taskmaster_sync.server.run_in_threadpool", wraps=run_in_threadpool) as offload:
        with TestClient(create_app(sync, sink, repositories=[str(repo)])):
            offload.assert_not_called()

    offload.assert_called_once_with(_stop, sync, sink)
    assert not sync.is_initialized


def test_invalid_startup_repository_is_skipped(
    components: Tuple[RealtimeTaskSync, BroadcastSink], repo: Path
) -> None:
    sync, sink = components
    with TestClient(create_app(sync, sink, repositories=["", str(repo)])):
        assert sync.get_monitored_repositories() == [str(repo)]


def test_status_route(client: TestClient) -> None:
    response = client.get("/api/realtime/status")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["isInitialized"] is True
    assert body["data"]["monitoredRepositories"] == 1
    assert body["data"]["watcherStats"]["watchedRepositories"] == 1


def test_repositories_route(client: TestClient, repo: Path) -> None:
    body = client.get("/api/realtime/repositories").json()
    assert body == {"success": True, "data": {"repositories": [str(repo)], "count": 1}}


def test_websocket_greeting(client: TestClient, components: Tuple[RealtimeTaskSync, BroadcastSink]) -> None:
    _, sink = components
    with client.websocket_connect("/ws") as ws:
        greeting = ws.receive_json()
        assert greeting["type"] == "connection"
        assert greeting["message"] == CONNECTED_MESSAGE
        assert sink.get_client_count() == 1


def test_websocket_echo_and_error(client: TestClient) -> None:
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        ws.send_text('{"type": "ping"}')
        echo = ws.receive_json()
        assert echo["type"] == "echo"
        assert echo["data"] == {"type": "ping"}

        ws.send_text("not json")
        error = ws.receive_json()
        assert error == {
            "type": "error",
            "message": "Invalid message format",
            "timestamp": error["timestamp"],
        }


def test_websocket_receives_task_updates(
    client: TestClient, components: Tuple[RealtimeTaskSync, BroadcastSink], repo: Path
) -> None:
    sync, _ = components
    tasks = {"proj": {"tasks": [{"id": 1}]}}
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        sync.registry._publish(
            WatchEvent(
                kind=EVENT_FILE_CHANGED,
                repository_path=str(repo),
                change_type="change",
                file_path=str(tasks_file_path(str(repo))),
                content=tasks,
                parsed=True,
            )
        )

        envelope = ws.receive_json()
        assert envelope["type"] == "broadcast"
        assert envelope["data"]["event"] == "TASKS_UPDATED"
        message = envelope["data"]["data"]
        assert message["repositoryPath"] == str(repo)
        assert message["payload"]["tasks"] == tasks


def test_websocket_receives_repository_events(
    client: TestClient, components: Tuple[RealtimeTaskSync, BroadcastSink], make_repo
) -> None:
    sync, _ = components
    other = make_repo("other")
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        sync.add_repository(str(other))
        envelope = ws.receive_json()
        assert envelope["data"]["event"] == "REPOSITORY_ADDED"
        assert envelope["data"]["data"]["repositoryPath"] == str(other)


def test_disconnect_unregisters_client(
    client: TestClient, components: Tuple[RealtimeTaskSync, BroadcastSink], wait_for
) -> None:
    _, sink = components
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        assert sink.get_client_count() == 1
    assert wait_for(lambda: sink.get_client_count() == 0)


def test_transport_without_sink_refuses_connections() -> None:
    transport = WebSocketTransport()
    app = FastAPI()
    app.include_router(transport.router)

    with TestClient(app) as test_client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws") as ws:
                ws.receive_json()
    assert exc_info.value.code == CLOSE_TRY_AGAIN_LATER


def test_transport_attach_and_close() -> None:
    transport = WebSocketTransport(path="/sync")
    sink = MagicMock()
    transport.attach(sink)
    assert transport.is_attached
    transport.close()
    assert not transport.is_attached


class StalledWebSocket:
    """Accepted socket whose sends never complete."""

    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.closed = False

    async def send_text(self, data: str) -> None:
        await asyncio.sleep(10)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED


@pytest.fixture
def loop_thread() -> Generator[asyncio.AbstractEventLoop, None, None]:
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, name="TestLoop", daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=2.0)
    loop.close()


def test_send_timeout_closes_socket_and_drops_client(
    loop_thread: asyncio.AbstractEventLoop, wait_for
) -> None:
    sink = BroadcastSink()
    websocket = StalledWebSocket()
    connection = WebSocketConnection(
        websocket, loop_thread, on_error=sink.handle_send_error, send_timeout=0.05
    )
    sink.handle_connect(connection)
    assert sink.get_client_count() == 1

    assert wait_for(lambda: websocket.closed)
    assert wait_for(lambda: sink.get_client_count() == 0)
    assert sink.send_errors == 1
    assert not connection.is_open

    # Already torn down; a later close is a no-op
    connection.close()
    assert sink.send_errors == 1


def test_close_after_send_failure_still_reaches_socket(
    loop_thread: asyncio.AbstractEventLoop, wait_for
) -> None:
    websocket = StalledWebSocket()
    errors = []
    connection = WebSocketConnection(
        websocket, loop_thread, on_error=lambda conn, exc: errors.append(exc), send_timeout=0.05
    )

    connection.send("x")

    assert wait_for(lambda: len(errors) == 1)
    assert isinstance(errors[0], asyncio.TimeoutError)
    assert wait_for(lambda: websocket.closed)
