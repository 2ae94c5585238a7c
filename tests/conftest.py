from __future__ import annotations

import json
import queue
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional
import pytest

from taskmaster_sync.broadcast import BroadcastSink
from taskmaster_sync.watcher import WatchEvent


class FakeConnection:
    """In-memory connection recording everything sent to it."""

    def __init__(self, fail_on_send: bool = False) -> None:
        self.sent: List[str] = []
        self.open = True
        self.closed = False
        self.fail_on_send = fail_on_send
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self.open and not self.closed

    def send(self, data: str) -> None:
        if self.fail_on_send:
            raise ConnectionError("peer gone")
        with self._lock:
            self.sent.append(data)

    def close(self) -> None:
        self.closed = True

    def messages(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(s) for s in self.sent]


class FakeTransport:
    """Transport double recording attach/close calls."""

    def __init__(self) -> None:
        self.sink: Optional[BroadcastSink] = None
        self.closed = False

    def attach(self, sink: BroadcastSink) -> None:
        self.sink = sink

    def close(self) -> None:
        self.closed = True


class RecordingSink:
    """Sink double capturing broadcast payloads synchronously."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self.client_count = 0
        self._lock = threading.Lock()

    def broadcast(self, message: Any) -> bool:
        with self._lock:
            self.messages.append(message)
        return True

    def get_client_count(self) -> int:
        return self.client_count

    def events(self) -> List[str]:
        with self._lock:
            return [m["event"] for m in self.messages]

    def of(self, event: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [m["data"] for m in self.messages if m["event"] == event]


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class EventChannel(queue.Queue):
    """Watch event queue that can be emptied in one call."""

    def drain(self) -> List[WatchEvent]:
        events = []
        while True:
            try:
                events.append(self.get_nowait())
            except queue.Empty:
                return events


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def make_repo(temp_dir: Path) -> Callable[..., Path]:
    """Factory creating a repository directory with a ``.taskmaster/tasks/tasks.json`` file."""

    def _make(name: str = "repo", content: Any = None, with_tasks_file: bool = True) -> Path:
        repo = temp_dir / name
        tasks_dir = repo / ".taskmaster" / "tasks"
        tasks_dir.mkdir(parents=True, exist_ok=True)
        if with_tasks_file:
            data = content if content is not None else {"master": {"tasks": []}}
            (tasks_dir / "tasks.json").write_text(json.dumps(data), encoding="utf-8")
        return repo

    return _make


@pytest.fixture
def repo(make_repo: Callable[..., Path]) -> Path:
    return make_repo()


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sink(fake_transport: FakeTransport) -> Generator[BroadcastSink, None, None]:
    """An initialized BroadcastSink attached to a FakeTransport."""
    s = BroadcastSink()
    s.initialize(fake_transport)
    yield s
    s.close()


@pytest.fixture
def make_connection() -> Callable[..., FakeConnection]:
    return FakeConnection


@pytest.fixture
def event_channel() -> EventChannel:
    return EventChannel()


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Poll a predicate until it is true or the timeout (default 3s) expires."""
    return _wait_for


@pytest.fixture
def make_transport() -> Callable[[], FakeTransport]:
    return FakeTransport
