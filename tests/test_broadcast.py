from __future__ import annotations

import json
import logging
from typing import Callable

import pytest

from taskmaster_sync.broadcast import CONNECTED_MESSAGE, BroadcastSink


def test_broadcast_before_initialize_fails(caplog: pytest.LogCaptureFixture) -> None:
    sink = BroadcastSink()
    with caplog.at_level(logging.ERROR, logger="taskmaster_sync.broadcast"):
        assert sink.broadcast({"event": "TASKS_UPDATED"}) is False
    assert "not initialized" in caplog.text
    assert sink.messages_broadcast == 0


def test_initialize_attaches_transport(sink: BroadcastSink, fake_transport) -> None:
    assert sink.is_initialized
    assert fake_transport.sink is sink


def test_connect_sends_greeting(sink: BroadcastSink, fake_connection) -> None:
    sink.handle_connect(fake_connection)

    assert sink.get_client_count() == 1
    [greeting] = fake_connection.messages()
    assert greeting["type"] == "connection"
    assert greeting["message"] == CONNECTED_MESSAGE
    assert greeting["timestamp"].endswith("Z")


def test_connect_with_failing_send_is_not_registered(
    sink: BroadcastSink, make_connection: Callable
) -> None:
    sink.handle_connect(make_connection(fail_on_send=True))
    assert sink.get_client_count() == 0
    assert sink.send_errors == 1


def test_async_send_error_is_counted_and_drops_client(
    sink: BroadcastSink, make_connection: Callable
) -> None:
    stalled, healthy = make_connection(), make_connection()
    sink.handle_connect(stalled)
    sink.handle_connect(healthy)

    sink.handle_send_error(stalled, TimeoutError("send timed out"))

    assert sink.send_errors == 1
    assert sink.get_client_count() == 1
    sink.broadcast({"event": "TASKS_UPDATED"})
    assert sink.flush(timeout=1.0)
    assert len(stalled.messages()) == 1
    assert len(healthy.messages()) == 2


def test_broadcast_reaches_every_client(sink: BroadcastSink, make_connection: Callable) -> None:
    clients = [make_connection() for _ in range(3)]
    for client in clients:
        sink.handle_connect(client)

    message = {"event": "TASKS_UPDATED", "data": {"repositoryPath": "/repo"}}
    assert sink.broadcast(message) is True
    assert sink.flush(timeout=2.0)

    for client in clients:
        greeting, envelope = client.messages()
        assert greeting["type"] == "connection"
        assert envelope["type"] == "broadcast"
        assert envelope["data"] == message
    # Serialized once: every client received identical text
    assert len({client.sent[1] for client in clients}) == 1
    assert sink.messages_broadcast == 1


def test_broadcast_preserves_order(sink: BroadcastSink, fake_connection) -> None:
    sink.handle_connect(fake_connection)
    for i in range(20):
        sink.broadcast({"seq": i})
    assert sink.flush(timeout=2.0)

    received = [m["data"]["seq"] for m in fake_connection.messages()[1:]]
    assert received == list(range(20))


def test_broadcast_skips_closed_connections(sink: BroadcastSink, make_connection: Callable) -> None:
    open_client, closing_client = make_connection(), make_connection()
    sink.handle_connect(open_client)
    sink.handle_connect(closing_client)
    closing_client.open = False

    sink.broadcast({"n": 1})
    assert sink.flush(timeout=2.0)

    assert len(open_client.sent) == 2
    assert len(closing_client.sent) == 1


def test_failed_send_drops_only_that_client(sink: BroadcastSink, make_connection: Callable) -> None:
    healthy, broken = make_connection(), make_connection()
    sink.handle_connect(healthy)
    sink.handle_connect(broken)
    broken.fail_on_send = True

    sink.broadcast({"n": 1})
    assert sink.flush(timeout=2.0)

    assert sink.get_client_count() == 1
    assert sink.send_errors == 1
    assert healthy.messages()[-1]["data"] == {"n": 1}

    # Later broadcasts still reach the healthy client
    sink.broadcast({"n": 2})
    assert sink.flush(timeout=2.0)
    assert healthy.messages()[-1]["data"] == {"n": 2}


def test_client_message_is_echoed(sink: BroadcastSink, fake_connection) -> None:
    sink.handle_connect(fake_connection)
    sink.handle_message(fake_connection, json.dumps({"type": "ping"}))

    reply = fake_connection.messages()[-1]
    assert reply["type"] == "echo"
    assert reply["data"] == {"type": "ping"}
    assert "timestamp" in reply


def test_invalid_client_message_gets_error(sink: BroadcastSink, fake_connection) -> None:
    sink.handle_connect(fake_connection)
    sink.handle_message(fake_connection, "not json {")

    reply = fake_connection.messages()[-1]
    assert reply["type"] == "error"
    assert reply["message"] == "Invalid message format"
    assert sink.get_client_count() == 1


def test_disconnect(sink: BroadcastSink, fake_connection, make_connection: Callable) -> None:
    sink.handle_connect(fake_connection)
    sink.handle_disconnect(fake_connection)
    assert sink.get_client_count() == 0

    # Unknown connections are ignored
    sink.handle_disconnect(make_connection())
    assert sink.get_client_count() == 0


def test_reinitialize_same_transport_is_noop(sink: BroadcastSink, fake_transport, fake_connection) -> None:
    sink.handle_connect(fake_connection)
    sink.initialize(fake_transport)
    assert sink.get_client_count() == 1
    assert not fake_connection.closed


def test_new_transport_replaces_previous(
    sink: BroadcastSink, fake_transport, fake_connection, make_transport: Callable
) -> None:
    sink.handle_connect(fake_connection)
    replacement = make_transport()

    sink.initialize(replacement)

    assert fake_transport.closed
    assert fake_connection.closed
    assert sink.get_client_count() == 0
    assert replacement.sink is sink
    assert sink.broadcast({"n": 1}) is True


def test_close_is_idempotent(fake_transport, fake_connection) -> None:
    sink = BroadcastSink()
    sink.initialize(fake_transport)
    sink.handle_connect(fake_connection)

    sink.close()
    sink.close()

    assert fake_transport.closed
    assert fake_connection.closed
    assert sink.get_client_count() == 0
    assert not sink.is_initialized
    assert sink.broadcast({"n": 1}) is False


def test_close_delivers_pending_envelopes(fake_transport, fake_connection) -> None:
    sink = BroadcastSink()
    sink.initialize(fake_transport)
    sink.handle_connect(fake_connection)
    for i in range(5):
        sink.broadcast({"seq": i})

    sink.close()

    assert [m["data"]["seq"] for m in fake_connection.messages()[1:]] == list(range(5))


def test_flush_when_idle(sink: BroadcastSink) -> None:
    assert sink.flush(timeout=0.1) is True
