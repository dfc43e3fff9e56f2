"""Tests for committed-change notifications over WebSocket."""

import asyncio
import json

import pytest

from models import Event, Session as SessionModel
from services.event_broadcaster import EventBroadcaster
from services.websocket import ConnectionManager


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        self.sent.append(message)

    async def send_text(self, message):
        self.sent.append(json.loads(message))


async def drain():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_state_change_is_recorded_and_pushed(session_factory, db_session):
    db_session.add(SessionModel(id="s1", name="n", source="a.mp4", destination="rtmp://h/app/k"))
    db_session.commit()
    manager = ConnectionManager()
    socket = FakeWebSocket()
    await manager.connect(socket)
    broadcaster = EventBroadcaster(manager, session_factory)

    await broadcaster.session_state_changed("s1", "running")
    await drain()

    assert socket.accepted
    assert socket.sent[0]["type"] == "connection"
    pushed = socket.sent[1]
    assert pushed["type"] == "session_state"
    assert pushed["data"]["session_id"] == "s1"
    assert pushed["data"]["new_state"] == "running"
    assert pushed["data"]["timestamp"].endswith("Z")

    events = db_session.query(Event).filter(Event.event_type == 'session_state').all()
    assert [json.loads(e.payload_json)["new_state"] for e in events] == ["running"]

    manager.disconnect(socket)
    assert not manager.active_connections


@pytest.mark.asyncio
async def test_error_broadcast_carries_context(session_factory):
    manager = ConnectionManager()
    socket = FakeWebSocket()
    await manager.connect(socket)

    await EventBroadcaster(manager, session_factory).error(
        "schedule_dispatch_failed", "facility refused", schedule_id="sch1"
    )
    await drain()

    pushed = socket.sent[-1]
    assert pushed["type"] == "error"
    assert pushed["data"]["context"] == {"schedule_id": "sch1"}
    manager.disconnect(socket)


@pytest.mark.asyncio
async def test_broadcast_without_clients_is_noop():
    await ConnectionManager().send_session_state("s1", "idle", "2024-01-01T00:00:00Z")


@pytest.mark.asyncio
async def test_storage_failure_does_not_block_notification(session_factory, db_session):
    manager = ConnectionManager()
    socket = FakeWebSocket()
    await manager.connect(socket)

    # Unknown session id violates the events foreign key; the push still happens
    await EventBroadcaster(manager, session_factory).session_state_changed("missing", "failed")
    await drain()

    assert socket.sent[-1]["data"]["new_state"] == "failed"
    assert db_session.query(Event).count() == 0
    manager.disconnect(socket)
