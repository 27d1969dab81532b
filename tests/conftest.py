"""Shared fixtures for the planning poker tests."""
import json
from datetime import datetime, timedelta, timezone

import pytest
from starlette.websockets import WebSocketState

from poker_server.config import PokerSettings
from poker_server.persistence import InMemoryRoomStore
from poker_server.registry import RoomRegistry
from poker_server.timers import AutoLockScheduler


class FakeClock:
    """A controllable clock; call it to read the time."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeWebSocket:
    """Stands in for a Starlette WebSocket and records every frame sent to it."""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.sent = []

    async def accept(self):
        pass

    async def send_text(self, text: str):
        self.sent.append(json.loads(text))

    def kinds(self):
        return [m["kind"] for m in self.sent]

    def last(self, kind: str):
        matches = [m["payload"] for m in self.sent if m["kind"] == kind]
        assert matches, f"no '{kind}' message in {self.kinds()}"
        return matches[-1]

    def clear(self):
        self.sent.clear()


class RecordingScheduler(AutoLockScheduler):
    """Keeps tickets instead of sleeping so tests decide when a timer fires."""

    def __init__(self):
        super().__init__()
        self.scheduled = []
        self.cancelled = []

    def schedule(self, ticket, callback):
        self.scheduled.append((ticket, callback))

    def cancel(self, room_code):
        self.cancelled.append(room_code)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryRoomStore()


@pytest.fixture
def registry(store, clock):
    return RoomRegistry(store, defaults=PokerSettings(countdown_seconds=30), clock=clock)


@pytest.fixture
def hosted_room(registry):
    """A room hosted by Alice with Bob joined."""
    room, host = registry.create_room("Alice", "Sprint 42")
    _, bob = registry.join_room(room.code, "Bob")
    return room, host, bob
