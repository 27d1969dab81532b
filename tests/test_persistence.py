"""Tests for the SQLite room store."""
from datetime import timedelta

import pytest

from poker_server.models import Room, Story, User
from poker_server.persistence import SQLiteRoomStore


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteRoomStore(tmp_path / "nested" / "rooms.db")
    yield store
    store.close()


def make_room(code="ROOM1"):
    room = Room(code=code, name="Sprint", host_id="h")
    room.users["h"] = User(id="h", room_code=code, display_name="Alice", avatar_id="a", role="host")
    room.stories.append(Story(id="s1", title="Login flow", final_estimate="?"))
    return room


def test_save_and_load_round_trip(sqlite_store):
    room = make_room()
    assert sqlite_store.save_room(room)

    loaded = sqlite_store.load_room("ROOM1")

    assert loaded.model_dump() == room.model_dump()
    assert loaded.stories[0].final_estimate == "?"


def test_load_missing(sqlite_store):
    assert sqlite_store.load_room("NOPE") is None


def test_save_replaces_existing_row(sqlite_store):
    room = make_room()
    sqlite_store.save_room(room)
    room.name = "Renamed"
    sqlite_store.save_room(room)

    assert sqlite_store.load_room("ROOM1").name == "Renamed"


def test_delete(sqlite_store):
    sqlite_store.save_room(make_room())

    assert sqlite_store.delete_room("ROOM1") is True
    assert sqlite_store.delete_room("ROOM1") is False
    assert sqlite_store.load_room("ROOM1") is None


def test_list_idle_rooms(sqlite_store):
    old = make_room("OLD")
    new = make_room("NEW")
    old.updated_at = new.updated_at - timedelta(days=2)
    sqlite_store.save_room(old)
    sqlite_store.save_room(new)

    assert sqlite_store.list_idle_rooms(new.updated_at - timedelta(days=1)) == ["OLD"]
