"""
Tests for the HTTP surface and the WebSocket endpoint.
"""
import pytest
from fastapi.testclient import TestClient

from poker_server.app import create_app
from poker_server.config import PersistenceSettings, Settings
from poker_server.persistence import InMemoryRoomStore


@pytest.fixture
def client():
    settings = Settings(persistence=PersistenceSettings(enabled=False))
    app = create_app(settings, store=InMemoryRoomStore())
    with TestClient(app) as test_client:
        yield test_client


def create_room(client, host_name="Alice"):
    response = client.post("/api/rooms", json={"hostName": host_name, "roomName": "Sprint"})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    response = client.get("/api/health")
    assert response.json() == {"status": "ok", "rooms": 0}


def test_create_and_lookup_room(client):
    body = create_room(client)
    code = body["room"]["code"]

    assert body["host"]["role"] == "host"
    assert body["room"]["hostId"] == body["host"]["id"]
    assert "votes" not in body["room"]

    lookup = client.get(f"/api/rooms/{code.lower()}")
    assert lookup.status_code == 200
    assert lookup.json()["exists"] is True
    assert lookup.json()["room"]["id"] == code


def test_lookup_missing_room(client):
    response = client.get("/api/rooms/NOPE")
    assert response.status_code == 404
    assert response.json()["exists"] is False


def test_create_room_requires_host_name(client):
    assert client.post("/api/rooms", json={"hostName": "  "}).status_code == 400
    assert client.post("/api/rooms", json={}).status_code == 400


def test_websocket_session(client):
    body = create_room(client)
    code = body["room"]["code"]
    host_id = body["host"]["id"]

    with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as bob:
        host.send_json({"kind": "host_join_room", "payload": {"roomCode": code, "hostUserId": host_id}})
        assert host.receive_json()["kind"] == "room_state"

        bob.send_json({"kind": "join_room", "payload": {"roomCode": code, "displayName": "Bob"}})
        state = bob.receive_json()
        assert state["kind"] == "room_state"
        bob_id = state["payload"]["userId"]
        assert host.receive_json() == {
            "kind": "user_joined",
            "payload": {"user": {**state["payload"]["users"][1]}},
        }

        host.send_json({"kind": "add_story", "payload": {"roomCode": code, "story": {"title": "Login flow"}}})
        story_id = host.receive_json()["payload"]["story"]["id"]
        assert bob.receive_json()["kind"] == "story_added"

        host.send_json({"kind": "start_round", "payload": {"roomCode": code, "storyId": story_id}})
        assert host.receive_json()["kind"] == "round_started"
        assert bob.receive_json()["kind"] == "round_started"

        bob.send_json({"kind": "cast_vote", "payload": {"roomCode": code, "storyId": story_id, "value": 5}})
        status = host.receive_json()
        assert status == {"kind": "voting_status_updated", "payload": {"votingStatus": {host_id: False, bob_id: True}}}
        assert bob.receive_json()["kind"] == "voting_status_updated"
        assert bob.receive_json() == {"kind": "vote_confirmed", "payload": {"storyId": story_id, "value": 5}}

        host.send_json({"kind": "reveal_votes", "payload": {"roomCode": code, "storyId": story_id}})
        revealed = host.receive_json()["payload"]
        assert revealed["votes"] == {bob_id: 5}
        assert revealed["summary"] == {"min": 5, "max": 5, "average": 5.0, "mode": 5, "consensus": True}
        bob.receive_json()

        bob.send_json({"kind": "end_session", "payload": {"roomCode": code}})
        assert bob.receive_json() == {"kind": "error", "payload": {"message": "Not authorized"}}
