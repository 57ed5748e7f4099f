import pytest
from fastapi.testclient import TestClient

from app import app
from backend import InMemoryRoomStore
from registry import RoomRegistry
from relay import SignalingRelay


@pytest.fixture
def client():
    app.state.registry = RoomRegistry(InMemoryRoomStore())
    app.state.relay = SignalingRelay(app.state.registry)
    with TestClient(app) as client:
        yield client


def open_socket(client):
    ws = client.websocket_connect("/ws")
    socket = ws.__enter__()
    welcome = socket.receive_json()
    assert welcome["event"] == "connected"
    return ws, socket, welcome["data"]["connectionId"]


def call(socket, event, data, ack):
    socket.send_json({"event": event, "data": data, "ack": ack})
    reply = socket.receive_json()
    assert reply["event"] == "ack" and reply["ack"] == ack
    return reply["data"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_room_lifecycle_over_websocket(client):
    ws_a, a, a_id = open_socket(client)
    ws_b, b, b_id = open_socket(client)
    ws_c, c, _ = open_socket(client)
    try:
        assert call(a, "create-room", {"roomId": "demo"}, 1) == {"success": True, "roomId": "demo"}
        assert call(b, "join-room", {"roomId": "demo"}, 1) == {"success": True, "roomId": "demo"}
        assert a.receive_json() == {"event": "member-joined", "data": {"memberId": b_id}}
        assert call(c, "join-room", {"roomId": "demo"}, 1) == {"success": False, "message": "Room is full"}

        details = client.get("/rooms/demo").json()
        assert details["member_count"] == 2
        assert details["is_full"] is True
        assert details["has_password"] is False

        b.send_json({"event": "offer", "data": {"roomId": "demo", "offer": {"sdp": "x", "type": "offer"}}})
        assert a.receive_json() == {"event": "offer",
                                    "data": {"senderId": b_id, "offer": {"sdp": "x", "type": "offer"}}}
    finally:
        ws_c.__exit__(None, None, None)
        ws_b.__exit__(None, None, None)

    try:
        assert a.receive_json() == {"event": "member-left", "data": {"memberId": b_id}}
        assert client.get("/rooms/demo").json()["member_count"] == 1
    finally:
        ws_a.__exit__(None, None, None)


def test_password_protected_room(client):
    ws_a, a, _ = open_socket(client)
    ws_b, b, _ = open_socket(client)
    try:
        assert call(a, "create-room", {"roomId": "locked", "passwordHash": "abc"}, 1)["success"] is True
        assert call(b, "join-room", {"roomId": "locked", "passwordHash": "xyz"}, 2) == {
            "success": False, "message": "Incorrect password"}
        assert call(b, "join-room", {"roomId": "locked", "passwordHash": "abc"}, 3)["success"] is True
        assert client.get("/rooms/locked").json()["has_password"] is True
    finally:
        ws_b.__exit__(None, None, None)
        ws_a.__exit__(None, None, None)


def test_unknown_room_details(client):
    response = client.get("/rooms/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Room does not exist"
