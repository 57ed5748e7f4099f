import asyncio
import hashlib
import json

import pytest

from conftest import FakePeerSession
from errors import BadPassword, NegotiationFailed, RendezvousError, RoomFull, TransferAborted
from peer.client import PeerClient, hash_password
from peer.negotiator import NegotiationState
from peer.signaling import SignalingClient


class FakeSignaling:
    def __init__(self, acks):
        self.acks = list(acks)
        self.requests = []
        self.emitted = []
        self.handlers = {}

    def on(self, event, handler):
        self.handlers[event] = handler

    async def request(self, event, data, timeout=10.0):
        self.requests.append((event, data))
        return self.acks.pop(0)

    async def emit(self, event, data):
        self.emitted.append((event, data))

    async def disconnect(self):
        pass


def test_hash_password():
    assert hash_password(None) is None
    assert hash_password("") is None
    assert hash_password("abc") == hashlib.sha256(b"abc").hexdigest()


async def test_create_room_sends_only_the_hash():
    signaling = FakeSignaling([{"success": True, "roomId": "demo"}])
    client = PeerClient(signaling, FakePeerSession)

    assert await client.create_room("demo", password="secret") == "demo"
    assert signaling.requests == [("create-room", {"roomId": "demo", "passwordHash": hash_password("secret")})]
    assert client.negotiator.room_id == "demo"
    assert client.state == NegotiationState.IDLE


@pytest.mark.parametrize("message, error", [
    ("Incorrect password", BadPassword),
    ("Room is full", RoomFull),
    ("Something else", RendezvousError),
])
async def test_rejections_become_exceptions(message, error):
    client = PeerClient(FakeSignaling([{"success": False, "message": message}]), FakePeerSession)
    with pytest.raises(error) as exc:
        await client.join_room("demo", password="x")
    assert exc.value.message == message
    assert client.negotiator is None


async def test_relay_events_drive_the_negotiator():
    signaling = FakeSignaling([{"success": True, "roomId": "demo"}])
    client = PeerClient(signaling, FakePeerSession)
    await client.join_room("demo")

    await signaling.handlers["offer"]({"senderId": "peer-a", "offer": {"type": "offer", "sdp": "x"}})
    assert client.state == NegotiationState.ANSWERING
    assert signaling.emitted[0][0] == "answer"

    await signaling.handlers["member-left"]({"memberId": "peer-a"})
    assert client.state == NegotiationState.CLOSED


async def test_signaling_client_dispatch():
    client = SignalingClient("ws://unused")
    seen = []

    async def on_offer(data):
        seen.append(data)

    client.on("offer", on_offer)
    await client._dispatch({"event": "connected", "data": {"connectionId": "abc"}})
    assert client.connection_id == "abc"

    future = asyncio.get_running_loop().create_future()
    client._pending[3] = future
    await client._dispatch({"event": "ack", "ack": 3, "data": {"success": True, "roomId": "demo"}})
    assert future.result() == {"success": True, "roomId": "demo"}

    await client._dispatch({"event": "offer", "data": {"senderId": "x", "offer": {}}})
    await client._dispatch({"event": "unhandled", "data": {}})
    assert seen == [{"senderId": "x", "offer": {}}]


async def test_signaling_client_requires_connection():
    client = SignalingClient("ws://unused")
    with pytest.raises(ConnectionError):
        await client.emit("offer", {})


async def open_as_offerer(signaling, client):
    await client.create_room("demo")
    await signaling.handlers["member-joined"]({"memberId": "peer-b"})
    await signaling.handlers["answer"]({"senderId": "peer-b", "answer": {"type": "answer", "sdp": "x"}})
    session, channel = client.negotiator.session, client.negotiator.channel
    session.set_state("connected")
    channel.open()
    assert client.state == NegotiationState.OPEN
    return session, channel


async def test_peer_leaving_mid_transfer_ends_wait_for_file():
    signaling = FakeSignaling([{"success": True, "roomId": "demo"}])
    client = PeerClient(signaling, FakePeerSession)
    _, channel = await open_as_offerer(signaling, client)

    channel.emit("message", json.dumps({"kind": "metadata", "fileName": "a.bin", "fileSize": 40000,
                                        "mimeType": "application/octet-stream"}))
    channel.emit("message", bytes(16384))
    await signaling.handlers["member-left"]({"memberId": "peer-b"})

    with pytest.raises(TransferAborted):
        await client.wait_for_file(timeout=0.5)


async def test_peer_leaving_an_idle_channel_ends_wait_for_file():
    signaling = FakeSignaling([{"success": True, "roomId": "demo"}])
    client = PeerClient(signaling, FakePeerSession)
    await open_as_offerer(signaling, client)

    await signaling.handlers["member-left"]({"memberId": "peer-b"})

    with pytest.raises(TransferAborted):
        await client.wait_for_file(timeout=0.5)


async def test_failed_negotiation_ends_wait_for_file():
    signaling = FakeSignaling([{"success": True, "roomId": "demo"}])
    client = PeerClient(signaling, FakePeerSession)
    await client.create_room("demo")
    await signaling.handlers["member-joined"]({"memberId": "peer-b"})

    client.negotiator.session.set_state("failed")

    with pytest.raises(NegotiationFailed):
        await client.wait_for_file(timeout=0.5)


async def test_entering_another_room_closes_the_previous_negotiation():
    signaling = FakeSignaling([{"success": True, "roomId": "first"}, {"success": True, "roomId": "second"}])
    client = PeerClient(signaling, FakePeerSession)
    await client.join_room("first")
    await signaling.handlers["offer"]({"senderId": "peer-a", "offer": {"type": "offer", "sdp": "x"}})
    first = client.negotiator
    session = first.session

    await client.join_room("second")

    assert first.state == NegotiationState.CLOSED
    assert first.session is None
    assert session.closed
    assert client.negotiator is not first
    assert client.negotiator.room_id == "second"
    assert client.state == NegotiationState.IDLE
    assert client._received.empty()
