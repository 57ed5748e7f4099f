import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from pydantic import ValidationError
from errors import RendezvousError
from registry import RoomRegistry
from schemas.rooms import Envelope, CreateRoomRequest, JoinRoomRequest, RoomAck, SignalRequest
from logging_config import get_logger

logger = get_logger(__name__)

SendFunc = Callable[[dict], Awaitable[None]]

# event name -> key carrying the opaque payload
SIGNAL_PAYLOAD_KEYS = {
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "candidate",
}


class SignalingRelay:
    """Store-and-forward relay for the two members of a room.

    Handles the create-room/join-room requests through the registry, forwards
    offer/answer/ice-candidate payloads to the other member(s) of a room and
    emits member-joined/member-left events.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        # Live connections on this process: {connection_id: send}
        self.connections: Dict[str, SendFunc] = {}

    def connect(self, connection_id: str, send: SendFunc):
        self.connections[connection_id] = send
        logger.info(f"Connection {connection_id} registered (live connections: {len(self.connections)})")

    async def disconnect(self, connection_id: str):
        """Drop the connection from every room and tell the members left behind.

        The socket task calling this is often being cancelled, so the
        notifications run shielded and complete even if the caller does not.
        """
        self.connections.pop(connection_id, None)
        departures = self.registry.leave_all(connection_id)
        logger.info(f"Connection {connection_id} removed (live connections: {len(self.connections)})")
        if departures:
            await asyncio.shield(self._announce_departure(connection_id, departures))

    async def _announce_departure(self, connection_id: str, departures):
        for room_id, remaining in departures:
            await self.emit(remaining, "member-left", {"memberId": connection_id})
            logger.debug(f"Notified {len(remaining)} members of room {room_id} that {connection_id} left")

    async def handle_text(self, connection_id: str, raw: str):
        try:
            envelope = Envelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Malformed envelope from {connection_id}: {e}")
            await self.send(connection_id, "error", {"message": "Malformed message"})
            return
        await self.handle(connection_id, envelope)

    async def handle(self, connection_id: str, envelope: Envelope):
        event = envelope.event
        logger.debug(f"Received {event} from connection {connection_id}")

        if event == "create-room":
            ack = self.create_room(connection_id, envelope.data)
            await self.acknowledge(connection_id, envelope.ack, ack)
        elif event == "join-room":
            rooms_before = self.registry.rooms_of(connection_id)
            ack = self.join_room(connection_id, envelope.data)
            # a repeated join by a current member is acknowledged without re-announcing it
            if ack.success and ack.room_id not in rooms_before:
                others = self.registry.members(ack.room_id) - {connection_id}
                await self.emit(others, "member-joined", {"memberId": connection_id})
            await self.acknowledge(connection_id, envelope.ack, ack)
        elif event in SIGNAL_PAYLOAD_KEYS:
            await self.relay_signal(connection_id, event, envelope.data)
        else:
            logger.warning(f"Unknown event {event!r} from connection {connection_id}")
            if envelope.ack is not None:
                await self.acknowledge(connection_id, envelope.ack,
                                       RoomAck(success=False, message=f"Unknown event: {event}"))
            else:
                await self.send(connection_id, "error", {"message": f"Unknown event: {event}"})

    def create_room(self, connection_id: str, data: Dict[str, Any]) -> RoomAck:
        try:
            request = CreateRoomRequest.model_validate(data)
            room_id = self.registry.create_room(connection_id, request.room_id, request.password_hash)
        except ValidationError as e:
            logger.warning(f"Invalid create-room request from {connection_id}: {e}")
            return RoomAck(success=False, message="Invalid request")
        except RendezvousError as e:
            return RoomAck(success=False, message=e.message)
        return RoomAck(success=True, room_id=room_id)

    def join_room(self, connection_id: str, data: Dict[str, Any]) -> RoomAck:
        try:
            request = JoinRoomRequest.model_validate(data)
            room_id = self.registry.join_room(connection_id, request.room_id, request.password_hash)
        except ValidationError as e:
            logger.warning(f"Invalid join-room request from {connection_id}: {e}")
            return RoomAck(success=False, message="Invalid request")
        except RendezvousError as e:
            return RoomAck(success=False, message=e.message)
        return RoomAck(success=True, room_id=room_id)

    async def relay_signal(self, connection_id: str, event: str, data: Dict[str, Any]):
        try:
            request = SignalRequest.model_validate(data)
        except ValidationError:
            logger.warning(f"Dropping {event} from {connection_id}: missing roomId")
            return
        payload_key = SIGNAL_PAYLOAD_KEYS[event]
        await self.relay(event, request.room_id, connection_id, {payload_key: data.get(payload_key)})

    async def relay(self, event: str, room_id: str, sender_id: str, payload: Dict[str, Any]):
        """Deliver ``payload`` with ``senderId`` attached to every other member of the room."""
        members = self.registry.members(room_id)
        if sender_id not in members:
            logger.warning(f"Dropping {event} from {sender_id}: not a member of room {room_id}")
            return
        await self.emit(members - {sender_id}, event, {"senderId": sender_id, **payload})
        logger.debug(f"Relayed {event} from {sender_id} in room {room_id}")

    async def acknowledge(self, connection_id: str, ack_id: Optional[int], ack: RoomAck):
        if ack_id is None:
            logger.debug(f"No ack requested by {connection_id}, dropping response {ack.to_wire()}")
            return
        await self._deliver(connection_id, {"event": "ack", "ack": ack_id, "data": ack.to_wire()})

    async def send(self, connection_id: str, event: str, data: dict):
        await self._deliver(connection_id, {"event": event, "data": data})

    async def emit(self, connection_ids: Iterable[str], event: str, data: dict):
        message = {"event": event, "data": data}
        send_tasks = [self._deliver(conn_id, message) for conn_id in connection_ids]
        if send_tasks:
            await asyncio.gather(*send_tasks)

    async def _deliver(self, connection_id: str, message: dict):
        send = self.connections.get(connection_id)
        if send is None:
            logger.debug(f"Connection {connection_id} is not live on this process, skipping {message['event']}")
            return
        try:
            await send(message)
        except Exception as e:
            # One broken socket must not affect delivery to the others
            logger.warning(f"Error sending {message['event']} to connection {connection_id}: {e}")
