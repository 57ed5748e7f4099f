import hmac
import secrets
import string
from datetime import datetime
from typing import List, Optional, Set, Tuple
from backend import RoomStore, InMemoryRoomStore
from constants import EMPTY_ROOM_POLICY, MAX_ROOM_MEMBERS, ROOM_ID_LENGTH
from errors import RoomExists, RoomNotFound, BadPassword, RoomFull
from logging_config import get_logger

logger = get_logger(__name__)

ROOM_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return ''.join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


class RoomRegistry:
    """Room existence, optional password hash and occupancy (at most two members).

    Passwords never reach the registry in plaintext: clients hash them and the
    registry only stores and compares hashes.
    """

    def __init__(self, store: Optional[RoomStore] = None, empty_room_policy: str = EMPTY_ROOM_POLICY,
                 max_members: int = MAX_ROOM_MEMBERS):
        self.store = store if store is not None else InMemoryRoomStore()
        if empty_room_policy not in ("keep", "reclaim"):
            raise ValueError(f"Unknown empty room policy: {empty_room_policy}")
        self.empty_room_policy = empty_room_policy
        self.max_members = max_members

    def create_room(self, connection_id: str, requested_id: Optional[str] = None,
                    password_hash: Optional[str] = None) -> str:
        room_id = requested_id or generate_room_id()
        created = self.store.create_room(room_id, {
            "id": room_id,
            "created_at": datetime.now().isoformat(),
            "password_hash": password_hash or None,
        })
        if not created:
            logger.warning(f"Create room failed: Room {room_id} already exists")
            raise RoomExists()

        self._add_member(room_id, connection_id)
        logger.info(f"Room {room_id} created by {connection_id} (password: {bool(password_hash)})")
        return room_id

    def join_room(self, connection_id: str, room_id: str, password_hash: Optional[str] = None) -> str:
        room = self.store.get_room(room_id) if room_id else None
        if not room:
            logger.warning(f"Join room failed: Room {room_id} not found")
            raise RoomNotFound()

        room_password = room.get("password_hash")
        if room_password and not hmac.compare_digest(room_password.encode(), (password_hash or "").encode()):
            logger.warning(f"Join room failed: Invalid password for room {room_id} from {connection_id}")
            raise BadPassword()

        members = self.store.get_members(room_id)
        if connection_id in members:
            logger.debug(f"Connection {connection_id} already in room {room_id}")
            return room_id
        if len(members) >= self.max_members:
            logger.warning(f"Join room failed: Room {room_id} is full ({len(members)}/{self.max_members})")
            raise RoomFull()

        self._add_member(room_id, connection_id)
        logger.info(f"Connection {connection_id} joined room {room_id}: {len(members) + 1}/{self.max_members} members")
        return room_id

    def leave_all(self, connection_id: str) -> List[Tuple[str, Set[str]]]:
        """Remove a connection from every room it belongs to.

        Returns ``(room_id, remaining_members)`` for each room left so the caller
        can notify the remaining occupants.
        """
        left = []
        for room_id in sorted(self.store.get_connection_rooms(connection_id)):
            self.store.remove_member(room_id, connection_id)
            remaining = self.store.get_members(room_id)
            logger.info(f"Connection {connection_id} left room {room_id}: {len(remaining)} members remain")
            if not remaining and self.empty_room_policy == "reclaim":
                self.store.delete_room(room_id)
                logger.info(f"Room {room_id} reclaimed after last member left")
            left.append((room_id, remaining))
        self.store.clear_connection(connection_id)
        return left

    def reset_connections(self):
        """Drop memberships left by an earlier relay process; none of those connections are live."""
        self.store.clear_connections()
        logger.info("Room memberships reset")

    def get_room(self, room_id: str) -> Optional[dict]:
        room = self.store.get_room(room_id)
        if room is None:
            return None
        room["member_count"] = len(self.store.get_members(room_id))
        return room

    def members(self, room_id: str) -> Set[str]:
        return self.store.get_members(room_id)

    def member_count(self, room_id: str) -> int:
        return len(self.store.get_members(room_id))

    def rooms_of(self, connection_id: str) -> Set[str]:
        return self.store.get_connection_rooms(connection_id)

    def _add_member(self, room_id: str, connection_id: str):
        self.store.add_member(room_id, connection_id)
        self.store.add_connection_room(connection_id, room_id)
