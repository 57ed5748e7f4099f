import redis
import json
from typing import Dict, Optional, Set
from constants import ROOM_STORE, ROOM_TTL_SECONDS, REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from redis_keys import REDIS_META_KEY, REDIS_MEMBERS_KEY, REDIS_CONN_ROOMS_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class RoomStore:
    """Storage used by the room registry.

    Holds room metadata, the member set of every room and the reverse
    connection -> rooms index. Implementations only store; all occupancy and
    password rules live in the registry.
    """

    def create_room(self, room_id: str, room_data: dict) -> bool:
        """Store a new room. Returns False when the id is already taken."""
        raise NotImplementedError

    def get_room(self, room_id: str) -> Optional[dict]:
        raise NotImplementedError

    def delete_room(self, room_id: str):
        raise NotImplementedError

    def add_member(self, room_id: str, connection_id: str):
        raise NotImplementedError

    def remove_member(self, room_id: str, connection_id: str):
        raise NotImplementedError

    def get_members(self, room_id: str) -> Set[str]:
        raise NotImplementedError

    def add_connection_room(self, connection_id: str, room_id: str):
        raise NotImplementedError

    def get_connection_rooms(self, connection_id: str) -> Set[str]:
        raise NotImplementedError

    def clear_connection(self, connection_id: str):
        raise NotImplementedError

    def clear_connections(self):
        """Forget every membership and connection index, keeping the rooms."""
        raise NotImplementedError


class InMemoryRoomStore(RoomStore):
    """Process-local store, the default deployment."""

    def __init__(self):
        self.rooms: Dict[str, dict] = {}
        self.members: Dict[str, Set[str]] = {}
        self.connection_rooms: Dict[str, Set[str]] = {}
        logger.info("Initializing in-memory room store")

    def create_room(self, room_id: str, room_data: dict) -> bool:
        if room_id in self.rooms:
            return False
        self.rooms[room_id] = {k: v for k, v in room_data.items() if v is not None}
        self.members[room_id] = set()
        logger.debug(f"Room {room_id} stored in memory")
        return True

    def get_room(self, room_id: str) -> Optional[dict]:
        room = self.rooms.get(room_id)
        return dict(room) if room is not None else None

    def delete_room(self, room_id: str):
        self.rooms.pop(room_id, None)
        self.members.pop(room_id, None)
        logger.debug(f"Room {room_id} deleted from memory")

    def add_member(self, room_id: str, connection_id: str):
        self.members.setdefault(room_id, set()).add(connection_id)

    def remove_member(self, room_id: str, connection_id: str):
        self.members.get(room_id, set()).discard(connection_id)

    def get_members(self, room_id: str) -> Set[str]:
        return set(self.members.get(room_id, set()))

    def add_connection_room(self, connection_id: str, room_id: str):
        self.connection_rooms.setdefault(connection_id, set()).add(room_id)

    def get_connection_rooms(self, connection_id: str) -> Set[str]:
        return set(self.connection_rooms.get(connection_id, set()))

    def clear_connection(self, connection_id: str):
        self.connection_rooms.pop(connection_id, None)

    def clear_connections(self):
        for members in self.members.values():
            members.clear()
        self.connection_rooms.clear()


class RedisRoomStore(RoomStore):
    """Redis-backed store. Rooms outlive a relay restart; members do not.

    Only one relay process may use a given Redis database: events are
    delivered to sockets held by that process, so a second relay sharing the
    room map could never reach the other member.
    """

    def __init__(self, redis_client=None, ttl: int = ROOM_TTL_SECONDS):
        if redis_client is None:
            try:
                redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
                # Test connection
                redis_client.ping()
                logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
            except Exception as e:
                logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
                raise
        self.redis_client = redis_client
        self.ttl = ttl

    def _expire(self, key: str):
        if self.ttl:
            self.redis_client.expire(key, self.ttl)

    def create_room(self, room_id: str, room_data: dict) -> bool:
        key = REDIS_META_KEY.format(slug=room_id)
        # hsetnx on the id field is the existence check and the claim in one step
        if not self.redis_client.hsetnx(key, "id", room_id):
            logger.debug(f"Room {room_id} already present in Redis")
            return False
        # Convert dict values to strings for Redis hash, skip None values
        room_data_str = {}
        for k, v in room_data.items():
            if v is None:
                continue
            if isinstance(v, (dict, list)):
                room_data_str[k] = json.dumps(v)
            else:
                room_data_str[k] = str(v)
        if room_data_str:
            self.redis_client.hset(key, mapping=room_data_str)
        self._expire(key)
        logger.debug(f"Room {room_id} created successfully with key: {key}")
        return True

    def get_room(self, room_id: str) -> Optional[dict]:
        key = REDIS_META_KEY.format(slug=room_id)
        room_data = self.redis_client.hgetall(key)
        if not room_data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        return dict(room_data)

    def delete_room(self, room_id: str):
        deleted = self.redis_client.delete(REDIS_META_KEY.format(slug=room_id))
        members_deleted = self.redis_client.delete(REDIS_MEMBERS_KEY.format(slug=room_id))
        logger.debug(f"Room {room_id} deleted: meta_key={deleted}, members_key={members_deleted}")

    def add_member(self, room_id: str, connection_id: str):
        key = REDIS_MEMBERS_KEY.format(slug=room_id)
        self.redis_client.sadd(key, connection_id)
        self._expire(key)

    def remove_member(self, room_id: str, connection_id: str):
        self.redis_client.srem(REDIS_MEMBERS_KEY.format(slug=room_id), connection_id)

    def get_members(self, room_id: str) -> Set[str]:
        return set(self.redis_client.smembers(REDIS_MEMBERS_KEY.format(slug=room_id)))

    def add_connection_room(self, connection_id: str, room_id: str):
        key = REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id)
        self.redis_client.sadd(key, room_id)
        self._expire(key)

    def get_connection_rooms(self, connection_id: str) -> Set[str]:
        return set(self.redis_client.smembers(REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id)))

    def clear_connection(self, connection_id: str):
        self.redis_client.delete(REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id))

    def clear_connections(self):
        cleared = 0
        for pattern in (REDIS_MEMBERS_KEY.format(slug="*"), REDIS_CONN_ROOMS_KEY.format(connection_id="*")):
            for key in self.redis_client.scan_iter(match=pattern):
                cleared += self.redis_client.delete(key)
        logger.info(f"Cleared {cleared} stale membership keys from Redis")


def create_room_store(kind: str = ROOM_STORE) -> RoomStore:
    if kind == "redis":
        return RedisRoomStore()
    if kind != "memory":
        logger.warning(f"Unknown ROOM_STORE {kind!r}, falling back to in-memory store")
    return InMemoryRoomStore()
