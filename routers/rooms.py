from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Room details for a landing page that wants to check a room before joining.

    Returns:
    - room_id: Room identifier
    - created_at: Room creation timestamp
    - member_count: Current number of connected members (0-2)
    - max_members: Maximum members allowed
    - has_password: Whether a password hash was set at creation
    - is_full: Whether a join would be rejected for occupancy
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    registry = request.app.state.registry
    room = registry.get_room(room_id)
    if not room:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room does not exist")

    member_count = room["member_count"]
    return RoomDetailsResponse(
        room_id=room_id,
        created_at=room.get("created_at"),
        member_count=member_count,
        max_members=registry.max_members,
        has_password=bool(room.get("password_hash")),
        is_full=member_count >= registry.max_members,
    )
