from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class Envelope(BaseModel):
    """One message on the relay socket, in either direction."""
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    ack: Optional[int] = None


class CreateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(None, alias="roomId")
    password_hash: Optional[str] = Field(None, alias="passwordHash")


class JoinRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    password_hash: Optional[str] = Field(None, alias="passwordHash")


class RoomAck(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    room_id: Optional[str] = Field(None, alias="roomId")
    message: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SignalRequest(BaseModel):
    """Envelope check for offer/answer/ice-candidate. The payload itself is never inspected."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    room_id: str = Field(alias="roomId")


class RoomDetailsResponse(BaseModel):
    room_id: str
    created_at: Optional[str] = None
    member_count: int
    max_members: int
    has_password: bool
    is_full: bool
