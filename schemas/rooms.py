from pydantic import BaseModel
from typing import Optional


class OnlineUser(BaseModel):
    display_name: Optional[str]
    connected_at: str

class RoomSummary(BaseModel):
    room: str
    online_users_count: int

class RoomListResponse(BaseModel):
    rooms: list[RoomSummary]
    connections_count: int

class RoomDetailsResponse(BaseModel):
    room: str
    online_users_count: int
    online_users: list[OnlineUser]
