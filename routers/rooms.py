from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import OnlineUser, RoomDetailsResponse, RoomListResponse, RoomSummary
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/", response_model=RoomListResponse)
async def list_rooms(request: Request):
    """List rooms that currently have members on this instance."""
    registry = request.app.state.registry
    dispatcher = request.app.state.dispatcher
    summaries = []
    for room in sorted(registry.rooms()):
        count = registry.member_count(room)
        if count:
            summaries.append(RoomSummary(room=room, online_users_count=count))
    logger.debug(f"Room list requested: {len(summaries)} rooms, {dispatcher.connection_count} connections")
    return RoomListResponse(rooms=summaries, connections_count=dispatcher.connection_count)


@rooms_router.get("/{room}", response_model=RoomDetailsResponse)
async def get_room_details(room: str, request: Request):
    """
    Get the online members of a room.

    Returns:
    - room: Room name
    - online_users_count: Current number of online users
    - online_users: display name and connection time of each member
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room} from {client_host}")

    members = request.app.state.registry.members_of(room)
    if not members:
        logger.warning(f"Room details failed: Room {room} has no members")
        raise HTTPException(status_code=404, detail="Room not found")

    online_users = sorted(
        (OnlineUser(display_name=handle.display_name, connected_at=handle.connected_at) for handle in members),
        key=lambda user: user.connected_at,
    )
    return RoomDetailsResponse(room=room, online_users_count=len(online_users), online_users=online_users)
