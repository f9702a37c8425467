import asyncio
import threading
import weakref
from functools import partial
from typing import Dict, Iterable, List, Optional, Tuple

from connection import ConnectionHandle
from constants import SHUTDOWN_GRACE_SECONDS
from delivery import BroadcastResult, DeliveryChannel
from errors import InvalidState
from logging_config import get_logger

logger = get_logger(__name__)


async def close_gracefully(handles: Iterable[ConnectionHandle], final_payload: Optional[dict] = None,
                           grace: float = SHUTDOWN_GRACE_SECONDS) -> int:
    """Close handles, letting queued sends drain for up to ``grace`` seconds, then abort the rest."""
    handles = list(handles)
    if not handles:
        return 0
    closers = [handle.close(final_payload, drain=True, code=1001, reason="server shutdown") for handle in handles]
    _, pending = await asyncio.wait(closers, timeout=grace)
    if pending:
        logger.warning(f"{len(pending)} of {len(handles)} connections did not close within {grace}s, aborting")
        for handle, closer in zip(handles, closers):
            if not closer.done():
                await handle.abort()
    return len(handles)


class RoomRegistry:
    """Concurrent index of room name -> live connections in that room.

    Each room's members live in a dict of ``connection_id -> weakref`` that is
    never mutated once published: join and leave build a new dict and swap it
    in under a short lock, so broadcasts and snapshots read without locking
    and always see a whole membership state. The registry never owns a
    connection; a handle that is closed or garbage collected drops out of its
    room on its own.
    """

    def __init__(self, delivery: Optional[DeliveryChannel] = None):
        self.delivery = delivery or DeliveryChannel()
        self._lock = threading.RLock()
        self._rooms: Dict[str, Dict[str, weakref.ref]] = {}
        # connection_id -> room, keeps a handle in at most one room
        self._membership: Dict[str, str] = {}

    def join(self, room: str, handle: ConnectionHandle) -> bool:
        """Add handle to room. Returns False if it was already a member.

        A handle that is in a different room must leave it first.
        """
        if not room or not room.strip():
            raise InvalidState("room name must not be empty")
        if handle.closing:
            raise InvalidState(f"connection {handle.connection_id} is closed")
        connection_id = handle.connection_id
        with self._lock:
            current = self._membership.get(connection_id)
            if current == room:
                return False
            if current is not None:
                raise InvalidState(f"connection {connection_id} is already in room {current}")
            members = dict(self._rooms.get(room, {}))
            members[connection_id] = weakref.ref(handle, partial(self._collect, room, connection_id))
            self._rooms[room] = members
            self._membership[connection_id] = room
            count = len(members)
        handle.add_close_callback(self._on_closed)
        logger.info(f"Connection {connection_id} joined room {room} ({count} members)")
        return True

    def leave(self, room: str, handle: ConnectionHandle) -> bool:
        """Remove handle from room. Returns False if it was not a member."""
        removed = self._remove(room, handle.connection_id)
        if removed:
            logger.info(f"Connection {handle.connection_id} left room {room}")
        return removed

    def members_of(self, room: str) -> Tuple[ConnectionHandle, ...]:
        members = self._rooms.get(room)
        if not members:
            return ()
        return tuple(handle for handle in (ref() for ref in members.values()) if handle is not None)

    def member_count(self, room: str) -> int:
        return len(self.members_of(room))

    def room_of(self, handle: ConnectionHandle) -> Optional[str]:
        return self._membership.get(handle.connection_id)

    def rooms(self) -> List[str]:
        with self._lock:
            return list(self._rooms)

    def broadcast(self, room: str, payload: dict, exclude: Optional[str] = None) -> "asyncio.Future[BroadcastResult]":
        """Fan payload out to everyone in room right now.

        Returns a future of the per-member outcome; the payload is already
        queued for every member when this returns. Members whose send fails
        are dropped from the room.
        """
        members = [handle for handle in self.members_of(room) if handle.connection_id != exclude]
        future = self.delivery.send_many(members, payload)
        future.add_done_callback(partial(self._evict_failed, room))
        logger.debug(f"Broadcasting {payload.get('type', 'unknown')} to {len(members)} members of room {room}")
        return future

    async def close_all(self, room: str, final_payload: Optional[dict] = None,
                        grace: float = SHUTDOWN_GRACE_SECONDS) -> int:
        """Remove the room and close every member, waiting at most ``grace`` seconds."""
        with self._lock:
            members = self._rooms.pop(room, {})
            for connection_id in members:
                if self._membership.get(connection_id) == room:
                    del self._membership[connection_id]
        handles = [handle for handle in (ref() for ref in members.values()) if handle is not None]
        logger.info(f"Closing room {room} with {len(handles)} connections")
        return await close_gracefully(handles, final_payload, grace)

    async def shutdown(self, final_payload: Optional[dict] = None, grace: float = SHUTDOWN_GRACE_SECONDS) -> None:
        rooms = self.rooms()
        logger.info(f"Shutting down room registry ({len(rooms)} rooms)")
        results = await asyncio.gather(
            *(self.close_all(room, final_payload, grace) for room in rooms),
            return_exceptions=True,
        )
        for room, result in zip(rooms, results):
            if isinstance(result, BaseException):
                logger.error(f"Error closing room {room} during shutdown: {result}", exc_info=result)

    def _remove(self, room: str, connection_id: str, ref: Optional[weakref.ref] = None) -> bool:
        with self._lock:
            members = self._rooms.get(room)
            if not members or connection_id not in members:
                return False
            if ref is not None and members[connection_id] is not ref:
                return False
            members = dict(members)
            del members[connection_id]
            if members:
                self._rooms[room] = members
            else:
                del self._rooms[room]
                logger.debug(f"Room {room} is empty, pruned")
            if self._membership.get(connection_id) == room:
                del self._membership[connection_id]
            return True

    def _on_closed(self, handle: ConnectionHandle) -> None:
        room = self._membership.get(handle.connection_id)
        if room is None:
            logger.debug(f"Closed connection {handle.connection_id} was not in any room")
            return
        self.leave(room, handle)

    def _collect(self, room: str, connection_id: str, ref: weakref.ref) -> None:
        if self._remove(room, connection_id, ref):
            logger.warning(f"Connection {connection_id} was garbage collected while in room {room}")

    def _evict_failed(self, room: str, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        result = future.result()
        for connection_id, failure in result.failures.items():
            if self._remove(room, connection_id):
                logger.warning(f"Removed connection {connection_id} from room {room}: {failure.reason}")
