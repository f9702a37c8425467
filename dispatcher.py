import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from connection import ConnectionHandle, ConnectionState
from constants import CLOSE_ON_IDLE, ECHO_TO_SENDER, PRESENCE_ENABLED, SHUTDOWN_GRACE_SECONDS
from errors import ChatCoreError, DeliveryFailure, InvalidState, ProtocolViolation
from logging_config import get_logger
from registry import RoomRegistry, close_gracefully
from schemas.frames import ChatMessageFrame, JoinFrame, TypingFrame

logger = get_logger(__name__)


@dataclass(frozen=True)
class LifecycleEvent:
    kind: str  # connected | joined | left | idle | closed
    connection_id: str
    room: Optional[str] = None
    display_name: Optional[str] = None


def _system(message: str) -> dict:
    return {"type": "system", "message": message, "timestamp": datetime.now().isoformat()}


class Dispatcher:
    """Drives the room registry from connection lifecycle events and inbound frames.

    The transport calls ``on_connect``, ``on_frame``, ``on_idle_timeout`` and
    ``on_disconnect``; nothing else in the core is called from outside. A bad
    frame or a frame in the wrong state is logged and reported back to its
    sender, never fatal to the connection.

    With a relay (see ``backend.RedisRelay``) room traffic is published
    through Redis and delivered to local members by the relay listener.
    """

    def __init__(self, registry: RoomRegistry, relay=None, echo_to_sender: bool = ECHO_TO_SENDER,
                 close_on_idle: bool = CLOSE_ON_IDLE, presence: bool = PRESENCE_ENABLED,
                 close_grace: float = SHUTDOWN_GRACE_SECONDS):
        self.registry = registry
        self.relay = relay
        self.echo_to_sender = echo_to_sender
        self.close_on_idle = close_on_idle
        self.presence = presence
        self.close_grace = close_grace
        self._connections: Dict[str, ConnectionHandle] = {}
        self._listeners: List[Callable[[LifecycleEvent], None]] = []
        self._inflight: Set[asyncio.Future] = set()
        self._handlers = {
            JoinFrame: self._handle_join,
            ChatMessageFrame: self._handle_chat,
            TypingFrame: self._handle_typing,
        }

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def add_listener(self, listener: Callable[[LifecycleEvent], None]) -> None:
        self._listeners.append(listener)

    async def on_connect(self, handle: ConnectionHandle) -> None:
        self._connections[handle.connection_id] = handle
        handle.add_close_callback(self._on_closed)
        logger.info(f"Connection {handle.connection_id} opened ({len(self._connections)} connections)")
        self._emit("connected", handle)

    async def on_frame(self, handle: ConnectionHandle, frame) -> None:
        if handle.closing:
            logger.debug(f"Dropping {type(frame).__name__} from closing connection {handle.connection_id}")
            return
        handler = self._handlers.get(type(frame))
        try:
            if handler is None:
                raise ProtocolViolation(f"unsupported frame {type(frame).__name__}")
            handler(handle, frame)
        except ChatCoreError as e:
            await self.report(handle, e)

    async def report(self, handle: ConnectionHandle, error: ChatCoreError) -> None:
        """Log a rejected frame and tell the sender; the connection stays open."""
        logger.warning(f"Dropped frame from connection {handle.connection_id}: {type(error).__name__}: {error}")
        if not handle.closing:
            handle.send({"type": "error", "error": str(error)})

    async def on_idle_timeout(self, handle: ConnectionHandle) -> None:
        logger.info(f"Connection {handle.connection_id} idle timeout (room={handle.room})")
        self._emit("idle", handle)
        if not self.close_on_idle or handle.closing:
            return
        # Idle members leave silently, the room is not notified
        room = self.registry.room_of(handle)
        if room is not None:
            self.registry.leave(room, handle)
            self._emit("left", handle, room)
        handle.close(_system("Connection closed due to inactivity"), code=1000, reason="idle timeout")

    async def on_disconnect(self, handle: ConnectionHandle) -> None:
        room = self.registry.room_of(handle)
        if room is not None and self.registry.leave(room, handle):
            self._announce(room, handle, "user_offline")
            self._emit("left", handle, room)
        closing = handle.close()
        try:
            await asyncio.wait_for(asyncio.shield(closing), timeout=self.close_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Connection {handle.connection_id} did not close within {self.close_grace}s, aborting")
            await handle.abort()

    async def flush(self) -> None:
        """Wait for every broadcast started so far to complete."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self, grace: Optional[float] = None) -> None:
        grace = self.close_grace if grace is None else grace
        notice = _system("Server shutting down")
        try:
            await self.registry.shutdown(notice, grace)
            # Connections that never joined a room
            await close_gracefully([h for h in self._connections.values() if not h.closing], notice, grace)
        except Exception as e:
            logger.error(f"Error during dispatcher shutdown: {e}", exc_info=True)
        logger.info("Dispatcher shut down")

    def _handle_join(self, handle: ConnectionHandle, frame: JoinFrame) -> None:
        previous = self.registry.room_of(handle)
        handle.set_room(frame.room)
        room = handle.room

        # The old room hears the leave under the name it knew
        if previous is not None and previous != room:
            self.registry.leave(previous, handle)
            self._announce(previous, handle, "user_offline")
            self._emit("left", handle, previous)

        name = frame.display_name.strip() if frame.display_name and frame.display_name.strip() else None
        handle.display_name = name or handle.display_name or f"User_{handle.connection_id[:8]}"

        joined = self.registry.join(room, handle)
        handle.state = ConnectionState.JOINED
        if self.relay is not None:
            try:
                self.relay.watch(room)
            except Exception as e:
                logger.error(f"Could not subscribe to relay channel for room {room}: {e}", exc_info=True)
        if joined:
            logger.info(f"{handle.display_name} ({handle.connection_id}) joined room {room}")
            self._announce(room, handle, "user_online")
            self._emit("joined", handle, room)
        else:
            logger.debug(f"Connection {handle.connection_id} re-joined room {room} as {handle.display_name}")

    def _handle_chat(self, handle: ConnectionHandle, frame: ChatMessageFrame) -> None:
        room = self._joined_room(handle, "chat message")
        payload = {"type": "msg", "msg": frame.text, "sendUser": handle.display_name}
        self._fanout(room, payload, exclude=None if self.echo_to_sender else handle.connection_id,
                     sender=handle.connection_id)

    def _handle_typing(self, handle: ConnectionHandle, frame: TypingFrame) -> None:
        room = self._joined_room(handle, "typing indicator")
        payload = {"type": "typing", "sendUser": handle.display_name, "typing": frame.is_typing}
        self._fanout(room, payload, exclude=handle.connection_id, sender=handle.connection_id)

    def _joined_room(self, handle: ConnectionHandle, what: str) -> str:
        room = handle.room
        if handle.state is not ConnectionState.JOINED or room is None:
            raise InvalidState(f"{what} before joining a room")
        # Dropped from the room after a failed delivery; must join again
        if self.registry.room_of(handle) != room:
            raise InvalidState(f"{what} while not a member of room {room}, join again")
        return room

    def _announce(self, room: str, handle: ConnectionHandle, event: str) -> None:
        if not self.presence:
            return
        payload = {
            "type": "presence",
            "event": event,
            "display_name": handle.display_name,
            "room": room,
            "timestamp": datetime.now().isoformat(),
        }
        # Local counts are meaningless once other instances share the room
        if self.relay is None:
            payload["online_count"] = self.registry.member_count(room)
        try:
            self._fanout(room, payload)
        except DeliveryFailure as e:
            logger.warning(f"Presence {event} for room {room} not delivered: {e}")

    def _fanout(self, room: str, payload: dict, exclude: Optional[str] = None, sender: str = "relay") -> None:
        if self.relay is not None:
            try:
                self.relay.publish(room, payload, exclude=exclude)
            except Exception as e:
                logger.error(f"Relay publish to room {room} failed: {e}", exc_info=True)
                raise DeliveryFailure(sender, f"relay publish to room {room} failed") from e
            return
        future = self.registry.broadcast(room, payload, exclude=exclude)
        self._inflight.add(future)
        future.add_done_callback(self._broadcast_done)

    def _broadcast_done(self, future: asyncio.Future) -> None:
        self._inflight.discard(future)
        if future.cancelled():
            return
        result = future.result()
        if result.failures:
            logger.warning(f"Broadcast reached {len(result.delivered)}/{result.attempted} members, "
                           f"failed: {', '.join(result.failures)}")

    def _on_closed(self, handle: ConnectionHandle) -> None:
        self._connections.pop(handle.connection_id, None)
        self._emit("closed", handle)

    def _emit(self, kind: str, handle: ConnectionHandle, room: Optional[str] = None) -> None:
        event = LifecycleEvent(kind, handle.connection_id, room or handle.room, handle.display_name)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Lifecycle listener failed on {kind} for {handle.connection_id}: {e}", exc_info=True)
