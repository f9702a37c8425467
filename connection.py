import asyncio
import contextlib
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from constants import SEND_QUEUE_MAX
from delivery import SendResult
from errors import DeliveryFailure, InvalidState
from logging_config import get_logger

logger = get_logger(__name__)

# Queue marker telling the writer to flush the final payload and close
_CLOSE = object()


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    CLOSED = "closed"


class ConnectionHandle:
    """One live client connection.

    Owns the connection identity, its room assignment, a small session-scoped
    key/value store and an ordered send queue. The transport only needs
    ``send_json(payload)`` and ``close(code=..., reason=...)`` coroutines, which
    is what a Starlette ``WebSocket`` provides.

    Every payload goes through a FIFO drained by a single writer task, so
    concurrent ``send`` calls never interleave on the wire and arrive in call
    order. ``send`` itself never waits on the peer.
    """

    def __init__(self, transport, connection_id: Optional[str] = None, max_pending: int = SEND_QUEUE_MAX):
        self.transport = transport
        self.connection_id = connection_id or uuid.uuid4().hex
        self.connected_at = datetime.now().isoformat()
        self.display_name: Optional[str] = None
        self.state = ConnectionState.CONNECTED
        self._room: Optional[str] = None
        self._session: dict = {}
        self._session_lock = threading.Lock()
        self._max_pending = max_pending
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._closing = False
        self._close_args = (None, 1000, "")
        self._closed_future: Optional[asyncio.Future] = None
        self._close_callbacks: List[Callable[["ConnectionHandle"], Any]] = []

    def __repr__(self) -> str:
        return f"<ConnectionHandle {self.connection_id[:8]} room={self._room!r} state={self.state.value}>"

    @property
    def room(self) -> Optional[str]:
        return self._room

    def set_room(self, name: str) -> None:
        """Assign the room. Registration with a RoomRegistry is a separate step."""
        if not name or not name.strip():
            raise InvalidState("room name must not be empty")
        self._room = name.strip()

    @property
    def closing(self) -> bool:
        return self._closing or self.state is ConnectionState.CLOSED

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def get_session_value(self, key: str, default: Any = None) -> Any:
        with self._session_lock:
            return self._session.get(key, default)

    def set_session_value(self, key: str, value: Any) -> None:
        with self._session_lock:
            self._session[key] = value

    def add_close_callback(self, callback: Callable[["ConnectionHandle"], Any]) -> None:
        """Run ``callback(handle)`` once when the connection is closed.

        Registering the same callback twice is a no-op. On an already closed
        handle the callback runs immediately.
        """
        if self.state is ConnectionState.CLOSED:
            self._run_callback(callback)
            return
        if callback not in self._close_callbacks:
            self._close_callbacks.append(callback)

    def send(self, payload: dict) -> "asyncio.Future[SendResult]":
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self.closing:
            future.set_result(self._failed("connection closed"))
            return future
        if self._queue.qsize() >= self._max_pending:
            logger.warning(f"Send queue full for connection {self.connection_id} ({self._max_pending} pending)")
            future.set_result(self._failed("send queue full"))
            return future
        self._queue.put_nowait((payload, future))
        self._ensure_writer()
        return future

    def close(self, final_payload: Optional[dict] = None, *, drain: bool = False,
              code: int = 1000, reason: str = "") -> asyncio.Future:
        """Close the connection once; returns a future done when the transport is closed.

        Sends still queued are cancelled unless ``drain`` is set. A final
        payload is written after the queue and before the transport closes.
        """
        if self._closed_future is not None:
            return self._closed_future
        loop = asyncio.get_running_loop()
        self._closed_future = loop.create_future()
        self._closing = True
        if not drain:
            self._cancel_pending("connection closed")
        self._close_args = (final_payload, code, reason)
        self._queue.put_nowait((_CLOSE, None))
        self._ensure_writer()
        logger.debug(f"Closing connection {self.connection_id} (drain={drain}, final_payload={final_payload is not None})")
        return self._closed_future

    async def abort(self) -> None:
        """Tear the connection down now, dropping anything still queued or in flight."""
        if self.state is ConnectionState.CLOSED:
            return
        self._closing = True
        if self._closed_future is None:
            self._closed_future = asyncio.get_running_loop().create_future()
        inflight = self._inflight
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
        if self.state is ConnectionState.CLOSED:
            return
        self._cancel_pending("connection aborted")
        if inflight is not None:
            self._resolve(inflight, self._failed("connection aborted"))
        self._inflight = None
        try:
            await self.transport.close(code=1001, reason="server shutdown")
        except Exception as e:
            logger.debug(f"Error closing transport for connection {self.connection_id}: {e}")
        logger.info(f"Connection {self.connection_id} aborted")
        self._finish()

    def _ensure_writer(self) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            payload, future = await self._queue.get()
            if payload is _CLOSE:
                await self._teardown()
                return
            self._inflight = future
            try:
                await self.transport.send_json(payload)
            except Exception as e:
                logger.debug(f"Send to connection {self.connection_id} failed: {e}")
                self._resolve(future, self._failed(str(e) or type(e).__name__))
            else:
                self._resolve(future, SendResult(self.connection_id, True))
            finally:
                self._inflight = None

    async def _teardown(self) -> None:
        final_payload, code, reason = self._close_args
        if final_payload is not None:
            try:
                await self.transport.send_json(final_payload)
            except Exception as e:
                logger.debug(f"Final payload to connection {self.connection_id} not delivered: {e}")
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as e:
            # Peer already gone; the close frame has nowhere to go
            logger.debug(f"Error closing transport for connection {self.connection_id}: {e}")
        logger.info(f"Connection {self.connection_id} closed")
        self._finish()

    def _finish(self) -> None:
        self.state = ConnectionState.CLOSED
        if self._closed_future is not None and not self._closed_future.done():
            self._closed_future.set_result(None)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def _run_callback(self, callback) -> None:
        try:
            callback(self)
        except Exception as e:
            logger.error(f"Close callback failed for connection {self.connection_id}: {e}", exc_info=True)

    def _cancel_pending(self, reason: str) -> None:
        dropped = 0
        while True:
            try:
                payload, future = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if payload is _CLOSE:
                continue
            self._resolve(future, self._failed(reason))
            dropped += 1
        if dropped:
            logger.debug(f"Cancelled {dropped} queued sends for connection {self.connection_id}")

    def _failed(self, reason: str) -> SendResult:
        return SendResult(self.connection_id, False, DeliveryFailure(self.connection_id, reason))

    @staticmethod
    def _resolve(future: asyncio.Future, result: SendResult) -> None:
        if not future.done():
            future.set_result(result)
