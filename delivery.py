import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from errors import DeliveryFailure
from logging_config import get_logger

if TYPE_CHECKING:
    from connection import ConnectionHandle

logger = get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    connection_id: str
    ok: bool
    error: Optional[DeliveryFailure] = None


@dataclass
class BroadcastResult:
    """Outcome of one fan-out: how many sends were attempted and which failed."""

    attempted: int = 0
    delivered: List[str] = field(default_factory=list)
    failures: Dict[str, DeliveryFailure] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class DeliveryChannel:
    """Send a payload to one or many connections without waiting on the peers.

    Both methods return immediately with a future; the payload is already
    queued on every target connection when they return. No retries: a failed
    send is reported in the result and left to the caller.
    """

    def send_one(self, handle: "ConnectionHandle", payload: dict) -> "asyncio.Future[SendResult]":
        return handle.send(payload)

    def send_many(self, handles: Sequence["ConnectionHandle"], payload: dict) -> "asyncio.Future[BroadcastResult]":
        loop = asyncio.get_running_loop()
        aggregate = loop.create_future()
        result = BroadcastResult(attempted=len(handles))
        if not handles:
            aggregate.set_result(result)
            return aggregate

        remaining = len(handles)

        def _collect(connection_id: str, future: asyncio.Future) -> None:
            nonlocal remaining
            if future.cancelled():
                send_result = SendResult(connection_id, False, DeliveryFailure(connection_id, "send cancelled"))
            else:
                send_result = future.result()
            if send_result.ok:
                result.delivered.append(connection_id)
            else:
                result.failures[connection_id] = send_result.error or DeliveryFailure(connection_id, "unknown error")
            remaining -= 1
            if remaining == 0 and not aggregate.done():
                aggregate.set_result(result)

        for handle in handles:
            try:
                future = handle.send(payload)
            except Exception as e:
                logger.error(f"Error queueing payload for connection {handle.connection_id}: {e}", exc_info=True)
                future = loop.create_future()
                future.set_result(SendResult(handle.connection_id, False, DeliveryFailure(handle.connection_id, str(e))))
            future.add_done_callback(lambda f, cid=handle.connection_id: _collect(cid, f))

        logger.debug(f"Queued payload for {len(handles)} connections")
        return aggregate
