import asyncio
import json
from typing import Dict, Optional

import redis

from constants import REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from logging_config import get_logger
from redis_keys import REDIS_ROOM_CHANNEL
from registry import RoomRegistry

logger = get_logger(__name__)


class RedisRelay:
    """Relay room payloads between instances over Redis pub/sub.

    Every instance tracks only its own connections. A payload for a room is
    published on the room's channel and each instance subscribed to it,
    including the publisher, broadcasts it to its local members. A room is
    subscribed while it has local members; the listener stops on its own
    once the room is empty here.
    """

    def __init__(self, registry: RoomRegistry, redis_client, pubsub_client, poll_timeout: float = 1.0):
        self.registry = registry
        self.redis_client = redis_client
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client
        self.poll_timeout = poll_timeout
        self._listeners: Dict[str, asyncio.Task] = {}

    @classmethod
    def connect(cls, registry: RoomRegistry, host: str = REDIS_HOST, port: int = REDIS_PORT,
                password: Optional[str] = REDIS_PASSWORD) -> "RedisRelay":
        try:
            redis_client = redis.Redis(host=host, port=port, password=password, decode_responses=True)
            redis_client.ping()
            pubsub_client = redis.Redis(host=host, port=port, password=password, decode_responses=True)
            pubsub_client.ping()
            logger.info(f"Redis relay connected to {host}:{port}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {host}:{port}: {e}", exc_info=True)
            raise
        return cls(registry, redis_client, pubsub_client)

    def get_room_channel_name(self, room: str) -> str:
        return REDIS_ROOM_CHANNEL.format(slug=room)

    def publish(self, room: str, payload: dict, exclude: Optional[str] = None) -> int:
        """Publish a payload to the room's channel; returns the number of subscribed instances."""
        channel = self.get_room_channel_name(room)
        envelope = json.dumps({"payload": payload, "exclude": exclude})
        subscribers = self.redis_client.publish(channel, envelope)
        logger.debug(f"Published {payload.get('type', 'unknown')} to channel {channel}, {subscribers} subscribers")
        return subscribers

    def watch(self, room: str) -> None:
        """Make sure this instance is subscribed to the room's channel."""
        task = self._listeners.get(room)
        if task is not None and not task.done():
            return
        channel = self.get_room_channel_name(room)
        # Subscribe before returning so a publish right after join is not missed
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(channel)
        logger.debug(f"Subscribed to Redis channel {channel} for room {room}")
        self._listeners[room] = asyncio.get_running_loop().create_task(self._listen(room, pubsub))

    @property
    def watched_rooms(self):
        return [room for room, task in self._listeners.items() if not task.done()]

    async def close(self) -> None:
        tasks = list(self._listeners.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()
        logger.info("Redis relay closed")

    async def _listen(self, room: str, pubsub) -> None:
        logger.info(f"Starting Redis pub/sub listener for room: {room}")
        loop = asyncio.get_running_loop()

        def get_message():
            """Blocking call to get next message from Redis pub/sub with timeout."""
            try:
                return pubsub.get_message(timeout=self.poll_timeout, ignore_subscribe_messages=True)
            except Exception as e:
                logger.error(f"Error in pubsub.get_message() for room {room}: {e}", exc_info=True)
                return None

        try:
            while True:
                if self.registry.member_count(room) == 0:
                    logger.info(f"No more local connections in room {room}, stopping listener")
                    break
                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                self._deliver(room, message["data"])
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room: {room}")
        except Exception as e:
            logger.error(f"Error in Redis listener for room {room}: {e}", exc_info=True)
        finally:
            try:
                pubsub.close()
            except Exception as e:
                logger.error(f"Error closing pub/sub for room {room}: {e}")
            if self._listeners.get(room) is asyncio.current_task():
                del self._listeners[room]

    def _deliver(self, room: str, data) -> None:
        try:
            envelope = json.loads(data)
            payload = envelope["payload"]
        except (json.JSONDecodeError, TypeError, KeyError) as e:
            logger.error(f"Error parsing message from Redis for room {room}: {e}")
            return
        logger.debug(f"Relaying {payload.get('type', 'unknown')} to local members of room {room}")
        self.registry.broadcast(room, payload, exclude=envelope.get("exclude"))
