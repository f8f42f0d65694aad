"""
Live feed: row-level change events and typing broadcasts over Redis pub/sub.

Every write that goes through the data store publishes the changed row on the
channels below, so a widget only needs the room (and visitor) it is looking at.
"""
import asyncio
import json
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


def room_channel(room_id: int) -> str:
    return f"chat:room:{room_id}"


def messages_channel(room_id: int) -> str:
    return f"chat:room:{room_id}:messages"


def typing_channel(room_id: int) -> str:
    return f"chat:room:{room_id}:typing"


def visitor_rooms_channel(visitor_id: int) -> str:
    return f"chat:visitor:{visitor_id}:rooms"


class Subscription:
    """
    One pub/sub connection listening on a fixed set of channels.

    Use as an async context manager; leaving the block unsubscribes and closes
    the connection, so nothing keeps delivering after a room switch.
    """

    def __init__(self, client: redis.Redis, channels: Tuple[str, ...], poll_timeout: float = 1.0):
        self._client = client
        self.channels = channels
        self._poll_timeout = poll_timeout
        self._pubsub = None

    async def __aenter__(self) -> "Subscription":
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(*self.channels)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.unsubscribe()
        finally:
            await pubsub.aclose()

    async def get(self) -> Optional[Tuple[str, dict]]:
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
        if message is None or message["type"] != "message":
            return None
        channel = message["channel"]
        if isinstance(channel, bytes):
            channel = channel.decode()
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping malformed feed payload", channel=channel)
            return None
        return channel, payload

    async def __aiter__(self) -> AsyncIterator[Tuple[str, dict]]:
        while self._pubsub is not None:
            item = await self.get()
            if item is None:
                # yield control so a cancel from a room switch lands promptly
                await asyncio.sleep(0)
                continue
            yield item


class LiveFeed:
    def __init__(self, client: redis.Redis, poll_timeout: float = 1.0):
        self.client = client
        self.poll_timeout = poll_timeout

    async def publish(self, channel: str, payload: dict) -> None:
        try:
            await self.client.publish(channel, json.dumps(payload, default=str))
        except redis.RedisError:
            # the row is already written; listeners catch up on their next load
            logger.warning("Feed publish failed", channel=channel, exc_info=True)

    def subscribe(self, *channels: str) -> Subscription:
        return Subscription(self.client, channels, poll_timeout=self.poll_timeout)
