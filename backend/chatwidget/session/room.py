"""
Live-feed listeners owned by a widget session.

A `FeedListener` subscribes to a fixed set of channels and hands every decoded
payload to a callback from a background task. The subscription is opened
before the caller does its initial fetch, so nothing published in between is
missed; the synchronizer dedups whatever arrives twice.
"""
import asyncio
import contextlib
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError

from ..feed import LiveFeed, Subscription, messages_channel, room_channel, typing_channel, visitor_rooms_channel
from ..schemas import MessageChange, RoomChange, TypingSignal

logger = structlog.get_logger(__name__)


class FeedListener:
    def __init__(self, feed: LiveFeed, channels, handler: Callable[[str, dict], Awaitable[None]]):
        self.feed = feed
        self.channels = tuple(channels)
        self._handler = handler
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def start(self) -> None:
        self._subscription = self.feed.subscribe(*self.channels)
        await self._subscription.__aenter__()
        self._task = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        async for channel, payload in self._subscription:
            if self._stopped:
                break
            try:
                await self._handler(channel, payload)
            except ValidationError:
                logger.warning("Dropping invalid feed event", channel=channel)
            except Exception:
                logger.exception("Feed handler failed", channel=channel)

    async def aclose(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()


class RoomSession(FeedListener):
    """Row changes, messages and typing signals of one room."""

    def __init__(self, feed: LiveFeed, room_id: int,
                 on_room: Callable[[RoomChange], Awaitable[None]],
                 on_message: Callable[[MessageChange], Awaitable[None]],
                 on_typing: Callable[[TypingSignal], Awaitable[None]]):
        super().__init__(
            feed,
            (room_channel(room_id), messages_channel(room_id), typing_channel(room_id)),
            self._dispatch,
        )
        self.room_id = room_id
        self._on_room = on_room
        self._on_message = on_message
        self._on_typing = on_typing

    async def _dispatch(self, channel: str, payload: dict) -> None:
        if channel == messages_channel(self.room_id):
            await self._on_message(MessageChange.model_validate(payload))
        elif channel == typing_channel(self.room_id):
            await self._on_typing(TypingSignal.model_validate(payload))
        elif channel == room_channel(self.room_id):
            await self._on_room(RoomChange.model_validate(payload))


class VisitorRoomsListener(FeedListener):
    """Room inserts/updates for one visitor; how proactive chats reach an idle widget."""

    def __init__(self, feed: LiveFeed, visitor_id: int, on_room: Callable[[RoomChange], Awaitable[None]]):
        super().__init__(feed, (visitor_rooms_channel(visitor_id),), self._dispatch)
        self.visitor_id = visitor_id
        self._on_room = on_room

    async def _dispatch(self, channel: str, payload: dict) -> None:
        await self._on_room(RoomChange.model_validate(payload))
