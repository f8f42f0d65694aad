import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from ..config import TYPING_THROTTLE, TYPING_TIMEOUT
from ..feed import LiveFeed, typing_channel
from ..models import SenderType
from ..schemas import TypingSignal

logger = structlog.get_logger(__name__)


class TypingChannel:
    """
    Fire-and-forget typing signal for one room.

    Outgoing signals are throttled per sender; an incoming signal is shown until
    `timeout` seconds pass without another one. Nothing here is persisted.
    """

    def __init__(
        self,
        feed: LiveFeed,
        room_id: int,
        sender_name: Optional[str],
        on_change: Callable[[Optional[str]], Awaitable[None]],
        sender_type: str = SenderType.VISITOR,
        throttle: float = TYPING_THROTTLE,
        timeout: float = TYPING_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.feed = feed
        self.room_id = room_id
        self.sender_name = sender_name
        self.sender_type = sender_type
        self.throttle = throttle
        self.timeout = timeout
        self._clock = clock
        self._on_change = on_change
        self._last_sent: Optional[float] = None
        self._expiry: Optional[asyncio.Task] = None
        self.typing_name: Optional[str] = None

    async def notify(self) -> bool:
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self.throttle:
            return False
        self._last_sent = now
        signal = TypingSignal(room_id=self.room_id, sender_type=self.sender_type, sender_name=self.sender_name)
        await self.feed.publish(typing_channel(self.room_id), signal.model_dump())
        return True

    async def receive(self, signal: TypingSignal) -> None:
        if signal.room_id != self.room_id or signal.sender_type == self.sender_type:
            return
        if self._expiry is not None:
            self._expiry.cancel()
        self._expiry = asyncio.create_task(self._expire_after(self.timeout))
        name = signal.sender_name or ""
        if name != self.typing_name:
            self.typing_name = name
            await self._on_change(name)

    async def clear(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        if self.typing_name is not None:
            self.typing_name = None
            await self._on_change(None)

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._expiry = None
        if self.typing_name is not None:
            self.typing_name = None
            await self._on_change(None)

    def close(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        self.typing_name = None
