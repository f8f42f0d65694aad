"""
Message window of the active room.

The window is the server-ordered list of confirmed messages plus the visitor's
pending (optimistic) sends at the tail. A pending entry carries a correlation
id that is written with the message, so the live-feed echo (or the write
result, whichever lands first) replaces exactly that entry.
"""
import bisect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from ..config import MESSAGE_PAGE_SIZE
from ..errors import SendFailed, UploadError, WidgetError
from ..models import SenderType
from ..schemas import MessageOut, MessagePage
from .bridge import OutgoingAttachment

logger = structlog.get_logger(__name__)


@dataclass
class PendingMessage:
    correlation_id: str
    content: Optional[str]
    sender_name: Optional[str]
    attachment_name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def render(self) -> Dict[str, Any]:
        return {
            "id": None,
            "client_id": self.correlation_id,
            "pending": True,
            "sender_type": SenderType.VISITOR,
            "sender_name": self.sender_name,
            "content": self.content,
            "attachment": {"name": self.attachment_name} if self.attachment_name else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ConfirmedMessage:
    message: MessageOut

    def render(self) -> Dict[str, Any]:
        data = self.message.model_dump(mode="json", exclude={"file_url", "file_name", "file_type", "file_size"})
        data["pending"] = False
        return data


ClientMessage = Union[PendingMessage, ConfirmedMessage]


class MessageSynchronizer:
    def __init__(self, store, uploads, page_size: int = MESSAGE_PAGE_SIZE,
                 on_change: Optional[Callable[[], Awaitable[None]]] = None):
        self.store = store
        self.uploads = uploads
        self.page_size = page_size
        self._on_change = on_change
        self.room_id: Optional[int] = None
        self.has_more = False
        self._confirmed: List[MessageOut] = []
        self._ids = set()
        self._pending: List[PendingMessage] = []

    @property
    def window(self) -> List[ClientMessage]:
        return [ConfirmedMessage(m) for m in self._confirmed] + list(self._pending)

    @property
    def messages(self) -> List[MessageOut]:
        return list(self._confirmed)

    @property
    def pending(self) -> List[PendingMessage]:
        return list(self._pending)

    def render(self) -> List[Dict[str, Any]]:
        return [entry.render() for entry in self.window]

    async def _changed(self) -> None:
        if self._on_change is not None:
            await self._on_change()

    def _reset(self, room_id: Optional[int]) -> None:
        self.room_id = room_id
        self.has_more = False
        self._confirmed = []
        self._ids = set()
        self._pending = []

    async def load_page(self, room_id: int, before: Optional[datetime] = None,
                        before_id: Optional[int] = None) -> MessagePage:
        return await self.store.fetch_messages(room_id, self.page_size, before=before, before_id=before_id)

    async def open(self, room_id: int) -> None:
        self._reset(room_id)
        page = await self.load_page(room_id)
        if self.room_id != room_id:
            # switched rooms while the page was in flight
            return
        self.has_more = page.has_more
        for message in page.messages:
            self.apply(message)
        await self._changed()

    async def load_older(self) -> int:
        room_id = self.room_id
        if room_id is None or not self.has_more or not self._confirmed:
            return 0
        oldest = self._confirmed[0]
        page = await self.load_page(room_id, before=oldest.created_at, before_id=oldest.id)
        if self.room_id != room_id:
            return 0
        self.has_more = page.has_more
        added = sum(1 for message in page.messages if self.apply(message))
        await self._changed()
        return added

    def close(self) -> None:
        self._reset(None)

    def apply(self, message: MessageOut) -> bool:
        """Merge a server-confirmed message; returns True when it was not in the window yet."""
        if message.room_id != self.room_id or message.is_internal:
            return False
        if message.client_id:
            self._pending = [p for p in self._pending if p.correlation_id != message.client_id]
        if message.id in self._ids:
            return False
        keys = [m.sort_key for m in self._confirmed]
        self._confirmed.insert(bisect.bisect_right(keys, message.sort_key), message)
        self._ids.add(message.id)
        return True

    async def on_message(self, message: MessageOut) -> bool:
        added = self.apply(message)
        if added or message.client_id:
            await self._changed()
        return added

    def _drop_pending(self, correlation_id: str) -> None:
        self._pending = [p for p in self._pending if p.correlation_id != correlation_id]

    async def send(self, content: Optional[str], sender_name: Optional[str], sender_id: Optional[str] = None,
                   attachment: Optional[OutgoingAttachment] = None) -> MessageOut:
        room_id = self.room_id
        if room_id is None:
            raise SendFailed("Nenhuma conversa ativa")
        text = (content or "").strip()
        if not text and attachment is None:
            raise SendFailed("Mensagem vazia")
        if attachment is not None:
            # oversized files never reach the window
            self.uploads.check_size(len(attachment.data))

        pending = PendingMessage(
            correlation_id=uuid.uuid4().hex,
            content=text or None,
            sender_name=sender_name,
            attachment_name=attachment.name if attachment else None,
        )
        self._pending.append(pending)
        await self._changed()

        try:
            uploaded = None
            if attachment is not None:
                uploaded = await self.uploads.upload(attachment.name, attachment.mime_type, attachment.data)
            message = await self.store.insert_message(
                room_id,
                SenderType.VISITOR,
                text or None,
                sender_name=sender_name,
                sender_id=sender_id,
                client_id=pending.correlation_id,
                attachment=uploaded,
            )
        except UploadError:
            logger.info("Attachment upload failed, send aborted", room_id=room_id)
            self._drop_pending(pending.correlation_id)
            await self._changed()
            raise
        except WidgetError as e:
            logger.warning("Message write failed", room_id=room_id, error=str(e))
            self._drop_pending(pending.correlation_id)
            await self._changed()
            raise SendFailed(str(e)) from e

        if self.room_id == room_id:
            await self.on_message(message)
        return message
