"""
Data store access for the widget and the operator API.

Queries are plain SQLAlchemy sessions run in the thread pool; every write also
publishes the changed row on the live feed, which is what the widgets listening
on a room react to.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .errors import CsatError, StoreError
from .feed import LiveFeed, messages_channel, room_channel, visitor_rooms_channel
from .schemas import (
    AttachmentOut,
    MessageOut,
    MessagePage,
    RoomOut,
    RoomSummary,
    VisitorOut,
    WidgetConfig,
)

logger = structlog.get_logger(__name__)

VISITOR_FIELDS = ("name", "email", "phone", "contact_id", "company_contact_id", "owner_user_id")


# --- queries (sync, one session each) ---

def get_config(db: Session, api_key: str) -> WidgetConfig:
    row = db.query(models.WidgetSettings).filter(models.WidgetSettings.api_key == api_key).first()
    if row is None:
        return WidgetConfig()
    return WidgetConfig.model_validate(row)


def get_visitor_by_token(db: Session, token: str) -> Optional[VisitorOut]:
    visitor = db.query(models.Visitor).filter(models.Visitor.visitor_token == token).first()
    return VisitorOut.model_validate(visitor) if visitor else None


def upsert_visitor(db: Session, token: Optional[str], fields: Dict[str, Any],
                   custom_data: Optional[Dict[str, Any]] = None) -> VisitorOut:
    visitor = None
    if token:
        visitor = db.query(models.Visitor).filter(models.Visitor.visitor_token == token).first()
    if visitor is None:
        visitor = models.Visitor(custom_data={})
        if token:
            visitor.visitor_token = token
        db.add(visitor)
    for key in VISITOR_FIELDS:
        value = fields.get(key)
        if value:
            setattr(visitor, key, value)
    if custom_data:
        visitor.custom_data = {**(visitor.custom_data or {}), **custom_data}
    db.commit()
    db.refresh(visitor)
    return VisitorOut.model_validate(visitor)


def get_room(db: Session, room_id: int) -> Optional[RoomOut]:
    room = db.get(models.Room, room_id)
    return RoomOut.model_validate(room) if room else None


def find_open_room(db: Session, visitor_id: int) -> Optional[RoomOut]:
    room = (
        db.query(models.Room)
        .filter(models.Room.visitor_id == visitor_id, models.Room.status.in_(models.RoomStatus.OPEN))
        .order_by(models.Room.created_at.desc(), models.Room.id.desc())
        .first()
    )
    return RoomOut.model_validate(room) if room else None


def list_rooms(db: Session, visitor_id: int) -> List[RoomSummary]:
    rooms = (
        db.query(models.Room)
        .filter(models.Room.visitor_id == visitor_id)
        .order_by(models.Room.created_at.desc(), models.Room.id.desc())
        .all()
    )
    summaries = []
    for room in rooms:
        last = (
            db.query(models.Message)
            .filter(models.Message.room_id == room.id, models.Message.is_internal == False)  # noqa: E712
            .order_by(models.Message.created_at.desc(), models.Message.id.desc())
            .first()
        )
        summary = RoomSummary.model_validate(room)
        if last is not None:
            summary.last_message = last.content or last.file_name
            summary.last_message_at = last.created_at
        summaries.append(summary)
    return summaries


def fetch_messages(db: Session, room_id: int, limit: int,
                   before: Optional[datetime] = None, before_id: Optional[int] = None) -> MessagePage:
    query = db.query(models.Message).filter(
        models.Message.room_id == room_id,
        models.Message.is_internal == False,  # noqa: E712
    )
    if before is not None:
        if before_id is not None:
            query = query.filter(or_(
                models.Message.created_at < before,
                and_(models.Message.created_at == before, models.Message.id < before_id),
            ))
        else:
            query = query.filter(models.Message.created_at < before)
    # one extra row tells us whether an older page exists
    rows = (
        query.order_by(models.Message.created_at.desc(), models.Message.id.desc())
        .limit(limit + 1)
        .all()
    )
    has_more = len(rows) > limit
    rows = rows[:limit]
    rows.reverse()
    return MessagePage(messages=[MessageOut.model_validate(r) for r in rows], has_more=has_more)


def create_room(db: Session, visitor_id: int, owner_user_id: Optional[str] = None,
                status: str = models.RoomStatus.WAITING, attendant_name: Optional[str] = None,
                attendant_id: Optional[str] = None,
                started_by: str = models.SenderType.VISITOR) -> RoomOut:
    room = models.Room(
        visitor_id=visitor_id,
        owner_user_id=owner_user_id,
        status=status,
        started_by=started_by,
        attendant_name=attendant_name,
        attendant_id=attendant_id,
        assigned_at=models.utcnow() if status == models.RoomStatus.ACTIVE else None,
    )
    db.add(room)
    db.commit()
    db.refresh(room)
    return RoomOut.model_validate(room)


def update_room(db: Session, room_id: int, **fields) -> Optional[RoomOut]:
    room = db.get(models.Room, room_id)
    if room is None:
        return None
    for key, value in fields.items():
        setattr(room, key, value)
    room.version = (room.version or 0) + 1
    db.commit()
    db.refresh(room)
    return RoomOut.model_validate(room)


def set_csat(db: Session, room_id: int, score: Optional[int], comment: Optional[str]) -> RoomOut:
    updated = (
        db.query(models.Room)
        .filter(models.Room.id == room_id, models.Room.csat_score.is_(None))
        .update({
            models.Room.csat_score: score,
            models.Room.csat_comment: comment,
            models.Room.version: models.Room.version + 1,
        }, synchronize_session=False)
    )
    db.commit()
    if not updated:
        raise CsatError(f"Room {room_id} was already rated")
    return RoomOut.model_validate(db.get(models.Room, room_id))


def insert_message(db: Session, room_id: int, sender_type: str, content: Optional[str],
                   sender_name: Optional[str] = None, sender_id: Optional[str] = None,
                   client_id: Optional[str] = None, attachment: Optional[AttachmentOut] = None,
                   message_type: str = "text", is_internal: bool = False) -> MessageOut:
    message = models.Message(
        room_id=room_id,
        sender_type=sender_type,
        sender_id=sender_id,
        sender_name=sender_name,
        content=content,
        message_type="file" if attachment else message_type,
        is_internal=is_internal,
        client_id=client_id,
    )
    if attachment:
        message.file_url = attachment.url
        message.file_name = attachment.name
        message.file_type = attachment.mime_type
        message.file_size = attachment.size
    db.add(message)
    db.commit()
    db.refresh(message)
    return MessageOut.model_validate(message)


# --- async facade ---

class DataStore:
    """Async access to the store; the only write path, so every change reaches the feed."""

    def __init__(self, session_factory: sessionmaker, feed: LiveFeed):
        self._session_factory = session_factory
        self.feed = feed

    async def _run(self, fn, *args, **kwargs):
        def call():
            with self._session_factory() as db:
                return fn(db, *args, **kwargs)
        try:
            return await run_in_threadpool(call)
        except SQLAlchemyError as e:
            logger.exception("Data store call failed", call=fn.__name__)
            raise StoreError(str(e)) from e

    async def _publish_room(self, event: str, room: RoomOut) -> None:
        payload = {"event": event, "record": room.model_dump(mode="json")}
        if event == "UPDATE":
            await self.feed.publish(room_channel(room.id), payload)
        await self.feed.publish(visitor_rooms_channel(room.visitor_id), payload)

    async def get_config(self, api_key: str) -> WidgetConfig:
        return await self._run(get_config, api_key)

    async def get_visitor_by_token(self, token: str) -> Optional[VisitorOut]:
        return await self._run(get_visitor_by_token, token)

    async def upsert_visitor(self, token: Optional[str], fields: Dict[str, Any],
                             custom_data: Optional[Dict[str, Any]] = None) -> VisitorOut:
        return await self._run(upsert_visitor, token, fields, custom_data)

    async def get_room(self, room_id: int) -> Optional[RoomOut]:
        return await self._run(get_room, room_id)

    async def find_open_room(self, visitor_id: int) -> Optional[RoomOut]:
        return await self._run(find_open_room, visitor_id)

    async def list_rooms(self, visitor_id: int) -> List[RoomSummary]:
        return await self._run(list_rooms, visitor_id)

    async def fetch_messages(self, room_id: int, limit: int, before: Optional[datetime] = None,
                             before_id: Optional[int] = None) -> MessagePage:
        return await self._run(fetch_messages, room_id, limit, before, before_id)

    async def create_room(self, visitor_id: int, **kwargs) -> RoomOut:
        room = await self._run(create_room, visitor_id, **kwargs)
        await self._publish_room("INSERT", room)
        return room

    async def update_room(self, room_id: int, **fields) -> Optional[RoomOut]:
        room = await self._run(update_room, room_id, **fields)
        if room is not None:
            await self._publish_room("UPDATE", room)
        return room

    async def assign_room(self, room_id: int, attendant_name: str,
                          attendant_id: Optional[str] = None) -> Optional[RoomOut]:
        return await self.update_room(
            room_id,
            status=models.RoomStatus.ACTIVE,
            attendant_name=attendant_name,
            attendant_id=attendant_id,
            assigned_at=models.utcnow(),
        )

    async def close_room(self, room_id: int, resolution: Optional[str]) -> Optional[RoomOut]:
        return await self.update_room(
            room_id,
            status=models.RoomStatus.CLOSED,
            resolution=resolution,
            closed_at=models.utcnow(),
        )

    async def reopen_room(self, room_id: int) -> Optional[RoomOut]:
        return await self.update_room(
            room_id,
            status=models.RoomStatus.WAITING,
            resolution=None,
            attendant_id=None,
            attendant_name=None,
            assigned_at=None,
            closed_at=None,
        )

    async def set_csat(self, room_id: int, score: Optional[int], comment: Optional[str]) -> RoomOut:
        room = await self._run(set_csat, room_id, score, comment)
        await self._publish_room("UPDATE", room)
        return room

    async def insert_message(self, room_id: int, sender_type: str, content: Optional[str], **kwargs) -> MessageOut:
        message = await self._run(insert_message, room_id, sender_type, content, **kwargs)
        await self.feed.publish(
            messages_channel(room_id),
            {"event": "INSERT", "record": message.model_dump(mode="json")},
        )
        return message
