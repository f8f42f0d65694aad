# backend/chatwidget/models.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from .database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_token():
    return str(uuid.uuid4())


class RoomStatus:
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"

    OPEN = (WAITING, ACTIVE)


class Resolution:
    PENDING = "pending"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class SenderType:
    VISITOR = "visitor"
    ATTENDANT = "attendant"
    SYSTEM = "system"


class Visitor(Base):
    __tablename__ = "chat_visitors"
    id = Column(Integer, primary_key=True, index=True)
    visitor_token = Column(String, unique=True, index=True, default=new_token)
    owner_user_id = Column(String, nullable=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    contact_id = Column(String, nullable=True)
    company_contact_id = Column(String, nullable=True)
    custom_data = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Room(Base):
    __tablename__ = "chat_rooms"
    id = Column(Integer, primary_key=True, index=True)
    visitor_id = Column(Integer, ForeignKey("chat_visitors.id"), index=True)
    owner_user_id = Column(String, nullable=True)
    status = Column(String, default=RoomStatus.WAITING, index=True)
    resolution = Column(String, nullable=True)
    started_by = Column(String, default=SenderType.VISITOR)
    attendant_id = Column(String, nullable=True)
    attendant_name = Column(String, nullable=True)
    csat_score = Column(Integer, nullable=True)
    csat_comment = Column(Text, nullable=True)
    # bumped on every write so feed consumers can drop stale updates
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Message(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("chat_rooms.id"), index=True)
    sender_type = Column(String)
    sender_id = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    message_type = Column(String, default="text")
    is_internal = Column(Boolean, default=False)
    client_id = Column(String, nullable=True, index=True)
    file_url = Column(String, nullable=True)
    file_name = Column(String, nullable=True)
    file_type = Column(String, nullable=True)
    file_size = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class WidgetSettings(Base):
    __tablename__ = "chat_widget_settings"
    id = Column(Integer, primary_key=True, index=True)
    api_key = Column(String, unique=True, index=True)
    owner_user_id = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    form_intro_text = Column(Text, nullable=True)
    show_email_field = Column(Boolean, default=True)
    show_phone_field = Column(Boolean, default=True)
    allow_multiple_chats = Column(Boolean, default=False)
    allow_file_attachments = Column(Boolean, default=True)
    show_csat = Column(Boolean, default=True)
    show_chat_history = Column(Boolean, default=True)
    show_outside_hours_banner = Column(Boolean, default=True)
    outside_hours_title = Column(String, nullable=True)
    outside_hours_message = Column(Text, nullable=True)
    show_all_busy_banner = Column(Boolean, default=True)
    all_busy_title = Column(String, nullable=True)
    all_busy_message = Column(Text, nullable=True)
    waiting_message = Column(Text, nullable=True)
