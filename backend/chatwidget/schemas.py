from pydantic import BaseModel, computed_field
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime


def format_file_size(size: Optional[int]) -> str:
    if not size:
        return ""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


class AttachmentOut(BaseModel):
    url: str
    name: str
    mime_type: str
    size: Optional[int] = None

    @computed_field
    @property
    def kind(self) -> str:
        # images render inline, everything else as a download link
        return "image" if self.mime_type.startswith("image/") else "file"

    @computed_field
    @property
    def size_label(self) -> str:
        return format_file_size(self.size)


class MessageOut(BaseModel):
    id: int
    room_id: int
    sender_type: str
    sender_name: Optional[str] = None
    content: Optional[str] = None
    message_type: str = "text"
    is_internal: bool = False
    client_id: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True

    @computed_field
    @property
    def attachment(self) -> Optional[AttachmentOut]:
        if not self.file_url:
            return None
        return AttachmentOut(
            url=self.file_url,
            name=self.file_name or "",
            mime_type=self.file_type or "application/octet-stream",
            size=self.file_size,
        )

    @property
    def sort_key(self):
        return (self.created_at, self.id)


class RoomOut(BaseModel):
    id: int
    visitor_id: int
    status: str
    resolution: Optional[str] = None
    started_by: str = "visitor"
    attendant_name: Optional[str] = None
    csat_score: Optional[int] = None
    csat_comment: Optional[str] = None
    version: int
    created_at: datetime
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoomSummary(RoomOut):
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None


class VisitorOut(BaseModel):
    id: int
    visitor_token: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    contact_id: Optional[str] = None
    company_contact_id: Optional[str] = None
    custom_data: Dict[str, Any] = {}

    class Config:
        from_attributes = True


class WidgetConfig(BaseModel):
    owner_user_id: Optional[str] = None
    company_name: Optional[str] = None
    form_intro_text: Optional[str] = None
    show_email_field: bool = True
    show_phone_field: bool = True
    allow_multiple_chats: bool = False
    allow_file_attachments: bool = True
    show_csat: bool = True
    show_chat_history: bool = True
    show_outside_hours_banner: bool = True
    outside_hours_title: Optional[str] = None
    outside_hours_message: Optional[str] = None
    show_all_busy_banner: bool = True
    all_busy_title: Optional[str] = None
    all_busy_message: Optional[str] = None
    waiting_message: Optional[str] = None

    class Config:
        from_attributes = True


class MessagePage(BaseModel):
    messages: List[MessageOut]
    has_more: bool


# Remote functions

class ResolveRequest(BaseModel):
    api_key: str
    external_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    user_id: Optional[str] = None
    custom_data: Optional[Dict[str, Any]] = None


class ResolveResponse(BaseModel):
    visitor_token: Optional[str] = None
    visitor_name: Optional[str] = None
    visitor_email: Optional[str] = None
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    company_contact_id: Optional[str] = None
    auto_start: bool = False
    has_history: bool = False
    needs_form: bool = False


class AssignmentProbe(BaseModel):
    assigned: bool = False
    attendant_name: Optional[str] = None
    all_busy: bool = False
    outside_hours: bool = False
    room_status: Optional[str] = None


# Live feed payloads

class RoomChange(BaseModel):
    event: Literal["INSERT", "UPDATE"]
    record: RoomOut


class MessageChange(BaseModel):
    event: Literal["INSERT"] = "INSERT"
    record: MessageOut


class TypingSignal(BaseModel):
    room_id: int
    sender_type: str
    sender_name: Optional[str] = None


# Operator API

class AssignIn(BaseModel):
    attendant_name: str
    attendant_id: Optional[str] = None


class CloseIn(BaseModel):
    resolution: Optional[Literal["pending", "resolved", "archived"]] = None


class ProactiveIn(BaseModel):
    attendant_name: str
    attendant_id: Optional[str] = None
    text: Optional[str] = None


class RoomDetailOut(BaseModel):
    room: RoomOut
    messages: List[MessageOut]
