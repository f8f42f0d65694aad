"""
Cross-context bridge: the typed event contract between the hosting page, the
embed frame and the widget engine.

Inbound events arrive as JSON from the frame (some of them relayed from the
host page) and are parsed into one of the `InboundEvent` models. Outbound
events marked `target="host"` are posted by the frame to the hosting page;
the rest drive the frame's rendering.
"""
import re
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

import structlog
from pydantic import Base64Bytes, BaseModel, ConfigDict, Field, TypeAdapter

from ..models import SenderType
from ..schemas import MessageOut, RoomSummary

logger = structlog.get_logger(__name__)

PROP_KEY = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")
MAX_PROP_LENGTH = 500
MAX_CUSTOM_PROPS = 50


# --- inbound ---

class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IdentityUpdate(_Inbound):
    type: Literal["identity-update"]
    props: Dict[str, Any] = {}


class ToggleIn(_Inbound):
    type: Literal["toggle"]
    is_open: bool = Field(alias="isOpen")


class SubmitForm(_Inbound):
    type: Literal["submit-form"]
    name: str = Field(max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=40)


class OutgoingAttachment(BaseModel):
    name: str = Field(max_length=255)
    mime_type: str = Field(default="application/octet-stream", max_length=255)
    data: Base64Bytes


class SendMessage(_Inbound):
    type: Literal["send-message"]
    content: str = Field(default="", max_length=10000)
    attachment: Optional[OutgoingAttachment] = None


class TypingIn(_Inbound):
    type: Literal["typing"]


class NewChat(_Inbound):
    type: Literal["new-chat"]


class OpenRoom(_Inbound):
    type: Literal["open-room"]
    room_id: int


class Back(_Inbound):
    type: Literal["back"]


class Reopen(_Inbound):
    type: Literal["reopen"]


class SubmitCsat(_Inbound):
    type: Literal["submit-csat"]
    score: int
    comment: Optional[str] = None


class SkipCsat(_Inbound):
    type: Literal["skip-csat"]


class LoadOlder(_Inbound):
    type: Literal["load-older"]


class DismissIn(_Inbound):
    type: Literal["dismiss"]


InboundEvent = Annotated[
    Union[
        IdentityUpdate, ToggleIn, SubmitForm, SendMessage, TypingIn, NewChat, OpenRoom,
        Back, Reopen, SubmitCsat, SkipCsat, LoadOlder, DismissIn,
    ],
    Field(discriminator="type"),
]

inbound_adapter = TypeAdapter(InboundEvent)


def parse_inbound(data: Any) -> InboundEvent:
    """Raises pydantic.ValidationError for anything that is not a known event."""
    return inbound_adapter.validate_python(data)


def clean_identity_props(props: Dict[str, Any]) -> Dict[str, Any]:
    """
    Host-supplied identity props are untrusted: keep scalar values under sane
    keys, truncate long strings, cap the number of keys.
    """
    cleaned: Dict[str, Any] = {}
    for key, value in props.items():
        if len(cleaned) >= MAX_CUSTOM_PROPS:
            logger.warning("Identity update has too many props, truncating", limit=MAX_CUSTOM_PROPS)
            break
        if not isinstance(key, str) or not PROP_KEY.match(key):
            logger.info("Dropping identity prop with invalid key", key=str(key)[:64])
            continue
        if value is None or isinstance(value, bool):
            cleaned[key] = value
        elif isinstance(value, (int, float)):
            cleaned[key] = value
        elif isinstance(value, str):
            cleaned[key] = value.strip()[:MAX_PROP_LENGTH]
        else:
            logger.info("Dropping non-scalar identity prop", key=key)
    return cleaned


# --- outbound ---

class HostEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target: Literal["host"] = "host"


class ToggleOut(HostEvent):
    type: Literal["toggle"] = "toggle"
    is_open: bool = Field(serialization_alias="isOpen")


class Ready(HostEvent):
    type: Literal["ready"] = "ready"


class Connected(HostEvent):
    type: Literal["connected"] = "connected"


class CsatSubmitted(HostEvent):
    type: Literal["csat-submitted"] = "csat-submitted"


class UnreadCount(HostEvent):
    type: Literal["unread-count"] = "unread-count"
    count: int


class Dismiss(HostEvent):
    type: Literal["dismiss"] = "dismiss"


class FrameEvent(BaseModel):
    target: Literal["frame"] = "frame"


class Banner(BaseModel):
    kind: Literal["outside_hours", "all_busy"]
    title: str
    message: Optional[str] = None


class StateOut(FrameEvent):
    type: Literal["state"] = "state"
    phase: str
    header: str
    room_id: Optional[int] = None
    room_status: Optional[str] = None
    resolution: Optional[str] = None
    attendant_name: Optional[str] = None
    can_reopen: bool = False
    banner: Optional[Banner] = None
    visitor_name: Optional[str] = None
    show_email_field: bool = True
    show_phone_field: bool = True
    allow_file_attachments: bool = True
    form_intro_text: Optional[str] = None


class MessagesOut(FrameEvent):
    type: Literal["messages"] = "messages"
    room_id: Optional[int] = None
    messages: List[Dict[str, Any]]
    has_more: bool = False


class TypingOut(FrameEvent):
    type: Literal["typing"] = "typing"
    name: Optional[str] = None


class HistoryOut(FrameEvent):
    type: Literal["history"] = "history"
    rooms: List[RoomSummary]


class Notice(FrameEvent):
    type: Literal["notice"] = "notice"
    level: Literal["info", "error"] = "info"
    message: str


class StoreToken(FrameEvent):
    type: Literal["store-token"] = "store-token"
    token: str


class NotFound(FrameEvent):
    type: Literal["not-found"] = "not-found"


OutboundEvent = Union[HostEvent, FrameEvent]


class HostBridge:
    """Outbound side of the bridge; also keeps the collapsed/expanded state and the unread counter."""

    def __init__(self, send: Callable[[OutboundEvent], Awaitable[None]], is_open: bool = False):
        self._send = send
        self.is_open = is_open
        self.unread = 0

    async def emit(self, event: OutboundEvent) -> None:
        await self._send(event)

    async def set_open(self, is_open: bool) -> None:
        self.is_open = is_open
        await self.emit(ToggleOut(is_open=is_open))
        if is_open:
            await self.reset_unread()

    async def reset_unread(self) -> None:
        self.unread = 0
        await self.emit(UnreadCount(count=0))

    async def on_inbound_message(self, message: MessageOut) -> None:
        if self.is_open or message.sender_type != SenderType.ATTENDANT:
            return
        self.unread += 1
        await self.emit(UnreadCount(count=self.unread))
