"""
Conversation state machine of one embedded widget.

A `ChatWidget` lives as long as the frame's socket. Frame events come in through
`handle()`; confirmed changes come back from the live feed through the room and
visitor listeners. Only one room is authoritative at a time: entering a room
tears down the previous room's subscriptions first.
"""
import asyncio
from enum import Enum
from typing import List, Optional

import structlog

from ..config import MESSAGE_PAGE_SIZE, TYPING_THROTTLE, TYPING_TIMEOUT
from ..errors import ChatRejected, InvalidTransition, RemoteCallError, WidgetError
from ..models import Resolution, RoomStatus, SenderType
from ..schemas import MessageChange, RoomChange, RoomOut, RoomSummary, TypingSignal, VisitorOut, WidgetConfig
from . import bridge as events
from .bridge import HostBridge, clean_identity_props
from .csat import CsatCollector
from .identity import ExternalIdentity, SessionResolver, TokenStore
from .presence import TypingChannel
from .room import RoomSession, VisitorRoomsListener
from .sync import MessageSynchronizer

logger = structlog.get_logger(__name__)

REOPEN_MESSAGE = "Visitante retomou a conversa"


class Phase(str, Enum):
    FORM = "form"
    HISTORY = "history"
    WAITING = "waiting"
    CHAT = "chat"
    CSAT = "csat"
    CLOSED = "closed"
    VIEW_TRANSCRIPT = "view_transcript"


# phases where a proactive room may take over the widget
IDLE_PHASES = (Phase.FORM, Phase.HISTORY, Phase.CLOSED, Phase.VIEW_TRANSCRIPT)


class ChatWidget:
    def __init__(
        self,
        api_key: str,
        store,
        feed,
        remote,
        uploads,
        bridge: HostBridge,
        tokens: TokenStore,
        external: Optional[ExternalIdentity] = None,
        page_size: int = MESSAGE_PAGE_SIZE,
        typing_throttle: float = TYPING_THROTTLE,
        typing_timeout: float = TYPING_TIMEOUT,
    ):
        self.api_key = api_key
        self.store = store
        self.feed = feed
        self.remote = remote
        self.bridge = bridge
        self.external = external
        self.typing_throttle = typing_throttle
        self.typing_timeout = typing_timeout

        self.config = WidgetConfig()
        self.resolver = SessionResolver(store, remote, tokens, api_key)
        self.csat = CsatCollector(store)
        self.sync = MessageSynchronizer(store, uploads, page_size, on_change=self._publish_messages)

        self.phase = Phase.FORM
        self.visitor: Optional[VisitorOut] = None
        self.room: Optional[RoomOut] = None
        self.rooms: List[RoomSummary] = []
        self.banner: Optional[events.Banner] = None
        self.portal = bool(external and external.is_portal)

        self._room_session: Optional[RoomSession] = None
        self._typing: Optional[TypingChannel] = None
        self._visitor_listener: Optional[VisitorRoomsListener] = None
        self._room_lock = asyncio.Lock()
        self._log = logger.bind(api_key=api_key)

    # --- lifecycle ---

    async def start(self) -> None:
        try:
            self.config = await self.store.get_config(self.api_key)
        except WidgetError as e:
            self._log.warning("Widget config unavailable, using defaults", error=str(e))
        self.resolver.owner_user_id = self.config.owner_user_id

        session = await self.resolver.resolve_session(self.external)
        if session is None:
            self.phase = Phase.FORM
            await self._publish_state()
            return

        self.portal = self.portal or session.portal
        try:
            await self._set_visitor(session.visitor)
            if session.active_room is not None:
                self._log.info("Resuming open room", room_id=session.active_room.id)
                await self._enter_room(session.active_room)
            elif session.auto_start:
                await self._create_room()
                return
            elif session.has_history is False:
                self.phase = Phase.FORM
            else:
                await self._show_history_or_form()
        except WidgetError as e:
            self._log.warning("Session start failed, falling back to the form", error=str(e))
            await self._leave_room()
            self.phase = Phase.FORM
            await self.bridge.emit(events.Notice(level="error", message="Não foi possível carregar a conversa"))
        await self._publish_state()

    async def close(self) -> None:
        await self._leave_room()
        if self._visitor_listener is not None:
            await self._visitor_listener.aclose()
            self._visitor_listener = None

    async def _set_visitor(self, visitor: VisitorOut) -> None:
        previous = self.visitor
        self.visitor = visitor
        if previous is not None and previous.id == visitor.id and self._visitor_listener is not None:
            return
        if self._visitor_listener is not None:
            await self._visitor_listener.aclose()
        self._visitor_listener = VisitorRoomsListener(self.feed, visitor.id, self.on_visitor_room)
        await self._visitor_listener.start()
        self._log = logger.bind(api_key=self.api_key, visitor_id=visitor.id)

    async def _show_history_or_form(self) -> None:
        if self.visitor is not None and self.config.show_chat_history:
            await self._refresh_history()
            if self.rooms:
                self.phase = Phase.HISTORY
                return
        self.phase = Phase.FORM

    # --- rooms ---

    async def _enter_room(self, room: RoomOut) -> None:
        async with self._room_lock:
            await self._leave_room()
            self.room = room
            self.banner = None
            # set before any await so updates landing during the subscribe or
            # the first page transition from the right phase
            if room.status == RoomStatus.WAITING:
                self.phase = Phase.WAITING
            elif room.status == RoomStatus.ACTIVE:
                self.phase = Phase.CHAT
            else:
                self.phase = Phase.VIEW_TRANSCRIPT
            if room.status in RoomStatus.OPEN:
                session = RoomSession(
                    self.feed, room.id,
                    on_room=self.on_room_change,
                    on_message=self.on_message,
                    on_typing=self.on_typing,
                )
                # subscribe before the first page so nothing falls in between
                await session.start()
                self._room_session = session
                self._typing = TypingChannel(
                    self.feed, room.id, self.visitor.name if self.visitor else None,
                    on_change=self._publish_typing,
                    throttle=self.typing_throttle,
                    timeout=self.typing_timeout,
                )
            await self.sync.open(room.id)

    async def _leave_room(self) -> None:
        session, self._room_session = self._room_session, None
        if session is not None:
            await session.aclose()
        if self._typing is not None:
            self._typing.close()
            self._typing = None
        self.sync.close()
        self.room = None

    async def _create_room(self) -> None:
        room = await self.store.create_room(self.visitor.id, owner_user_id=self.config.owner_user_id)
        self._log.info("Room created", room_id=room.id)
        await self._enter_room(room)
        await self._publish_state()
        await self.bridge.emit(events.Ready())
        await self._probe(room.id)

    async def _probe(self, room_id: int) -> None:
        """Single assignment attempt; the feed reports any later assignment."""
        try:
            probe = await self.remote.probe_assignment(room_id)
        except RemoteCallError:
            return
        if self.room is None or self.room.id != room_id:
            return
        if probe.assigned:
            self._log.info("Assignment probe placed the room", room_id=room_id,
                           attendant=probe.attendant_name, room_status=probe.room_status)
            try:
                room = await self.store.get_room(room_id)
            except WidgetError:
                return
            if room is not None:
                await self._apply_room(room)
            return
        if probe.outside_hours and self.config.show_outside_hours_banner:
            self.banner = events.Banner(
                kind="outside_hours",
                title=self.config.outside_hours_title or "Estamos fora do horário de atendimento",
                message=self.config.outside_hours_message,
            )
        elif probe.all_busy and self.config.show_all_busy_banner:
            self.banner = events.Banner(
                kind="all_busy",
                title=self.config.all_busy_title or "Todos os atendentes estão ocupados",
                message=self.config.all_busy_message,
            )
        await self._publish_state()

    async def _apply_room(self, room: RoomOut) -> None:
        if self.room is None or room.id != self.room.id:
            return
        if room.version <= self.room.version:
            self._log.debug("Dropping stale room update", room_id=room.id, version=room.version)
            return
        self.room = room

        if room.status == RoomStatus.ACTIVE and self.phase == Phase.WAITING:
            self.phase = Phase.CHAT
            self.banner = None
            self._log.info("Room assigned", room_id=room.id, attendant=room.attendant_name)
            await self.bridge.emit(events.Connected())
        elif room.status == RoomStatus.CLOSED and self.phase in (Phase.WAITING, Phase.CHAT):
            await self._on_room_closed(room)
            return
        await self._publish_state()

    async def _on_room_closed(self, room: RoomOut) -> None:
        self._log.info("Room closed", room_id=room.id, resolution=room.resolution)
        self.banner = None
        if self._typing is not None:
            await self._typing.clear()
        if room.resolution == Resolution.RESOLVED and self.config.show_csat and room.csat_score is None:
            self.phase = Phase.CSAT
        elif self.portal:
            await self._go_history()
            return
        else:
            self.phase = Phase.CLOSED
        await self._publish_state()

    async def _go_history(self) -> None:
        await self._leave_room()
        self.phase = Phase.HISTORY
        await self._refresh_history()
        await self._publish_state()

    async def _refresh_history(self) -> None:
        if self.visitor is None:
            return
        self.rooms = await self.store.list_rooms(self.visitor.id)
        await self.bridge.emit(events.HistoryOut(rooms=self.rooms))

    # --- feed callbacks ---

    async def on_room_change(self, change: RoomChange) -> None:
        await self._apply_room(change.record)

    async def on_message(self, change: MessageChange) -> None:
        message = change.record
        if self.room is None or message.room_id != self.room.id:
            return
        added = await self.sync.on_message(message)
        if added and message.sender_type == SenderType.ATTENDANT:
            if self._typing is not None:
                await self._typing.clear()
            await self.bridge.on_inbound_message(message)

    async def on_typing(self, signal: TypingSignal) -> None:
        if self._typing is not None:
            await self._typing.receive(signal)

    async def on_visitor_room(self, change: RoomChange) -> None:
        room = change.record
        proactive = (
            change.event == "INSERT"
            and room.started_by == SenderType.ATTENDANT
            and room.status in RoomStatus.OPEN
        )
        if proactive and self.phase in IDLE_PHASES:
            self._log.info("Entering proactive room", room_id=room.id)
            await self._enter_room(room)
            await self._publish_state()
            if room.status == RoomStatus.ACTIVE:
                await self.bridge.emit(events.Connected())
        elif self.phase == Phase.HISTORY or proactive:
            await self._refresh_history()

    # --- frame actions ---

    async def submit_form(self, name: str, email: Optional[str] = None, phone: Optional[str] = None) -> None:
        if self.phase != Phase.FORM:
            raise InvalidTransition(f"Cannot submit the form in phase {self.phase.value}")
        name = (name or "").strip()
        if not name:
            raise ChatRejected("Informe seu nome para iniciar a conversa")
        visitor = await self.resolver.identify(
            name,
            email=(email or "").strip() or None,
            phone=(phone or "").strip() or None,
            external_id=self.external.external_id if self.external else None,
        )
        await self._set_visitor(visitor)
        if not self.config.allow_multiple_chats:
            open_room = await self.store.find_open_room(visitor.id)
            if open_room is not None:
                # the visitor was already known; resume instead of opening a second room
                self._log.info("Resuming open room after form", room_id=open_room.id)
                await self._enter_room(open_room)
                await self._publish_state()
                return
        await self._create_room()

    async def new_chat(self) -> None:
        if self.phase not in IDLE_PHASES:
            raise InvalidTransition(f"Cannot start a chat in phase {self.phase.value}")
        if self.visitor is None:
            self.phase = Phase.FORM
            await self._publish_state()
            return
        if not self.config.allow_multiple_chats:
            open_room = await self.store.find_open_room(self.visitor.id)
            if open_room is not None:
                raise ChatRejected("Você já possui uma conversa em andamento")
        await self._create_room()

    async def open_room(self, room_id: int) -> None:
        if self.phase not in IDLE_PHASES:
            raise InvalidTransition(f"Cannot open a room in phase {self.phase.value}")
        room = await self.store.get_room(room_id)
        if room is None or self.visitor is None or room.visitor_id != self.visitor.id:
            raise ChatRejected("Conversa não encontrada")
        await self._enter_room(room)
        await self._publish_state()

    async def back(self) -> None:
        if self.visitor is None:
            return
        await self._go_history()

    async def reopen(self) -> None:
        room = self.room
        if room is None or room.status != RoomStatus.CLOSED or room.resolution != Resolution.PENDING:
            raise ChatRejected("Esta conversa não pode ser retomada")
        reopened = await self.store.reopen_room(room.id)
        if reopened is None:
            raise ChatRejected("Conversa não encontrada")
        await self.store.insert_message(
            room.id,
            SenderType.SYSTEM,
            REOPEN_MESSAGE,
            sender_name=self.visitor.name if self.visitor else None,
            message_type="system",
        )
        self._log.info("Room reopened", room_id=room.id)
        await self._enter_room(reopened)
        await self._publish_state()
        await self._probe(room.id)

    async def submit_csat(self, score: int, comment: Optional[str] = None) -> None:
        if self.phase != Phase.CSAT or self.room is None:
            raise InvalidTransition("No rating is pending")
        room = await self.csat.submit(self.room.id, score, comment)
        if self.room is not None and room.version > self.room.version:
            self.room = room
        await self.bridge.emit(events.CsatSubmitted())
        await self._after_csat()

    async def skip_csat(self) -> None:
        if self.phase != Phase.CSAT or self.room is None:
            raise InvalidTransition("No rating is pending")
        await self.csat.skip(self.room.id)
        await self._after_csat()

    async def _after_csat(self) -> None:
        if self.portal:
            await self._go_history()
            return
        self.phase = Phase.CLOSED
        await self._publish_state()

    async def send_message(self, content: str, attachment: Optional[events.OutgoingAttachment] = None) -> None:
        if self.phase not in (Phase.WAITING, Phase.CHAT):
            raise ChatRejected("Nenhuma conversa em andamento")
        if attachment is not None and not self.config.allow_file_attachments:
            raise ChatRejected("O envio de arquivos está desativado")
        await self.sync.send(
            content,
            sender_name=self.visitor.name if self.visitor else None,
            sender_id=str(self.visitor.id) if self.visitor else None,
            attachment=attachment,
        )

    async def typing(self) -> None:
        if self._typing is not None and self.phase in (Phase.WAITING, Phase.CHAT):
            await self._typing.notify()

    async def set_open(self, is_open: bool) -> None:
        await self.bridge.set_open(is_open)

    async def identity_update(self, props) -> None:
        cleaned = clean_identity_props(props)
        if not cleaned:
            return
        visitor = await self.resolver.update_identity(
            cleaned, external_id=self.external.external_id if self.external else None,
        )
        if visitor is not None:
            await self._set_visitor(visitor)

    async def dismiss(self) -> None:
        self.bridge.is_open = False
        await self.bridge.emit(events.Dismiss())

    async def load_older(self) -> None:
        await self.sync.load_older()

    # --- dispatch ---

    async def handle(self, event) -> None:
        try:
            await self._dispatch(event)
        except ChatRejected as e:
            await self.bridge.emit(events.Notice(level="info", message=str(e)))
        except WidgetError as e:
            self._log.warning("Widget action failed", event=event.type, error=str(e))
            await self.bridge.emit(events.Notice(level="error", message=str(e)))

    async def _dispatch(self, event) -> None:
        if isinstance(event, events.IdentityUpdate):
            await self.identity_update(event.props)
        elif isinstance(event, events.ToggleIn):
            await self.set_open(event.is_open)
        elif isinstance(event, events.SubmitForm):
            await self.submit_form(event.name, event.email, event.phone)
        elif isinstance(event, events.SendMessage):
            await self.send_message(event.content, event.attachment)
        elif isinstance(event, events.TypingIn):
            await self.typing()
        elif isinstance(event, events.NewChat):
            await self.new_chat()
        elif isinstance(event, events.OpenRoom):
            await self.open_room(event.room_id)
        elif isinstance(event, events.Back):
            await self.back()
        elif isinstance(event, events.Reopen):
            await self.reopen()
        elif isinstance(event, events.SubmitCsat):
            await self.submit_csat(event.score, event.comment)
        elif isinstance(event, events.SkipCsat):
            await self.skip_csat()
        elif isinstance(event, events.LoadOlder):
            await self.load_older()
        elif isinstance(event, events.DismissIn):
            await self.dismiss()

    # --- rendering ---

    @property
    def header(self) -> str:
        if self.phase == Phase.CHAT and self.room is not None and self.room.attendant_name:
            return f"falando com {self.room.attendant_name}"
        if self.phase == Phase.WAITING:
            return self.config.waiting_message or "Aguardando atendimento..."
        return self.config.company_name or "Suporte"

    @property
    def can_reopen(self) -> bool:
        return (
            self.room is not None
            and self.room.status == RoomStatus.CLOSED
            and self.room.resolution == Resolution.PENDING
        )

    async def _publish_state(self) -> None:
        room = self.room
        await self.bridge.emit(events.StateOut(
            phase=self.phase.value,
            header=self.header,
            room_id=room.id if room else None,
            room_status=room.status if room else None,
            resolution=room.resolution if room else None,
            attendant_name=room.attendant_name if room else None,
            can_reopen=self.can_reopen,
            banner=self.banner,
            visitor_name=self.visitor.name if self.visitor else None,
            show_email_field=self.config.show_email_field,
            show_phone_field=self.config.show_phone_field,
            allow_file_attachments=self.config.allow_file_attachments,
            form_intro_text=self.config.form_intro_text,
        ))

    async def _publish_messages(self) -> None:
        await self.bridge.emit(events.MessagesOut(
            room_id=self.sync.room_id,
            messages=self.sync.render(),
            has_more=self.sync.has_more,
        ))

    async def _publish_typing(self, name: Optional[str]) -> None:
        await self.bridge.emit(events.TypingOut(name=name))
