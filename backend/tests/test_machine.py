import pytest

from chatwidget.errors import StoreError
from chatwidget.models import Resolution, RoomStatus, SenderType
from chatwidget.schemas import RoomChange
from chatwidget.session.bridge import parse_inbound
from chatwidget.session.identity import ExternalIdentity
from chatwidget.session.machine import Phase

from conftest import API_KEY, wait_for


async def _submit_form(widget, name="Ana"):
    await widget.handle(parse_inbound({"type": "submit-form", "name": name, "email": "ana@example.com"}))


async def _visitor_with_room(store, status=RoomStatus.WAITING, **room_fields):
    visitor = await store.upsert_visitor(None, {"name": "Ana"})
    room = await store.create_room(visitor.id, status=status, **room_fields)
    return visitor, room


async def _system_messages(store, room_id):
    page = await store.fetch_messages(room_id, 50)
    return [m for m in page.messages if m.sender_type == SenderType.SYSTEM]


class TestStartConversation:
    @pytest.mark.asyncio
    async def test_anonymous_visitor_starts_in_form(self, make_widget):
        widget, frame = make_widget()

        await widget.start()

        assert widget.phase == Phase.FORM
        assert frame.state.phase == "form"
        assert frame.tokens == []

    @pytest.mark.asyncio
    async def test_ana_is_connected_to_bruno(self, make_widget, store, remote_stub):
        widget, frame = make_widget()
        await widget.start()

        await _submit_form(widget)

        assert widget.phase == Phase.WAITING
        assert frame.state.header == "Aguardando atendimento..."
        assert len(frame.tokens) == 1
        assert len(frame.of_type("ready")) == 1
        assert remote_stub.count("assign") == 1
        room_id = widget.room.id

        await store.assign_room(room_id, "Bruno")
        await wait_for(lambda: widget.phase == Phase.CHAT)

        assert frame.state.header == "falando com Bruno"
        assert len(frame.of_type("connected")) == 1

        await store.insert_message(room_id, SenderType.ATTENDANT, "Olá Ana, como posso ajudar?", sender_name="Bruno")
        await wait_for(lambda: len(widget.sync.messages) == 1)

        assert frame.last("messages").messages[-1]["content"] == "Olá Ana, como posso ajudar?"

    @pytest.mark.asyncio
    async def test_empty_name_is_rejected(self, make_widget, store):
        widget, frame = make_widget()
        await widget.start()

        await _submit_form(widget, name="   ")

        assert widget.phase == Phase.FORM
        assert frame.last("notice").level == "info"
        assert widget.visitor is None

    @pytest.mark.asyncio
    async def test_sending_before_a_room_exists_is_a_notice(self, make_widget):
        widget, frame = make_widget()
        await widget.start()

        await widget.handle(parse_inbound({"type": "send-message", "content": "oi"}))

        assert frame.last("notice") is not None
        assert widget.phase == Phase.FORM


class TestResume:
    @pytest.mark.asyncio
    async def test_open_room_is_resumed_without_new_token(self, make_widget, store):
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        await store.insert_message(room.id, SenderType.VISITOR, "oi", sender_name="Ana")
        widget, frame = make_widget(visitor_token=visitor.visitor_token)

        await widget.start()

        assert widget.phase == Phase.CHAT
        assert widget.room.id == room.id
        assert frame.state.header == "falando com Bruno"
        assert [m.content for m in widget.sync.messages] == ["oi"]
        assert frame.tokens == []

    @pytest.mark.asyncio
    async def test_returning_visitor_without_open_room_sees_history(self, make_widget, store):
        visitor, room = await _visitor_with_room(store)
        await store.close_room(room.id, Resolution.RESOLVED)
        widget, frame = make_widget(visitor_token=visitor.visitor_token)

        await widget.start()

        assert widget.phase == Phase.HISTORY
        assert [r.id for r in frame.last("history").rooms] == [room.id]

    @pytest.mark.asyncio
    async def test_resolver_without_history_goes_straight_to_form(self, make_widget, store, remote_stub, monkeypatch):
        visitor, room = await _visitor_with_room(store)
        await store.close_room(room.id, Resolution.RESOLVED)
        remote_stub.resolve = {"visitor_token": visitor.visitor_token, "has_history": False}
        listed = []
        original = store.list_rooms

        async def counting_list_rooms(*args, **kwargs):
            listed.append(args)
            return await original(*args, **kwargs)

        monkeypatch.setattr(store, "list_rooms", counting_list_rooms)
        widget, frame = make_widget(external=ExternalIdentity(api_key=API_KEY, external_id="crm-1"))

        await widget.start()

        assert widget.phase == Phase.FORM
        assert listed == []

    @pytest.mark.asyncio
    async def test_resolver_with_history_shows_history(self, make_widget, store, remote_stub):
        visitor, room = await _visitor_with_room(store)
        await store.close_room(room.id, Resolution.RESOLVED)
        remote_stub.resolve = {"visitor_token": visitor.visitor_token, "has_history": True}
        widget, frame = make_widget(external=ExternalIdentity(api_key=API_KEY, external_id="crm-1"))

        await widget.start()

        assert widget.phase == Phase.HISTORY
        assert [r.id for r in frame.last("history").rooms] == [room.id]


class TestMultipleChats:
    @pytest.mark.asyncio
    async def test_new_chat_is_rejected_while_a_room_is_open(self, make_widget, store):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        await widget.handle(parse_inbound({"type": "back"}))
        assert widget.phase == Phase.HISTORY

        await widget.handle(parse_inbound({"type": "new-chat"}))

        assert widget.phase == Phase.HISTORY
        assert frame.last("notice").level == "info"
        assert len(await store.list_rooms(widget.visitor.id)) == 1

    @pytest.mark.asyncio
    async def test_new_chat_allowed_when_multi_chat_is_enabled(self, make_widget, store, settings):
        settings(allow_multiple_chats=True)
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        first = widget.room.id
        await widget.handle(parse_inbound({"type": "back"}))

        await widget.handle(parse_inbound({"type": "new-chat"}))

        assert widget.phase == Phase.WAITING
        assert widget.room.id != first
        assert len(await store.list_rooms(widget.visitor.id)) == 2


class TestClosing:
    @pytest.mark.asyncio
    async def test_resolved_room_asks_for_csat(self, make_widget, store):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        room_id = widget.room.id

        await store.close_room(room_id, Resolution.RESOLVED)
        await wait_for(lambda: widget.phase == Phase.CSAT)

        await widget.handle(parse_inbound({"type": "submit-csat", "score": 5, "comment": "Valeu"}))

        assert widget.phase == Phase.CLOSED
        assert len(frame.of_type("csat-submitted")) == 1
        assert (await store.get_room(room_id)).csat_score == 5

    @pytest.mark.asyncio
    async def test_skipping_csat_writes_nothing(self, make_widget, store):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        room_id = widget.room.id
        await store.close_room(room_id, Resolution.RESOLVED)
        await wait_for(lambda: widget.phase == Phase.CSAT)

        await widget.handle(parse_inbound({"type": "skip-csat"}))

        assert widget.phase == Phase.CLOSED
        assert frame.of_type("csat-submitted") == []
        assert (await store.get_room(room_id)).csat_score is None

    @pytest.mark.asyncio
    async def test_csat_disabled_goes_straight_to_closed(self, make_widget, store, settings):
        settings(show_csat=False)
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)

        await store.close_room(widget.room.id, Resolution.RESOLVED)
        await wait_for(lambda: widget.phase == Phase.CLOSED)

    @pytest.mark.asyncio
    async def test_portal_visitor_returns_to_history(self, make_widget, store):
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        widget, frame = make_widget(external=ExternalIdentity(api_key=API_KEY, visitor_token=visitor.visitor_token))
        await widget.start()
        assert widget.phase == Phase.CHAT
        assert frame.tokens == [visitor.visitor_token]

        await store.close_room(room.id, Resolution.PENDING)
        await wait_for(lambda: widget.phase == Phase.HISTORY)

        assert widget.room is None
        assert frame.last("history").rooms[0].status == RoomStatus.CLOSED


class TestReopen:
    @pytest.mark.asyncio
    async def test_pending_room_can_be_reopened_once(self, make_widget, store, remote_stub):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        room_id = widget.room.id
        await store.assign_room(room_id, "Bruno")
        await wait_for(lambda: widget.phase == Phase.CHAT)

        await store.close_room(room_id, Resolution.PENDING)
        await wait_for(lambda: widget.phase == Phase.CLOSED)
        assert frame.state.can_reopen is True

        await widget.handle(parse_inbound({"type": "reopen"}))

        assert widget.phase == Phase.WAITING
        assert widget.room.status == RoomStatus.WAITING
        assert widget.room.attendant_name is None
        assert remote_stub.count("assign") == 2
        assert len(await _system_messages(store, room_id)) == 1
        assert any(m.sender_type == SenderType.SYSTEM for m in widget.sync.messages)

        await widget.handle(parse_inbound({"type": "reopen"}))

        assert len(await _system_messages(store, room_id)) == 1
        assert remote_stub.count("assign") == 2
        assert frame.last("notice").level == "info"

    @pytest.mark.asyncio
    async def test_resolved_room_cannot_be_reopened(self, make_widget, store, settings):
        settings(show_csat=False)
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        room_id = widget.room.id
        await store.close_room(room_id, Resolution.RESOLVED)
        await wait_for(lambda: widget.phase == Phase.CLOSED)
        assert frame.state.can_reopen is False

        await widget.handle(parse_inbound({"type": "reopen"}))

        assert widget.phase == Phase.CLOSED
        assert await _system_messages(store, room_id) == []


class TestRoomUpdates:
    @pytest.mark.asyncio
    async def test_stale_room_update_is_ignored(self, make_widget, store):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        current = widget.room
        stale = current.model_copy(update={"status": RoomStatus.ACTIVE, "attendant_name": "Bruno"})

        await widget.on_room_change(RoomChange(event="UPDATE", record=stale))

        assert widget.phase == Phase.WAITING
        assert widget.room.attendant_name is None

    @pytest.mark.asyncio
    async def test_updates_for_other_rooms_are_ignored(self, make_widget, store):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        _, other = await _visitor_with_room(store)
        newer = other.model_copy(update={"status": RoomStatus.ACTIVE, "version": 99})

        await widget.on_room_change(RoomChange(event="UPDATE", record=newer))

        assert widget.phase == Phase.WAITING

    @pytest.mark.asyncio
    async def test_outside_hours_banner(self, make_widget, remote_stub, settings):
        settings(outside_hours_title="Voltamos amanhã")
        remote_stub.assign = {"assigned": False, "outside_hours": True}
        widget, frame = make_widget()
        await widget.start()

        await _submit_form(widget)

        assert widget.phase == Phase.WAITING
        assert frame.state.banner.kind == "outside_hours"
        assert frame.state.banner.title == "Voltamos amanhã"

    @pytest.mark.asyncio
    async def test_probe_failure_is_ignored(self, make_widget, remote_stub):
        remote_stub.assign = None
        widget, frame = make_widget()
        await widget.start()

        await _submit_form(widget)

        assert widget.phase == Phase.WAITING
        assert frame.state.banner is None
        assert frame.of_type("notice") == []


class TestProactive:
    @pytest.mark.asyncio
    async def test_idle_widget_enters_proactive_room(self, make_widget, store):
        visitor, room = await _visitor_with_room(store)
        await store.close_room(room.id, Resolution.RESOLVED)
        widget, frame = make_widget(visitor_token=visitor.visitor_token)
        await widget.start()
        assert widget.phase == Phase.HISTORY

        proactive = await store.create_room(
            visitor.id,
            status=RoomStatus.ACTIVE,
            attendant_name="Bruno",
            started_by=SenderType.ATTENDANT,
        )
        await wait_for(lambda: widget.phase == Phase.CHAT)

        assert widget.room.id == proactive.id
        assert frame.state.header == "falando com Bruno"

    @pytest.mark.asyncio
    async def test_busy_widget_only_refreshes_history(self, make_widget, store):
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        widget, frame = make_widget(visitor_token=visitor.visitor_token)
        await widget.start()
        history_before = len(frame.of_type("history"))

        await store.create_room(
            visitor.id,
            status=RoomStatus.ACTIVE,
            attendant_name="Carla",
            started_by=SenderType.ATTENDANT,
        )
        await wait_for(lambda: len(frame.of_type("history")) > history_before)

        assert widget.phase == Phase.CHAT
        assert widget.room.id == room.id


class TestMessagesAndPresence:
    @pytest.mark.asyncio
    async def test_unread_counter_while_collapsed(self, make_widget, store):
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        widget, frame = make_widget(visitor_token=visitor.visitor_token, is_open=False)
        await widget.start()

        await store.insert_message(room.id, SenderType.ATTENDANT, "Oi?", sender_name="Bruno")
        await wait_for(lambda: widget.bridge.unread == 1)

        await widget.handle(parse_inbound({"type": "toggle", "isOpen": True}))

        assert widget.bridge.unread == 0
        assert frame.last("unread-count").count == 0

    @pytest.mark.asyncio
    async def test_visitor_message_is_confirmed_once(self, make_widget, store):
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        widget, frame = make_widget(visitor_token=visitor.visitor_token)
        await widget.start()

        await widget.handle(parse_inbound({"type": "send-message", "content": "Preciso de ajuda"}))

        assert [m.content for m in widget.sync.messages] == ["Preciso de ajuda"]
        assert widget.sync.pending == []
        assert frame.of_type("notice") == []

    @pytest.mark.asyncio
    async def test_attachments_can_be_disabled(self, make_widget, store, settings):
        settings(allow_file_attachments=False)
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        widget, frame = make_widget(visitor_token=visitor.visitor_token)
        await widget.start()

        await widget.handle(parse_inbound({
            "type": "send-message",
            "content": "",
            "attachment": {"name": "a.txt", "mime_type": "text/plain", "data": "aGVsbG8="},
        }))

        assert frame.last("notice").level == "info"
        assert widget.sync.window == []

    @pytest.mark.asyncio
    async def test_attendant_typing_is_shown(self, make_widget, store, feed):
        visitor, room = await _visitor_with_room(store, status=RoomStatus.ACTIVE, attendant_name="Bruno")
        widget, frame = make_widget(visitor_token=visitor.visitor_token)
        await widget.start()

        await feed.publish(
            f"chat:room:{room.id}:typing",
            {"room_id": room.id, "sender_type": SenderType.ATTENDANT, "sender_name": "Bruno"},
        )
        await wait_for(lambda: frame.last("typing") is not None and frame.last("typing").name == "Bruno")
        await wait_for(lambda: frame.last("typing").name is None)


class TestIdentityAndRecovery:
    @pytest.mark.asyncio
    async def test_identity_update_goes_back_to_resolver(self, make_widget, remote_stub):
        widget, frame = make_widget()
        await widget.start()
        await _submit_form(widget)
        before = remote_stub.count("resolve")

        await widget.handle(parse_inbound({"type": "identity-update", "props": {"email": "ana@example.com", "plan": "pro"}}))

        assert remote_stub.count("resolve") == before + 1
        assert widget.visitor.custom_data == {"plan": "pro"}

    @pytest.mark.asyncio
    async def test_form_for_known_visitor_resumes_open_room(self, make_widget, store, remote_stub):
        visitor, room = await _visitor_with_room(store)
        remote_stub.resolve = {"visitor_token": visitor.visitor_token}
        widget, frame = make_widget()
        await widget.start()

        await _submit_form(widget)

        assert widget.room.id == room.id
        assert widget.phase == Phase.WAITING
        rooms = await store.list_rooms(visitor.id)
        assert [r.id for r in rooms if r.status in RoomStatus.OPEN] == [room.id]

    @pytest.mark.asyncio
    async def test_assignment_during_first_page_is_not_lost(self, make_widget, store, monkeypatch):
        widget, frame = make_widget()
        await widget.start()
        original = store.fetch_messages
        assigned = []

        async def fetch_and_assign(room_id, *args, **kwargs):
            if not assigned:
                assigned.append(await store.assign_room(room_id, "Bruno"))
            return await original(room_id, *args, **kwargs)

        monkeypatch.setattr(store, "fetch_messages", fetch_and_assign)

        await _submit_form(widget)
        await wait_for(lambda: widget.phase == Phase.CHAT)

        assert widget.room.status == RoomStatus.ACTIVE
        assert frame.state.header == "falando com Bruno"
        assert len(frame.of_type("connected")) == 1

    @pytest.mark.asyncio
    async def test_store_failure_on_start_falls_back_to_form(self, make_widget, store, monkeypatch):
        visitor, room = await _visitor_with_room(store)
        await store.close_room(room.id, Resolution.RESOLVED)

        async def broken(*args, **kwargs):
            raise StoreError("db down")

        monkeypatch.setattr(store, "list_rooms", broken)
        widget, frame = make_widget(visitor_token=visitor.visitor_token)

        await widget.start()

        assert widget.phase == Phase.FORM
        assert frame.state.phase == "form"
        assert frame.last("notice").level == "error"
