# backend/chatwidget/api/operator.py
from fastapi import APIRouter, Depends, Form, HTTPException, Request

from .. import models, schemas
from ..feed import typing_channel
from ..store import DataStore
from .auth import verify_operator

router = APIRouter(dependencies=[Depends(verify_operator)])


def get_store(request: Request) -> DataStore:
    return request.app.state.store


async def get_room_or_404(room_id: int, store: DataStore = Depends(get_store)) -> schemas.RoomOut:
    room = await store.get_room(room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


@router.get("/rooms/{room_id}", response_model=schemas.RoomDetailOut)
async def get_room(room: schemas.RoomOut = Depends(get_room_or_404), store: DataStore = Depends(get_store)):
    page = await store.fetch_messages(room.id, 200)
    return {"room": room, "messages": page.messages}


@router.post("/rooms/{room_id}/assign", response_model=schemas.RoomOut)
async def assign_room(
        body: schemas.AssignIn,
        room: schemas.RoomOut = Depends(get_room_or_404),
        store: DataStore = Depends(get_store),
):
    if room.status == models.RoomStatus.CLOSED:
        raise HTTPException(status_code=409, detail="Room is closed")
    return await store.assign_room(room.id, body.attendant_name, body.attendant_id)


@router.post("/rooms/{room_id}/reply", response_model=schemas.MessageOut)
async def reply_to_room(
        text: str = Form(None),
        attendant_name: str = Form(None),
        attendant_id: str = Form(None),
        room: schemas.RoomOut = Depends(get_room_or_404),
        store: DataStore = Depends(get_store),
):
    if not text or not text.strip():
        raise HTTPException(status_code=400, detail="Text is required")
    return await store.insert_message(
        room.id,
        models.SenderType.ATTENDANT,
        text.strip(),
        sender_name=attendant_name or room.attendant_name,
        sender_id=attendant_id,
    )


@router.post("/rooms/{room_id}/note", response_model=schemas.MessageOut)
async def add_internal_note(
        text: str = Form(None),
        attendant_name: str = Form(None),
        room: schemas.RoomOut = Depends(get_room_or_404),
        store: DataStore = Depends(get_store),
):
    if not text or not text.strip():
        raise HTTPException(status_code=400, detail="Text is required")
    return await store.insert_message(
        room.id,
        models.SenderType.ATTENDANT,
        text.strip(),
        sender_name=attendant_name or room.attendant_name,
        is_internal=True,
    )


@router.post("/rooms/{room_id}/close", response_model=schemas.RoomOut)
async def close_room(
        body: schemas.CloseIn,
        room: schemas.RoomOut = Depends(get_room_or_404),
        store: DataStore = Depends(get_store),
):
    if room.status == models.RoomStatus.CLOSED:
        raise HTTPException(status_code=409, detail="Room is already closed")
    return await store.close_room(room.id, body.resolution)


@router.post("/visitors/{visitor_id}/rooms", response_model=schemas.RoomOut)
async def start_proactive_room(
        visitor_id: int,
        body: schemas.ProactiveIn,
        store: DataStore = Depends(get_store),
):
    open_room = await store.find_open_room(visitor_id)
    if open_room:
        raise HTTPException(status_code=409, detail="Visitor already has an open room")
    room = await store.create_room(
        visitor_id,
        status=models.RoomStatus.ACTIVE,
        attendant_name=body.attendant_name,
        attendant_id=body.attendant_id,
        started_by=models.SenderType.ATTENDANT,
    )
    if body.text and body.text.strip():
        await store.insert_message(
            room.id,
            models.SenderType.ATTENDANT,
            body.text.strip(),
            sender_name=body.attendant_name,
            sender_id=body.attendant_id,
        )
    return room


@router.post("/rooms/{room_id}/typing")
async def set_typing(
        attendant_name: str = Form(None),
        room: schemas.RoomOut = Depends(get_room_or_404),
        store: DataStore = Depends(get_store),
):
    signal = schemas.TypingSignal(
        room_id=room.id,
        sender_type=models.SenderType.ATTENDANT,
        sender_name=attendant_name or room.attendant_name,
    )
    await store.feed.publish(typing_channel(room.id), signal.model_dump())
    return {"status": "ok"}
