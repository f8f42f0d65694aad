# backend/chatwidget/api/widget.py
import json
from typing import Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..session.bridge import HostBridge, NotFound, Notice, StoreToken, parse_inbound
from ..session.identity import ExternalIdentity, TokenStore
from ..session.machine import ChatWidget

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.websocket("/ws/widget")
async def widget_socket(
        websocket: WebSocket,
        api_key: Optional[str] = None,
        visitor_token: Optional[str] = None,
        external_id: Optional[str] = None,
        host_token: Optional[str] = None,
        embed: bool = False,
):
    await websocket.accept()

    async def send(event):
        try:
            await websocket.send_json(event.model_dump(mode="json", by_alias=True))
        except (WebSocketDisconnect, RuntimeError):
            # frame already gone; the receive loop will notice
            logger.debug("Dropping event for closed socket", type=getattr(event, "type", None))

    if not api_key:
        await send(NotFound())
        await websocket.close()
        return

    async def persist_token(token: str):
        await send(StoreToken(token=token))

    state = websocket.app.state
    widget = ChatWidget(
        api_key,
        store=state.store,
        feed=state.feed,
        remote=state.remote,
        uploads=state.uploads,
        bridge=HostBridge(send, is_open=embed),
        tokens=TokenStore(visitor_token, persist_token),
        external=ExternalIdentity(api_key=api_key, external_id=external_id, visitor_token=host_token),
    )
    try:
        await widget.start()
        while True:
            raw = await websocket.receive_text()
            try:
                event = parse_inbound(json.loads(raw))
            except ValueError:
                # covers malformed JSON and pydantic validation errors
                logger.info("Rejected frame event", api_key=api_key)
                await send(Notice(level="error", message="Evento inválido"))
                continue
            await widget.handle(event)
    except WebSocketDisconnect:
        logger.info("Widget disconnected", api_key=api_key)
    finally:
        await widget.close()
