"""Websocket bridge for live conversation and message updates."""

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import sessionmaker

from app.db.dependencies import get_session_factory
from app.routers.deps import get_websocket_user_id
from app.services.realtime import ChatSession, RealtimeHub, get_realtime_hub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    user_id: str | None = Depends(get_websocket_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> None:
    """Stream the caller's conversation list and the selected conversation's messages.

    Client frames: ``{"type": "select", "conversation_id": ...}``,
    ``{"type": "refresh"}`` and ``{"type": "load_more"}``.
    """

    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = ChatSession(
        user_id=user_id,
        session_factory=session_factory,
        hub=hub,
        send=websocket.send_json,
    )
    try:
        await session.start()
        while True:
            raw = await websocket.receive_text()
            try:
                command = json.loads(raw)
            except ValueError:
                command = None
            if not isinstance(command, dict):
                await websocket.send_json(
                    {
                        "type": "notice",
                        "notice": {
                            "level": "error",
                            "title": "Invalid request",
                            "description": "Frames must be JSON objects.",
                        },
                    }
                )
                continue
            await session.handle_command(command)
    except WebSocketDisconnect:
        logger.debug("realtime.socket_closed user_id=%s", user_id)
    finally:
        await session.close()
