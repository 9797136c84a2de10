"""Message history, send and read routes."""

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from app.db.dependencies import get_db
from app.routers.deps import get_current_user_id
from app.schemas.common import ApiResponse
from app.schemas.message import MarkReadResult, MessagePage, MessageSendRequest, SendMessageResult
from app.services.chat import ChatError, send_message
from app.services.conversations import ConversationAccessError, ConversationNotFoundError
from app.services.messages import MessageNotFoundError, list_messages, mark_message_read
from app.services.realtime import RealtimeHub, get_realtime_hub

MessageLimitParam = Query(default=None, ge=1, le=200)

router = APIRouter()


@router.get("/conversations/{conversation_id}/messages", response_model=ApiResponse[MessagePage])
def get_messages(
    conversation_id: str = Path(..., min_length=1),
    limit: int | None = MessageLimitParam,
    before: str | None = Query(default=None, min_length=1),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> ApiResponse[MessagePage]:
    """List messages oldest-first and mark incoming ones as read."""

    try:
        page = list_messages(db, conversation_id, user_id, limit=limit, before=before)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Conversation not found") from exc
    except ConversationAccessError as exc:
        raise HTTPException(status_code=403, detail="Not a participant of this conversation") from exc
    except MessageNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Cursor message not found") from exc
    return ApiResponse(data=page)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=ApiResponse[SendMessageResult],
    status_code=201,
)
def post_message(
    payload: MessageSendRequest,
    conversation_id: str = Path(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> ApiResponse[SendMessageResult]:
    """Moderate and send one message; blocked or failed sends are reported in the payload."""

    try:
        result = send_message(
            db,
            conversation_id,
            user_id,
            payload.content,
            attachment_url=payload.attachment_url,
            attachment_type=payload.attachment_type,
            hub=hub,
        )
    except ChatError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Conversation not found") from exc
    except ConversationAccessError as exc:
        raise HTTPException(status_code=403, detail="Not a participant of this conversation") from exc
    return ApiResponse(data=result)


@router.post("/messages/{message_id}/read", response_model=ApiResponse[MarkReadResult])
def read_message(
    message_id: str = Path(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> ApiResponse[MarkReadResult]:
    """Mark one incoming message as read."""

    try:
        message = mark_message_read(db, message_id, user_id)
    except (MessageNotFoundError, ConversationNotFoundError) as exc:
        raise HTTPException(status_code=404, detail="Message not found") from exc
    except ConversationAccessError as exc:
        raise HTTPException(status_code=403, detail="Not a participant of this conversation") from exc
    return ApiResponse(data=MarkReadResult(id=message.id, read=message.read))
