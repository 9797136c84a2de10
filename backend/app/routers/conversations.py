"""Conversation list and creation routes."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.db.dependencies import get_db
from app.routers.deps import get_current_user_id
from app.schemas.common import ApiResponse
from app.schemas.conversation import ConversationCreate, ConversationListResult, ConversationRead
from app.services.conversations import ConversationError, get_or_create_conversation, list_conversations

router = APIRouter()


@router.get("/conversations", response_model=ApiResponse[ConversationListResult])
def get_conversations(
    q: str | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> ApiResponse[ConversationListResult]:
    """List the caller's conversations ordered by most recent activity."""

    return ApiResponse(data=list_conversations(db, user_id, query=q))


@router.post("/conversations", response_model=ApiResponse[ConversationRead])
def open_conversation(
    payload: ConversationCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> ApiResponse[ConversationRead]:
    """Return the booking or direct conversation between two parties, creating it if needed."""

    if user_id not in (payload.client_id, payload.professional_id):
        raise HTTPException(status_code=403, detail="Caller is not a party to this conversation")
    try:
        conversation = get_or_create_conversation(
            db,
            client_id=payload.client_id,
            professional_id=payload.professional_id,
            booking_id=payload.booking_id,
        )
    except ConversationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=ConversationRead.model_validate(conversation))
