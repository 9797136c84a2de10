"""Message history loading and read tracking."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.message import Message
from app.schemas.common import Notice
from app.schemas.message import MessagePage, MessageRead
from app.services.conversations import get_conversation_for_participant
from app.services.display_names import DisplayNameCache, resolve_display_names

logger = logging.getLogger(__name__)


class MessageNotFoundError(LookupError):
    """Raised when a message id does not exist."""


def serialize_messages(
    db: Session,
    records: Sequence[Message],
    *,
    cache: DisplayNameCache | None = None,
) -> list[MessageRead]:
    """Convert rows to API models annotated with sender display names."""

    names = resolve_display_names(db, [record.sender_id for record in records], cache=cache)
    return [
        MessageRead.model_validate(record).model_copy(update={"sender_name": names[record.sender_id]})
        for record in records
    ]


def list_messages(
    db: Session,
    conversation_id: str,
    viewer_id: str,
    *,
    limit: int | None = None,
    before: str | None = None,
    cache: DisplayNameCache | None = None,
) -> MessagePage:
    """Return messages oldest-first and mark the counterpart's unread messages as read.

    Without ``limit`` the whole history is returned. With ``limit`` the newest
    ``limit`` messages older than the ``before`` message id are returned, and
    ``next_cursor`` points at the oldest of them when more history exists.
    """

    try:
        items, has_more = _load_history(db, conversation_id, viewer_id, limit=limit, before=before, cache=cache)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "chat.messages_load_failed conversation_id=%s viewer_id=%s",
            conversation_id,
            viewer_id,
        )
        return MessagePage(
            items=[],
            notices=[
                Notice(
                    level="error",
                    title="Could not load messages",
                    description="Message history is unavailable right now. Try again shortly.",
                )
            ],
        )

    page = MessagePage(
        items=items,
        has_more=has_more,
        next_cursor=items[0].id if has_more and items else None,
    )

    try:
        mark_conversation_read(db, conversation_id, viewer_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "chat.mark_read_failed conversation_id=%s viewer_id=%s",
            conversation_id,
            viewer_id,
        )
        page.notices.append(
            Notice(
                level="error",
                title="Could not update read status",
                description="Messages were loaded but could not be marked as read.",
            )
        )
        return page

    for item in page.items:
        if item.sender_id != viewer_id:
            item.read = True
    return page


def _load_history(
    db: Session,
    conversation_id: str,
    viewer_id: str,
    *,
    limit: int | None,
    before: str | None,
    cache: DisplayNameCache | None,
) -> tuple[list[MessageRead], bool]:
    get_conversation_for_participant(db, conversation_id, viewer_id)

    stmt = select(Message).where(Message.conversation_id == conversation_id)
    if before is not None:
        anchor = db.get(Message, before)
        if anchor is None or anchor.conversation_id != conversation_id:
            raise MessageNotFoundError(before)
        stmt = stmt.where(
            or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            )
        )

    if limit is None:
        records = list(db.scalars(stmt.order_by(Message.created_at.asc(), Message.id.asc())))
        return serialize_messages(db, records, cache=cache), False

    newest_first = list(db.scalars(stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1)))
    records = list(reversed(newest_first[:limit]))
    return serialize_messages(db, records, cache=cache), len(newest_first) > limit


def mark_conversation_read(db: Session, conversation_id: str, viewer_id: str) -> int:
    """Flag every unread message from the counterpart as read; return the row count."""

    result = db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != viewer_id,
            Message.read.is_(False),
        )
        .values(read=True)
    )
    db.commit()
    return int(result.rowcount or 0)


def mark_message_read(db: Session, message_id: str, viewer_id: str) -> Message:
    """Mark one incoming message as read; the viewer's own messages are left untouched."""

    message = db.get(Message, message_id)
    if message is None:
        raise MessageNotFoundError(message_id)
    get_conversation_for_participant(db, message.conversation_id, viewer_id)
    if message.sender_id != viewer_id and not message.read:
        message.read = True
        db.commit()
        db.refresh(message)
    return message


def count_unread_messages(db: Session, conversation_id: str, user_id: str) -> int:
    """Count messages in a conversation not sent by ``user_id`` and not yet read."""

    stmt = select(func.count(Message.id)).where(
        Message.conversation_id == conversation_id,
        Message.sender_id != user_id,
        Message.read.is_(False),
    )
    return int(db.scalar(stmt) or 0)
