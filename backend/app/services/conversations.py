"""Conversation lookup, creation and list enrichment."""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.base import utcnow
from app.models.booking import Booking
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.service import Service
from app.schemas.common import Notice
from app.schemas.conversation import ConversationListResult, ConversationRead, ConversationSummary
from app.services.display_names import DisplayNameCache, resolve_display_names

logger = logging.getLogger(__name__)


class ConversationError(RuntimeError):
    """Raised when a conversation cannot be created as requested."""


class ConversationNotFoundError(LookupError):
    """Raised when a conversation id does not exist."""


class ConversationAccessError(PermissionError):
    """Raised when a user is not a party to the conversation."""


def derive_conversation_title(
    *,
    booking_id: str | None,
    service_title: str | None,
    booking_notes: str | None,
) -> str:
    """Pick a list title: service title, then first notes line, then a generic label."""

    settings = get_settings()
    if booking_id is None:
        return settings.direct_conversation_title
    if service_title and service_title.strip():
        return service_title.strip()
    notes = (booking_notes or "").strip()
    if notes:
        first_line = notes.splitlines()[0].strip()
        if first_line:
            return first_line[: settings.conversation_title_max_length]
    return settings.default_conversation_title


def list_conversations(
    db: Session,
    user_id: str,
    *,
    query: str | None = None,
    cache: DisplayNameCache | None = None,
) -> ConversationListResult:
    """Return the user's conversations, most recent activity first.

    Read failures never propagate: the caller gets an empty list and an error notice.
    """

    started = perf_counter()
    try:
        rows = db.execute(_summary_stmt(user_id)).all()
        items = _build_summaries(db, user_id, rows, cache=cache)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("chat.conversations_load_failed user_id=%s", user_id)
        return ConversationListResult(
            items=[],
            notices=[
                Notice(
                    level="error",
                    title="Could not load conversations",
                    description="Your conversations are unavailable right now. Try again shortly.",
                )
            ],
        )

    filter_term = (query or "").strip().casefold()
    if filter_term:
        items = [
            item
            for item in items
            if filter_term in item.other_user_name.casefold() or filter_term in item.title.casefold()
        ]
    logger.debug(
        "chat.conversations_loaded user_id=%s count=%d elapsed_ms=%.2f",
        user_id,
        len(items),
        (perf_counter() - started) * 1000.0,
    )
    return ConversationListResult(items=items)


def get_conversation_summary(
    db: Session,
    conversation_id: str,
    user_id: str,
    *,
    cache: DisplayNameCache | None = None,
) -> ConversationSummary | None:
    """Return one enriched conversation row, or None if the user cannot see it."""

    row = db.execute(_summary_stmt(user_id).where(Conversation.id == conversation_id)).first()
    if row is None:
        return None
    return _build_summaries(db, user_id, [row], cache=cache)[0]


def get_conversation_for_participant(db: Session, conversation_id: str, user_id: str) -> Conversation:
    """Load a conversation and check that the user is one of its two parties."""

    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    if not conversation.has_participant(user_id):
        raise ConversationAccessError(conversation_id)
    return conversation


def get_or_create_conversation(
    db: Session,
    *,
    client_id: str,
    professional_id: str,
    booking_id: str | None = None,
) -> Conversation:
    """Return the conversation for a booking (or the direct pair), creating it once."""

    if booking_id is not None:
        booking = db.get(Booking, booking_id)
        if booking is None:
            raise ConversationError(f"Booking {booking_id} does not exist.")
        if (booking.client_id, booking.professional_id) != (client_id, professional_id):
            raise ConversationError("Booking parties do not match the conversation parties.")

    existing = db.scalar(_existing_stmt(client_id, professional_id, booking_id))
    if existing is not None:
        return existing

    now = utcnow()
    conversation = Conversation(
        client_id=client_id,
        professional_id=professional_id,
        booking_id=booking_id,
        created_at=now,
        last_message_at=now,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Lost a create race; the winner's row satisfies the request.
        db.rollback()
        existing = db.scalar(_existing_stmt(client_id, professional_id, booking_id))
        if existing is None:
            raise
        return existing
    db.refresh(conversation)
    logger.info(
        "chat.conversation_created conversation_id=%s booking_id=%s",
        conversation.id,
        booking_id,
    )
    return conversation


def _existing_stmt(client_id: str, professional_id: str, booking_id: str | None) -> Select[Any]:
    booking_clause = Conversation.booking_id.is_(None) if booking_id is None else Conversation.booking_id == booking_id
    return select(Conversation).where(
        Conversation.client_id == client_id,
        Conversation.professional_id == professional_id,
        booking_clause,
    )


def _summary_stmt(user_id: str) -> Select[Any]:
    unread_counts = (
        select(
            Message.conversation_id.label("conversation_id"),
            func.count(Message.id).label("unread_count"),
        )
        .where(Message.read.is_(False), Message.sender_id != user_id)
        .group_by(Message.conversation_id)
        .subquery()
    )
    return (
        select(
            Conversation,
            Service.title.label("service_title"),
            Booking.notes.label("booking_notes"),
            func.coalesce(unread_counts.c.unread_count, 0).label("unread_count"),
        )
        .outerjoin(Booking, Booking.id == Conversation.booking_id)
        .outerjoin(Service, Service.id == Booking.service_id)
        .outerjoin(unread_counts, unread_counts.c.conversation_id == Conversation.id)
        .where(or_(Conversation.client_id == user_id, Conversation.professional_id == user_id))
        .order_by(
            func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
            Conversation.id.desc(),
        )
    )


def _build_summaries(
    db: Session,
    user_id: str,
    rows: list[Any],
    *,
    cache: DisplayNameCache | None,
) -> list[ConversationSummary]:
    other_ids = [row.Conversation.counterpart_of(user_id) for row in rows]
    names = resolve_display_names(db, other_ids, cache=cache)
    summaries: list[ConversationSummary] = []
    for row, other_id in zip(rows, other_ids):
        conversation: Conversation = row.Conversation
        summaries.append(
            ConversationSummary(
                **ConversationRead.model_validate(conversation).model_dump(),
                other_user_id=other_id,
                other_user_name=names[other_id],
                title=derive_conversation_title(
                    booking_id=conversation.booking_id,
                    service_title=row.service_title,
                    booking_notes=row.booking_notes,
                ),
                unread_count=int(row.unread_count or 0),
            )
        )
    return summaries
