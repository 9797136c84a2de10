"""Outbound chat messages: moderation, persistence and realtime fan-out."""

from __future__ import annotations

import logging
from time import perf_counter

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.base import utcnow
from app.models.conversation import Conversation
from app.models.message import Message
from app.schemas.common import Notice
from app.schemas.message import MessageRead, SendMessageResult
from app.services.conversations import get_conversation_for_participant
from app.services.display_names import DisplayNameCache
from app.services.messages import serialize_messages
from app.services.moderation import (
    ModerationClient,
    ModerationDecision,
    ModerationError,
    get_default_moderation_client,
)
from app.services.realtime import (
    ConversationChanged,
    MessageInserted,
    RealtimeHub,
    conversation_topic,
    get_realtime_hub,
    message_topic,
)

logger = logging.getLogger(__name__)

MODERATION_UNAVAILABLE_REASON = "Message moderation is temporarily unavailable."
UNFILTERED_CENSOR_REASON = "This message could not be filtered and was not sent."


class ChatError(RuntimeError):
    """Raised when a send request is invalid."""


def send_message(
    db: Session,
    conversation_id: str,
    sender_id: str,
    content: str,
    *,
    attachment_url: str | None = None,
    attachment_type: str | None = None,
    moderation_client: ModerationClient | None = None,
    hub: RealtimeHub | None = None,
    cache: DisplayNameCache | None = None,
) -> SendMessageResult:
    """Moderate, persist and broadcast one message.

    Blocked content is never written and leaves the conversation untouched. If
    the moderation function itself fails the message goes out unfiltered, unless
    ``moderation_fail_closed`` is configured.
    """

    started = perf_counter()
    trimmed = content.strip()
    if not trimmed:
        raise ChatError("Message content cannot be empty.")

    conversation = get_conversation_for_participant(db, conversation_id, sender_id)
    decision = _moderate(trimmed, conversation_id, sender_id, moderation_client)

    if decision.allowed and not decision.blocked and decision.censored and not decision.content:
        # A censor verdict without replacement text must never store the original.
        decision = ModerationDecision(allowed=False, blocked=True, block_reason=UNFILTERED_CENSOR_REASON)

    if decision.blocked or not decision.allowed:
        reason = decision.block_reason or "This message is not allowed."
        logger.info(
            "chat.message_blocked conversation_id=%s sender_id=%s reason=%s",
            conversation_id,
            sender_id,
            reason,
        )
        return SendMessageResult(
            status="blocked",
            notices=[Notice(level="error", title="Message blocked", description=reason)],
        )

    censored = decision.censored
    final_content = decision.content if censored else trimmed

    now = utcnow()
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=final_content,
        read=False,
        attachment_url=attachment_url,
        attachment_type=attachment_type,
        blocked=False,
        censored=censored,
        created_at=now,
    )
    try:
        db.add(message)
        conversation.last_message_at = now
        db.commit()
        db.refresh(message)
        db.refresh(conversation)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("chat.message_persist_failed conversation_id=%s sender_id=%s", conversation_id, sender_id)
        return SendMessageResult(
            status="failed",
            notices=[
                Notice(
                    level="error",
                    title="Error",
                    description="The message could not be sent.",
                )
            ],
        )

    serialized = serialize_messages(db, [message], cache=cache)[0]
    _broadcast(hub if hub is not None else get_realtime_hub(), conversation, serialized)

    notices: list[Notice] = []
    if censored:
        notices.append(
            Notice(
                level="warning",
                title="Message modified",
                description="Part of your message was hidden because it may contain contact details.",
            )
        )
    logger.info(
        "chat.message_sent conversation_id=%s message_id=%s censored=%s total_ms=%.2f",
        conversation_id,
        serialized.id,
        censored,
        (perf_counter() - started) * 1000.0,
    )
    return SendMessageResult(status="censored" if censored else "sent", message=serialized, notices=notices)


def _moderate(
    content: str,
    conversation_id: str,
    sender_id: str,
    moderation_client: ModerationClient | None,
) -> ModerationDecision:
    try:
        client = moderation_client or get_default_moderation_client()
        return client.review(content, conversation_id=conversation_id, sender_id=sender_id)
    except ModerationError as exc:
        if get_settings().moderation_fail_closed:
            logger.warning(
                "chat.moderation_unavailable policy=fail_closed conversation_id=%s error=%s",
                conversation_id,
                exc,
            )
            return ModerationDecision(allowed=False, blocked=True, block_reason=MODERATION_UNAVAILABLE_REASON)
        logger.warning(
            "chat.moderation_unavailable policy=fail_open conversation_id=%s error=%s",
            conversation_id,
            exc,
        )
        return ModerationDecision(allowed=True)


def _broadcast(hub: RealtimeHub, conversation: Conversation, message: MessageRead) -> None:
    hub.publish(message_topic(conversation.id), MessageInserted(message=message))
    changed = ConversationChanged(conversation_id=conversation.id)
    for user_id in (conversation.client_id, conversation.professional_id):
        hub.publish(conversation_topic(user_id), changed)
