"""Message request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.common import Notice


class MessageSendRequest(BaseModel):
    """Outbound chat message payload."""

    content: str = Field(min_length=1, max_length=5000)
    attachment_url: str | None = Field(default=None, max_length=2048)
    attachment_type: str | None = Field(default=None, max_length=128)


class MessageRead(BaseModel):
    """Serialized message enriched with the sender's display name."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str | None = None
    content: str
    read: bool
    attachment_url: str | None = None
    attachment_type: str | None = None
    blocked: bool = False
    censored: bool = False
    block_reason: str | None = None
    created_at: datetime


class MessagePage(BaseModel):
    """Messages in ascending order plus a cursor for older history."""

    items: list[MessageRead]
    has_more: bool = False
    next_cursor: str | None = None
    notices: list[Notice] = Field(default_factory=list)


class SendMessageResult(BaseModel):
    """Outcome of one send attempt."""

    status: Literal["sent", "censored", "blocked", "failed"]
    message: MessageRead | None = None
    notices: list[Notice] = Field(default_factory=list)


class MarkReadResult(BaseModel):
    """Read-marking outcome for one message."""

    id: str
    read: bool
