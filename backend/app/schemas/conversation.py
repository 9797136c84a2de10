"""Conversation request/response schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.common import Notice


class ConversationCreate(BaseModel):
    """Get-or-create payload for a booking or direct conversation."""

    client_id: str = Field(min_length=1)
    professional_id: str = Field(min_length=1)
    booking_id: str | None = None

    @model_validator(mode="after")
    def _distinct_parties(self) -> "ConversationCreate":
        if self.client_id == self.professional_id:
            raise ValueError("client_id and professional_id must differ")
        return self


class ConversationRead(BaseModel):
    """Serialized conversation row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str | None
    client_id: str
    professional_id: str
    last_message_at: datetime | None
    created_at: datetime


class ConversationSummary(ConversationRead):
    """Conversation row annotated for the conversation list."""

    other_user_id: str
    other_user_name: str
    title: str
    unread_count: int


class ConversationListResult(BaseModel):
    """Conversation list payload."""

    items: list[ConversationSummary]
    notices: list[Notice] = Field(default_factory=list)
