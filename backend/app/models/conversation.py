"""Conversation ORM model."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, IdMixin


class Conversation(Base, IdMixin, CreatedAtMixin):
    """Thread between one client and one professional, optionally scoped to a booking."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "client_id",
            "professional_id",
            "booking_id",
            name="uq_conversations_client_professional_booking",
        ),
        # At most one direct (booking-less) conversation per pair.
        Index(
            "uq_conversations_direct_pair",
            "client_id",
            "professional_id",
            unique=True,
            postgresql_where=text("booking_id IS NULL"),
            sqlite_where=text("booking_id IS NULL"),
        ),
    )

    booking_id: Mapped[str | None] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    client_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    professional_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def counterpart_of(self, user_id: str) -> str:
        """Return the other party's user id."""

        return self.professional_id if self.client_id == user_id else self.client_id

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.professional_id)
