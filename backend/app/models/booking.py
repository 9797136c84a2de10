"""Booking ORM model."""

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, IdMixin


class Booking(Base, IdMixin, CreatedAtMixin):
    """Booking between a client and a professional.

    Only the columns the chat service reads for conversation titles are mapped.
    """

    __tablename__ = "bookings"

    client_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    professional_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    service_id: Mapped[str | None] = mapped_column(
        ForeignKey("services.id", ondelete="SET NULL"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
