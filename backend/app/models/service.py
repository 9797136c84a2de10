"""Service catalog ORM model."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, IdMixin


class Service(Base, IdMixin, CreatedAtMixin):
    """Service offered by a professional."""

    __tablename__ = "services"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
