"""Profile ORM model."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, IdMixin


class Profile(Base, IdMixin, CreatedAtMixin):
    """Public profile of an authenticated user; read here for display names only."""

    __tablename__ = "profiles"

    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
