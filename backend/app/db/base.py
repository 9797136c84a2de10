"""SQLAlchemy metadata registry import for Alembic."""

from app.models import Booking, Conversation, Message, Profile, Service
from app.models.base import Base

__all__ = ["Base", "Profile", "Service", "Booking", "Conversation", "Message"]
