"""ORM models package exports."""

from app.models.booking import Booking
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.profile import Profile
from app.models.service import Service

__all__ = [
    "Booking",
    "Conversation",
    "Message",
    "Profile",
    "Service",
]
