"""Shared database fixtures and stubs for chat service tests."""

from __future__ import annotations

import tempfile
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.base import Base
from app.models.booking import Booking
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.profile import Profile
from app.models.service import Service
from app.services.moderation import ModerationDecision

CLIENT_ID = "client-ana"
PROFESSIONAL_ID = "pro-bruno"
OTHER_PROFESSIONAL_ID = "pro-carla"
STRANGER_ID = "stranger-dan"


def at(hour: int, minute: int = 0, day: int = 17) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


class ChatDatabaseMixin:
    """SQLite database shared by a test class, emptied before each test.

    In-memory by default. Classes that drive several worker threads at once set
    ``file_backed`` so every thread gets its own connection.
    """

    engine = None
    SessionLocal: sessionmaker
    file_backed = False

    @classmethod
    def setUpClass(cls) -> None:
        super().setUpClass()
        if cls.file_backed:
            cls._tmpdir = tempfile.TemporaryDirectory()
            cls.engine = create_engine(
                f"sqlite+pysqlite:///{Path(cls._tmpdir.name) / 'chat.db'}",
                future=True,
                connect_args={"check_same_thread": False},
            )
        else:
            cls.engine = create_engine(
                "sqlite+pysqlite:///:memory:",
                future=True,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()
        if cls.file_backed:
            cls._tmpdir.cleanup()
        super().tearDownClass()

    def setUp(self) -> None:
        super().setUp()
        self.db: Session = self.SessionLocal()
        for model in (Message, Conversation, Booking, Service, Profile):
            self.db.execute(delete(model))
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()
        super().tearDown()

    def seed_profile(self, user_id: str, full_name: str | None) -> Profile:
        profile = Profile(id=user_id, full_name=full_name)
        self.db.add(profile)
        self.db.commit()
        return profile

    def seed_booking(
        self,
        *,
        client_id: str = CLIENT_ID,
        professional_id: str = PROFESSIONAL_ID,
        service_title: str | None = None,
        notes: str | None = None,
    ) -> Booking:
        service_id = None
        if service_title is not None:
            service = Service(title=service_title)
            self.db.add(service)
            self.db.flush()
            service_id = service.id
        booking = Booking(
            client_id=client_id,
            professional_id=professional_id,
            service_id=service_id,
            notes=notes,
        )
        self.db.add(booking)
        self.db.commit()
        return booking

    def seed_conversation(
        self,
        *,
        client_id: str = CLIENT_ID,
        professional_id: str = PROFESSIONAL_ID,
        booking_id: str | None = None,
        last_message_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> Conversation:
        conversation = Conversation(
            client_id=client_id,
            professional_id=professional_id,
            booking_id=booking_id,
            last_message_at=last_message_at,
            created_at=created_at or at(8),
        )
        self.db.add(conversation)
        self.db.commit()
        return conversation

    def seed_message(
        self,
        conversation: Conversation,
        sender_id: str,
        content: str,
        *,
        created_at: datetime,
        read: bool = False,
    ) -> Message:
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=content,
            read=read,
            created_at=created_at,
        )
        self.db.add(message)
        self.db.commit()
        return message


class StubModerationClient:
    """Returns a fixed decision, or raises, and records every call."""

    def __init__(self, decision: ModerationDecision | None = None, error: Exception | None = None) -> None:
        self.decision = decision or ModerationDecision(allowed=True)
        self.error = error
        self.calls: list[dict[str, str]] = []

    def review(self, content: str, *, conversation_id: str, sender_id: str) -> ModerationDecision:
        self.calls.append({"content": content, "conversation_id": conversation_id, "sender_id": sender_id})
        if self.error is not None:
            raise self.error
        return self.decision


class RecordingHub:
    """Hub double that records publications instead of delivering them."""

    def __init__(self) -> None:
        self.published: list[tuple[str, object]] = []

    def publish(self, topic: str, event: object) -> int:
        self.published.append((topic, event))
        return 1
