"""Seed a demo client/professional pair with a booking chat and a direct chat.

Usage (from repository root):
    python backend/scripts/seed_demo.py

Usage (from backend directory):
    python scripts/seed_demo.py
    # or
    python -m scripts.seed_demo
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import delete, select

# Make `app` imports work whether the script is run from repo root or backend/.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.db.session import SessionLocal
from app.models.booking import Booking
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.profile import Profile
from app.models.service import Service
from app.services.conversations import get_or_create_conversation


DEFAULT_CLIENT_ID = "00000000-0000-4000-8000-00000000c11e"
DEFAULT_PROFESSIONAL_ID = "00000000-0000-4000-8000-0000000000a5"
DEMO_SERVICE_ID = "00000000-0000-4000-8000-00000000053a"
DEMO_BOOKING_ID = "00000000-0000-4000-8000-00000000b00c"


def build_demo_messages(client_id: str, professional_id: str) -> list[tuple[str, str]]:
    """Return a deterministic booking chat as (sender_id, content) pairs."""

    return [
        (client_id, "Hi! Is Saturday morning still available for the leak repair?"),
        (professional_id, "Yes, I can be there at 9:00. Is the water shut off?"),
        (client_id, "It is. The sink cabinet is empty so you can get in easily."),
        (professional_id, "Perfect, see you Saturday."),
    ]


def reset_demo(db, client_id: str, professional_id: str) -> None:
    """Remove existing demo rows."""

    conversation_ids = list(
        db.scalars(
            select(Conversation.id).where(
                Conversation.client_id == client_id,
                Conversation.professional_id == professional_id,
            )
        )
    )
    if conversation_ids:
        db.execute(delete(Message).where(Message.conversation_id.in_(conversation_ids)))
        db.execute(delete(Conversation).where(Conversation.id.in_(conversation_ids)))
    db.execute(delete(Booking).where(Booking.id == DEMO_BOOKING_ID))
    db.execute(delete(Service).where(Service.id == DEMO_SERVICE_ID))
    db.execute(delete(Profile).where(Profile.id.in_([client_id, professional_id])))
    db.commit()


def parse_args() -> argparse.Namespace:
    """Parse script CLI arguments."""

    parser = argparse.ArgumentParser(description="Seed demo chat data.")
    parser.add_argument("--client-id", default=DEFAULT_CLIENT_ID, help="Client profile id to seed.")
    parser.add_argument(
        "--professional-id",
        default=DEFAULT_PROFESSIONAL_ID,
        help="Professional profile id to seed.",
    )
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not delete existing demo rows before seeding.",
    )
    return parser.parse_args()


def main() -> None:
    """Seed demo data and print a short summary."""

    args = parse_args()
    client_id: str = args.client_id
    professional_id: str = args.professional_id

    with SessionLocal() as db:
        if not args.no_reset:
            reset_demo(db, client_id, professional_id)

        db.add_all(
            [
                Profile(id=client_id, full_name="Ana Client"),
                Profile(id=professional_id, full_name="Bruno Plumber"),
                Service(id=DEMO_SERVICE_ID, title="Leak repair"),
            ]
        )
        db.flush()
        db.add(
            Booking(
                id=DEMO_BOOKING_ID,
                client_id=client_id,
                professional_id=professional_id,
                service_id=DEMO_SERVICE_ID,
                notes="Kitchen sink leak\nBuilding has a doorman.",
            )
        )
        db.commit()

        booking_chat = get_or_create_conversation(
            db,
            client_id=client_id,
            professional_id=professional_id,
            booking_id=DEMO_BOOKING_ID,
        )
        direct_chat = get_or_create_conversation(db, client_id=client_id, professional_id=professional_id)

        base = datetime(2026, 10, 17, 14, 0, 0, tzinfo=timezone.utc)
        payloads = build_demo_messages(client_id, professional_id)
        for idx, (sender_id, content) in enumerate(payloads):
            db.add(
                Message(
                    conversation_id=booking_chat.id,
                    sender_id=sender_id,
                    content=content,
                    read=idx < len(payloads) - 1,
                    created_at=base + timedelta(minutes=idx),
                )
            )
        booking_chat.last_message_at = base + timedelta(minutes=len(payloads) - 1)
        db.commit()
        booking_conversation_id = booking_chat.id
        direct_conversation_id = direct_chat.id

    print("Seed complete")
    print(f"client_id={client_id}")
    print(f"professional_id={professional_id}")
    print(f"booking_conversation_id={booking_conversation_id}")
    print(f"direct_conversation_id={direct_conversation_id}")
    print(f"messages_created={len(payloads)}")
    print()
    print("Inspect (send X-User-Id with either profile id):")
    print("  GET /conversations")
    print(f"  GET /conversations/{booking_conversation_id}/messages")
    print("  WS  /ws/chat")


if __name__ == "__main__":
    main()
