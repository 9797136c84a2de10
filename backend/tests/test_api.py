"""HTTP and websocket tests for the chat API."""

from __future__ import annotations

import unittest
from typing import Any
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from starlette.websockets import WebSocketDisconnect

from app.db.dependencies import get_db, get_session_factory
from app.main import app
from app.services.realtime import RealtimeHub, get_realtime_hub
from helpers import CLIENT_ID, PROFESSIONAL_ID, STRANGER_ID, ChatDatabaseMixin, at


class ChatApiTests(ChatDatabaseMixin, unittest.TestCase):
    file_backed = True

    def setUp(self) -> None:
        super().setUp()
        self.hub = RealtimeHub()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_session_factory] = lambda: self.SessionLocal
        app.dependency_overrides[get_realtime_hub] = lambda: self.hub
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

        self.seed_profile(CLIENT_ID, "Ana Client")
        self.seed_profile(PROFESSIONAL_ID, "Bruno Plumber")
        booking = self.seed_booking(service_title="Leak repair")
        self.conversation = self.seed_conversation(booking_id=booking.id, last_message_at=at(10))
        self.conversation_id = self.conversation.id
        self.booking_id = booking.id

    def _headers(self, user_id: str) -> dict[str, str]:
        return {"X-User-Id": user_id}

    def _receive_until(self, websocket: Any, kind: str, limit: int = 10) -> dict[str, Any]:
        for _ in range(limit):
            frame = websocket.receive_json()
            if frame["type"] == kind:
                return frame
        self.fail(f"no {kind!r} frame within {limit} frames")

    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_requires_caller_identity(self) -> None:
        response = self.client.get("/conversations")
        self.assertEqual(response.status_code, 401)

    def test_lists_conversations_for_caller(self) -> None:
        self.seed_message(self.conversation, PROFESSIONAL_ID, "See you Saturday", created_at=at(9))

        response = self.client.get("/conversations", headers=self._headers(CLIENT_ID))

        self.assertEqual(response.status_code, 200)
        items = response.json()["data"]["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["id"], self.conversation_id)
        self.assertEqual(items[0]["title"], "Leak repair")
        self.assertEqual(items[0]["other_user_name"], "Bruno Plumber")
        self.assertEqual(items[0]["unread_count"], 1)

        filtered = self.client.get("/conversations", params={"q": "roof"}, headers=self._headers(CLIENT_ID))
        self.assertEqual(filtered.json()["data"]["items"], [])

    def test_open_conversation_is_idempotent(self) -> None:
        body = {"client_id": CLIENT_ID, "professional_id": PROFESSIONAL_ID, "booking_id": self.booking_id}

        first = self.client.post("/conversations", json=body, headers=self._headers(CLIENT_ID))
        second = self.client.post("/conversations", json=body, headers=self._headers(PROFESSIONAL_ID))
        outsider = self.client.post("/conversations", json=body, headers=self._headers(STRANGER_ID))

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["data"]["id"], self.conversation_id)
        self.assertEqual(second.json()["data"]["id"], self.conversation_id)
        self.assertEqual(outsider.status_code, 403)

    def test_open_conversation_rejects_mismatched_booking(self) -> None:
        body = {"client_id": CLIENT_ID, "professional_id": STRANGER_ID, "booking_id": self.booking_id}

        response = self.client.post("/conversations", json=body, headers=self._headers(CLIENT_ID))

        self.assertEqual(response.status_code, 422)

    def test_send_then_read_history(self) -> None:
        sent = self.client.post(
            f"/conversations/{self.conversation_id}/messages",
            json={"content": " Hello "},
            headers=self._headers(CLIENT_ID),
        )
        self.assertEqual(sent.status_code, 201)
        result = sent.json()["data"]
        self.assertEqual(result["status"], "sent")
        self.assertEqual(result["message"]["content"], "Hello")

        history = self.client.get(
            f"/conversations/{self.conversation_id}/messages",
            headers=self._headers(PROFESSIONAL_ID),
        )
        self.assertEqual(history.status_code, 200)
        items = history.json()["data"]["items"]
        self.assertEqual([(item["content"], item["sender_name"], item["read"]) for item in items], [("Hello", "Ana Client", True)])

    def test_history_read_failure_returns_notice_instead_of_error(self) -> None:
        self.seed_message(self.conversation, PROFESSIONAL_ID, "hello", created_at=at(9))

        def failing_get_db():
            db = self.SessionLocal()
            db.scalars = MagicMock(side_effect=OperationalError("SELECT messages", {}, Exception("connection lost")))
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = failing_get_db
        response = self.client.get(
            f"/conversations/{self.conversation_id}/messages",
            headers=self._headers(CLIENT_ID),
        )

        self.assertEqual(response.status_code, 200)
        page = response.json()["data"]
        self.assertEqual(page["items"], [])
        self.assertEqual([notice["title"] for notice in page["notices"]], ["Could not load messages"])

    def test_message_routes_enforce_participation(self) -> None:
        message = self.seed_message(self.conversation, PROFESSIONAL_ID, "private", created_at=at(9))

        history = self.client.get(f"/conversations/{self.conversation_id}/messages", headers=self._headers(STRANGER_ID))
        send = self.client.post(
            f"/conversations/{self.conversation_id}/messages",
            json={"content": "hi"},
            headers=self._headers(STRANGER_ID),
        )
        read = self.client.post(f"/messages/{message.id}/read", headers=self._headers(STRANGER_ID))
        missing = self.client.get("/conversations/missing/messages", headers=self._headers(CLIENT_ID))

        self.assertEqual(history.status_code, 403)
        self.assertEqual(send.status_code, 403)
        self.assertEqual(read.status_code, 403)
        self.assertEqual(missing.status_code, 404)

    def test_blank_message_is_rejected(self) -> None:
        response = self.client.post(
            f"/conversations/{self.conversation_id}/messages",
            json={"content": "   "},
            headers=self._headers(CLIENT_ID),
        )
        self.assertEqual(response.status_code, 422)

    def test_mark_single_message_read(self) -> None:
        message = self.seed_message(self.conversation, PROFESSIONAL_ID, "Quote attached", created_at=at(9))

        response = self.client.post(f"/messages/{message.id}/read", headers=self._headers(CLIENT_ID))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"], {"id": message.id, "read": True})

    def test_paginated_history_uses_message_cursor(self) -> None:
        for minute in range(3):
            self.seed_message(self.conversation, PROFESSIONAL_ID, f"m{minute}", created_at=at(9, minute))

        first = self.client.get(
            f"/conversations/{self.conversation_id}/messages",
            params={"limit": 2},
            headers=self._headers(CLIENT_ID),
        ).json()["data"]
        rest = self.client.get(
            f"/conversations/{self.conversation_id}/messages",
            params={"limit": 2, "before": first["next_cursor"]},
            headers=self._headers(CLIENT_ID),
        ).json()["data"]

        self.assertEqual([item["content"] for item in first["items"]], ["m1", "m2"])
        self.assertTrue(first["has_more"])
        self.assertEqual([item["content"] for item in rest["items"]], ["m0"])
        self.assertFalse(rest["has_more"])

    def test_websocket_requires_identity(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/ws/chat"):
                pass
        self.assertEqual(ctx.exception.code, 1008)

    def test_websocket_streams_snapshot_history_and_live_messages(self) -> None:
        self.seed_message(self.conversation, PROFESSIONAL_ID, "Are you home?", created_at=at(9))

        with self.client.websocket_connect(f"/ws/chat?user_id={CLIENT_ID}") as websocket:
            snapshot = self._receive_until(websocket, "conversations")
            self.assertEqual([item["id"] for item in snapshot["items"]], [self.conversation_id])

            websocket.send_json({"type": "select", "conversation_id": self.conversation_id})
            history = self._receive_until(websocket, "messages")
            self.assertEqual([item["content"] for item in history["items"]], ["Are you home?"])

            sent = self.client.post(
                f"/conversations/{self.conversation_id}/messages",
                json={"content": "Yes, come in"},
                headers=self._headers(PROFESSIONAL_ID),
            )
            self.assertEqual(sent.status_code, 201)
            live = self._receive_until(websocket, "message")
            self.assertEqual(live["item"]["content"], "Yes, come in")
            self.assertEqual(live["item"]["sender_name"], "Bruno Plumber")

            websocket.send_text("[1, 2]")
            notice = self._receive_until(websocket, "notice")
            self.assertEqual(notice["notice"]["title"], "Invalid request")


if __name__ == "__main__":
    unittest.main()
