"""Client for the external chat moderation function."""

from __future__ import annotations

import json
from dataclasses import dataclass
from http import client as http_client
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request

from app.config import get_settings


class ModerationError(RuntimeError):
    """Raised when the moderation function cannot produce a decision."""


@dataclass(slots=True, frozen=True)
class ModerationDecision:
    """Allow/censor/block verdict for one outbound message."""

    allowed: bool
    blocked: bool = False
    censored: bool = False
    content: str | None = None
    block_reason: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ModerationDecision":
        # An explicit allowed=false is a block even when "blocked" is absent.
        blocked = bool(payload.get("blocked", False)) or not bool(payload.get("allowed", True))
        content = payload.get("content")
        block_reason = payload.get("block_reason") or payload.get("reason") or None
        if content is not None and not isinstance(content, str):
            raise TypeError("content must be a string")
        if block_reason is not None and not isinstance(block_reason, str):
            raise TypeError("block_reason must be a string")
        return cls(
            allowed=not blocked,
            blocked=blocked,
            censored=bool(payload.get("censored", False)),
            content=content,
            block_reason=block_reason,
        )


class ModerationClient(Protocol):
    """Protocol for moderation providers."""

    def review(self, content: str, *, conversation_id: str, sender_id: str) -> ModerationDecision:
        """Return the moderation decision for ``content``."""


@dataclass(slots=True)
class HttpModerationClient:
    """Calls the moderation function over HTTP with a JSON body."""

    url: str
    api_key: str | None = None
    timeout_seconds: int = 10

    def review(self, content: str, *, conversation_id: str, sender_id: str) -> ModerationDecision:
        payload = {
            "content": content,
            "conversationId": conversation_id,
            "senderId": sender_id,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib_request.Request(
            url=self.url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with urllib_request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read().decode("utf-8")
        except urllib_error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            decision = _decision_from_rejection(exc.code, detail)
            if decision is not None:
                return decision
            raise ModerationError(f"Moderation HTTP {exc.code}: {detail}") from exc
        except urllib_error.URLError as exc:
            raise ModerationError(f"Moderation request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ModerationError("Moderation request timed out") from exc
        except (http_client.HTTPException, OSError) as exc:
            raise ModerationError(f"Moderation response could not be read: {exc!r}") from exc

        try:
            decoded = json.loads(raw)
            if not isinstance(decoded, dict):
                raise TypeError("moderation response is not an object")
            return ModerationDecision.from_payload(decoded)
        except (TypeError, ValueError) as exc:
            raise ModerationError("Moderation returned an unexpected response") from exc


def _decision_from_rejection(status: int, body: str) -> ModerationDecision | None:
    """Return the verdict carried by a 4xx answer such as a banned-sender 403, if any."""

    if not 400 <= status < 500:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict) or "allowed" not in payload:
        return None
    try:
        return ModerationDecision.from_payload(payload)
    except TypeError:
        return None


def get_default_moderation_client() -> ModerationClient:
    """Return the configured moderation client."""

    settings = get_settings()
    if not settings.moderation_url:
        raise ModerationError("MODERATION_URL is not configured.")
    return HttpModerationClient(
        url=settings.moderation_url,
        api_key=settings.moderation_api_key,
        timeout_seconds=settings.moderation_timeout_seconds,
    )
