"""Caller identity dependencies.

Authentication happens upstream; the gateway forwards the verified user id.
"""

from fastapi import Header, HTTPException, Query, WebSocket


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Return the caller's user id from the ``X-User-Id`` header."""

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_websocket_user_id(
    websocket: WebSocket,
    user_id: str | None = Query(default=None),
) -> str | None:
    """Resolve the websocket caller from the header, falling back to a query param."""

    candidate = websocket.headers.get("x-user-id") or user_id or ""
    return candidate.strip() or None
