"""Display-name lookups with a bounded process-wide cache."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterable
from functools import lru_cache
from threading import Lock

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.profile import Profile


class DisplayNameCache:
    """Thread-safe LRU map from user id to display name."""

    def __init__(self, max_entries: int) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._lock = Lock()

    def get(self, user_id: str) -> str | None:
        with self._lock:
            name = self._entries.get(user_id)
            if name is not None:
                self._entries.move_to_end(user_id)
            return name

    def put(self, user_id: str, name: str) -> None:
        with self._lock:
            self._entries[user_id] = name
            self._entries.move_to_end(user_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def discard(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return user_id in self._entries


@lru_cache
def get_display_name_cache() -> DisplayNameCache:
    """Return the process-wide cache sized from settings."""

    return DisplayNameCache(get_settings().display_name_cache_size)


def resolve_display_names(
    db: Session,
    user_ids: Iterable[str],
    *,
    cache: DisplayNameCache | None = None,
) -> dict[str, str]:
    """Map each user id to a display name, loading cache misses in one query.

    Unknown users and profiles without a name get the configured default, which is
    not cached so a later profile edit is picked up.
    """

    cache = cache if cache is not None else get_display_name_cache()
    fallback = get_settings().default_display_name

    resolved: dict[str, str] = {}
    missing: list[str] = []
    for user_id in dict.fromkeys(user_ids):
        cached = cache.get(user_id)
        if cached is None:
            missing.append(user_id)
        else:
            resolved[user_id] = cached

    if missing:
        rows = db.execute(select(Profile.id, Profile.full_name).where(Profile.id.in_(missing))).all()
        for profile_id, full_name in rows:
            name = (full_name or "").strip()
            if name:
                cache.put(profile_id, name)
                resolved[profile_id] = name
        for user_id in missing:
            resolved.setdefault(user_id, fallback)
    return resolved


def resolve_display_name(db: Session, user_id: str, *, cache: DisplayNameCache | None = None) -> str:
    """Return one user's display name."""

    return resolve_display_names(db, [user_id], cache=cache)[user_id]
