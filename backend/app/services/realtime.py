"""In-process realtime fan-out and the per-connection chat view.

Writers publish row-change events on topics; each websocket connection owns a
``ChatSession`` that mirrors the conversation list and the active conversation's
messages and keeps them current from those events.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Any

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings
from app.schemas.common import Notice
from app.schemas.conversation import ConversationSummary
from app.schemas.message import MessageRead
from app.services.conversations import (
    ConversationAccessError,
    ConversationNotFoundError,
    get_conversation_summary,
    list_conversations,
)
from app.services.display_names import DisplayNameCache, resolve_display_name
from app.services.messages import MessageNotFoundError, list_messages, mark_message_read

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class MessageInserted:
    """A message row was persisted."""

    message: MessageRead


@dataclass(slots=True, frozen=True)
class ConversationChanged:
    """A conversation row was inserted or updated."""

    conversation_id: str
    change: str = "UPDATE"


RealtimeEvent = MessageInserted | ConversationChanged


def message_topic(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


def conversation_topic(user_id: str) -> str:
    return f"conversations:{user_id}"


class Subscription:
    """Queue of events for one topic, bound to the subscriber's event loop."""

    def __init__(self, hub: RealtimeHub, topic: str, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self.hub = hub
        self.topic = topic
        self._loop = loop
        self._queue: asyncio.Queue[RealtimeEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def deliver(self, event: RealtimeEvent) -> None:
        """Hand an event over from any thread."""

        self._loop.call_soon_threadsafe(self._put, event)

    def _put(self, event: RealtimeEvent) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("realtime.subscription_overflow topic=%s dropped=%s", self.topic, type(event).__name__)

    async def get(self) -> RealtimeEvent:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def take_dropped(self) -> int:
        """Return and reset the number of events lost to a full queue."""

        dropped, self.dropped = self.dropped, 0
        return dropped

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> RealtimeEvent:
        return await self.get()


class RealtimeHub:
    """Topic-based publish/subscribe shared by all connections in the process."""

    def __init__(self, *, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._lock = Lock()

    def subscribe(self, topic: str) -> Subscription:
        """Register a subscription on the running event loop."""

        subscription = Subscription(self, topic, asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)

    def publish(self, topic: str, event: RealtimeEvent) -> int:
        """Deliver ``event`` to every subscriber of ``topic``; safe from worker threads."""

        with self._lock:
            subscribers = list(self._subscribers.get(topic, []))
        delivered = 0
        for subscription in subscribers:
            try:
                subscription.deliver(event)
            except RuntimeError:
                # Event loop already closed; the connection is gone.
                subscription.close()
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))


@lru_cache
def get_realtime_hub() -> RealtimeHub:
    """Return the process-wide hub."""

    return RealtimeHub()


def _message_sort_key(message: MessageRead) -> tuple[Any, str]:
    return (message.created_at, message.id)


def _conversation_sort_key(summary: ConversationSummary) -> tuple[Any, str]:
    return (summary.last_message_at or summary.created_at, summary.id)


class ChatSession:
    """Mirror of one user's chat state kept fresh from realtime events.

    Every load is tagged with an epoch; a result whose epoch is no longer current
    (the user switched conversations or reloaded meanwhile) is discarded.
    """

    def __init__(
        self,
        *,
        user_id: str,
        session_factory: sessionmaker,
        send: SendFn,
        hub: RealtimeHub | None = None,
        cache: DisplayNameCache | None = None,
        mark_read_delay: float | None = None,
        page_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self.user_id = user_id
        self.hub = hub if hub is not None else get_realtime_hub()
        self.conversations: list[ConversationSummary] = []
        self.messages: list[MessageRead] = []
        self.active_conversation_id: str | None = None
        self.has_more = False
        self.next_cursor: str | None = None
        self._session_factory = session_factory
        self._send = send
        self._cache = cache
        self._mark_read_delay = settings.mark_read_delay_seconds if mark_read_delay is None else mark_read_delay
        self._page_size = page_size if page_size is not None else settings.message_page_size
        self._conversations_epoch = 0
        # Rows refetched while a full list load is in flight, re-applied on top of it.
        self._changes_during_load: dict[str, ConversationSummary | None] | None = None
        self._messages_epoch = 0
        self._conversation_subscription: Subscription | None = None
        self._message_subscription: Subscription | None = None
        self._message_pump: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def start(self) -> None:
        """Subscribe to the user's conversation feed and send the initial list."""

        self._conversation_subscription = self.hub.subscribe(conversation_topic(self.user_id))
        self._spawn(self._pump(self._conversation_subscription))
        await self.load_conversations()

    async def close(self) -> None:
        for subscription in (self._conversation_subscription, self._message_subscription):
            if subscription is not None:
                subscription.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def handle_command(self, command: dict[str, Any]) -> None:
        """Dispatch one client frame."""

        kind = command.get("type")
        if kind == "select":
            conversation_id = command.get("conversation_id")
            if not isinstance(conversation_id, str) or not conversation_id:
                await self._notify("error", "Invalid request", "conversation_id is required.")
                return
            await self.select_conversation(conversation_id)
        elif kind == "refresh":
            await self.load_conversations()
        elif kind == "load_more":
            await self.load_older_messages()
        else:
            await self._notify("error", "Invalid request", f"Unsupported command: {kind!r}.")

    async def load_conversations(self) -> bool:
        """Reload the whole conversation list; return False if the result was stale."""

        self._conversations_epoch += 1
        token = self._conversations_epoch
        self._changes_during_load = {}
        result = await run_in_threadpool(
            self._with_session, list_conversations, self.user_id, cache=self._cache
        )
        if token != self._conversations_epoch:
            logger.debug("realtime.stale_conversations_discarded user_id=%s", self.user_id)
            return False
        changes = self._changes_during_load or {}
        self._changes_during_load = None
        rows = {item.id: item for item in result.items}
        for conversation_id, summary in changes.items():
            if summary is None:
                rows.pop(conversation_id, None)
            else:
                rows[conversation_id] = summary
        self.conversations = sorted(rows.values(), key=_conversation_sort_key, reverse=True)
        await self._send(
            {
                "type": "conversations",
                "items": [item.model_dump(mode="json") for item in self.conversations],
                "notices": [notice.model_dump() for notice in result.notices],
            }
        )
        return True

    async def select_conversation(self, conversation_id: str) -> bool:
        """Make ``conversation_id`` active: subscribe, load history, merge live arrivals."""

        self._messages_epoch += 1
        token = self._messages_epoch
        self._drop_message_subscription()
        self.active_conversation_id = conversation_id
        self.messages = []
        self.has_more = False
        self.next_cursor = None

        # Subscribe before loading so nothing inserted during the load is missed.
        self._message_subscription = self.hub.subscribe(message_topic(conversation_id))
        self._message_pump = self._spawn(self._pump(self._message_subscription))

        notices: list[Notice] = []
        try:
            page = await run_in_threadpool(
                self._with_session,
                list_messages,
                conversation_id,
                self.user_id,
                limit=self._page_size,
                cache=self._cache,
            )
        except (ConversationNotFoundError, ConversationAccessError):
            if token == self._messages_epoch:
                self._drop_message_subscription()
                self.active_conversation_id = None
                await self._notify("error", "Conversation unavailable", "This conversation could not be opened.")
            return False
        except SQLAlchemyError:
            logger.exception(
                "realtime.messages_load_failed conversation_id=%s user_id=%s",
                conversation_id,
                self.user_id,
            )
            page = None
            notices.append(
                Notice(
                    level="error",
                    title="Could not load messages",
                    description="Message history is unavailable right now. Try again shortly.",
                )
            )

        if token != self._messages_epoch:
            logger.debug(
                "realtime.stale_messages_discarded conversation_id=%s user_id=%s",
                conversation_id,
                self.user_id,
            )
            return False

        if page is not None:
            self._merge_messages(page.items)
            self.has_more = page.has_more
            self.next_cursor = page.next_cursor
            notices.extend(page.notices)
        await self._send(
            {
                "type": "messages",
                "conversation_id": conversation_id,
                "items": [item.model_dump(mode="json") for item in self.messages],
                "has_more": self.has_more,
                "next_cursor": self.next_cursor,
                "notices": [notice.model_dump() for notice in notices],
            }
        )
        return True

    async def load_older_messages(self) -> bool:
        """Prepend the page of history before the oldest loaded message."""

        conversation_id = self.active_conversation_id
        if conversation_id is None or not self.has_more or self.next_cursor is None:
            return False
        token = self._messages_epoch
        try:
            page = await run_in_threadpool(
                self._with_session,
                list_messages,
                conversation_id,
                self.user_id,
                limit=self._page_size,
                before=self.next_cursor,
                cache=self._cache,
            )
        except (ConversationNotFoundError, ConversationAccessError, MessageNotFoundError, SQLAlchemyError):
            logger.exception(
                "realtime.older_messages_failed conversation_id=%s user_id=%s",
                conversation_id,
                self.user_id,
            )
            await self._notify("error", "Could not load messages", "Older messages are unavailable right now.")
            return False
        if token != self._messages_epoch:
            return False
        if page.notices and not page.items:
            for notice in page.notices:
                await self._send({"type": "notice", "notice": notice.model_dump()})
            return False
        self._merge_messages(page.items)
        self.has_more = page.has_more
        self.next_cursor = page.next_cursor
        await self._send(
            {
                "type": "older_messages",
                "conversation_id": conversation_id,
                "items": [item.model_dump(mode="json") for item in page.items],
                "has_more": self.has_more,
                "next_cursor": self.next_cursor,
            }
        )
        return True

    async def handle_event(self, event: RealtimeEvent) -> None:
        if isinstance(event, MessageInserted):
            await self.handle_message_inserted(event)
        elif isinstance(event, ConversationChanged):
            await self.handle_conversation_changed(event)

    async def handle_message_inserted(self, event: MessageInserted) -> bool:
        """Append a live message once; return False when it was ignored."""

        message = event.message
        if message.conversation_id != self.active_conversation_id or self._has_message(message.id):
            return False

        sender_name = message.sender_name
        if sender_name is None:
            try:
                sender_name = await run_in_threadpool(
                    self._with_session, resolve_display_name, message.sender_id, cache=self._cache
                )
            except SQLAlchemyError:
                logger.exception(
                    "realtime.sender_name_failed message_id=%s sender_id=%s",
                    message.id,
                    message.sender_id,
                )
                sender_name = get_settings().default_display_name
        # Re-check after the await: the view may have changed or the load may have delivered it.
        if message.conversation_id != self.active_conversation_id or self._has_message(message.id):
            return False

        item = message.model_copy(update={"sender_name": sender_name})
        bisect.insort(self.messages, item, key=_message_sort_key)
        await self._send({"type": "message", "item": item.model_dump(mode="json")})

        if item.sender_id != self.user_id and not item.read:
            self._spawn(self._mark_read_later(item.id, item.conversation_id))
        return True

    async def handle_conversation_changed(self, event: ConversationChanged) -> None:
        """Refetch only the changed row and upsert it into the list."""

        try:
            summary = await run_in_threadpool(
                self._with_session,
                get_conversation_summary,
                event.conversation_id,
                self.user_id,
                cache=self._cache,
            )
        except SQLAlchemyError:
            logger.exception(
                "realtime.conversation_refresh_failed conversation_id=%s user_id=%s",
                event.conversation_id,
                self.user_id,
            )
            await self._notify("error", "Could not refresh conversations", "The conversation list may be out of date.")
            return

        if self._changes_during_load is not None:
            self._changes_during_load[event.conversation_id] = summary
        self.conversations = [item for item in self.conversations if item.id != event.conversation_id]
        if summary is None:
            await self._send({"type": "conversation_removed", "id": event.conversation_id})
            return
        self.conversations.append(summary)
        self.conversations.sort(key=_conversation_sort_key, reverse=True)
        await self._send({"type": "conversation", "item": summary.model_dump(mode="json")})

    async def _mark_read_later(self, message_id: str, conversation_id: str) -> None:
        await asyncio.sleep(self._mark_read_delay)
        try:
            await run_in_threadpool(self._with_session, mark_message_read, message_id, self.user_id)
        except (MessageNotFoundError, ConversationNotFoundError, ConversationAccessError, SQLAlchemyError):
            logger.exception("realtime.mark_read_failed message_id=%s user_id=%s", message_id, self.user_id)
            await self._notify("error", "Could not update read status", "A message could not be marked as read.")
            return
        if conversation_id != self.active_conversation_id:
            return
        for index, item in enumerate(self.messages):
            if item.id == message_id:
                self.messages[index] = item.model_copy(update={"read": True})
                await self._send({"type": "message_read", "id": message_id})
                break

    async def _pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self.handle_event(event)
            except SQLAlchemyError:
                logger.exception(
                    "realtime.event_failed user_id=%s topic=%s event=%s",
                    self.user_id,
                    subscription.topic,
                    type(event).__name__,
                )
            if subscription.take_dropped():
                await self._catch_up(subscription)

    async def _catch_up(self, subscription: Subscription) -> None:
        """Reload state after events were lost to a full queue."""

        if subscription is self._conversation_subscription:
            await self.load_conversations()
            return
        conversation_id = self.active_conversation_id
        if subscription is not self._message_subscription or conversation_id is None:
            return
        token = self._messages_epoch
        try:
            page = await run_in_threadpool(
                self._with_session,
                list_messages,
                conversation_id,
                self.user_id,
                limit=self._page_size,
                cache=self._cache,
            )
        except (ConversationNotFoundError, ConversationAccessError):
            logger.exception(
                "realtime.catch_up_failed conversation_id=%s user_id=%s",
                conversation_id,
                self.user_id,
            )
            return
        if token != self._messages_epoch:
            return
        self._merge_messages(page.items)
        await self._send(
            {
                "type": "messages",
                "conversation_id": conversation_id,
                "items": [item.model_dump(mode="json") for item in self.messages],
                "has_more": self.has_more,
                "next_cursor": self.next_cursor,
                "notices": [notice.model_dump() for notice in page.notices],
            }
        )

    async def _notify(self, level: str, title: str, description: str) -> None:
        notice = Notice(level=level, title=title, description=description)
        await self._send({"type": "notice", "notice": notice.model_dump()})

    def _merge_messages(self, items: list[MessageRead]) -> None:
        merged = {item.id: item for item in items}
        # Live copies win: they may already carry a read flip.
        merged.update({item.id: item for item in self.messages})
        self.messages = sorted(merged.values(), key=_message_sort_key)

    def _has_message(self, message_id: str) -> bool:
        return any(item.id == message_id for item in self.messages)

    def _drop_message_subscription(self) -> None:
        if self._message_subscription is not None:
            self._message_subscription.close()
            self._message_subscription = None
        if self._message_pump is not None:
            self._message_pump.cancel()
            self._message_pump = None

    def _with_session(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        db: Session = self._session_factory()
        try:
            return fn(db, *args, **kwargs)
        finally:
            db.close()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "realtime.session_task_failed user_id=%s error=%r",
                self.user_id,
                exc,
                exc_info=exc,
            )
