"""
realtime.py — Scoped change feed and the coalescing refresh notifier.

The gateway publishes one ChangeEvent per committed write. Subscribers filter
by table and scope; the notifier turns a burst of events into one refresh.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import config
from database import utc_now

logger = logging.getLogger(__name__)

FILES = "shared_files"
TEXTS = "shared_texts"


@dataclass
class ChangeEvent:
    table: str
    op: str                 # INSERT | UPDATE | DELETE
    scope: object
    record: dict = field(default_factory=dict)
    origin: Optional[str] = None
    at: datetime = field(default_factory=utc_now)

    def as_dict(self) -> dict:
        return {
            "table": self.table,
            "op": self.op,
            "scope": self.scope.as_dict(),
            "record": self.record,
            "at": self.at.isoformat(),
        }


class Subscription:

    def __init__(self, feed: "ChangeFeed", tables: tuple, scope, callback: Callable):
        self._feed = feed
        self.tables = tables
        self.scope = scope
        self.callback = callback
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        return self.active and event.table in self.tables and event.scope == self.scope

    def close(self):
        if self.active:
            self.active = False
            self._feed._remove(self)


class ChangeFeed:
    """In-process change stream, filterable by table and scope equality."""

    def __init__(self):
        self._subs = []
        self._tasks = set()

    def subscribe(self, scope, callback: Callable, tables=(FILES, TEXTS)) -> Subscription:
        if isinstance(tables, str):
            tables = (tables,)
        sub = Subscription(self, tuple(tables), scope, callback)
        self._subs.append(sub)
        return sub

    def _remove(self, sub: Subscription):
        if sub in self._subs:
            self._subs.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def publish(self, event: ChangeEvent):
        for sub in list(self._subs):
            if not sub.matches(event):
                continue
            try:
                result = sub.callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                logger.error(f"Change subscriber failed for {event.table}/{event.op}: {e}")

    def _task_done(self, task: asyncio.Future):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async change subscriber failed: {task.exception()}")

    async def drain(self):
        """Wait for async subscriber callbacks still running."""
        while True:
            running = [t for t in self._tasks if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)


class RealtimeNotifier:
    """Binds one scope at a time and coalesces bursts into a single refresh."""

    def __init__(self, feed: ChangeFeed, on_refresh: Callable, coalesce_delay: float = None):
        self.feed = feed
        self.on_refresh = on_refresh
        self.coalesce_delay = config.REFRESH_COALESCE_SECONDS if coalesce_delay is None else coalesce_delay
        self.scope = None
        self.refresh_count = 0
        self._sub: Optional[Subscription] = None
        self._pending: Optional[asyncio.Task] = None
        self._dirty = False
        self._listeners = []

    def add_listener(self, callback: Callable):
        """Extra per-event callback (e.g. a text session wanting raw events)."""
        self._listeners.append(callback)

    def bind(self, scope):
        # Old subscription goes first so none of its late events reach the new scope.
        self.unbind()
        self.scope = scope
        self._sub = self.feed.subscribe(scope, self._on_event)
        logger.debug(f"Realtime bound to {scope}")

    def unbind(self):
        if self._sub is not None:
            self._sub.close()
            self._sub = None
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._dirty = False
        self.scope = None

    def _on_event(self, event: ChangeEvent):
        if event.scope != self.scope:
            return
        for listener in self._listeners:
            listener(event)
        self._dirty = True
        if self._pending is None or self._pending.done():
            self._pending = asyncio.ensure_future(self._refresh_later(event.scope))

    async def _refresh_later(self, scope):
        # Events arriving while a refresh runs trigger exactly one more pass.
        while self._dirty and scope == self.scope:
            await asyncio.sleep(self.coalesce_delay)
            if scope != self.scope:
                return
            self._dirty = False
            self.refresh_count += 1
            try:
                result = self.on_refresh(scope)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Refresh after change failed for {scope}: {e}")

    async def flush(self):
        """Wait for a pending coalesced refresh, if any."""
        if self._pending is not None and not self._pending.done():
            await self._pending
