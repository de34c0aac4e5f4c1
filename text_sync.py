"""
text_sync.py — Debounced, last-writer-wins editing of a scope's shared text.

One TextSession per client and scope. Edits are buffered and written after a
quiet period; a manual save cancels the pending debounce. At most one save is
in flight; edits made during it are written once it finishes. Remote changes
replace local state unless the row they carry is older than the one this
session last saw, compared by ``updated_at``.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

import config
from database import as_utc
from realtime import TEXTS

logger = logging.getLogger(__name__)


class SaveState(str, Enum):
    SAVED = "saved"
    UNSAVED = "unsaved"
    SAVING = "saving"


def _event_time(record: dict) -> Optional[datetime]:
    value = record.get("updated_at")
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except (TypeError, ValueError):
        return None


class TextSession:

    def __init__(self, gateway, scope, feed=None, debounce: float = None):
        self.gateway = gateway
        self.scope = scope
        self.debounce = config.TEXT_DEBOUNCE_SECONDS if debounce is None else debounce
        self.session_id = uuid.uuid4().hex
        self.content = ""
        self.last_saved = ""
        self.saved_at: Optional[datetime] = None
        self.last_error: Optional[Exception] = None
        self.save_count = 0

        self._debounce_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._resave = False
        self._remote_seen = 0
        self._sub = feed.subscribe(scope, self._on_remote, tables=TEXTS) if feed is not None else None

    @property
    def state(self) -> SaveState:
        if self._flush_task is not None and not self._flush_task.done():
            return SaveState.SAVING
        if self.content != self.last_saved:
            return SaveState.UNSAVED
        return SaveState.SAVED

    async def load(self) -> str:
        row = await self.gateway.list_text(self.scope)
        self.content = self.last_saved = row.content if row is not None else ""
        self.saved_at = as_utc(row.updated_at) if row is not None else None
        return self.content

    def get_content(self) -> str:
        return self.content

    def set_content(self, text: str):
        """Buffer a local edit and (re)start the debounce timer."""
        self.content = (text or "")[:config.MAX_TEXT_LENGTH]
        self._cancel_debounce()
        if self.content != self.last_saved:
            self._debounce_task = asyncio.ensure_future(self._debounced())

    async def save(self) -> SaveState:
        """Save now. Raises the store error if the write fails."""
        self._cancel_debounce()
        if self._flush_task is not None and not self._flush_task.done():
            self._resave = True
            await self._flush_task
        elif self.content != self.last_saved:
            self._flush_task = asyncio.ensure_future(self._flush())
            await self._flush_task

        if self.last_error is not None and self.content != self.last_saved:
            raise self.last_error
        return self.state

    async def close(self):
        self._cancel_debounce()
        if self._sub is not None:
            self._sub.close()
            self._sub = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task

    def _cancel_debounce(self):
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def _debounced(self):
        await asyncio.sleep(self.debounce)
        self._debounce_task = None
        self._request_save()

    def _request_save(self):
        if self._flush_task is not None and not self._flush_task.done():
            self._resave = True
            return
        self._flush_task = asyncio.ensure_future(self._flush())

    async def _flush(self):
        while True:
            self._resave = False
            content = self.content
            if content == self.last_saved:
                return
            remote_seen = self._remote_seen
            try:
                row = await self.gateway.upsert_text(self.scope, content, origin=self.session_id)
            except Exception as e:
                self.last_error = e
                logger.error(f"Saving text for {self.scope} failed: {e}")
                return
            self.last_error = None
            self.save_count += 1
            self._committed(content, as_utc(row.updated_at) if row is not None else None, remote_seen)
            if not self._resave:
                return

    def _committed(self, content: str, written_at: Optional[datetime], remote_seen: int):
        if self._remote_seen == remote_seen:
            self.last_saved = content
            self.saved_at = written_at
            return
        # A remote write was applied while this one was in flight.
        if written_at is not None and self.saved_at is not None and self.saved_at > written_at:
            return
        if self.content == self.last_saved:
            # No local edit since the remote one; the store holds what was just written.
            self.content = content
        self.last_saved = content
        self.saved_at = written_at

    def _on_remote(self, event):
        if event.origin == self.session_id:
            return
        content = "" if event.op == "DELETE" else event.record.get("content")
        if content is None:
            return
        at = _event_time(event.record)
        if at is not None and self.saved_at is not None and at < self.saved_at:
            logger.debug(f"Ignoring stale text update for {self.scope}")
            return
        # Last writer wins, including over unsaved local edits.
        self._cancel_debounce()
        self.content = self.last_saved = content
        self.saved_at = at
        self._remote_seen += 1
