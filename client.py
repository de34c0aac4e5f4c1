"""
client.py — One client's sharing session: scope, lists, uploads, text, changes.

This is the surface a UI binds to. It owns a ScopeResolver, a RealtimeNotifier
bound to the active scope, and a TextSession for that scope, and keeps the
loaded file list and text on the SessionContext.
"""

import inspect
import logging
from typing import Callable, Optional

import config
from realtime import RealtimeNotifier
from scope import ScopeResolver, SessionContext
from text_sync import TextSession
from uploads import UploadCoordinator

logger = logging.getLogger(__name__)


class ShareClient:

    def __init__(self, gateway, feed, resolver: ScopeResolver = None,
                 debounce: float = None, coalesce_delay: float = None):
        self.gateway = gateway
        self.feed = feed
        self.context = resolver.context if resolver is not None else SessionContext()
        self.resolver = resolver or ScopeResolver(gateway=gateway, context=self.context)
        self.debounce = debounce
        self.notifier = RealtimeNotifier(feed, self.refresh, coalesce_delay=coalesce_delay)
        self.uploads = UploadCoordinator(gateway, on_complete=self._refresh_files)
        self.text: Optional[TextSession] = None
        self._change_callbacks = []

    @property
    def scope(self):
        return self.context.scope

    @property
    def files(self) -> list:
        return self.context.files

    @property
    def warnings(self) -> list:
        return self.context.warnings

    @staticmethod
    def limits() -> dict:
        return config.limits()

    async def connect(self, private_key: str = None):
        """Resolve the initial scope and load its items."""
        return await self.switch_scope(private_key)

    async def switch_scope(self, private_key: str = None):
        # Old scope is fully torn down before anything is loaded for the new one.
        self.context.clear_items()
        self.notifier.unbind()
        if self.text is not None:
            await self.text.close()
            self.text = None

        scope = await self.resolver.switch_scope(private_key)
        self.notifier.bind(scope)
        self.text = TextSession(self.gateway, scope, feed=self.feed, debounce=self.debounce)
        await self.text.load()
        await self.refresh(scope)
        logger.info(f"Client switched to {scope}")
        return scope

    async def refresh(self, scope=None):
        scope = scope or self.scope
        if scope is None or scope != self.scope:
            return
        await self._refresh_files(scope)
        if self.text is not None:
            self.context.text = self.text.get_content()
        for callback in list(self._change_callbacks):
            try:
                result = callback(self)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Change callback failed: {e}")

    async def _refresh_files(self, scope=None):
        scope = scope or self.scope
        files = await self.gateway.list_files(scope)
        if scope == self.scope:
            self.context.files = files

    def on_change(self, callback: Callable) -> Callable:
        """Register ``callback(client)`` to run after every refresh. Returns an unsubscribe."""
        self._change_callbacks.append(callback)

        def unsubscribe():
            if callback in self._change_callbacks:
                self._change_callbacks.remove(callback)

        return unsubscribe

    async def list_files(self, limit: int = None) -> list:
        return await self.gateway.list_files(self.scope, limit=limit)

    async def list_text(self):
        return await self.gateway.list_text(self.scope)

    async def submit_upload(self, sources: list, on_progress: Callable = None):
        return await self.uploads.submit(self.scope, sources, on_progress=on_progress)

    def set_text(self, text: str):
        self.text.set_content(text)

    def get_text(self) -> str:
        return self.text.get_content() if self.text is not None else ""

    async def save_text(self):
        return await self.text.save()

    async def delete_file(self, file_id: str):
        outcome = await self.gateway.delete_file(self.scope, file_id)
        self.context.files = [f for f in self.context.files if f.id != file_id]
        return outcome

    async def delete_all_files(self):
        outcome = await self.gateway.delete_all_files(self.scope)
        self.context.files = []
        return outcome

    async def close(self):
        self.notifier.unbind()
        if self.text is not None:
            await self.text.close()
            self.text = None
