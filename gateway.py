"""
gateway.py — Scoped reads and writes across the metadata store and the blob store.

The two stores have no shared transaction. Writes go blob-first with a
compensating blob delete if the metadata insert fails; deletes go
metadata-first so listings stop showing an item even if blob removal lags.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import config
from database import session_scope, utc_now
from errors import ParseFailure, QuotaExceeded, StorageWriteFailure
from file_service import (
    STORAGE_VERSION,
    build_storage_path,
    detect_mime,
    resolve_storage_path,
    sanitize_filename,
    sha256_hex,
)
from models import NetworkConnection, SharedFile, SharedText
from realtime import FILES, TEXTS, ChangeEvent
from retry import with_retry

logger = logging.getLogger(__name__)


@dataclass
class DeleteOutcome:
    """Result of a user-visible delete. ``warnings`` lists blob-side problems."""
    deleted: int = 0
    blob_failures: list = field(default_factory=list)
    unparsed: list = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.blob_failures or self.unparsed)

    @property
    def warnings(self) -> list:
        return [f"blob not removed: {p}" for p in self.blob_failures] + \
               [f"no blob path for file {i}" for i in self.unparsed]


def _scoped(model, scope):
    return (model.scope_kind == scope.kind, model.scope_id == scope.id)


def file_record(f: SharedFile) -> dict:
    return {
        "id": f.id, "name": f.name, "size": f.size, "mime_type": f.mime_type,
        "url": f.url, "created_at": f.created_at.isoformat() if f.created_at else None,
    }


def text_record(t: SharedText) -> dict:
    return {
        "id": t.id, "content": t.content,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


class StorageGateway:

    def __init__(self, sessionmaker, blobs, feed=None, retry_delay: float = None):
        self.sessionmaker = sessionmaker
        self.blobs = blobs
        self.feed = feed
        self.retry_delay = retry_delay

    # ─── helpers ────────────────────────────────────────────────────────────

    def publish(self, table: str, op: str, scope, record: dict, origin: str = None):
        if self.feed is not None:
            self.feed.publish(ChangeEvent(table, op, scope, record, origin=origin))

    async def _retry(self, operation, what: str):
        return await with_retry(operation, what=what, delay=self.retry_delay)

    async def remove_blob(self, path: str) -> bool:
        try:
            return await asyncio.to_thread(self.blobs.delete, path)
        except Exception as e:
            logger.warning(f"Blob delete raised for {path}: {e}")
            return False

    def blob_path(self, shared_file: SharedFile) -> str:
        return resolve_storage_path(shared_file, self.blobs.bucket)

    # ─── files ──────────────────────────────────────────────────────────────

    async def list_files(self, scope, limit: int = None) -> list:
        if scope is None:
            return []
        limit = limit or config.LIST_LIMIT

        async def query():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(
                    select(SharedFile)
                    .where(*_scoped(SharedFile, scope))
                    .order_by(SharedFile.created_at.desc(), SharedFile.id)
                    .limit(limit)
                )
                return list(result.scalars().all())

        return await self._retry(query, f"list files for {scope}")

    async def count_files(self, scope) -> int:
        async def query():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(
                    select(func.count(SharedFile.id)).where(*_scoped(SharedFile, scope))
                )
                return result.scalar_one()

        return await self._retry(query, f"count files for {scope}")

    async def get_file(self, scope, file_id: str) -> Optional[SharedFile]:
        async with session_scope(self.sessionmaker) as session:
            result = await session.execute(
                select(SharedFile).where(SharedFile.id == file_id, *_scoped(SharedFile, scope))
            )
            return result.scalars().first()

    async def open_file(self, scope, file_id: str):
        """Returns ``(SharedFile, bytes)`` or None when either side is missing."""
        shared = await self.get_file(scope, file_id)
        if shared is None:
            return None
        try:
            path = self.blob_path(shared)
        except ParseFailure as e:
            logger.warning(f"Cannot locate blob for file {file_id}: {e}")
            return None
        data = await asyncio.to_thread(self.blobs.get, path)
        if data is None:
            logger.warning(f"Blob missing for file {file_id} at {path}")
            return None
        return shared, data

    async def insert_file(self, scope, name: str, data: bytes,
                          mime_type: str = None, origin: str = None) -> SharedFile:
        if not data:
            raise QuotaExceeded(f"{name!r} is empty", limit=config.MAX_FILE_SIZE)
        if len(data) > config.MAX_FILE_SIZE:
            raise QuotaExceeded(
                f"{name!r} exceeds the {config.MAX_FILE_SIZE} byte file size limit",
                limit=config.MAX_FILE_SIZE,
            )

        display_name = sanitize_filename(name)
        mime_type = mime_type or detect_mime(display_name)
        file_id = str(uuid.uuid4())
        path = build_storage_path(scope, file_id, display_name)

        async def put_blob():
            if not await asyncio.to_thread(self.blobs.put, path, data, mime_type):
                raise OSError(f"blob store rejected {path}")

        try:
            await self._retry(put_blob, f"upload blob {path}")
        except OSError as e:
            raise StorageWriteFailure(f"Could not store {display_name}: {e}", file_name=display_name) from e

        row = SharedFile(
            id=file_id,
            name=display_name,
            size=len(data),
            mime_type=mime_type,
            scope_kind=scope.kind,
            scope_id=scope.id,
            url=self.blobs.public_ref(path),
            storage_path=path,
            storage_version=STORAGE_VERSION,
            checksum_sha256=sha256_hex(data),
            created_at=utc_now(),
        )

        async def insert_row():
            async with session_scope(self.sessionmaker) as session:
                session.add(row)

        try:
            await self._retry(insert_row, f"insert metadata for {display_name}")
        except Exception as e:
            if not await self.remove_blob(path):
                logger.error(f"Orphan blob left behind at {path}")
            raise StorageWriteFailure(
                f"Could not save metadata for {display_name}: {e}", file_name=display_name
            ) from e

        logger.info(f"Stored {display_name} ({len(data)} bytes) in {scope}")
        self.publish(FILES, "INSERT", scope, file_record(row), origin)
        return row

    async def delete_file(self, scope, file_id: str, origin: str = None) -> DeleteOutcome:
        outcome = DeleteOutcome()

        async def delete_row():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(
                    select(SharedFile).where(SharedFile.id == file_id, *_scoped(SharedFile, scope))
                )
                shared = result.scalars().first()
                if shared is not None:
                    await session.delete(shared)
                return shared

        shared = await self._retry(delete_row, f"delete metadata for file {file_id}")
        if shared is None:
            return outcome
        outcome.deleted = 1
        self.publish(FILES, "DELETE", scope, {"id": file_id}, origin)
        await self._remove_blob_for(shared, outcome)
        return outcome

    async def delete_all_files(self, scope, origin: str = None) -> DeleteOutcome:
        outcome = DeleteOutcome()

        async def delete_rows():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(select(SharedFile).where(*_scoped(SharedFile, scope)))
                rows = list(result.scalars().all())
                if rows:
                    await session.execute(delete(SharedFile).where(*_scoped(SharedFile, scope)))
                return rows

        files = await self._retry(delete_rows, f"delete all files for {scope}")
        if not files:
            return outcome
        outcome.deleted = len(files)
        for f in files:
            await self._remove_blob_for(f, outcome)
            self.publish(FILES, "DELETE", scope, {"id": f.id}, origin)
        logger.info(f"Deleted {outcome.deleted} files from {scope}")
        return outcome

    async def _remove_blob_for(self, shared: SharedFile, outcome: DeleteOutcome):
        try:
            path = self.blob_path(shared)
        except ParseFailure as e:
            logger.warning(f"Metadata for {shared.id} removed but blob path unknown: {e}")
            outcome.unparsed.append(shared.id)
            return
        if not await self.remove_blob(path):
            logger.warning(f"Metadata for {shared.id} removed but blob delete failed: {path}")
            outcome.blob_failures.append(path)

    # ─── text ───────────────────────────────────────────────────────────────

    async def list_text(self, scope) -> Optional[SharedText]:
        if scope is None:
            return None

        async def query():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(
                    select(SharedText)
                    .where(*_scoped(SharedText, scope))
                    .order_by(SharedText.updated_at.desc())
                )
                return result.scalars().first()

        return await self._retry(query, f"load text for {scope}")

    async def upsert_text(self, scope, content: str, origin: str = None) -> SharedText:
        if len(content) > config.MAX_TEXT_LENGTH:
            raise QuotaExceeded(
                f"Text exceeds {config.MAX_TEXT_LENGTH} characters", limit=config.MAX_TEXT_LENGTH
            )

        async def write():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(
                    select(SharedText)
                    .where(*_scoped(SharedText, scope))
                    .order_by(SharedText.updated_at.desc())
                )
                rows = list(result.scalars().all())
                if rows:
                    row, extras = rows[0], rows[1:]
                    for extra in extras:
                        # Left over from a store without the unique constraint.
                        await session.delete(extra)
                    row.content = content
                    row.updated_at = utc_now()
                    op = "UPDATE"
                else:
                    row = SharedText(
                        content=content, scope_kind=scope.kind, scope_id=scope.id,
                        updated_at=utc_now(),
                    )
                    session.add(row)
                    op = "INSERT"
            return row, op

        try:
            try:
                row, op = await self._retry(write, f"save text for {scope}")
            except IntegrityError:
                # Another writer inserted the scope's row first; this write becomes an update.
                logger.info(f"Concurrent first write for {scope}; retrying as update")
                row, op = await self._retry(write, f"save text for {scope}")
        except (SQLAlchemyError, OSError) as e:
            raise StorageWriteFailure(f"Could not save text: {e}") from e

        self.publish(TEXTS, op, scope, text_record(row), origin)
        return row

    # ─── network connections ────────────────────────────────────────────────

    async def register_connection(self, ip: str, prefix: str) -> NetworkConnection:
        async def write():
            async with session_scope(self.sessionmaker) as session:
                result = await session.execute(
                    select(NetworkConnection).where(NetworkConnection.ip_address == ip)
                )
                conn = result.scalars().first()
                if conn is None:
                    conn = NetworkConnection(ip_address=ip, network_prefix=prefix)
                    session.add(conn)
                    logger.info(f"New connection from network {prefix}")
                else:
                    conn.network_prefix = prefix
                    conn.last_active = utc_now()
            return conn

        try:
            return await self._retry(write, f"register connection {ip}")
        except IntegrityError:
            return await self._retry(write, f"register connection {ip}")
