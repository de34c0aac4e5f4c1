"""
uploads.py — Batch and resumable uploads into a scope.

Batches are validated up front (size, in-batch duplicates, scope quota), then
written one file at a time so the stored order matches the selection order.
Cancellation is cooperative: it is checked between files, never mid-write.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import select, update

import config
from database import session_scope
from errors import QuotaExceeded, StorageWriteFailure
from file_service import chunk_index, chunk_path, chunk_prefix, detect_mime, sanitize_filename, sha256_hex
from models import UploadSession

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UploadSource:
    name: str
    data: bytes
    mime_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadTask:
    source: UploadSource
    scope: object
    local_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: TaskState = TaskState.QUEUED
    file_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class UploadProgress:
    completed: int
    total: int
    current: Optional[str] = None

    @property
    def percent(self) -> float:
        return round(self.completed / self.total * 100, 1) if self.total else 100.0


@dataclass
class UploadReport:
    total: int
    completed: int = 0
    cancelled: bool = False
    failed_file: Optional[str] = None
    error: Optional[str] = None
    file_ids: list = field(default_factory=list)
    skipped_duplicates: int = 0

    @property
    def message(self) -> str:
        if self.failed_file:
            return f"Upload failed at {self.failed_file}: {self.error}"
        if self.cancelled:
            return f"Cancelled after uploading {self.completed} of {self.total} files"
        return f"Shared {self.completed} file{'s' if self.completed != 1 else ''}"


def dedupe(sources: list) -> list:
    """Drop repeats by (name, size), keeping the first one seen."""
    seen = set()
    unique = []
    for source in sources:
        key = (source.name, source.size)
        if key in seen:
            continue
        seen.add(key)
        unique.append(source)
    return unique


async def _maybe_await(result):
    if inspect.isawaitable(result):
        await result


class UploadBatch:
    """Handle for one submitted batch: progress, cancel, and the final report."""

    def __init__(self, gateway, scope, tasks: list, skipped: int = 0,
                 on_progress: Callable = None, on_complete: Callable = None, origin: str = None):
        self.gateway = gateway
        self.scope = scope
        self.tasks = tasks
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.origin = origin
        self.report = UploadReport(total=len(tasks), skipped_duplicates=skipped)
        self._cancel_requested = False
        self._runner: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._runner is not None and self._runner.done()

    def cancel(self):
        self._cancel_requested = True

    def start(self) -> "UploadBatch":
        self._runner = asyncio.ensure_future(self._run())
        return self

    async def wait(self) -> UploadReport:
        """Waits for the batch. Raises StorageWriteFailure if a file failed."""
        await self._runner
        if self.report.failed_file:
            raise StorageWriteFailure(self.report.message, file_name=self.report.failed_file)
        return self.report

    async def _emit(self, current: Optional[str]):
        if self.on_progress is not None:
            progress = UploadProgress(self.report.completed, self.report.total, current)
            try:
                await _maybe_await(self.on_progress(progress))
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    async def _run(self):
        for index, task in enumerate(self.tasks):
            if self._cancel_requested:
                for rest in self.tasks[index:]:
                    rest.state = TaskState.CANCELLED
                self.report.cancelled = True
                break

            task.state = TaskState.UPLOADING
            await self._emit(task.source.name)
            try:
                stored = await self.gateway.insert_file(
                    self.scope, task.source.name, task.source.data,
                    mime_type=task.source.mime_type, origin=self.origin,
                )
            except Exception as e:
                task.state = TaskState.FAILED
                task.error = str(e)
                self.report.failed_file = task.source.name
                self.report.error = str(e)
                for rest in self.tasks[index + 1:]:
                    rest.state = TaskState.CANCELLED
                logger.error(f"Batch upload stopped at {task.source.name}: {e}")
                break

            task.state = TaskState.SUCCEEDED
            task.file_id = stored.id
            self.report.completed += 1
            self.report.file_ids.append(stored.id)
            await self._emit(None)

        if self._cancel_requested and not self.report.failed_file:
            self.report.cancelled = self.report.completed < self.report.total
        logger.info(f"{self.report.message} in {self.scope}")

        if self.report.completed and self.on_complete is not None:
            try:
                await _maybe_await(self.on_complete(self.scope))
            except Exception as e:
                logger.warning(f"Refresh after upload failed: {e}")


class UploadCoordinator:

    def __init__(self, gateway, on_complete: Callable = None):
        self.gateway = gateway
        self.on_complete = on_complete

    async def validate(self, scope, sources: list):
        """Returns ``(unique_sources, duplicates_dropped)`` or raises QuotaExceeded."""
        if not sources:
            raise QuotaExceeded("No files selected", limit=config.MAX_FILES_PER_SCOPE)

        for source in sources:
            if source.size > config.MAX_FILE_SIZE:
                raise QuotaExceeded(
                    f"{source.name} is larger than the {config.MAX_FILE_SIZE // (1024 * 1024)} MB limit",
                    limit=config.MAX_FILE_SIZE,
                )
            if source.size == 0:
                raise QuotaExceeded(f"{source.name} is empty", limit=config.MAX_FILE_SIZE)

        unique = dedupe(sources)

        existing = await self.gateway.count_files(scope)
        remaining = max(config.MAX_FILES_PER_SCOPE - existing, 0)
        if len(unique) > remaining:
            raise QuotaExceeded(
                f"Only {remaining} more file{'s' if remaining != 1 else ''} can be shared here "
                f"(limit {config.MAX_FILES_PER_SCOPE} per space)",
                limit=config.MAX_FILES_PER_SCOPE,
                remaining=remaining,
            )
        return unique, len(sources) - len(unique)

    async def submit(self, scope, sources: list, on_progress: Callable = None,
                     origin: str = None) -> UploadBatch:
        unique, skipped = await self.validate(scope, sources)
        tasks = [UploadTask(source=s, scope=scope) for s in unique]
        batch = UploadBatch(
            self.gateway, scope, tasks, skipped=skipped,
            on_progress=on_progress, on_complete=self.on_complete, origin=origin,
        )
        return batch.start()


class ResumableUploads:
    """Chunked uploads that survive reconnects; chunks are kept in the blob store."""

    def __init__(self, gateway):
        self.gateway = gateway

    async def create_session(self, scope, filename: str, total_chunks: int, chunk_size: int,
                             total_size: int, expected_hash: str = None,
                             mime_type: str = None) -> UploadSession:
        if total_chunks < 1 or chunk_size < 1:
            raise QuotaExceeded("Upload must have at least one non-empty chunk")
        if total_size > config.MAX_FILE_SIZE:
            raise QuotaExceeded(
                f"{filename} is larger than the {config.MAX_FILE_SIZE} byte limit",
                limit=config.MAX_FILE_SIZE,
            )
        existing = await self.gateway.count_files(scope)
        if existing >= config.MAX_FILES_PER_SCOPE:
            raise QuotaExceeded(
                f"This space already holds {config.MAX_FILES_PER_SCOPE} files",
                limit=config.MAX_FILES_PER_SCOPE, remaining=0,
            )

        session_row = UploadSession(
            id=str(uuid.uuid4()),
            scope_kind=scope.kind,
            scope_id=scope.id,
            filename=sanitize_filename(filename),
            mime_type=mime_type or detect_mime(filename),
            total_chunks=total_chunks,
            chunk_size=chunk_size,
            total_size=total_size,
            expected_hash=expected_hash,
            received_chunk_indices="",
            status="in_progress",
        )
        async with session_scope(self.gateway.sessionmaker) as session:
            session.add(session_row)
        logger.info(f"Upload session {session_row.id} started: {total_chunks} chunks")
        return session_row

    async def status(self, scope, session_id: str) -> Optional[UploadSession]:
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                select(UploadSession).where(
                    UploadSession.id == session_id,
                    UploadSession.scope_kind == scope.kind,
                    UploadSession.scope_id == scope.id,
                )
            )
            return result.scalars().first()

    async def put_chunk(self, scope, session_id: str, index: int, data: bytes) -> UploadSession:
        upload = await self.status(scope, session_id)
        if upload is None:
            raise KeyError(session_id)
        if upload.status != "in_progress":
            return upload
        if not 0 <= index < upload.total_chunks:
            raise ValueError(f"Chunk index {index} out of range 0..{upload.total_chunks - 1}")
        if not data:
            raise ValueError(f"Chunk {index} is empty")
        if len(data) > upload.chunk_size:
            raise QuotaExceeded(
                f"Chunk {index} is {len(data)} bytes, over the declared {upload.chunk_size}",
                limit=upload.chunk_size,
            )

        if index not in upload.received:
            if not await asyncio.to_thread(self.gateway.blobs.put, chunk_path(session_id, index), data):
                raise StorageWriteFailure(f"Could not store chunk {index}", file_name=upload.filename)

        # Stored chunk blobs are the source of truth; concurrent chunks each see all earlier ones.
        received = await self._stored_chunks(upload)
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                select(UploadSession).where(UploadSession.id == session_id).with_for_update()
            )
            row = result.scalars().first()
            merged = row.received | received
            row.received_chunk_indices = ",".join(str(i) for i in sorted(merged))
        upload.received_chunk_indices = row.received_chunk_indices

        if not upload.missing and await self._claim(session_id):
            return await self._assemble(scope, upload)
        return upload

    async def _stored_chunks(self, upload: UploadSession) -> set:
        blobs = await asyncio.to_thread(self.gateway.blobs.list, chunk_prefix(upload.id))
        received = set()
        for blob in blobs:
            try:
                index = chunk_index(blob.path)
            except ValueError:
                continue
            if 0 <= index < upload.total_chunks:
                received.add(index)
        return received

    async def _claim(self, session_id: str) -> bool:
        """Moves the session to assembling; only one caller wins."""
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status == "in_progress")
                .values(status="assembling")
            )
            return result.rowcount == 1

    async def _assemble(self, scope, upload: UploadSession) -> UploadSession:
        upload.status = "assembling"
        parts = []
        for i in range(upload.total_chunks):
            part = await asyncio.to_thread(self.gateway.blobs.get, chunk_path(upload.id, i))
            if part is None:
                await self._fail(upload)
                raise StorageWriteFailure(f"Chunk {i} missing", file_name=upload.filename)
            parts.append(part)
        content = b"".join(parts)

        if len(content) != upload.total_size:
            await self._fail(upload)
            raise StorageWriteFailure(
                f"Assembled {len(content)} bytes, expected {upload.total_size}", file_name=upload.filename
            )
        if upload.expected_hash and upload.expected_hash != sha256_hex(content):
            await self._fail(upload)
            raise StorageWriteFailure("Integrity check failed", file_name=upload.filename)

        existing = await self.gateway.count_files(scope)
        if existing >= config.MAX_FILES_PER_SCOPE:
            await self._fail(upload)
            raise QuotaExceeded(
                f"This space filled up before {upload.filename} finished uploading",
                limit=config.MAX_FILES_PER_SCOPE, remaining=0,
            )

        try:
            stored = await self.gateway.insert_file(scope, upload.filename, content, upload.mime_type)
        except Exception:
            await self._finish(upload.id, "in_progress")
            upload.status = "in_progress"
            raise
        await self._finish(upload.id, "complete", stored.id)
        upload.status = "complete"
        upload.file_id = stored.id

        await self._remove_chunks(upload)
        logger.info(f"Upload session {upload.id} assembled into file {stored.id}")
        return upload

    async def _fail(self, upload: UploadSession):
        await self._finish(upload.id, "failed")
        upload.status = "failed"
        await self._remove_chunks(upload)

    async def _remove_chunks(self, upload: UploadSession):
        for i in range(upload.total_chunks):
            await self.gateway.remove_blob(chunk_path(upload.id, i))

    async def _finish(self, session_id: str, status: str, file_id: str = None):
        async with session_scope(self.gateway.sessionmaker) as session:
            row = await session.get(UploadSession, session_id)
            row.status = status
            row.file_id = file_id
