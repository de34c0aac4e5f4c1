"""
sweeper.py — Daily purge of expired shared items from both stores.

Run once:        python -m sweeper --once
Run on schedule: python -m sweeper --loop

The cutoff is always computed in REFERENCE_TZ so the writer's and the
sweeper's clocks agree on when an item expires. One bad row never aborts a
sweep; its error is counted and logged and the next run tries again.
"""

import argparse
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select

import config
from database import as_utc, init_db, make_engine, make_sessionmaker, session_scope, utc_now
from errors import ParseFailure
from file_service import CHUNK_PREFIX, STORAGE_VERSION, chunk_path
from gateway import StorageGateway
from models import NetworkConnection, SharedFile, SharedText, UploadSession
from realtime import FILES, TEXTS
from scope import Scope
from storage import StorageBackend

logger = logging.getLogger(__name__)


def expires_at(created_at: datetime, retention: timedelta = None) -> datetime:
    """When an item written at ``created_at`` becomes eligible for the sweep."""
    return as_utc(created_at) + (retention or config.retention_window())


def days_remaining(created_at: datetime, now: datetime = None, retention: timedelta = None) -> float:
    now = now or utc_now()
    left = expires_at(created_at, retention) - as_utc(now)
    return max(round(left.total_seconds() / 86400, 2), 0.0)


@dataclass
class SweepSummary:
    cutoff: datetime = None
    files_deleted: int = 0
    files_failed: int = 0
    texts_deleted: int = 0
    connections_deleted: int = 0
    sessions_deleted: int = 0
    orphans_deleted: int = 0
    duration: float = 0.0
    errors: list = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return (self.files_deleted + self.texts_deleted + self.connections_deleted
                + self.sessions_deleted + self.orphans_deleted)

    def as_dict(self) -> dict:
        return {
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "files_deleted": self.files_deleted,
            "files_failed": self.files_failed,
            "texts_deleted": self.texts_deleted,
            "connections_deleted": self.connections_deleted,
            "sessions_deleted": self.sessions_deleted,
            "orphans_deleted": self.orphans_deleted,
            "duration": round(self.duration, 3),
            "errors": list(self.errors),
        }


class ExpirySweeper:

    def __init__(self, gateway: StorageGateway, retention: timedelta = None, tz: str = None):
        self.gateway = gateway
        self.retention = retention or config.retention_window()
        self.tz = ZoneInfo(tz or config.REFERENCE_TZ)

    def cutoff(self, now: datetime = None) -> datetime:
        now = now.astimezone(self.tz) if now else datetime.now(self.tz)
        return as_utc(now - self.retention)

    async def sweep(self, now: datetime = None) -> SweepSummary:
        started = time.monotonic()
        summary = SweepSummary(cutoff=self.cutoff(now))

        for step in (self._sweep_files, self._sweep_texts, self._sweep_connections,
                     self._sweep_upload_sessions, self._sweep_orphans):
            try:
                await step(summary)
            except Exception as e:
                summary.errors.append(f"{step.__name__}: {e}")
                logger.error(f"Sweep step {step.__name__} failed: {e}")

        summary.duration = time.monotonic() - started
        logger.info(
            f"Sweep done: cutoff={summary.cutoff.isoformat()} files={summary.files_deleted} "
            f"(failed {summary.files_failed}) texts={summary.texts_deleted} "
            f"connections={summary.connections_deleted} sessions={summary.sessions_deleted} "
            f"orphans={summary.orphans_deleted} errors={len(summary.errors)} "
            f"in {summary.duration:.2f}s"
        )
        return summary

    async def _sweep_files(self, summary: SweepSummary):
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                select(SharedFile).where(SharedFile.created_at < summary.cutoff)
            )
            expired = list(result.scalars().all())

        for shared in expired:
            try:
                await self._expire_file(shared)
                summary.files_deleted += 1
            except Exception as e:
                summary.files_failed += 1
                summary.errors.append(f"file {shared.id}: {e}")
                logger.error(f"Could not expire file {shared.id}: {e}")

    async def _expire_file(self, shared: SharedFile):
        try:
            path = self.gateway.blob_path(shared)
        except ParseFailure as e:
            # No object name can be derived; the row still goes.
            logger.warning(f"Expiring {shared.id} without blob path: {e}")
            path = None
        if path is not None and not await self.gateway.remove_blob(path):
            raise OSError(f"blob delete failed for {path}")

        async with session_scope(self.gateway.sessionmaker) as session:
            await session.execute(delete(SharedFile).where(SharedFile.id == shared.id))
        self.gateway.publish(FILES, "DELETE", Scope(shared.scope_kind, shared.scope_id), {"id": shared.id})

    async def _sweep_texts(self, summary: SweepSummary):
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                select(SharedText).where(SharedText.updated_at < summary.cutoff)
            )
            stale = list(result.scalars().all())
            if stale:
                await session.execute(
                    delete(SharedText).where(SharedText.id.in_([t.id for t in stale]))
                )
        summary.texts_deleted = len(stale)
        for row in stale:
            self.gateway.publish(TEXTS, "DELETE", Scope(row.scope_kind, row.scope_id), {"id": row.id})

    async def _sweep_connections(self, summary: SweepSummary):
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                delete(NetworkConnection).where(NetworkConnection.last_active < summary.cutoff)
            )
            summary.connections_deleted = result.rowcount or 0

    async def _sweep_upload_sessions(self, summary: SweepSummary):
        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                select(UploadSession).where(UploadSession.created_at < summary.cutoff)
            )
            stale = list(result.scalars().all())

        for upload in stale:
            try:
                for i in range(upload.total_chunks):
                    await self.gateway.remove_blob(chunk_path(upload.id, i))
                async with session_scope(self.gateway.sessionmaker) as session:
                    await session.execute(delete(UploadSession).where(UploadSession.id == upload.id))
                summary.sessions_deleted += 1
            except Exception as e:
                summary.errors.append(f"upload session {upload.id}: {e}")
                logger.error(f"Could not expire upload session {upload.id}: {e}")

    async def _sweep_orphans(self, summary: SweepSummary):
        blobs = await asyncio.to_thread(self.gateway.blobs.list, f"v{STORAGE_VERSION}/")
        candidates = [b for b in blobs if as_utc(b.modified) < summary.cutoff]
        if not candidates:
            return

        async with session_scope(self.gateway.sessionmaker) as session:
            result = await session.execute(
                select(SharedFile.storage_path).where(SharedFile.storage_path.is_not(None))
            )
            referenced = set(result.scalars().all())

        for blob in candidates:
            if blob.path in referenced or blob.path.startswith(f"{CHUNK_PREFIX}/"):
                continue
            if await self.gateway.remove_blob(blob.path):
                summary.orphans_deleted += 1
            else:
                summary.errors.append(f"orphan {blob.path}: delete failed")


async def _sweep_with_defaults(retention: timedelta = None) -> SweepSummary:
    engine = make_engine()
    try:
        await init_db(engine)
        gateway = StorageGateway(make_sessionmaker(engine), StorageBackend())
        return await ExpirySweeper(gateway, retention=retention).sweep()
    finally:
        await engine.dispose()


def run_sweep() -> SweepSummary:
    """Scheduler entry point: configured stores, no arguments, never raises."""
    try:
        return asyncio.run(_sweep_with_defaults())
    except Exception as e:
        logger.error(f"Sweep aborted: {e}")
        return SweepSummary(errors=[str(e)])


def seconds_until_next_run(now: datetime = None, at: str = None, tz: str = None) -> float:
    zone = ZoneInfo(tz or config.REFERENCE_TZ)
    now = now.astimezone(zone) if now else datetime.now(zone)
    hour, minute = (int(x) for x in (at or config.SWEEP_AT).split(":"))
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def run_forever(retention: timedelta = None, gateway: StorageGateway = None):
    """Sweep daily. With a gateway, deletes are published on its change feed."""
    while True:
        wait = seconds_until_next_run()
        logger.info(f"Next sweep in {wait / 3600:.1f}h ({config.SWEEP_AT} {config.REFERENCE_TZ})")
        await asyncio.sleep(wait)
        try:
            if gateway is not None:
                await ExpirySweeper(gateway, retention=retention).sweep()
            else:
                await _sweep_with_defaults(retention)
        except Exception as e:
            logger.error(f"Sweep aborted: {e}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Delete expired BridgeSpace files and text.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="run a single sweep and exit (default)")
    mode.add_argument("--loop", action="store_true", help=f"sweep daily at {config.SWEEP_AT} {config.REFERENCE_TZ}")
    parser.add_argument("--retention-days", type=float, default=None,
                        help=f"override retention window (default {config.RETENTION_DAYS})")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    retention = timedelta(days=args.retention_days) if args.retention_days else None

    if args.loop:
        asyncio.run(run_forever(retention))
        return 0

    try:
        summary = asyncio.run(_sweep_with_defaults(retention))
    except Exception as e:
        logger.error(f"Sweep aborted: {e}")
        return 1
    return 1 if summary.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
