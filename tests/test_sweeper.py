"""Tests for the expiry sweeper."""

import os
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

import config
import sweeper
from database import session_scope, utc_now
from models import NetworkConnection, SharedFile, SharedText, UploadSession
from realtime import FILES, TEXTS
from scope import Scope
from sweeper import ExpirySweeper, days_remaining, expires_at, seconds_until_next_run
from text_sync import SaveState, TextSession
from uploads import ResumableUploads


async def age_file(sessionmaker, file_id, days):
    async with session_scope(sessionmaker) as session:
        await session.execute(
            update(SharedFile).where(SharedFile.id == file_id)
            .values(created_at=utc_now() - timedelta(days=days))
        )


async def age_text(sessionmaker, scope, days):
    async with session_scope(sessionmaker) as session:
        await session.execute(
            update(SharedText).where(SharedText.scope_id == scope.id)
            .values(updated_at=utc_now() - timedelta(days=days))
        )


def age_blob(blobs, path, days):
    stamp = time.time() - days * 86400
    os.utime(blobs._local_path(path), (stamp, stamp))


@pytest.fixture
def two_day_sweeper(gateway):
    return ExpirySweeper(gateway, retention=timedelta(days=2))


class TestSweep:

    @pytest.mark.asyncio
    async def test_old_file_deleted_recent_file_kept(self, gateway, blobs, sessionmaker, net, two_day_sweeper):
        old = await gateway.insert_file(net, "old.txt", b"old")
        recent = await gateway.insert_file(net, "recent.txt", b"new")
        await age_file(sessionmaker, old.id, 3)
        await age_file(sessionmaker, recent.id, 1)

        summary = await two_day_sweeper.sweep()

        assert summary.files_deleted == 1
        assert [f.name for f in await gateway.list_files(net)] == ["recent.txt"]
        assert not blobs.exists(old.storage_path)
        assert blobs.exists(recent.storage_path)

    @pytest.mark.asyncio
    async def test_second_sweep_deletes_nothing(self, gateway, sessionmaker, net, two_day_sweeper):
        old = await gateway.insert_file(net, "old.txt", b"old")
        await gateway.upsert_text(net, "stale")
        await age_file(sessionmaker, old.id, 3)
        await age_text(sessionmaker, net, 3)

        first = await two_day_sweeper.sweep()
        second = await two_day_sweeper.sweep()

        assert first.files_deleted == 1
        assert first.texts_deleted == 1
        assert second.total_deleted == 0
        assert second.errors == []

    @pytest.mark.asyncio
    async def test_stale_text_deleted_fresh_text_kept(self, gateway, net, other_net, two_day_sweeper, sessionmaker):
        await gateway.upsert_text(net, "stale")
        await gateway.upsert_text(other_net, "fresh")
        await age_text(sessionmaker, net, 5)

        summary = await two_day_sweeper.sweep()

        assert summary.texts_deleted == 1
        assert await gateway.list_text(net) is None
        assert (await gateway.list_text(other_net)).content == "fresh"

    @pytest.mark.asyncio
    async def test_one_bad_row_does_not_stop_sweep(self, gateway, blobs, sessionmaker, net, two_day_sweeper):
        stuck = await gateway.insert_file(net, "stuck.txt", b"a")
        fine = await gateway.insert_file(net, "fine.txt", b"b")
        for f in (stuck, fine):
            await age_file(sessionmaker, f.id, 3)
        blobs.fail_delete.add(stuck.storage_path)

        summary = await two_day_sweeper.sweep()

        assert summary.files_deleted == 1
        assert summary.files_failed == 1
        assert len(summary.errors) == 1
        assert [f.name for f in await gateway.list_files(net)] == ["stuck.txt"]

        blobs.fail_delete.clear()
        retry = await two_day_sweeper.sweep()
        assert retry.files_deleted == 1
        assert await gateway.list_files(net) == []

    @pytest.mark.asyncio
    async def test_missing_blob_counts_as_deleted(self, gateway, blobs, sessionmaker, net, two_day_sweeper):
        old = await gateway.insert_file(net, "old.txt", b"old")
        await age_file(sessionmaker, old.id, 3)
        blobs.delete(old.storage_path)

        summary = await two_day_sweeper.sweep()

        assert summary.files_deleted == 1
        assert summary.errors == []

    @pytest.mark.asyncio
    async def test_unparseable_legacy_row_still_expires(self, gateway, sessionmaker, net, two_day_sweeper):
        async with session_scope(sessionmaker) as session:
            session.add(SharedFile(
                id="legacy", name="odd.txt", size=1, mime_type="text/plain",
                scope_kind=net.kind, scope_id=net.id, url="https://elsewhere.example.com/odd.txt",
                created_at=utc_now() - timedelta(days=4),
            ))

        summary = await two_day_sweeper.sweep()

        assert summary.files_deleted == 1
        assert await gateway.list_files(net) == []

    @pytest.mark.asyncio
    async def test_idle_connections_purged(self, gateway, sessionmaker, two_day_sweeper):
        await gateway.register_connection("10.0.0.5", "10.0.0")
        await gateway.register_connection("10.0.1.5", "10.0.1")
        async with session_scope(sessionmaker) as session:
            await session.execute(
                update(NetworkConnection).where(NetworkConnection.ip_address == "10.0.0.5")
                .values(last_active=utc_now() - timedelta(days=3))
            )

        summary = await two_day_sweeper.sweep()

        assert summary.connections_deleted == 1
        async with session_scope(sessionmaker) as session:
            left = (await session.execute(select(NetworkConnection.ip_address))).scalars().all()
        assert left == ["10.0.1.5"]

    @pytest.mark.asyncio
    async def test_stale_upload_sessions_and_chunks_purged(self, gateway, blobs, sessionmaker, net, two_day_sweeper):
        uploads = ResumableUploads(gateway)
        upload = await uploads.create_session(net, "a.bin", total_chunks=2, chunk_size=4, total_size=8)
        await uploads.put_chunk(net, upload.id, 0, b"aaaa")
        async with session_scope(sessionmaker) as session:
            await session.execute(
                update(UploadSession).where(UploadSession.id == upload.id)
                .values(created_at=utc_now() - timedelta(days=3))
            )

        summary = await two_day_sweeper.sweep()

        assert summary.sessions_deleted == 1
        assert blobs.list("chunks/") == []
        assert await uploads.status(net, upload.id) is None

    @pytest.mark.asyncio
    async def test_old_orphan_blobs_removed(self, gateway, blobs, net, two_day_sweeper):
        kept = await gateway.insert_file(net, "kept.txt", b"kept")
        blobs.put("v2/0000000000000000/orphan.txt", b"orphan")
        blobs.put("v2/0000000000000000/young-orphan.txt", b"orphan")
        age_blob(blobs, "v2/0000000000000000/orphan.txt", 3)
        age_blob(blobs, kept.storage_path, 3)

        summary = await two_day_sweeper.sweep()

        assert summary.orphans_deleted == 1
        assert not blobs.exists("v2/0000000000000000/orphan.txt")
        assert blobs.exists("v2/0000000000000000/young-orphan.txt")
        assert blobs.exists(kept.storage_path)

    @pytest.mark.asyncio
    async def test_private_spaces_swept_too(self, gateway, sessionmaker, two_day_sweeper):
        room = Scope.private("room")
        old = await gateway.insert_file(room, "old.txt", b"old")
        await age_file(sessionmaker, old.id, 3)

        await two_day_sweeper.sweep()

        assert await gateway.list_files(room) == []


class TestClock:

    def test_cutoff_is_retention_before_now(self):
        now = datetime(2026, 1, 10, 0, 0, tzinfo=timezone.utc)
        cutoff = ExpirySweeper(None, retention=timedelta(days=2)).cutoff(now)
        assert cutoff == datetime(2026, 1, 8, 0, 0, tzinfo=timezone.utc)
        assert cutoff.utcoffset() == timedelta(0)

    def test_next_run_at_midnight_reference_time(self):
        # 18:00 UTC is 23:30 in Asia/Kolkata.
        now = datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now, at="00:00", tz="Asia/Kolkata") == 1800

    def test_next_run_rolls_to_tomorrow(self):
        now = datetime(2026, 1, 10, 18, 30, tzinfo=timezone.utc)
        assert seconds_until_next_run(now, at="00:00", tz="Asia/Kolkata") == 86400

    def test_expiry_helpers_share_retention(self):
        created = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        retention = timedelta(days=2)
        assert expires_at(created, retention) == datetime(2026, 1, 3, 12, 0, tzinfo=timezone.utc)
        assert days_remaining(created, now=created + timedelta(days=1), retention=retention) == 1.0
        assert days_remaining(created, now=created + timedelta(days=5), retention=retention) == 0.0

    def test_naive_timestamps_treated_as_utc(self):
        created = datetime(2026, 1, 1, 12, 0)
        assert expires_at(created, timedelta(days=2)).tzinfo is not None


class TestEntryPoints:

    @pytest.fixture
    def configured(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'sweep.db'}")
        monkeypatch.setattr(config, "USE_MINIO", False)
        monkeypatch.setattr(config, "LOCAL_UPLOAD_DIR", str(tmp_path / "blobs"))

    def test_run_sweep_needs_no_arguments(self, configured):
        summary = sweeper.run_sweep()
        assert summary.errors == []
        assert summary.total_deleted == 0

    def test_cli_once(self, configured):
        assert sweeper.main(["--once", "--retention-days", "7"]) == 0


class TestSweepEvents:

    @pytest.mark.asyncio
    async def test_deletes_reach_subscribers(self, gateway, feed, sessionmaker, net, two_day_sweeper):
        old = await gateway.insert_file(net, "old.txt", b"old")
        await gateway.upsert_text(net, "stale")
        await age_file(sessionmaker, old.id, 3)
        await age_text(sessionmaker, net, 3)
        seen = []
        feed.subscribe(net, seen.append)

        await two_day_sweeper.sweep()

        assert sorted((e.table, e.op) for e in seen) == [(FILES, "DELETE"), (TEXTS, "DELETE")]
        assert [e.record["id"] for e in seen if e.table == FILES] == [old.id]

    @pytest.mark.asyncio
    async def test_open_text_session_cleared_by_sweep(self, gateway, feed, sessionmaker, net, two_day_sweeper):
        await gateway.upsert_text(net, "stale")
        session = TextSession(gateway, net, feed=feed, debounce=30)
        await session.load()
        await age_text(sessionmaker, net, 3)

        await two_day_sweeper.sweep()

        assert session.get_content() == ""
        assert session.state == SaveState.SAVED

    @pytest.mark.asyncio
    async def test_one_bad_upload_session_does_not_stop_others(self, gateway, sessionmaker, net,
                                                                 two_day_sweeper, monkeypatch):
        uploads = ResumableUploads(gateway)
        stuck = await uploads.create_session(net, "a.bin", total_chunks=1, chunk_size=4, total_size=4)
        fine = await uploads.create_session(net, "b.bin", total_chunks=1, chunk_size=4, total_size=4)
        async with session_scope(sessionmaker) as session:
            await session.execute(
                update(UploadSession).values(created_at=utc_now() - timedelta(days=3))
            )
        remove_blob = gateway.remove_blob

        async def flaky_remove(path):
            if stuck.id in path:
                raise OSError("blob store unreachable")
            return await remove_blob(path)

        monkeypatch.setattr(gateway, "remove_blob", flaky_remove)

        summary = await two_day_sweeper.sweep()

        assert summary.sessions_deleted == 1
        assert len(summary.errors) == 1
        assert await uploads.status(net, fine.id) is None
        assert await uploads.status(net, stuck.id) is not None
