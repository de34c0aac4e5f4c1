"""Tests for the storage gateway: scoped files and text across both stores."""

import asyncio

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError

import config
from database import session_scope
from errors import QuotaExceeded, StorageWriteFailure
from models import NetworkConnection, SharedFile, SharedText
from realtime import FILES, TEXTS
from retry import with_retry
from scope import Scope


async def count_rows(sessionmaker, model):
    async with session_scope(sessionmaker) as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestFiles:

    @pytest.mark.asyncio
    async def test_upload_and_list(self, gateway, blobs, net):
        await gateway.insert_file(net, "a.txt", b"hello world!")

        files = await gateway.list_files(Scope.network("10.0.0"))

        assert len(files) == 1
        assert files[0].name == "a.txt"
        assert files[0].size == 12
        assert files[0].mime_type == "text/plain"
        assert files[0].storage_path.startswith("v2/")
        assert blobs.get(files[0].storage_path) == b"hello world!"

    @pytest.mark.asyncio
    async def test_list_is_newest_first(self, gateway, net):
        for name in ("first.txt", "second.txt", "third.txt"):
            await gateway.insert_file(net, name, b"x")

        names = [f.name for f in await gateway.list_files(net)]

        assert names == ["third.txt", "second.txt", "first.txt"]

    @pytest.mark.asyncio
    async def test_list_limit(self, gateway, net):
        for i in range(3):
            await gateway.insert_file(net, f"{i}.txt", b"x")
        assert len(await gateway.list_files(net, limit=2)) == 2

    @pytest.mark.asyncio
    async def test_unresolved_scope_lists_nothing(self, gateway):
        assert await gateway.list_files(None) == []
        assert await gateway.list_text(None) is None

    @pytest.mark.asyncio
    async def test_scope_isolation(self, gateway, net, other_net):
        private = Scope.private("10.0.0")
        await gateway.insert_file(net, "mine.txt", b"abc")
        await gateway.upsert_text(net, "network text")

        assert await gateway.list_files(other_net) == []
        assert await gateway.list_files(private) == []
        assert await gateway.list_text(other_net) is None
        assert await gateway.list_text(private) is None
        assert await gateway.count_files(net) == 1

    @pytest.mark.asyncio
    async def test_display_name_sanitised(self, gateway, net):
        stored = await gateway.insert_file(net, "../secret/naïve.txt", b"abc")
        assert stored.name == "nave.txt"

    @pytest.mark.asyncio
    async def test_empty_file_rejected(self, gateway, net):
        with pytest.raises(QuotaExceeded):
            await gateway.insert_file(net, "empty.txt", b"")

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self, gateway, blobs, net, monkeypatch):
        monkeypatch.setattr(config, "MAX_FILE_SIZE", 4)
        with pytest.raises(QuotaExceeded):
            await gateway.insert_file(net, "big.bin", b"12345")
        assert blobs.list() == []

    @pytest.mark.asyncio
    async def test_blob_write_failure(self, gateway, blobs, sessionmaker, net):
        blobs.fail_put = True

        with pytest.raises(StorageWriteFailure) as exc_info:
            await gateway.insert_file(net, "a.txt", b"abc")

        assert exc_info.value.file_name == "a.txt"
        assert await count_rows(sessionmaker, SharedFile) == 0

    @pytest.mark.asyncio
    async def test_metadata_failure_removes_blob(self, gateway, blobs, engine, net):
        async with engine.begin() as conn:
            await conn.execute(text("DROP TABLE shared_files"))

        with pytest.raises(StorageWriteFailure) as exc_info:
            await gateway.insert_file(net, "a.txt", b"abc")

        assert exc_info.value.file_name == "a.txt"
        assert blobs.list("v2/") == []

    @pytest.mark.asyncio
    async def test_open_file(self, gateway, net, other_net):
        stored = await gateway.insert_file(net, "a.txt", b"payload")

        shared, data = await gateway.open_file(net, stored.id)
        assert shared.name == "a.txt"
        assert data == b"payload"
        assert await gateway.open_file(other_net, stored.id) is None

    @pytest.mark.asyncio
    async def test_open_file_with_missing_blob(self, gateway, blobs, net):
        stored = await gateway.insert_file(net, "a.txt", b"payload")
        blobs.delete(stored.storage_path)

        assert await gateway.open_file(net, stored.id) is None


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_file_removes_both_sides(self, gateway, blobs, net):
        stored = await gateway.insert_file(net, "a.txt", b"abc")

        outcome = await gateway.delete_file(net, stored.id)

        assert outcome.deleted == 1
        assert not outcome.partial
        assert await gateway.list_files(net) == []
        assert not blobs.exists(stored.storage_path)

    @pytest.mark.asyncio
    async def test_delete_unknown_file(self, gateway, net):
        outcome = await gateway.delete_file(net, "does-not-exist")
        assert outcome.deleted == 0

    @pytest.mark.asyncio
    async def test_delete_from_other_scope_is_noop(self, gateway, net, other_net):
        stored = await gateway.insert_file(net, "a.txt", b"abc")

        outcome = await gateway.delete_file(other_net, stored.id)

        assert outcome.deleted == 0
        assert len(await gateway.list_files(net)) == 1

    @pytest.mark.asyncio
    async def test_blob_failure_still_deletes_metadata(self, gateway, blobs, net):
        stored = await gateway.insert_file(net, "a.txt", b"abc")
        blobs.fail_delete.add(stored.storage_path)

        outcome = await gateway.delete_file(net, stored.id)

        assert outcome.deleted == 1
        assert outcome.partial
        assert outcome.blob_failures == [stored.storage_path]
        assert await gateway.list_files(net) == []

    @pytest.mark.asyncio
    async def test_delete_all_with_one_blob_failure(self, gateway, blobs):
        s2 = Scope.private("S2")
        stored = [await gateway.insert_file(s2, f"{i}.txt", b"abc") for i in range(3)]
        blobs.fail_delete.add(stored[1].storage_path)

        outcome = await gateway.delete_all_files(s2)

        assert outcome.deleted == 3
        assert outcome.blob_failures == [stored[1].storage_path]
        assert await gateway.list_files(s2) == []

    @pytest.mark.asyncio
    async def test_delete_all_ignores_listing_caps(self, gateway, blobs, sessionmaker, net, monkeypatch):
        stored = [await gateway.insert_file(net, f"{i}.txt", b"abc") for i in range(12)]
        monkeypatch.setattr(config, "MAX_FILES_PER_SCOPE", 1)
        monkeypatch.setattr(config, "LIST_LIMIT", 5)

        outcome = await gateway.delete_all_files(net)

        assert outcome.deleted == 12
        assert await count_rows(sessionmaker, SharedFile) == 0
        assert not any(blobs.exists(f.storage_path) for f in stored)

    @pytest.mark.asyncio
    async def test_delete_all_leaves_other_scopes(self, gateway, net, other_net):
        await gateway.insert_file(net, "a.txt", b"abc")
        await gateway.insert_file(other_net, "b.txt", b"abc")

        await gateway.delete_all_files(net)

        assert [f.name for f in await gateway.list_files(other_net)] == ["b.txt"]

    @pytest.mark.asyncio
    async def test_legacy_row_deleted_via_url(self, gateway, blobs, sessionmaker, net):
        blobs.put("10.0.0/1700000000-old.txt", b"old")
        async with session_scope(sessionmaker) as session:
            session.add(SharedFile(
                id="legacy-1", name="old.txt", size=3, mime_type="text/plain",
                scope_kind=net.kind, scope_id=net.id,
                url="https://proj.example.co/storage/v1/object/public/shared_files/10.0.0/1700000000-old.txt",
            ))

        outcome = await gateway.delete_file(net, "legacy-1")

        assert outcome.deleted == 1
        assert not outcome.partial
        assert not blobs.exists("10.0.0/1700000000-old.txt")

    @pytest.mark.asyncio
    async def test_unparseable_legacy_url_is_partial_success(self, gateway, sessionmaker, net):
        async with session_scope(sessionmaker) as session:
            session.add(SharedFile(
                id="legacy-2", name="odd.txt", size=3, mime_type="text/plain",
                scope_kind=net.kind, scope_id=net.id, url="https://elsewhere.example.com/odd.txt",
            ))

        outcome = await gateway.delete_file(net, "legacy-2")

        assert outcome.deleted == 1
        assert outcome.unparsed == ["legacy-2"]
        assert outcome.partial
        assert await gateway.list_files(net) == []


class TestText:

    @pytest.mark.asyncio
    async def test_upsert_keeps_one_row(self, gateway, sessionmaker):
        s1 = Scope.private("S1")

        await gateway.upsert_text(s1, "hello")
        await gateway.upsert_text(s1, "hello world")

        row = await gateway.list_text(s1)
        assert row.content == "hello world"
        assert await count_rows(sessionmaker, SharedText) == 1

    @pytest.mark.asyncio
    async def test_update_advances_timestamp(self, gateway, net):
        first = await gateway.upsert_text(net, "a")
        second = await gateway.upsert_text(net, "b")
        assert second.id == first.id
        assert second.updated_at >= first.updated_at

    @pytest.mark.asyncio
    async def test_too_long_rejected(self, gateway, net):
        with pytest.raises(QuotaExceeded):
            await gateway.upsert_text(net, "x" * (config.MAX_TEXT_LENGTH + 1))
        assert await gateway.list_text(net) is None

    @pytest.mark.asyncio
    async def test_concurrent_first_writes_converge(self, gateway, sessionmaker, net):
        await asyncio.gather(
            gateway.upsert_text(net, "from a"),
            gateway.upsert_text(net, "from b"),
        )

        assert await count_rows(sessionmaker, SharedText) == 1
        assert (await gateway.list_text(net)).content in {"from a", "from b"}

    @pytest.mark.asyncio
    async def test_per_scope_rows(self, gateway, sessionmaker, net, other_net):
        await gateway.upsert_text(net, "one")
        await gateway.upsert_text(other_net, "two")
        assert await count_rows(sessionmaker, SharedText) == 2


class TestChangeEvents:

    @pytest.mark.asyncio
    async def test_writes_publish_scoped_events(self, gateway, feed, net, other_net):
        seen, elsewhere = [], []
        feed.subscribe(net, seen.append)
        feed.subscribe(other_net, elsewhere.append)

        stored = await gateway.insert_file(net, "a.txt", b"abc", origin="client-1")
        await gateway.upsert_text(net, "hi")
        await gateway.upsert_text(net, "hi again")
        await gateway.delete_file(net, stored.id)

        assert [(e.table, e.op) for e in seen] == [
            (FILES, "INSERT"), (TEXTS, "INSERT"), (TEXTS, "UPDATE"), (FILES, "DELETE"),
        ]
        assert seen[0].origin == "client-1"
        assert seen[2].record["content"] == "hi again"
        assert elsewhere == []


class TestConnections:

    @pytest.mark.asyncio
    async def test_register_is_upsert_by_ip(self, gateway, sessionmaker):
        first = await gateway.register_connection("10.0.0.5", "10.0.0")
        second = await gateway.register_connection("10.0.0.5", "10.0.0")

        assert second.id == first.id
        assert second.last_active >= first.last_active
        assert await count_rows(sessionmaker, NetworkConnection) == 1


class TestRetry:

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT 1", {}, Exception("connection reset"))
            return "ok"

        assert await with_retry(flaky, delay=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        calls = []

        async def down():
            calls.append(1)
            raise OSError("store down")

        with pytest.raises(OSError):
            await with_retry(down, attempts=3, delay=0)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_integrity_errors_not_retried(self):
        calls = []

        async def conflict():
            calls.append(1)
            raise IntegrityError("INSERT", {}, Exception("unique"))

        with pytest.raises(IntegrityError):
            await with_retry(conflict, delay=0)
        assert len(calls) == 1
