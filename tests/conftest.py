"""
Shared fixtures: a throwaway SQLite metadata store, a local-disk blob store
with failure switches, and a gateway wired to an in-process change feed.
"""

import asyncio

import pytest
import pytest_asyncio

from database import init_db, make_engine, make_sessionmaker
from gateway import StorageGateway
from realtime import ChangeFeed
from scope import Scope
from storage import StorageBackend

BUCKET = "shared_files"
PUBLIC_BASE = "http://blobs.test/shared_files"


class FlakyBlobs(StorageBackend):
    """Local-disk blob store whose writes and deletes can be made to fail."""

    def __init__(self, local_dir: str):
        super().__init__(use_minio=False, bucket=BUCKET, local_dir=local_dir,
                         public_base_url=PUBLIC_BASE)
        self.fail_put = False
        self.fail_delete = set()
        self.deleted = []

    def put(self, key, data, content_type="application/octet-stream"):
        if self.fail_put:
            return False
        return super().put(key, data, content_type)

    def delete(self, key):
        if key in self.fail_delete:
            return False
        self.deleted.append(key)
        return super().delete(key)


class FakeIpLookup:

    def __init__(self, ip="10.0.0.42", error: Exception = None):
        self.ip = ip
        self.error = error
        self.calls = 0

    async def fetch_ip(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.ip


async def wait_until(predicate, timeout: float = 2.0):
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'bridgespace.db'}"


@pytest.fixture
def blobs(tmp_path):
    return FlakyBlobs(str(tmp_path / "blobs"))


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest_asyncio.fixture
async def engine(db_url):
    engine = make_engine(db_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def gateway(sessionmaker, blobs, feed):
    return StorageGateway(sessionmaker, blobs, feed=feed, retry_delay=0)


@pytest.fixture
def net():
    return Scope.network("10.0.0")


@pytest.fixture
def other_net():
    return Scope.network("10.0.1")
