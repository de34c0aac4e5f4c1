"""
migrate.py — Bring an existing BridgeSpace PostgreSQL database up to date.

SQLAlchemy's create_all() only creates NEW tables; it never alters existing
ones. Older deployments have shared_files without storage_path/storage_version
and shared_texts without the one-row-per-scope constraint. This script adds
what is missing, collapses duplicate text rows, and backfills storage paths
for legacy rows from their stored URL.

Usage:
  python migrate.py

Safe to run multiple times — every statement is IF NOT EXISTS or a no-op
the second time.
"""

import asyncio

from sqlalchemy import select, text

import config
from database import init_db, make_engine, make_sessionmaker, session_scope
from errors import ParseFailure
from file_service import STORAGE_VERSION, storage_path_from_url
from models import SharedFile

# All migrations, each idempotent
MIGRATIONS = [
    # ── shared_files missing columns ────────────────────────────────────────
    "ALTER TABLE shared_files ADD COLUMN IF NOT EXISTS storage_path TEXT",
    "ALTER TABLE shared_files ADD COLUMN IF NOT EXISTS storage_version INTEGER",
    "ALTER TABLE shared_files ADD COLUMN IF NOT EXISTS checksum_sha256 VARCHAR(64)",
    "ALTER TABLE shared_files ADD COLUMN IF NOT EXISTS scope_kind VARCHAR(16) DEFAULT 'network'",
    "CREATE INDEX IF NOT EXISTS ix_shared_files_scope ON shared_files (scope_kind, scope_id)",
    "CREATE INDEX IF NOT EXISTS ix_shared_files_created_at ON shared_files (created_at)",

    # ── shared_texts: keep only the newest row per scope, then enforce it ──
    "ALTER TABLE shared_texts ADD COLUMN IF NOT EXISTS scope_kind VARCHAR(16) DEFAULT 'network'",
    """
    DELETE FROM shared_texts t
    USING shared_texts newer
    WHERE t.scope_kind = newer.scope_kind
      AND t.scope_id = newer.scope_id
      AND (t.updated_at < newer.updated_at
           OR (t.updated_at = newer.updated_at AND t.id < newer.id))
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_shared_texts_scope
        ON shared_texts (scope_kind, scope_id)
    """,

    # ── upload_sessions (create if missing) ─────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS upload_sessions (
        id VARCHAR(36) PRIMARY KEY,
        scope_kind VARCHAR(16) NOT NULL,
        scope_id VARCHAR NOT NULL,
        filename VARCHAR NOT NULL,
        mime_type VARCHAR,
        total_chunks INTEGER NOT NULL,
        received_chunk_indices TEXT DEFAULT '',
        chunk_size INTEGER NOT NULL,
        total_size BIGINT NOT NULL,
        expected_hash VARCHAR(64),
        status VARCHAR(16) DEFAULT 'in_progress',
        file_id VARCHAR(36),
        created_at TIMESTAMP WITH TIME ZONE DEFAULT now()
    )
    """,
]


async def backfill_storage_paths(sessionmaker, bucket: str = None) -> dict:
    """Fill storage_path for rows that only carry a URL. Unparseable rows are left alone."""
    bucket = bucket or config.MINIO_BUCKET
    counts = {"updated": 0, "unparsed": 0}
    async with session_scope(sessionmaker) as session:
        result = await session.execute(select(SharedFile).where(SharedFile.storage_path.is_(None)))
        for shared in result.scalars().all():
            try:
                shared.storage_path = storage_path_from_url(shared.url, bucket)
            except ParseFailure as e:
                counts["unparsed"] += 1
                print(f"  ⚠️  {shared.id}: {e}")
                continue
            # Legacy rows keep the old layout; only the location is now explicit.
            shared.storage_version = 1
            counts["updated"] += 1
    return counts


async def run_migrations(database_url: str = None):
    print("=" * 60)
    print("BridgeSpace Database Migration")
    print("=" * 60)

    engine = make_engine(database_url)
    try:
        await init_db(engine)
        async with engine.connect() as conn:
            for i, sql in enumerate(MIGRATIONS, 1):
                clean = " ".join(sql.split())[:80]
                try:
                    await conn.execute(text(sql))
                    await conn.commit()
                    print(f"  ✅ [{i:02d}] {clean}...")
                except Exception as e:
                    await conn.rollback()
                    # Non-fatal: column may already exist with different handling
                    print(f"  ⚠️  [{i:02d}] Skipped (already exists or error): {e}")

        counts = await backfill_storage_paths(make_sessionmaker(engine))
        print(f"  ✅ storage_path backfilled for {counts['updated']} rows "
              f"({counts['unparsed']} unparseable, current layout is v{STORAGE_VERSION})")
    finally:
        await engine.dispose()

    print()
    print("✅ Migration complete! Now restart your server:")
    print("   uvicorn main:app --host 0.0.0.0 --port 8000 --reload")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(run_migrations())
