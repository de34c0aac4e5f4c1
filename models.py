import uuid

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text, UniqueConstraint

from database import Base, utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────────
# Shared File
# ─────────────────────────────────────────────────────────────
class SharedFile(Base):
    __tablename__ = "shared_files"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    size = Column(BigInteger, nullable=False)
    mime_type = Column(String, nullable=False, default="application/octet-stream")
    scope_kind = Column(String(16), nullable=False)   # network | space
    scope_id = Column(String, nullable=False)
    url = Column(Text, nullable=True)                 # public ref; legacy rows only have this
    storage_path = Column(Text, nullable=True)
    storage_version = Column(Integer, nullable=True)
    checksum_sha256 = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_shared_files_scope", "scope_kind", "scope_id"),
        Index("ix_shared_files_created_at", "created_at"),
    )


# ─────────────────────────────────────────────────────────────
# Shared Text (at most one row per scope)
# ─────────────────────────────────────────────────────────────
class SharedText(Base):
    __tablename__ = "shared_texts"

    id = Column(String(36), primary_key=True, default=_new_id)
    content = Column(Text, nullable=False, default="")
    scope_kind = Column(String(16), nullable=False)
    scope_id = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("scope_kind", "scope_id", name="uq_shared_texts_scope"),
    )


# ─────────────────────────────────────────────────────────────
# Network Connections (housekeeping registry)
# ─────────────────────────────────────────────────────────────
class NetworkConnection(Base):
    __tablename__ = "network_connections"

    id = Column(String(36), primary_key=True, default=_new_id)
    ip_address = Column(String, nullable=False, unique=True)
    network_prefix = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_active = Column(DateTime(timezone=True), nullable=False, default=utc_now)


# ─────────────────────────────────────────────────────────────
# Resumable Upload Sessions
# ─────────────────────────────────────────────────────────────
class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = Column(String(36), primary_key=True, default=_new_id)
    scope_kind = Column(String(16), nullable=False)
    scope_id = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    total_chunks = Column(Integer, nullable=False)
    received_chunk_indices = Column(Text, default="")
    chunk_size = Column(Integer, nullable=False)
    total_size = Column(BigInteger, nullable=False)
    expected_hash = Column(String(64), nullable=True)
    status = Column(String(16), default="in_progress")   # in_progress | assembling | complete | failed
    file_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_upload_sessions_scope", "scope_kind", "scope_id"),
    )

    @property
    def received(self) -> set:
        raw = self.received_chunk_indices or ""
        return {int(x) for x in raw.split(",") if x}

    @property
    def missing(self) -> list:
        received = self.received
        return [i for i in range(self.total_chunks) if i not in received]
