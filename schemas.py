from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime


class SharedFileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    size: int
    mime_type: str
    url: Optional[str] = None
    created_at: datetime
    days_remaining: Optional[float] = None


class SharedTextOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    content: str = ""
    updated_at: Optional[datetime] = None


class TextUpdate(BaseModel):
    content: str = Field(default="")


class ScopeOut(BaseModel):
    kind: str
    id: Optional[str] = None  # hidden for private spaces


class LimitsOut(BaseModel):
    max_file_size: int
    max_files_per_scope: int
    max_text_length: int
    retention_days: float
    list_limit: int


class UploadResult(BaseModel):
    uploaded: int
    total: int
    skipped_duplicates: int = 0
    file_ids: List[str] = []
    message: str


class DeleteResult(BaseModel):
    deleted: int
    partial: bool = False
    warnings: List[str] = []


class ChunkSessionCreate(BaseModel):
    filename: str
    total_chunks: int
    chunk_size: int
    total_size: int
    expected_hash: Optional[str] = None  # optional client-provided expected final hash
    mime_type: Optional[str] = None


class ChunkSessionOut(BaseModel):
    session_id: str
    filename: str
    status: str
    total_chunks: int
    received_indices: List[int]
    missing_indices: List[int]
    file_id: Optional[str] = None
