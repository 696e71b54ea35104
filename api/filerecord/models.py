"""
FileRecord Models - metadata records for encrypted files.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from pydantic import ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Database Tables
# ============================================================================


class FileRecord(SQLModel, table=True):
    """
    Metadata record for an encrypted file held in blob storage.

    wrapped_key, iv and mac are hex encoded. The raw file key is never
    persisted; wrapped_key is the file key encrypted with the master key.
    """
    __tablename__ = "filerecord"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    display_name: str = Field(max_length=260, nullable=False)
    blob_locator: str = Field(max_length=1024, nullable=False, unique=True)
    owner_id: str = Field(max_length=255, nullable=False, index=True)
    wrapped_key: str = Field(max_length=255, nullable=False)
    iv: str = Field(max_length=64, nullable=False)
    mac: str = Field(max_length=128, nullable=False)
    size: int | None = Field(default=None)  # Canonical plaintext size in bytes
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Request/Response Models (Pydantic)
# ============================================================================


class FileRecordPublic(SQLModel):
    """Public representation of a file record (no key material)"""
    id: uuid.UUID
    display_name: str
    owner_id: str
    size: int | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FileRecordsPublic(SQLModel):
    """List of file records"""
    data: list[FileRecordPublic]
    total_items: int
