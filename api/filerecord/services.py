"""
Services for persisting file records
"""
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from api.filerecord.models import FileRecord
from core.errors import NotFoundError, StoreError


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (as returned by SQLite) as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _detached(record: FileRecord) -> FileRecord:
    record.created_at = _as_utc(record.created_at)
    return record


class FileRecordStore:
    """
    Durable store of FileRecord rows.

    Every operation runs in its own session so the store can be shared
    between request handlers and the retention scheduler's worker threads.
    Database failures surface as StoreError.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def create(self, record: FileRecord) -> uuid.UUID:
        """Insert a record and return its id"""
        record.created_at = _as_utc(record.created_at)
        with self._session_factory() as session:
            try:
                session.add(record)
                session.commit()
                session.refresh(record)
            except SQLAlchemyError as exc:
                session.rollback()
                raise StoreError(f"Failed to save file record: {exc}") from exc
            session.expunge(record)
        return _detached(record).id

    def get(self, record_id: uuid.UUID) -> FileRecord:
        """
        Fetch a record by id

        Raises:
            NotFoundError: If no record has this id
        """
        with self._session_factory() as session:
            try:
                record = session.get(FileRecord, record_id)
            except SQLAlchemyError as exc:
                raise StoreError(f"Failed to load file record {record_id}: {exc}") from exc
        if record is None:
            raise NotFoundError(f"File {record_id} not found")
        return _detached(record)

    def list_all(self) -> list[FileRecord]:
        """All records, oldest first"""
        with self._session_factory() as session:
            try:
                records = session.exec(
                    select(FileRecord).order_by(FileRecord.created_at)
                ).all()
            except SQLAlchemyError as exc:
                raise StoreError(f"Failed to list file records: {exc}") from exc
        return [_detached(record) for record in records]

    def list_older_than(self, cutoff: datetime) -> list[FileRecord]:
        """Records created strictly before cutoff, oldest first"""
        with self._session_factory() as session:
            try:
                records = session.exec(
                    select(FileRecord)
                    .where(FileRecord.created_at < _as_utc(cutoff))
                    .order_by(FileRecord.created_at)
                ).all()
            except SQLAlchemyError as exc:
                raise StoreError(f"Failed to query expired file records: {exc}") from exc
        return [_detached(record) for record in records]

    def delete(self, record_id: uuid.UUID) -> None:
        """
        Delete a record by id

        Raises:
            NotFoundError: If no record has this id
        """
        with self._session_factory() as session:
            try:
                record = session.get(FileRecord, record_id)
                if record is None:
                    raise NotFoundError(f"File {record_id} not found")
                session.delete(record)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise StoreError(f"Failed to delete file record {record_id}: {exc}") from exc
