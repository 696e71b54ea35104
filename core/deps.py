"""
Define functions/aliases for dependency injection
"""
from collections.abc import Generator
from functools import lru_cache
from typing import Annotated, TypeAlias

from fastapi import Depends, Request
from sqlmodel import Session

from api.filerecord.services import FileRecordStore
from api.retention.services import RetentionScheduler
from core.config import get_settings
from core.crypto import FileCipher, KeyWrapper
from core.db import get_engine
from core.storage import BlobStore, get_blob_store


# Define db dependency
def get_db() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session


def get_record_store() -> FileRecordStore:
    return FileRecordStore(lambda: Session(get_engine()))


@lru_cache
def _cached_blob_store() -> BlobStore:
    return get_blob_store(get_settings())


def get_blob_storage() -> BlobStore:
    return _cached_blob_store()


def get_file_cipher() -> FileCipher:
    return FileCipher()


@lru_cache
def get_key_wrapper() -> KeyWrapper:
    return KeyWrapper.from_hex(get_settings().FILE_MASTER_KEY)


def get_retention_scheduler(request: Request) -> RetentionScheduler:
    return request.app.state.retention_scheduler


SessionDep: TypeAlias = Annotated[Session, Depends(get_db)]
RecordStoreDep: TypeAlias = Annotated[FileRecordStore, Depends(get_record_store)]
BlobStoreDep: TypeAlias = Annotated[BlobStore, Depends(get_blob_storage)]
FileCipherDep: TypeAlias = Annotated[FileCipher, Depends(get_file_cipher)]
KeyWrapperDep: TypeAlias = Annotated[KeyWrapper, Depends(get_key_wrapper)]
SchedulerDep: TypeAlias = Annotated[RetentionScheduler, Depends(get_retention_scheduler)]
