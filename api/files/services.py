"""
Services for the Files API

Upload:   normalize -> encrypt -> write blob -> commit record
Download: load record -> unwrap key -> read blob -> decrypt
"""

import io
import logging
import tempfile
import uuid
from collections.abc import Iterable
from pathlib import PurePath
from typing import BinaryIO
from urllib.parse import quote

from api.files.ingest import DEFAULT_CONTENT_TYPES, normalize
from api.files.models import FileUploadResponse
from api.filerecord.models import FileRecord, FileRecordPublic, FileRecordsPublic
from api.filerecord.services import FileRecordStore
from core.crypto import (
    IV_SIZE,
    KEY_SIZE,
    TAG_SIZE,
    FileCipher,
    KeyWrapper,
    fingerprint,
)
from core.errors import (
    BlobMissingError,
    CorruptRecordError,
    CryptoError,
    NotFoundError,
)
from core.storage import DEFAULT_CHUNK_SIZE, BlobStore, iter_chunks

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = ".enc"
CSV_CONTENT_TYPE = "text/csv"


def display_name_for(filename: str | None) -> str:
    """Stored name of an uploaded file: its base name plus the .enc marker"""
    name = PurePath(filename or "").name or "upload.csv"
    return f"{name}{ENCRYPTED_SUFFIX}"


def original_filename(display_name: str) -> str:
    """Reverse of display_name_for"""
    if display_name.endswith(ENCRYPTED_SUFFIX):
        return display_name[: -len(ENCRYPTED_SUFFIX)]
    return display_name


def content_disposition(filename: str) -> str:
    """
    Content-Disposition value for downloading a file under its original name

    Names that are not plain ASCII get an ASCII fallback plus the RFC 5987
    filename* form, since header values must be latin-1 encodable.
    """
    quoted = quote(filename)
    if quoted == filename:
        return f'attachment; filename="{filename}"'
    fallback = "".join(
        char if char.isascii() and char.isprintable() and char not in '"\\' else "_"
        for char in filename
    )
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quoted}"


def _discard_blob(blob_store: BlobStore, locator: str) -> None:
    """Remove a blob written for an upload that could not be committed"""
    try:
        blob_store.delete(locator)
    except NotFoundError:
        pass
    except Exception:
        logger.exception("Failed to roll back orphan blob %s", locator)


def store_file(
    record_store: FileRecordStore,
    blob_store: BlobStore,
    cipher: FileCipher,
    key_wrapper: KeyWrapper,
    raw: bytes,
    filename: str | None,
    owner_id: str,
    content_type: str | None = None,
    allowed_content_types: Iterable[str] = DEFAULT_CONTENT_TYPES,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> FileUploadResponse:
    """
    Normalize, encrypt and persist an uploaded CSV file

    The record is committed only after the ciphertext is fully written. If
    the commit fails the blob is deleted again before the error propagates.

    Raises:
        FormatError: If the upload is not acceptable CSV
        StoreError: If the blob or the record could not be written
    """
    canonical = normalize(raw, content_type, allowed_content_types)

    encryption = cipher.encrypt(iter_chunks(io.BytesIO(canonical), chunk_size))
    wrapped_key = key_wrapper.wrap(encryption.key, associated_data=encryption.iv)
    locator = f"{uuid.uuid4().hex}{ENCRYPTED_SUFFIX}"

    blob_store.write(locator, encryption)

    record = FileRecord(
        display_name=display_name_for(filename),
        blob_locator=locator,
        owner_id=owner_id,
        wrapped_key=wrapped_key.hex(),
        iv=encryption.iv.hex(),
        mac=encryption.tag.hex(),
        size=len(canonical),
    )
    try:
        record_id = record_store.create(record)
    except Exception:
        logger.error("Commit failed for blob %s, rolling back", locator)
        _discard_blob(blob_store, locator)
        raise

    logger.info(
        "Stored file %s (%s, %d bytes, iv %s)",
        record_id, record.display_name, record.size, fingerprint(encryption.iv),
    )
    return FileUploadResponse(
        id=record_id,
        display_name=record.display_name,
        iv=record.iv,
        size=record.size,
        created_at=record.created_at,
    )


def unwrap_key_material(
    record: FileRecord, key_wrapper: KeyWrapper
) -> tuple[bytes, bytes, bytes]:
    """
    Recover (key, iv, tag) for a record

    Raises:
        CorruptRecordError: If any stored value has the wrong shape or the
            wrapped key cannot be unwrapped
    """
    if not record.iv or len(record.iv) != IV_SIZE * 2:
        raise CorruptRecordError()
    if not record.mac or len(record.mac) != TAG_SIZE * 2:
        raise CorruptRecordError("Invalid authentication tag")
    try:
        iv = bytes.fromhex(record.iv)
        tag = bytes.fromhex(record.mac)
        wrapped_key = bytes.fromhex(record.wrapped_key)
    except ValueError as exc:
        raise CorruptRecordError() from exc

    try:
        key = key_wrapper.unwrap(wrapped_key, associated_data=iv)
    except CryptoError as exc:
        raise CorruptRecordError() from exc
    if len(key) != KEY_SIZE:
        raise CorruptRecordError()
    return key, iv, tag


def retrieve_file(
    record_store: FileRecordStore,
    blob_store: BlobStore,
    cipher: FileCipher,
    key_wrapper: KeyWrapper,
    file_id: uuid.UUID,
    spool_max_bytes: int = 8 * 1024 * 1024,
) -> tuple[BinaryIO, str, str]:
    """
    Decrypt a stored file

    The plaintext is spooled and only returned once the MAC and padding have
    been verified. Nothing is modified.

    Returns:
        (file object positioned at 0, content type, original filename)

    Raises:
        NotFoundError: If no record exists for file_id
        CorruptRecordError: If the stored key material is unusable
        BlobMissingError: If the record exists but its blob does not
        CryptoError: If decryption or authentication fails
    """
    record = record_store.get(file_id)
    key, iv, tag = unwrap_key_material(record, key_wrapper)

    try:
        ciphertext = blob_store.read(record.blob_locator)
    except NotFoundError as exc:
        logger.critical(
            "Integrity violation: file %s has metadata but blob %s is missing",
            record.id, record.blob_locator,
        )
        raise BlobMissingError(f"Stored content for file {file_id} is missing") from exc

    spool = tempfile.SpooledTemporaryFile(max_size=spool_max_bytes)
    try:
        for chunk in cipher.decrypt(ciphertext, key, iv, tag):
            spool.write(chunk)
    except CryptoError:
        spool.close()
        logger.error("Decryption failed for file %s", record.id)
        raise
    except BaseException:
        spool.close()
        raise
    spool.seek(0)

    return spool, CSV_CONTENT_TYPE, original_filename(record.display_name)


def list_file_records(record_store: FileRecordStore) -> FileRecordsPublic:
    """List stored files without key material"""
    records = record_store.list_all()
    return FileRecordsPublic(
        data=[FileRecordPublic.model_validate(record) for record in records],
        total_items=len(records),
    )


def purge_record(
    record: FileRecord,
    record_store: FileRecordStore,
    blob_store: BlobStore,
) -> None:
    """
    Delete a record's blob, then the record itself

    The record is only deleted once the blob is gone (deleted now or found
    already absent). A StoreError from the blob store leaves both in place.
    """
    try:
        blob_store.delete(record.blob_locator)
    except NotFoundError:
        logger.warning(
            "Blob %s for file %s was already absent", record.blob_locator, record.id
        )
    try:
        record_store.delete(record.id)
    except NotFoundError:
        logger.warning("File record %s was already deleted", record.id)


def delete_file(
    record_store: FileRecordStore,
    blob_store: BlobStore,
    file_id: uuid.UUID,
) -> None:
    """
    Administrative delete of a stored file

    Raises:
        NotFoundError: If no record exists for file_id
    """
    record = record_store.get(file_id)
    purge_record(record, record_store, blob_store)
    logger.info("Deleted file %s (%s)", record.id, record.display_name)
