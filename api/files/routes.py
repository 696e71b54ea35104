"""
Routes/endpoints for the Files API

HTTP   URI                                 Action
----   ---                                 ------
POST   /api/v1/files/upload                Upload, normalize and encrypt a CSV file
GET    /api/v1/files                       List stored files (no key material)
GET    /api/v1/files/download/[id]         Download a decrypted file
DELETE /api/v1/files/[id]                  Delete a stored file
"""

import uuid

from fastapi import APIRouter, File, Form, UploadFile, status
from fastapi.responses import StreamingResponse

from api.files import services
from api.files.models import FileUploadResponse
from api.filerecord.models import FileRecordsPublic
from core.config import get_settings
from core.deps import BlobStoreDep, FileCipherDep, KeyWrapperDep, RecordStoreDep
from core.storage import iter_chunks

router = APIRouter(prefix="/files", tags=["File Endpoints"])


@router.post(
    "/upload",
    response_model=FileUploadResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["File Endpoints"],
)
def upload_file(
    record_store: RecordStoreDep,
    blob_store: BlobStoreDep,
    cipher: FileCipherDep,
    key_wrapper: KeyWrapperDep,
    file: UploadFile = File(..., description="CSV file to encrypt"),
    owner_id: str = Form(..., description="Owner of the file"),
) -> FileUploadResponse:
    """
    Upload a CSV file.

    Rows are sorted by their second column (highest first), then the file
    is encrypted and stored. Returns the stored name and the iv.
    """
    settings = get_settings()
    return services.store_file(
        record_store=record_store,
        blob_store=blob_store,
        cipher=cipher,
        key_wrapper=key_wrapper,
        raw=file.file.read(),
        filename=file.filename,
        owner_id=owner_id,
        content_type=file.content_type,
        allowed_content_types=settings.ALLOWED_CONTENT_TYPES,
        chunk_size=settings.CHUNK_SIZE,
    )


@router.get(
    "",
    response_model=FileRecordsPublic,
    status_code=status.HTTP_200_OK,
    tags=["File Endpoints"],
)
def list_files(record_store: RecordStoreDep) -> FileRecordsPublic:
    """
    Retrieve metadata for all stored files.
    """
    return services.list_file_records(record_store)


@router.get("/download/{file_id}", tags=["File Endpoints"])
def download_file(
    file_id: uuid.UUID,
    record_store: RecordStoreDep,
    blob_store: BlobStoreDep,
    cipher: FileCipherDep,
    key_wrapper: KeyWrapperDep,
) -> StreamingResponse:
    """
    Download a decrypted file.

    Returns the file as a streaming download named after the original upload.
    """
    settings = get_settings()
    file_content, content_type, filename = services.retrieve_file(
        record_store=record_store,
        blob_store=blob_store,
        cipher=cipher,
        key_wrapper=key_wrapper,
        file_id=file_id,
        spool_max_bytes=settings.DOWNLOAD_SPOOL_MAX_BYTES,
    )

    def _stream():
        with file_content:
            yield from iter_chunks(file_content, settings.CHUNK_SIZE)

    return StreamingResponse(
        _stream(),
        media_type=content_type,
        headers={
            "Content-Disposition": services.content_disposition(filename)
        }
    )


@router.delete(
    "/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["File Endpoints"],
)
def delete_file(
    file_id: uuid.UUID,
    record_store: RecordStoreDep,
    blob_store: BlobStoreDep,
) -> None:
    """
    Delete a stored file and its metadata.
    """
    services.delete_file(
        record_store=record_store, blob_store=blob_store, file_id=file_id
    )
