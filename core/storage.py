"""
Blob storage backends for encrypted file content

Blobs are opaque byte payloads addressed by a locator string. Writes are
all-or-nothing: readers never observe a partially written blob.
"""
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.errors import NotFoundError, StoreError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def iter_chunks(stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Read a binary file object in fixed-size chunks"""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        yield chunk


def _parse_s3_path(s3_path: str) -> tuple[str, str]:
    """Parse S3 path into bucket and prefix"""
    if not s3_path.startswith("s3://"):
        raise ValueError("Invalid S3 path format. Must start with s3://")

    path_without_scheme = s3_path[5:]

    if not path_without_scheme:
        raise ValueError("Invalid S3 path format. Bucket name is required")

    if path_without_scheme.startswith("/"):
        raise ValueError("Invalid S3 path format. Bucket name cannot start with /")

    if "//" in path_without_scheme:
        raise ValueError("Invalid S3 path format. Path cannot contain double slashes")

    if "/" in path_without_scheme:
        bucket, key = path_without_scheme.split("/", 1)
    else:
        bucket = path_without_scheme
        key = ""

    return bucket, key


class BlobStore(ABC):
    """Durable byte storage addressable by locator"""

    @abstractmethod
    def write(self, locator: str, chunks: Iterable[bytes]) -> None:
        """Store a blob, replacing any previous content atomically"""

    @abstractmethod
    def read(self, locator: str) -> Iterator[bytes]:
        """Stream a blob; raises NotFoundError if it does not exist"""

    @abstractmethod
    def delete(self, locator: str) -> None:
        """Remove a blob; raises NotFoundError if it does not exist"""

    @abstractmethod
    def exists(self, locator: str) -> bool:
        """Check whether a blob exists"""


class LocalBlobStore(BlobStore):
    """Blobs stored as files beneath a root directory"""

    def __init__(self, root: str | Path, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size

    def _path(self, locator: str) -> Path:
        path = (self.root / locator).resolve()
        # Security check: ensure the resolved path is within root
        try:
            path.relative_to(self.root)
        except ValueError as exc:
            raise StoreError(f"Blob locator escapes storage root: {locator}") from exc
        if path == self.root:
            raise StoreError("Blob locator is empty")
        return path

    def write(self, locator: str, chunks: Iterable[bytes]) -> None:
        path = self._path(locator)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in chunks:
                    handle.write(chunk)
            os.replace(tmp_name, path)
        except BaseException as exc:
            Path(tmp_name).unlink(missing_ok=True)
            if isinstance(exc, OSError):
                raise StoreError(f"Failed to write blob {locator}: {exc}") from exc
            raise

    def read(self, locator: str) -> Iterator[bytes]:
        path = self._path(locator)
        try:
            handle = path.open("rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"Blob {locator} not found") from exc
        except OSError as exc:
            raise StoreError(f"Failed to read blob {locator}: {exc}") from exc
        return self._stream(handle)

    def _stream(self, handle: BinaryIO) -> Iterator[bytes]:
        with handle:
            yield from iter_chunks(handle, self.chunk_size)

    def delete(self, locator: str) -> None:
        path = self._path(locator)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError(f"Blob {locator} not found") from exc
        except OSError as exc:
            raise StoreError(f"Failed to delete blob {locator}: {exc}") from exc

    def exists(self, locator: str) -> bool:
        return self._path(locator).is_file()


class S3BlobStore(BlobStore):
    """Blobs stored as objects under an s3://bucket/prefix"""

    def __init__(
        self,
        uri: str,
        s3_client=None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        spool_max_bytes: int = 8 * 1024 * 1024,
    ):
        self.bucket, prefix = _parse_s3_path(uri)
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        self.prefix = prefix
        self.s3_client = s3_client if s3_client is not None else boto3.client("s3")
        self.chunk_size = chunk_size
        self.spool_max_bytes = spool_max_bytes

    def _key(self, locator: str) -> str:
        return f"{self.prefix}{locator}"

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") in _MISSING_CODES

    def write(self, locator: str, chunks: Iterable[bytes]) -> None:
        # S3 PUTs are atomic, so spool locally and upload once complete
        with tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes) as spool:
            for chunk in chunks:
                spool.write(chunk)
            spool.seek(0)
            try:
                self.s3_client.upload_fileobj(spool, self.bucket, self._key(locator))
            except (ClientError, BotoCoreError) as exc:
                raise StoreError(f"Failed to upload blob {locator}: {exc}") from exc

    def read(self, locator: str) -> Iterator[bytes]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=self._key(locator))
        except ClientError as exc:
            if self._is_missing(exc):
                raise NotFoundError(f"Blob {locator} not found") from exc
            raise StoreError(f"Failed to read blob {locator}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreError(f"Failed to read blob {locator}: {exc}") from exc
        return response["Body"].iter_chunks(chunk_size=self.chunk_size)

    def delete(self, locator: str) -> None:
        # delete_object succeeds for absent keys, so check first
        if not self.exists(locator):
            raise NotFoundError(f"Blob {locator} not found")
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=self._key(locator))
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"Failed to delete blob {locator}: {exc}") from exc

    def exists(self, locator: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=self._key(locator))
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            raise StoreError(f"Failed to stat blob {locator}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreError(f"Failed to stat blob {locator}: {exc}") from exc
        return True


def get_blob_store(settings, s3_client=None) -> BlobStore:
    """Build the blob store selected by STORAGE_URI"""
    uri = settings.STORAGE_URI
    if uri.startswith("s3://"):
        logger.info("Using S3 blob storage at %s", uri)
        return S3BlobStore(
            uri,
            s3_client=s3_client,
            chunk_size=settings.CHUNK_SIZE,
            spool_max_bytes=settings.DOWNLOAD_SPOOL_MAX_BYTES,
        )
    logger.info("Using local blob storage at %s", uri)
    return LocalBlobStore(uri, chunk_size=settings.CHUNK_SIZE)
