import io
import os
from datetime import datetime, timedelta, timezone

import pytest

# Settings must be selected before the app is imported
os.environ["SETTINGS_MODE"] = "test"
os.environ.setdefault("FILE_MASTER_KEY", "00" * 32)

from botocore.exceptions import ClientError, NoCredentialsError  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from api.filerecord.services import FileRecordStore  # noqa: E402
from api.retention.services import RetentionScheduler  # noqa: E402
from core.crypto import FileCipher, KeyWrapper  # noqa: E402
from core.deps import (  # noqa: E402
    get_blob_storage,
    get_db,
    get_file_cipher,
    get_key_wrapper,
    get_record_store,
    get_retention_scheduler,
)
from core.storage import LocalBlobStore  # noqa: E402
from main import app  # noqa: E402


SAMPLE_CSV = b"name,score\na,3\nb,10\nc,10\nd,1\n"
SORTED_CSV = b"name,score\nb,10\nc,10\na,3\nd,1\n"


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class MockStreamingBody:
    """Mimics botocore's StreamingBody"""

    def __init__(self, data: bytes):
        self._stream = io.BytesIO(data)

    def read(self, amt=None):
        return self._stream.read(amt)

    def iter_chunks(self, chunk_size: int = 1024):
        while True:
            chunk = self._stream.read(chunk_size)
            if not chunk:
                break
            yield chunk


class MockS3Client:
    """Mock S3 client for testing"""

    def __init__(self):
        self.objects = {}  # {(bucket, key): bytes}
        self.error_mode = None  # For simulating errors

    def simulate_error(self, error_type: str | None):
        """
        Configure client to raise specific errors

        Args:
            error_type: One of "AccessDenied", "NoCredentialsError", or None
        """
        self.error_mode = error_type

    def _maybe_fail(self, operation: str):
        if self.error_mode == "AccessDenied":
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}},
                operation,
            )
        if self.error_mode == "NoCredentialsError":
            raise NoCredentialsError()

    def _missing(self, operation: str, code: str = "NoSuchKey"):
        return ClientError(
            {"Error": {"Code": code, "Message": "The specified key does not exist."}},
            operation,
        )

    def upload_fileobj(self, fileobj, bucket: str, key: str):
        self._maybe_fail("PutObject")
        self.objects[(bucket, key)] = fileobj.read()

    def get_object(self, Bucket: str, Key: str):
        self._maybe_fail("GetObject")
        if (Bucket, Key) not in self.objects:
            raise self._missing("GetObject")
        return {"Body": MockStreamingBody(self.objects[(Bucket, Key)])}

    def head_object(self, Bucket: str, Key: str):
        self._maybe_fail("HeadObject")
        if (Bucket, Key) not in self.objects:
            raise self._missing("HeadObject", code="404")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def delete_object(self, Bucket: str, Key: str):
        self._maybe_fail("DeleteObject")
        self.objects.pop((Bucket, Key), None)
        return {}


@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    # File-backed so worker threads get their own connections
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="record_store")
def record_store_fixture(engine):
    return FileRecordStore(lambda: Session(engine))


@pytest.fixture(name="blob_store")
def blob_store_fixture(tmp_path):
    return LocalBlobStore(tmp_path / "blobs", chunk_size=16)


@pytest.fixture(name="cipher")
def cipher_fixture():
    return FileCipher()


@pytest.fixture(name="key_wrapper")
def key_wrapper_fixture():
    return KeyWrapper(bytes(range(32)))


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="scheduler")
def scheduler_fixture(record_store, blob_store, clock):
    return RetentionScheduler(
        record_store=record_store,
        blob_store=blob_store,
        retention_days=30,
        max_workers=2,
        clock=clock,
    )


@pytest.fixture(name="mock_s3_client")
def mock_s3_client_fixture():
    """Provide a mock S3 client for testing"""
    return MockS3Client()


@pytest.fixture(name="client")
def client_fixture(
    session: Session,
    record_store: FileRecordStore,
    blob_store: LocalBlobStore,
    cipher: FileCipher,
    key_wrapper: KeyWrapper,
    scheduler: RetentionScheduler,
):
    app.dependency_overrides[get_db] = lambda: session
    app.dependency_overrides[get_record_store] = lambda: record_store
    app.dependency_overrides[get_blob_storage] = lambda: blob_store
    app.dependency_overrides[get_file_cipher] = lambda: cipher
    app.dependency_overrides[get_key_wrapper] = lambda: key_wrapper
    app.dependency_overrides[get_retention_scheduler] = lambda: scheduler

    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
