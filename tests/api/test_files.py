"""
Test /files endpoints and services
"""
import uuid
from urllib.parse import unquote
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from api.files import services
from api.filerecord.models import FileRecord
from core.errors import (
    BlobMissingError,
    CorruptRecordError,
    CryptoError,
    FormatError,
    NotFoundError,
    StoreError,
)
from tests.conftest import SAMPLE_CSV, SORTED_CSV


def upload(record_store, blob_store, cipher, key_wrapper, raw=SAMPLE_CSV, filename="scores.csv"):
    return services.store_file(
        record_store=record_store,
        blob_store=blob_store,
        cipher=cipher,
        key_wrapper=key_wrapper,
        raw=raw,
        filename=filename,
        owner_id="owner@example.com",
        content_type="text/csv",
    )


def retrieve(record_store, blob_store, cipher, key_wrapper, file_id):
    file_content, content_type, filename = services.retrieve_file(
        record_store=record_store,
        blob_store=blob_store,
        cipher=cipher,
        key_wrapper=key_wrapper,
        file_id=file_id,
    )
    with file_content:
        return file_content.read(), content_type, filename


def disposition_filename(header: str) -> str:
    """Filename a client would save a download under"""
    params = dict(
        part.strip().split("=", 1) for part in header.split(";")[1:]
    )
    if "filename*" in params:
        charset, _, value = params["filename*"].split("'", 2)
        assert charset == "UTF-8"
        return unquote(value)
    return params["filename"].strip('"')


class TestContentDisposition:
    """Test the download Content-Disposition header"""

    def test_plain_name(self):
        assert services.content_disposition("scores.csv") == 'attachment; filename="scores.csv"'

    @pytest.mark.parametrize(
        "filename", ["报告.csv", "résumé.csv", 'we"ird.csv', "back\\slash.csv", "my file.csv"]
    )
    def test_other_names_are_latin1_safe(self, filename):
        header = services.content_disposition(filename)

        header.encode("latin-1")
        assert disposition_filename(header) == filename
        fallback = header.split(";")[1].strip()
        assert fallback.startswith('filename="')
        assert fallback.count('"') == 2



class TestStoreFile:
    """Test the upload service"""

    def test_store_file(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)

        assert response.display_name == "scores.csv.enc"
        assert len(response.iv) == 32
        assert response.size == len(SORTED_CSV)

        record = record_store.get(response.id)
        assert record.iv == response.iv
        assert record.owner_id == "owner@example.com"
        assert blob_store.exists(record.blob_locator)

        # Ciphertext at rest is raw CBC output without a header
        ciphertext = b"".join(blob_store.read(record.blob_locator))
        assert len(ciphertext) % 16 == 0
        assert SORTED_CSV not in ciphertext
        assert bytes.fromhex(record.iv) not in ciphertext

    def test_key_is_never_stored_in_plain(self, record_store, blob_store, cipher, key_wrapper):
        """The stored key is wrapped; unwrapping yields a 32-byte key"""
        captured = {}
        real_encrypt = cipher.encrypt

        def spy(plaintext):
            encryption = real_encrypt(plaintext)
            captured["key"] = encryption.key
            return encryption

        with patch.object(cipher, "encrypt", side_effect=spy):
            response = upload(record_store, blob_store, cipher, key_wrapper)

        record = record_store.get(response.id)
        assert captured["key"].hex() not in record.wrapped_key
        assert captured["key"].hex() not in response.model_dump_json()
        key, iv, _ = services.unwrap_key_material(record, key_wrapper)
        assert key == captured["key"]
        assert iv.hex() == record.iv

    def test_each_upload_gets_fresh_key_material(self, record_store, blob_store, cipher, key_wrapper):
        ids = [upload(record_store, blob_store, cipher, key_wrapper).id for _ in range(5)]
        records = [record_store.get(i) for i in ids]
        assert len({r.iv for r in records}) == 5
        assert len({r.blob_locator for r in records}) == 5
        keys = {services.unwrap_key_material(r, key_wrapper)[0] for r in records}
        assert len(keys) == 5

    def test_invalid_csv_stores_nothing(self, record_store, blob_store, cipher, key_wrapper):
        with pytest.raises(FormatError):
            upload(record_store, blob_store, cipher, key_wrapper, raw=b"name,score\ne,abc\n")
        assert record_store.list_all() == []
        assert list(blob_store.root.iterdir()) == []

    def test_failed_commit_rolls_back_blob(self, record_store, blob_store, cipher, key_wrapper):
        with patch.object(record_store, "create", side_effect=StoreError("db down")):
            with pytest.raises(StoreError):
                upload(record_store, blob_store, cipher, key_wrapper)
        assert list(blob_store.root.iterdir()) == []
        assert record_store.list_all() == []

    def test_failed_blob_write_commits_nothing(self, record_store, blob_store, cipher, key_wrapper):
        with patch.object(blob_store, "write", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                upload(record_store, blob_store, cipher, key_wrapper)
        assert record_store.list_all() == []

    def test_display_name_strips_directories(self):
        assert services.display_name_for("../../etc/scores.csv") == "scores.csv.enc"
        assert services.display_name_for(None) == "upload.csv.enc"
        assert services.original_filename("scores.csv.enc") == "scores.csv"
        assert services.original_filename("scores.csv") == "scores.csv"


class TestRetrieveFile:
    """Test the retrieval service"""

    def test_round_trip(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)

        content, content_type, filename = retrieve(
            record_store, blob_store, cipher, key_wrapper, response.id
        )
        assert content == SORTED_CSV
        assert content_type == "text/csv"
        assert filename == "scores.csv"

    def test_large_file_spills_to_disk(self, record_store, blob_store, cipher, key_wrapper):
        rows = b"".join(f"row{i},{i % 97}\n".encode() for i in range(5000))
        response = upload(record_store, blob_store, cipher, key_wrapper, raw=b"name,score\n" + rows)
        file_content, _, _ = services.retrieve_file(
            record_store, blob_store, cipher, key_wrapper, response.id, spool_max_bytes=1024
        )
        with file_content:
            data = file_content.read()
        assert data.startswith(b"name,score\nrow96,96\n")
        assert len(data) == response.size

    def test_retrieve_is_read_only(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        before = record_store.get(response.id).model_dump()
        retrieve(record_store, blob_store, cipher, key_wrapper, response.id)
        retrieve(record_store, blob_store, cipher, key_wrapper, response.id)
        assert record_store.get(response.id).model_dump() == before

    def test_missing_record(self, record_store, blob_store, cipher, key_wrapper):
        with pytest.raises(NotFoundError):
            retrieve(record_store, blob_store, cipher, key_wrapper, uuid.uuid4())

    def test_missing_blob(self, record_store, blob_store, cipher, key_wrapper, caplog):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        blob_store.delete(record_store.get(response.id).blob_locator)

        with pytest.raises(BlobMissingError):
            retrieve(record_store, blob_store, cipher, key_wrapper, response.id)
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    @pytest.mark.parametrize("bad_iv", ["bb" * 8, "bb" * 17, "", "zz" * 16])
    def test_invalid_iv_is_corrupt(self, record_store, blob_store, cipher, key_wrapper, bad_iv):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        self._tamper(record_store, response.id, iv=bad_iv)

        with patch.object(cipher, "decrypt") as decrypt:
            with pytest.raises(CorruptRecordError):
                retrieve(record_store, blob_store, cipher, key_wrapper, response.id)
            decrypt.assert_not_called()

    @pytest.mark.parametrize("key_size", [16, 31, 33, 64])
    def test_invalid_key_length_is_corrupt(self, record_store, blob_store, cipher, key_wrapper, key_size):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        record = record_store.get(response.id)
        bad_key = key_wrapper.wrap(b"k" * key_size, associated_data=bytes.fromhex(record.iv))
        self._tamper(record_store, response.id, wrapped_key=bad_key.hex())

        with patch.object(cipher, "decrypt") as decrypt:
            with pytest.raises(CorruptRecordError):
                retrieve(record_store, blob_store, cipher, key_wrapper, response.id)
            decrypt.assert_not_called()

    def test_unwrappable_key_is_corrupt(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        self._tamper(record_store, response.id, wrapped_key="00" * 60)

        with pytest.raises(CorruptRecordError):
            retrieve(record_store, blob_store, cipher, key_wrapper, response.id)

    def test_tampered_ciphertext(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        locator = record_store.get(response.id).blob_locator
        ciphertext = bytearray(b"".join(blob_store.read(locator)))
        ciphertext[0] ^= 0xFF
        blob_store.write(locator, [bytes(ciphertext)])

        with pytest.raises(CryptoError):
            retrieve(record_store, blob_store, cipher, key_wrapper, response.id)

    def test_truncated_ciphertext(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        locator = record_store.get(response.id).blob_locator
        ciphertext = b"".join(blob_store.read(locator))
        blob_store.write(locator, [ciphertext[:-3]])

        with pytest.raises(CryptoError):
            retrieve(record_store, blob_store, cipher, key_wrapper, response.id)

    @staticmethod
    def _tamper(record_store, record_id, **changes):
        with record_store._session_factory() as session:
            record = session.get(FileRecord, record_id)
            for key, value in changes.items():
                setattr(record, key, value)
            session.add(record)
            session.commit()


class TestDeleteFile:
    """Test administrative deletes"""

    def test_delete_file(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        locator = record_store.get(response.id).blob_locator

        services.delete_file(record_store, blob_store, response.id)

        assert not blob_store.exists(locator)
        with pytest.raises(NotFoundError):
            record_store.get(response.id)

    def test_delete_tolerates_missing_blob(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)
        blob_store.delete(record_store.get(response.id).blob_locator)

        services.delete_file(record_store, blob_store, response.id)
        assert record_store.list_all() == []

    def test_blob_failure_keeps_record(self, record_store, blob_store, cipher, key_wrapper):
        response = upload(record_store, blob_store, cipher, key_wrapper)

        with patch.object(blob_store, "delete", side_effect=StoreError("disk error")):
            with pytest.raises(StoreError):
                services.delete_file(record_store, blob_store, response.id)
        assert record_store.get(response.id)


class TestFilesAPI:
    """Test the /files endpoints"""

    def _upload(self, client: TestClient, content=SAMPLE_CSV, content_type="text/csv", filename="scores.csv"):
        return client.post(
            "/api/v1/files/upload",
            files={"file": (filename, content, content_type)},
            data={"owner_id": "owner@example.com"},
        )

    def test_upload(self, client: TestClient):
        response = self._upload(client)
        assert response.status_code == 201
        data = response.json()
        assert data["display_name"] == "scores.csv.enc"
        assert len(data["iv"]) == 32
        assert "key" not in data
        assert "wrapped_key" not in data

    def test_upload_rejects_non_csv(self, client: TestClient):
        response = self._upload(client, content=b'{"a": 1}', content_type="application/json")
        assert response.status_code == 400
        assert "Only CSV" in response.json()["detail"]

    def test_upload_rejects_malformed_numbers(self, client: TestClient):
        response = self._upload(client, content=b"name,score\na,1\ne,NaN\n")
        assert response.status_code == 400

    def test_upload_requires_owner(self, client: TestClient):
        response = client.post(
            "/api/v1/files/upload",
            files={"file": ("scores.csv", SAMPLE_CSV, "text/csv")},
        )
        assert response.status_code == 422

    def test_upload_storage_failure(self, client: TestClient, blob_store):
        with patch.object(blob_store, "write", side_effect=StoreError("disk full")):
            response = self._upload(client)
        assert response.status_code == 503

    def test_download(self, client: TestClient):
        file_id = self._upload(client).json()["id"]

        response = client.get(f"/api/v1/files/download/{file_id}")
        assert response.status_code == 200
        assert response.content == SORTED_CSV
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"] == 'attachment; filename="scores.csv"'

    @pytest.mark.parametrize("filename", ["报告.csv", "résumé.csv", 'we"ird.csv', "my file.csv"])
    def test_download_keeps_original_name(self, client: TestClient, filename):
        response = self._upload(client, filename=filename)
        assert response.status_code == 201
        stored_name = services.original_filename(response.json()["display_name"])

        response = client.get(f"/api/v1/files/download/{response.json()['id']}")
        assert response.status_code == 200
        assert response.content == SORTED_CSV
        assert disposition_filename(response.headers["content-disposition"]) == stored_name

    def test_download_not_found(self, client: TestClient):
        response = client.get(f"/api/v1/files/download/{uuid.uuid4()}")
        assert response.status_code == 404

    def test_download_invalid_id(self, client: TestClient):
        response = client.get("/api/v1/files/download/not-a-uuid")
        assert response.status_code == 422

    def test_download_corrupt_record(self, client: TestClient, record_store):
        file_id = self._upload(client).json()["id"]
        TestRetrieveFile._tamper(record_store, uuid.UUID(file_id), iv="00" * 8)

        response = client.get(f"/api/v1/files/download/{file_id}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid encryption key or IV"

    def test_download_missing_blob(self, client: TestClient, record_store, blob_store):
        file_id = self._upload(client).json()["id"]
        blob_store.delete(record_store.get(uuid.UUID(file_id)).blob_locator)

        response = client.get(f"/api/v1/files/download/{file_id}")
        assert response.status_code == 500
        assert response.json()["detail"] == "Stored file content is missing"

    def test_list_files(self, client: TestClient):
        self._upload(client, filename="a.csv")
        self._upload(client, filename="b.csv")

        response = client.get("/api/v1/files")
        assert response.status_code == 200
        data = response.json()
        assert data["total_items"] == 2
        assert {item["display_name"] for item in data["data"]} == {"a.csv.enc", "b.csv.enc"}
        for item in data["data"]:
            assert "wrapped_key" not in item
            assert "mac" not in item
            assert "blob_locator" not in item

    def test_delete(self, client: TestClient):
        file_id = self._upload(client).json()["id"]

        response = client.delete(f"/api/v1/files/{file_id}")
        assert response.status_code == 204
        assert client.get(f"/api/v1/files/download/{file_id}").status_code == 404
        assert client.delete(f"/api/v1/files/{file_id}").status_code == 404

    def test_health(self, client: TestClient):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
