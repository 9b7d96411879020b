"""
Test the storage/metadata reconciliation report
"""

import io
import json
import sys
from unittest.mock import patch

import pytest

from api.files.services import UploadRequest
from scripts import reconcile_storage
from scripts.reconcile_storage import reconcile

TEST_BUCKET = "test-bucket"


def seed(file_services, name="kept.txt"):
    return file_services.uploads.upload(
        UploadRequest(
            content=io.BytesIO(b"kept"),
            declared_name=name,
            declared_mime_type="text/plain",
            declared_size=4,
        )
    )


def test_consistent(file_services, storage, store):
    seed(file_services, "a.txt")
    seed(file_services, "b.txt")

    report = reconcile(storage, store)

    assert report.objects == 2
    assert report.records == 2
    assert report.consistent


def test_orphans_and_dangling_records(file_services, storage, store, mock_s3_client, make_record):
    seed(file_services)
    mock_s3_client.put_object_bytes(TEST_BUCKET, "uploads/orphan.txt", b"lost")
    dangling = store.create(make_record(storage_ref="uploads/gone.txt"))

    report = reconcile(storage, store)

    assert report.orphaned_objects == ["uploads/orphan.txt"]
    assert report.dangling_records == [dangling.storage_ref]
    assert not report.consistent


def test_objects_outside_prefix_ignored(storage, store, mock_s3_client):
    mock_s3_client.put_object_bytes(TEST_BUCKET, "other/thing.txt", b"x")
    assert reconcile(storage, store).consistent


@pytest.mark.parametrize("orphan, exit_code", [(False, 0), (True, 2)])
def test_main_json(monkeypatch, capsys, storage, store, mock_s3_client, orphan, exit_code):
    if orphan:
        mock_s3_client.put_object_bytes(TEST_BUCKET, "uploads/orphan.txt", b"lost")
    monkeypatch.setattr(sys, "argv", ["reconcile_storage.py", "--backend", "sql", "--json"])
    monkeypatch.setattr(reconcile_storage, "build_store", lambda backend: store)

    with patch("scripts.reconcile_storage.S3StorageAdapter") as mock_adapter:
        mock_adapter.from_settings.return_value = storage
        with pytest.raises(SystemExit) as exc_info:
            reconcile_storage.main()

    assert exc_info.value.code == exit_code
    report = json.loads(capsys.readouterr().out)
    assert report["orphaned_objects"] == (["uploads/orphan.txt"] if orphan else [])


def test_main_storage_failure(monkeypatch, storage, store, mock_s3_client):
    mock_s3_client.simulate_error("ServiceUnavailable", ["list_objects_v2"])
    monkeypatch.setattr(sys, "argv", ["reconcile_storage.py"])
    monkeypatch.setattr(reconcile_storage, "build_store", lambda backend: store)

    with patch("scripts.reconcile_storage.S3StorageAdapter") as mock_adapter:
        mock_adapter.from_settings.return_value = storage
        with pytest.raises(SystemExit) as exc_info:
            reconcile_storage.main()

    assert exc_info.value.code == 1
