import os

os.environ["SETTINGS_MODE"] = "test"

import copy
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from fastapi.testclient import TestClient
from opensearchpy.exceptions import ConflictError, NotFoundError
from sqlmodel import SQLModel

from api.files.models import FileRecordPublic
from api.files.search_store import OpenSearchMetadataStore
from api.files.services import FileServices
from api.files.storage import S3StorageAdapter
from api.files.store import SQLMetadataStore
from core.config import InMemoryDbSettings
from core.db import build_engine, create_db_and_tables
from core.deps import get_file_services
from main import app

TEST_BUCKET = "test-bucket"


def _client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} (simulated)"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class MockS3Paginator:
    """Mock S3 paginator for list_objects_v2"""

    def __init__(self, client, page_size: int = 2):
        self.client = client
        self.page_size = page_size

    def paginate(self, Bucket: str, Prefix: str = ""):
        """Yield pages of at most page_size keys"""
        self.client.maybe_fail("list_objects_v2")
        keys = sorted(
            key for key in self.client.buckets.get(Bucket, {}) if key.startswith(Prefix)
        )
        if not keys:
            yield {"KeyCount": 0}
            return
        for start in range(0, len(keys), self.page_size):
            chunk = keys[start:start + self.page_size]
            yield {
                "KeyCount": len(chunk),
                "Contents": [
                    {"Key": key, "Size": len(self.client.buckets[Bucket][key]["Body"])}
                    for key in chunk
                ],
            }


class MockS3Client:
    """Mock S3 client for testing"""

    def __init__(self):
        self.buckets = {}  # {bucket_name: {key: {"Body": bytes, "ContentType": str}}}
        self.error_mode = None  # For simulating errors
        self.error_operations = None  # None means every operation
        self.delay = 0.0
        self.calls = []
        self._lock = threading.Lock()

    def simulate_error(self, error_type: str | None, operations=None, delay: float = 0.5):
        """
        Configure client to raise specific errors

        Args:
            error_type: One of "AccessDenied", "ServiceUnavailable",
                "EndpointConnectionError", "Slow" or None to reset
            operations: Operation names to fail, default all
            delay: Seconds an operation takes in "Slow" mode
        """
        self.error_mode = error_type
        self.error_operations = set(operations) if operations else None
        self.delay = delay

    def maybe_fail(self, operation: str):
        with self._lock:
            self.calls.append(operation)
        if self.error_mode is None:
            return
        if self.error_operations is not None and operation not in self.error_operations:
            return
        if self.error_mode == "AccessDenied":
            raise _client_error("AccessDenied", 403, operation)
        if self.error_mode == "ServiceUnavailable":
            raise _client_error("ServiceUnavailable", 503, operation)
        if self.error_mode == "EndpointConnectionError":
            raise EndpointConnectionError(endpoint_url="https://s3.test.local")
        if self.error_mode == "Slow":
            time.sleep(self.delay)

    def put_object_bytes(self, bucket: str, key: str, body: bytes, content_type="text/plain"):
        """Seed an object directly"""
        with self._lock:
            self.buckets.setdefault(bucket, {})[key] = {
                "Body": body,
                "ContentType": content_type,
            }

    def upload_fileobj(self, Fileobj, Bucket: str, Key: str, ExtraArgs=None, **kwargs):
        self.maybe_fail("upload_fileobj")
        chunks = []
        while True:
            chunk = Fileobj.read(8192)
            if not chunk:
                break
            chunks.append(chunk)
        self.put_object_bytes(
            Bucket, Key, b"".join(chunks), (ExtraArgs or {}).get("ContentType")
        )

    def head_object(self, Bucket: str, Key: str):
        self.maybe_fail("head_object")
        obj = self.buckets.get(Bucket, {}).get(Key)
        if obj is None:
            raise _client_error("404", 404, "HeadObject")
        return {"ContentLength": len(obj["Body"]), "ContentType": obj["ContentType"]}

    def delete_object(self, Bucket: str, Key: str):
        self.maybe_fail("delete_object")
        with self._lock:
            self.buckets.get(Bucket, {}).pop(Key, None)
        return {}

    def generate_presigned_url(self, ClientMethod: str, Params=None, ExpiresIn=3600):
        self.maybe_fail("generate_presigned_url")
        return (
            f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}"
            f"?X-Amz-Expires={ExpiresIn}&X-Amz-Signature=test"
        )

    def get_paginator(self, operation: str):
        """Return a mock paginator"""
        if operation == "list_objects_v2":
            return MockS3Paginator(self)
        raise NotImplementedError(f"Paginator for {operation} not implemented")

    def keys(self, bucket: str = TEST_BUCKET) -> list[str]:
        return sorted(self.buckets.get(bucket, {}))

    def body(self, key: str, bucket: str = TEST_BUCKET) -> bytes:
        return self.buckets[bucket][key]["Body"]


class MockOpenSearchClient:
    """
    Mock OpenSearch client for testing.
    Documents carry a seq_no so optimistic concurrency can be exercised;
    search understands the filters, sorting and paging the store sends.
    """

    def __init__(self):
        self.documents = {}  # {index: {id: {"_source": dict, "_seq_no": int}}}
        self.indices_data = {}  # Store index metadata
        self.seq_no = 0
        self.conflicts_to_raise = 0
        self.fail_with = None  # Exception raised by every data call
        self.aggregation_requests = 0

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def index(self, index: str, id: str, body: dict, op_type=None, refresh=None,
              if_seq_no=None, if_primary_term=None):
        """Mock index operation"""
        self._check()
        docs = self.documents.setdefault(index, {})
        if op_type == "create" and id in docs:
            raise ConflictError(409, "version_conflict_engine_exception", {})
        if if_seq_no is not None:
            if self.conflicts_to_raise:
                self.conflicts_to_raise -= 1
                raise ConflictError(409, "version_conflict_engine_exception", {})
            if id not in docs or docs[id]["_seq_no"] != if_seq_no:
                raise ConflictError(409, "version_conflict_engine_exception", {})
        self.seq_no += 1
        docs[id] = {"_source": copy.deepcopy(body), "_seq_no": self.seq_no}
        return {"_id": id, "_index": index, "result": "created"}

    def get(self, index: str, id: str):
        self._check()
        doc = self.documents.get(index, {}).get(id)
        if doc is None:
            raise NotFoundError(404, "not_found", {"found": False})
        return {
            "_id": id,
            "_source": copy.deepcopy(doc["_source"]),
            "_seq_no": doc["_seq_no"],
            "_primary_term": 1,
        }

    def delete(self, index: str, id: str, refresh=None):
        self._check()
        if id not in self.documents.get(index, {}):
            raise NotFoundError(404, "not_found", {"result": "not_found"})
        del self.documents[index][id]
        return {"_id": id, "result": "deleted"}

    @staticmethod
    def _matches_filter(source: dict, clause: dict) -> bool:
        (field, value), = clause["term"].items()
        return source.get(field) == value

    @staticmethod
    def _matches_search(source: dict, should: list) -> bool:
        tag_term = should[0]["term"]["tags"]["value"].lower()
        if tag_term in (tag.lower() for tag in source.get("tags", [])):
            return True
        query_string = should[1]["query_string"]
        tokens = [
            token.strip()[2:-2].replace("\\", "").lower()
            for token in query_string["query"].split(" AND ")
        ]
        texts = []
        for field in query_string["fields"]:
            value = source.get(field.split(".")[0])
            if isinstance(value, list):
                texts.extend(str(v).lower() for v in value)
            elif value is not None:
                texts.append(str(value).lower())
        return all(any(token in text for text in texts) for token in tokens)

    def search(self, index: str, body: dict):
        """Mock search operation"""
        self._check()
        sources = [doc["_source"] for doc in self.documents.get(index, {}).values()]

        if "aggs" in body:
            composite = body["aggs"]["groups"]["composite"]
            groups: dict = {}
            for source in sources:
                key = (source["mime_type"], source.get("uploaded_by"))
                count, size = groups.get(key, (0, 0))
                groups[key] = (count + 1, size + source["size_bytes"])
            ordered = sorted(groups, key=lambda k: (k[0], k[1] or ""))
            after = composite.get("after")
            if after:
                mark = (after["mime_type"], after["uploaded_by"] or "")
                ordered = [k for k in ordered if (k[0], k[1] or "") > mark]
            page = ordered[:composite["size"]]
            buckets = [
                {
                    "key": {"mime_type": mime_type, "uploaded_by": uploader},
                    "doc_count": groups[(mime_type, uploader)][0],
                    "total_bytes": {"value": float(groups[(mime_type, uploader)][1])},
                }
                for mime_type, uploader in page
            ]
            result: dict = {"buckets": buckets}
            if buckets:
                result["after_key"] = buckets[-1]["key"]
            self.aggregation_requests += 1
            return {"hits": {"total": {"value": len(sources)}, "hits": []},
                    "aggregations": {"groups": result}}

        bool_query = body["query"]["bool"]
        hits = [
            source
            for source in sources
            if all(self._matches_filter(source, clause) for clause in bool_query["filter"])
            and ("should" not in bool_query or self._matches_search(source, bool_query["should"]))
        ]

        # Apply the sort clauses from last to first so the first one wins
        for sort_item in reversed(body.get("sort", [])):
            (field, options), = sort_item.items()
            base_field = field.split(".")[0]
            hits.sort(
                key=lambda source: source.get(base_field),
                reverse=options.get("order") == "desc",
            )

        start = body.get("from", 0)
        page = hits[start:start + body.get("size", 10)]
        return {
            "hits": {
                "total": {"value": len(hits), "relation": "eq"},
                "hits": [{"_id": s["id"], "_source": copy.deepcopy(s)} for s in page],
            }
        }

    def close(self):
        pass

    @property
    def indices(self):
        """Mock indices property"""
        return MockIndices(self)


class MockIndices:
    """Mock indices operations"""

    def __init__(self, client):
        self.client = client

    def exists(self, index: str):
        """Mock index exists check"""
        return index in self.client.indices_data

    def create(self, index: str, body=None):
        """Mock index creation"""
        self.client.indices_data[index] = body or {}
        self.client.documents.setdefault(index, {})
        return {"acknowledged": True}


@pytest.fixture(name="test_settings")
def test_settings_fixture():
    """Small, fast limits for the test suite"""
    return InMemoryDbSettings(
        STORAGE_BUCKET=TEST_BUCKET,
        STORAGE_PREFIX="uploads",
        CDN_BASE_URL=None,
        STORAGE_ENDPOINT_URL=None,
        AWS_REGION="us-east-1",
        MAX_FILE_SIZE=1024 * 1024,
        ALLOWED_MIME_TYPES=None,
        MAX_BATCH_FILES=5,
        BATCH_CONCURRENCY=3,
        DEFAULT_PAGE_LIMIT=10,
        MAX_PAGE_LIMIT=100,
        STORAGE_TIMEOUT=2.0,
        METADATA_TIMEOUT=2.0,
        WORKER_POOL_SIZE=8,
        ENVIRONMENT="test",
    )


@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    """
    File-backed SQLite so worker threads get their own connections
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'filevault.db'}")
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="mock_s3_client")
def mock_s3_client_fixture():
    """Provide a mock S3 client for testing"""
    return MockS3Client()


@pytest.fixture(name="mock_opensearch_client")
def mock_opensearch_client_fixture():
    """Provide a mock OpenSearch client for testing"""
    client = MockOpenSearchClient()
    client.indices.create(index="files")
    return client


@pytest.fixture(name="storage")
def storage_fixture(mock_s3_client: MockS3Client, test_settings):
    return S3StorageAdapter.from_settings(test_settings, client=mock_s3_client)


@pytest.fixture(name="store")
def store_fixture(engine):
    return SQLMetadataStore(engine)


@pytest.fixture(name="search_store")
def search_store_fixture(mock_opensearch_client: MockOpenSearchClient):
    return OpenSearchMetadataStore(mock_opensearch_client, "files")


@pytest.fixture(name="file_services")
def file_services_fixture(storage, store, test_settings):
    services = FileServices(storage=storage, store=store, settings=test_settings)
    yield services
    services.close()


@pytest.fixture(name="client")
def client_fixture(file_services: FileServices):
    def get_file_services_override():
        return file_services

    app.dependency_overrides[get_file_services] = get_file_services_override

    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="make_record")
def make_record_fixture():
    """Build FileRecordPublic instances with sensible defaults"""
    base = datetime(2020, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(**overrides) -> FileRecordPublic:
        counter["n"] += 1
        n = counter["n"]
        moment = base + timedelta(minutes=n)
        fields = {
            "id": uuid.uuid4(),
            "storage_ref": f"uploads/{uuid.uuid4().hex}-file{n}.txt",
            "url": f"http://cdn.test/file{n}.txt",
            "secure_url": f"https://cdn.test/file{n}.txt",
            "original_name": f"file{n}.txt",
            "sanitized_name": f"file{n}.txt",
            "mime_type": "text/plain",
            "size_bytes": n * 10,
            "checksum": None,
            "uploaded_by": None,
            "tags": [],
            "is_public": False,
            "metadata": {},
            "created_at": moment,
            "updated_at": moment,
        }
        fields.update(overrides)
        return FileRecordPublic(**fields)

    return _make
