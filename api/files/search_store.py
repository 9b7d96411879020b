"""
OpenSearch implementation of the MetadataStore protocol.

One document per file, keyed by the file id. Writes wait for a refresh so
that a read issued right after a write observes it.
"""

import json
import logging
import re
import uuid
from typing import Iterator

from opensearchpy.exceptions import (
    ConflictError,
    ConnectionError as OpenSearchConnectionError,
    NotFoundError,
    RequestError,
    TransportError,
)
from opensearchpy.helpers import scan

from api.files.models import (
    MAX_METADATA_KEYS,
    FilePage,
    FileQuery,
    FileRecordPublic,
    FileUpdate,
    SortField,
)
from api.files.store import (
    ANONYMOUS_UPLOADER,
    SEARCHABLE_METADATA_KEYS,
    StatsSnapshot,
    check_paging,
    utcnow,
)
from api.files.validator import normalize_mime_type
from core.exceptions import MetadataUnavailable, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ["original_name", "sanitized_name", *SEARCHABLE_METADATA_KEYS]

SORT_FIELDS = {
    SortField.CREATED_AT: "created_at",
    SortField.UPDATED_AT: "updated_at",
    SortField.ORIGINAL_NAME: "original_name.keyword",
    SortField.SIZE_BYTES: "size_bytes",
    SortField.MIME_TYPE: "mime_type",
}

# Groups fetched per stats aggregation request
STATS_PAGE_SIZE = 500

_RESERVED = re.compile(r'([+\-=&|><!(){}\[\]^"~*?:\\/])')


def _escape(token: str) -> str:
    """Escape query_string syntax so user input is matched literally"""
    return _RESERVED.sub(r"\\\1", token)


def build_search_body(query: FileQuery) -> dict:
    """
    Define the search body for a listing.
    Includes filtering, sorting and pagination
    """
    filters = []
    if query.uploaded_by is not None:
        filters.append({"term": {"uploaded_by": query.uploaded_by}})
    if query.is_public is not None:
        filters.append({"term": {"is_public": query.is_public}})
    if query.mime_type:
        filters.append({"term": {"mime_type": normalize_mime_type(query.mime_type)}})

    bool_query: dict = {"filter": filters}
    if query.search and query.search.strip():
        term = query.search.strip()
        search_list = term.split()
        formatted_list = ["(*{}*)".format(_escape(token)) for token in search_list]
        bool_query["should"] = [
            {"term": {"tags": {"value": term, "case_insensitive": True}}},
            {
                "query_string": {
                    "query": " AND ".join(formatted_list),
                    "fields": SEARCH_FIELDS,
                    "analyze_wildcard": True,
                }
            },
        ]
        bool_query["minimum_should_match"] = 1

    return {
        "query": {"bool": bool_query},
        "from": (query.page - 1) * query.limit,
        "size": query.limit,
        "sort": [
            {SORT_FIELDS[query.sort_by]: {"order": query.sort_order}},
            {"id": {"order": "asc"}},
        ],
        "track_total_hits": True,
    }


def to_document(record: FileRecordPublic) -> dict:
    document = record.model_dump(mode="json", by_alias=False, exclude={"metadata"})
    document["metadata_json"] = json.dumps(record.metadata, ensure_ascii=False)
    for key in SEARCHABLE_METADATA_KEYS:
        value = record.metadata.get(key)
        document[key] = value if isinstance(value, str) else None
    return document


def from_document(source: dict) -> FileRecordPublic:
    fields = {
        key: value
        for key, value in source.items()
        if key not in SEARCHABLE_METADATA_KEYS and key != "metadata_json"
    }
    fields["metadata"] = json.loads(source.get("metadata_json") or "{}")
    return FileRecordPublic.model_validate(fields)


class OpenSearchMetadataStore:
    """MetadataStore on an OpenSearch index"""

    def __init__(self, client, index: str = "files", *, max_update_attempts: int = 3,
                 stats_page_size: int = STATS_PAGE_SIZE):
        self.client = client
        self.index = index
        self.max_update_attempts = max_update_attempts
        self.stats_page_size = stats_page_size

    def _fail(self, action: str, exc: Exception) -> Exception:
        if isinstance(exc, RequestError):
            return ValidationFailed(f"Metadata store rejected the {action} request: {exc.error}")
        logger.error("OpenSearch %s failed: %s", action, exc)
        return MetadataUnavailable(
            "Metadata store is unavailable",
            details={"reason": str(exc)},
        )

    def _get_hit(self, file_id: uuid.UUID) -> dict:
        try:
            return self.client.get(index=self.index, id=str(file_id))
        except NotFoundError as exc:
            raise NotFound(f"File {file_id} not found") from exc
        except (OpenSearchConnectionError, TransportError) as exc:
            raise self._fail("get", exc) from exc

    def create(self, record: FileRecordPublic) -> FileRecordPublic:
        record = record.model_copy(update={"tags": sorted(record.tags)})
        try:
            self.client.index(
                index=self.index,
                id=str(record.id),
                body=to_document(record),
                op_type="create",
                refresh="wait_for",
            )
        except ConflictError as exc:
            raise ValidationFailed(f"File {record.id} already exists") from exc
        except (OpenSearchConnectionError, TransportError) as exc:
            raise self._fail("create", exc) from exc
        return record

    def get(self, file_id: uuid.UUID) -> FileRecordPublic:
        return from_document(self._get_hit(file_id)["_source"])

    def update(self, file_id: uuid.UUID, changes: FileUpdate) -> FileRecordPublic:
        # Optimistic concurrency: re-read and retry when another writer wins
        for attempt in range(1, self.max_update_attempts + 1):
            hit = self._get_hit(file_id)
            record = from_document(hit["_source"])

            merged = dict(record.metadata)
            for key, value in (changes.metadata or {}).items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            if len(merged) > MAX_METADATA_KEYS:
                raise ValidationFailed(f"Metadata may hold at most {MAX_METADATA_KEYS} keys")

            updated = record.model_copy(
                update={
                    "tags": sorted(changes.tags) if changes.tags is not None else record.tags,
                    "is_public": (
                        changes.is_public if changes.is_public is not None else record.is_public
                    ),
                    "metadata": merged,
                    "updated_at": utcnow(),
                }
            )
            try:
                self.client.index(
                    index=self.index,
                    id=str(file_id),
                    body=to_document(updated),
                    if_seq_no=hit["_seq_no"],
                    if_primary_term=hit["_primary_term"],
                    refresh="wait_for",
                )
                return updated
            except ConflictError:
                logger.info("Concurrent update of %s (attempt %d)", file_id, attempt)
            except (OpenSearchConnectionError, TransportError) as exc:
                raise self._fail("update", exc) from exc

        raise MetadataUnavailable(f"File {file_id} is being updated concurrently, retry later")

    def delete(self, file_id: uuid.UUID) -> None:
        try:
            self.client.delete(index=self.index, id=str(file_id), refresh="wait_for")
        except NotFoundError as exc:
            raise NotFound(f"File {file_id} not found") from exc
        except (OpenSearchConnectionError, TransportError) as exc:
            raise self._fail("delete", exc) from exc

    def query(self, query: FileQuery) -> FilePage:
        check_paging(query)
        try:
            response = self.client.search(index=self.index, body=build_search_body(query))
        except (OpenSearchConnectionError, TransportError) as exc:
            raise self._fail("search", exc) from exc

        hits = response["hits"]
        total = hits["total"]["value"] if isinstance(hits["total"], dict) else hits["total"]
        return FilePage(
            records=[from_document(hit["_source"]) for hit in hits["hits"]],
            total=total,
        )

    def stats(self) -> StatsSnapshot:
        # Page through every (mime_type, uploader) group so none are dropped
        snapshot = StatsSnapshot()
        composite: dict = {
            "size": self.stats_page_size,
            "sources": [
                {"mime_type": {"terms": {"field": "mime_type"}}},
                {"uploaded_by": {"terms": {"field": "uploaded_by", "missing_bucket": True}}},
            ],
        }
        while True:
            body = {
                "size": 0,
                "aggs": {
                    "groups": {
                        "composite": composite,
                        "aggs": {"total_bytes": {"sum": {"field": "size_bytes"}}},
                    }
                },
            }
            try:
                response = self.client.search(index=self.index, body=body)
            except (OpenSearchConnectionError, TransportError) as exc:
                raise self._fail("stats", exc) from exc

            groups = response["aggregations"]["groups"]
            for bucket in groups["buckets"]:
                snapshot.add(
                    bucket["key"]["mime_type"],
                    bucket["key"]["uploaded_by"],
                    bucket["doc_count"],
                    int(bucket["total_bytes"]["value"] or 0),
                )
            if not groups["buckets"] or "after_key" not in groups:
                return snapshot
            composite["after"] = groups["after_key"]

    def iter_storage_refs(self) -> Iterator[str]:
        try:
            for hit in scan(
                self.client,
                index=self.index,
                query={"query": {"match_all": {}}, "_source": ["storage_ref"]},
            ):
                yield hit["_source"]["storage_ref"]
        except (OpenSearchConnectionError, TransportError) as exc:
            raise self._fail("scan", exc) from exc
