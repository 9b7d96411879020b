"""
Services for the Files API

UploadOrchestrator runs Validator -> Storage Adapter -> Metadata Store and
keeps the two stores consistent: a stored object never outlives a failed
metadata write without being reported. LifecycleManager applies the same
rule to updates and deletes; QueryEngine is read-only.
"""

import logging
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, NoReturn, TypeVar

from pydantic import ValidationError
from pydantic.alias_generators import to_camel, to_snake

from api.files.models import (
    IMMUTABLE_FIELDS,
    BatchUploadResult,
    DeletedFile,
    FileQuery,
    FileRecordPublic,
    FileStats,
    FileUpdate,
    SortField,
    UploadOutcome,
    check_metadata,
    normalize_tags,
)
from api.files.storage import StorageAdapter, StoredObject
from api.files.store import MetadataStore, utcnow
from api.files.validator import Validator
from core.config import Settings
from core.exceptions import (
    ErrorCode,
    FileVaultError,
    MetadataUnavailable,
    NotFound,
    OrphanedObject,
    PartialDelete,
    StorageUnavailable,
    ValidationFailed,
)
from core.models import PageInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def call_with_timeout(
    executor: Executor | None,
    timeout: float | None,
    fn: Callable[..., T],
    *args,
    **kwargs,
) -> T:
    """
    Run fn on the worker pool and wait at most ``timeout`` seconds.
    Raises concurrent.futures.TimeoutError when the bound is hit; the call
    itself keeps running in the background.
    """
    if executor is None or not timeout:
        return fn(*args, **kwargs)
    return executor.submit(fn, *args, **kwargs).result(timeout=timeout)


@dataclass
class UploadRequest:
    """One file as received from the client"""

    content: BinaryIO
    declared_name: str | None
    declared_mime_type: str | None
    declared_size: int | None
    uploaded_by: str | None = None
    tags: list[str] | None = None
    is_public: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class UploadOrchestrator:
    """Single and batch uploads"""

    def __init__(
        self,
        *,
        validator: Validator,
        storage: StorageAdapter,
        store: MetadataStore,
        executor: Executor | None = None,
        storage_timeout: float | None = None,
        metadata_timeout: float | None = None,
        max_batch_files: int = 10,
        batch_concurrency: int = 4,
        show_details: bool = True,
    ):
        self.validator = validator
        self.storage = storage
        self.store = store
        self.executor = executor
        self.storage_timeout = storage_timeout
        self.metadata_timeout = metadata_timeout
        self.max_batch_files = max_batch_files
        self.batch_concurrency = batch_concurrency
        self.show_details = show_details

    def upload(self, request: UploadRequest) -> FileRecordPublic:
        """
        Validate, store, then record one file.

        Raises ValidationFailed (nothing written), StorageUnavailable or
        StorageRejected (nothing written), MetadataUnavailable (stored object
        removed again) or OrphanedObject (stored object could not be removed).
        """
        result = self.validator.validate(
            mime_type=request.declared_mime_type,
            size_bytes=request.declared_size,
            raw_name=request.declared_name,
        )
        if not result.accepted:
            raise ValidationFailed(result.message, code=ErrorCode(result.reason.value))

        try:
            tags = normalize_tags(request.tags)
            metadata = check_metadata(request.metadata)
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc

        if hasattr(request.content, "seekable") and request.content.seekable():
            request.content.seek(0)

        stored = self._put(request.content, result.sanitized_name, result.mime_type)

        now = utcnow()
        record = FileRecordPublic(
            id=uuid.uuid4(),
            storage_ref=stored.storage_ref,
            url=stored.url,
            secure_url=stored.secure_url,
            original_name=request.declared_name,
            sanitized_name=result.sanitized_name,
            mime_type=result.mime_type,
            size_bytes=stored.size_bytes,
            checksum=stored.checksum,
            uploaded_by=(request.uploaded_by or "").strip() or None,
            tags=tags,
            is_public=request.is_public,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

        if stored.size_bytes != request.declared_size:
            mismatch = ValidationFailed(
                f"Received {stored.size_bytes} bytes but {request.declared_size} were declared"
            )
            self._compensate(record, stored, mismatch)

        created = self._create(record, stored)
        logger.info(
            "Uploaded %s as %s (%d bytes, %s)",
            created.sanitized_name,
            created.id,
            created.size_bytes,
            created.mime_type,
        )
        return created

    def _put(self, content: BinaryIO, sanitized_name: str, mime_type: str) -> StoredObject:
        if self.executor is None or not self.storage_timeout:
            return self.storage.put(content, sanitized_name, mime_type)

        future = self.executor.submit(self.storage.put, content, sanitized_name, mime_type)
        try:
            return future.result(timeout=self.storage_timeout)
        except FuturesTimeout as exc:
            # No record will be written; remove the object if the put lands late
            future.cancel()
            future.add_done_callback(self._discard_late_put)
            logger.warning("Storing %s timed out", sanitized_name)
            raise StorageUnavailable(
                f"Storage did not answer within {self.storage_timeout} seconds"
            ) from exc

    def _discard_late_put(self, future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        stored = future.result()
        logger.warning("Removing %s, stored after its upload timed out", stored.storage_ref)
        try:
            self.storage.delete(stored.storage_ref)
        except Exception as exc:
            logger.error(
                "ORPHANED OBJECT %s: late upload could not be removed: %s",
                stored.storage_ref,
                _reason(exc),
            )

    def _create(self, record: FileRecordPublic, stored: StoredObject) -> FileRecordPublic:
        # Any failure here leaves a stored object without a record
        if self.executor is None or not self.metadata_timeout:
            try:
                return self.store.create(record)
            except Exception as exc:
                self._compensate(record, stored, exc)

        future = self.executor.submit(self.store.create, record)
        try:
            return future.result(timeout=self.metadata_timeout)
        except FuturesTimeout as exc:
            # The write may still land after the deadline; remove it if it does
            future.cancel()
            future.add_done_callback(self._discard_late_record)
            self._compensate(record, stored, exc, timed_out=True)
        except Exception as exc:
            self._compensate(record, stored, exc)

    def _discard_late_record(self, future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        record = future.result()
        logger.warning("Removing record %s, created after its upload timed out", record.id)
        try:
            self.store.delete(record.id)
        except NotFound:
            pass
        except Exception as exc:
            logger.error(
                "DANGLING RECORD %s (object %s already removed): %s",
                record.id,
                record.storage_ref,
                _reason(exc),
            )

    def _compensate(
        self,
        record: FileRecordPublic,
        stored: StoredObject,
        cause: Exception,
        *,
        timed_out: bool = False,
    ) -> NoReturn:
        """Undo the storage write after a failed metadata write. Always raises."""
        logger.warning(
            "Metadata for %s was not saved (%s); removing stored object %s",
            record.id,
            _reason(cause),
            stored.storage_ref,
        )
        try:
            call_with_timeout(
                self.executor, self.storage_timeout, self.storage.delete, stored.storage_ref
            )
        except Exception as delete_exc:
            logger.error(
                "ORPHANED OBJECT %s (file %s): compensating delete failed: %s",
                stored.storage_ref,
                record.id,
                _reason(delete_exc),
            )
            raise OrphanedObject(
                "The file was stored but its metadata could not be saved, "
                "and the stored object could not be removed",
                details={
                    "id": str(record.id),
                    "storageRef": stored.storage_ref,
                    "reason": _reason(cause),
                },
            ) from delete_exc

        if timed_out:
            raise MetadataUnavailable(
                f"Metadata store did not answer within {self.metadata_timeout} seconds",
                details={"id": str(record.id)},
            ) from cause

        if isinstance(cause, FileVaultError):
            raise cause
        raise MetadataUnavailable(
            "File metadata could not be saved",
            details={"reason": str(cause)},
        ) from cause

    def upload_many(self, requests: list[UploadRequest]) -> BatchUploadResult:
        """
        Run every file through upload() independently.
        Outcomes come back in input order whatever the completion order.
        """
        if not requests:
            raise ValidationFailed("No files were provided")
        if len(requests) > self.max_batch_files:
            raise ValidationFailed(
                f"At most {self.max_batch_files} files can be uploaded at once, "
                f"got {len(requests)}"
            )

        workers = max(1, min(len(requests), self.batch_concurrency))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-upload") as pool:
            outcomes = list(pool.map(self._outcome, range(len(requests)), requests))

        succeeded = sum(1 for outcome in outcomes if outcome.success)
        logger.info("Batch upload: %d of %d files stored", succeeded, len(outcomes))
        return BatchUploadResult(
            total=len(outcomes),
            succeeded=succeeded,
            failed=len(outcomes) - succeeded,
            results=outcomes,
        )

    def _outcome(self, index: int, request: UploadRequest) -> UploadOutcome:
        try:
            record = self.upload(request)
        except FileVaultError as exc:
            show = self.show_details or exc.always_show_details
            return UploadOutcome(
                index=index,
                filename=request.declared_name,
                success=False,
                error=exc.code.value,
                message=exc.message,
                details=exc.details if show else None,
            )
        except Exception as exc:
            logger.exception("Unexpected failure uploading %s", request.declared_name)
            return UploadOutcome(
                index=index,
                filename=request.declared_name,
                success=False,
                error=ErrorCode.INTERNAL_ERROR.value,
                message="Unexpected error while uploading the file",
                details={"reason": str(exc)} if self.show_details else None,
            )
        return UploadOutcome(
            index=index, filename=request.declared_name, success=True, record=record
        )


# Sort parameter lookup, insensitive to case and underscores (createdAt, created_at)
SORT_ALIASES: dict[str, SortField] = {field.value.replace("_", ""): field for field in SortField}


class QueryEngine:
    """Listing, lookup, download URLs and statistics"""

    def __init__(
        self,
        *,
        store: MetadataStore,
        storage: StorageAdapter,
        validator: Validator,
        executor: Executor | None = None,
        metadata_timeout: float | None = None,
        storage_timeout: float | None = None,
        default_limit: int = 10,
        max_limit: int = 100,
        signed_url_ttl: int = 3600,
    ):
        self.store = store
        self.storage = storage
        self.validator = validator
        self.executor = executor
        self.metadata_timeout = metadata_timeout
        self.storage_timeout = storage_timeout
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.signed_url_ttl = signed_url_ttl

    def _metadata(self, fn: Callable[..., T], *args) -> T:
        try:
            return call_with_timeout(self.executor, self.metadata_timeout, fn, *args)
        except FuturesTimeout as exc:
            raise MetadataUnavailable(
                f"Metadata store did not answer within {self.metadata_timeout} seconds"
            ) from exc

    @staticmethod
    def resolve_sort(sort_by: str | None) -> SortField:
        if not sort_by:
            return SortField.CREATED_AT
        try:
            return SORT_ALIASES[sort_by.strip().lower().replace("_", "")]
        except KeyError:
            allowed = ", ".join(sorted({to_camel(f.value) for f in SortField}))
            raise ValidationFailed(
                f"Cannot sort by '{sort_by}'. Allowed fields: {allowed}"
            ) from None

    def list(
        self,
        *,
        search: str | None = None,
        uploaded_by: str | None = None,
        is_public: bool | None = None,
        mime_type: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        page: int | None = None,
        limit: int | None = None,
    ) -> tuple[list[FileRecordPublic], PageInfo]:
        page = 1 if page is None else page
        if page < 1:
            raise ValidationFailed(f"page must be 1 or greater, got {page}")
        limit = self.default_limit if limit is None else limit
        if limit < 1:
            raise ValidationFailed(f"limit must be 1 or greater, got {limit}")
        limit = min(limit, self.max_limit)

        order = (sort_order or "desc").strip().lower()
        if order not in ("asc", "desc"):
            raise ValidationFailed(f"sortOrder must be 'asc' or 'desc', got '{sort_order}'")

        query = FileQuery(
            search=search or None,
            uploaded_by=uploaded_by or None,
            is_public=is_public,
            mime_type=mime_type or None,
            sort_by=self.resolve_sort(sort_by),
            sort_order=order,
            page=page,
            limit=limit,
        )
        result = self._metadata(self.store.query, query)
        return result.records, PageInfo.build(page=page, limit=limit, total_items=result.total)

    def get_by_id(self, file_id: uuid.UUID) -> FileRecordPublic:
        return self._metadata(self.store.get, file_id)

    def download_url(self, file_id: uuid.UUID) -> str:
        """Public files resolve to their URL, private ones to a fresh signed URL"""
        record = self.get_by_id(file_id)
        if record.is_public:
            return record.secure_url
        try:
            return call_with_timeout(
                self.executor,
                self.storage_timeout,
                self.storage.signed_url,
                record.storage_ref,
                self.signed_url_ttl,
            )
        except FuturesTimeout as exc:
            raise StorageUnavailable("Storage did not answer while signing the URL") from exc

    def stats(self) -> FileStats:
        snapshot = self._metadata(self.store.stats)
        by_category: dict[str, int] = {}
        for mime_type, count in snapshot.count_by_mime_type.items():
            category = self.validator.category_for(mime_type)
            by_category[category] = by_category.get(category, 0) + count
        return FileStats(
            total_files=snapshot.total_files,
            total_bytes=snapshot.total_bytes,
            count_by_mime_category=by_category,
            count_by_uploader=snapshot.count_by_uploader,
        )


class LifecycleManager:
    """Metadata updates and deletes"""

    def __init__(
        self,
        *,
        storage: StorageAdapter,
        store: MetadataStore,
        executor: Executor | None = None,
        storage_timeout: float | None = None,
        metadata_timeout: float | None = None,
    ):
        self.storage = storage
        self.store = store
        self.executor = executor
        self.storage_timeout = storage_timeout
        self.metadata_timeout = metadata_timeout

    def _metadata(self, fn: Callable[..., T], *args) -> T:
        try:
            return call_with_timeout(self.executor, self.metadata_timeout, fn, *args)
        except FuturesTimeout as exc:
            raise MetadataUnavailable(
                f"Metadata store did not answer within {self.metadata_timeout} seconds"
            ) from exc

    def update_metadata(self, file_id: uuid.UUID, fields: dict[str, Any]) -> FileRecordPublic:
        """Apply a partial update of tags, isPublic and metadata"""
        if not isinstance(fields, dict):
            raise ValidationFailed("Update body must be a JSON object")

        immutable = sorted(key for key in fields if to_snake(key) in IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationFailed(
                f"These fields cannot be changed: {', '.join(immutable)}",
                details={"fields": immutable},
            )

        try:
            changes = FileUpdate.model_validate(fields)
        except ValidationError as exc:
            raise ValidationFailed(
                "Invalid update",
                details={
                    "errors": [
                        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
                        for error in exc.errors()
                    ]
                },
            ) from exc

        if not changes.model_fields_set:
            raise ValidationFailed("No updatable fields were supplied")

        record = self._metadata(self.store.update, file_id, changes)
        logger.info("Updated file %s (%s)", file_id, ", ".join(sorted(changes.model_fields_set)))
        return record

    def delete(self, file_id: uuid.UUID) -> DeletedFile:
        """
        Remove the stored object, then the metadata record.
        The record is kept when the object could not be removed; a record
        that outlives its object is reported as PartialDelete.
        """
        record = self._metadata(self.store.get, file_id)

        try:
            status = call_with_timeout(
                self.executor, self.storage_timeout, self.storage.delete, record.storage_ref
            )
        except FuturesTimeout as exc:
            logger.warning("Deleting %s timed out; keeping record %s", record.storage_ref, file_id)
            raise StorageUnavailable(
                "Storage did not answer; the file was not deleted"
            ) from exc
        except StorageUnavailable:
            logger.warning("Storage unavailable; keeping record %s", file_id)
            raise

        try:
            call_with_timeout(self.executor, self.metadata_timeout, self.store.delete, file_id)
        except NotFound:
            # Removed concurrently; both sides are gone
            pass
        except Exception as exc:
            logger.error(
                "PARTIAL DELETE of %s: object %s removed, record kept: %s",
                file_id,
                record.storage_ref,
                _reason(exc),
            )
            raise PartialDelete(
                "File content was removed but its metadata record could not be deleted",
                details={
                    "id": str(file_id),
                    "storageRef": record.storage_ref,
                    "reason": _reason(exc),
                },
            ) from exc

        logger.info("Deleted file %s (storage: %s)", file_id, status.value)
        return DeletedFile(id=file_id, storage_ref=record.storage_ref, storage_status=status.value)


class FileServices:
    """
    Everything the routes need, built once at startup and closed at shutdown.
    """

    def __init__(
        self,
        *,
        storage: StorageAdapter,
        store: MetadataStore,
        settings: Settings,
        executor: Executor | None = None,
    ):
        self.settings = settings
        self.storage = storage
        self.store = store
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.WORKER_POOL_SIZE, thread_name_prefix="filevault-io"
        )
        self.validator = Validator.from_settings(settings)
        self.uploads = UploadOrchestrator(
            validator=self.validator,
            storage=storage,
            store=store,
            executor=self.executor,
            storage_timeout=settings.STORAGE_TIMEOUT,
            metadata_timeout=settings.METADATA_TIMEOUT,
            max_batch_files=settings.MAX_BATCH_FILES,
            batch_concurrency=settings.BATCH_CONCURRENCY,
            show_details=not settings.is_production,
        )
        self.queries = QueryEngine(
            store=store,
            storage=storage,
            validator=self.validator,
            executor=self.executor,
            metadata_timeout=settings.METADATA_TIMEOUT,
            storage_timeout=settings.STORAGE_TIMEOUT,
            default_limit=settings.DEFAULT_PAGE_LIMIT,
            max_limit=settings.MAX_PAGE_LIMIT,
            signed_url_ttl=settings.SIGNED_URL_TTL,
        )
        self.lifecycle = LifecycleManager(
            storage=storage,
            store=store,
            executor=self.executor,
            storage_timeout=settings.STORAGE_TIMEOUT,
            metadata_timeout=settings.METADATA_TIMEOUT,
        )

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=True)
