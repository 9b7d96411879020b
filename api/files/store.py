"""
Metadata Store for the Files API.

The MetadataStore protocol is what the file services depend on.
SQLMetadataStore keeps records in a relational database through SQLModel;
see api/files/search_store.py for the OpenSearch implementation.
"""

import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Protocol, runtime_checkable

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, func, select

from api.files.models import (
    MAX_METADATA_KEYS,
    FilePage,
    FileQuery,
    FileRecord,
    FileRecordMetadata,
    FileRecordPublic,
    FileRecordTag,
    FileUpdate,
)
from api.files.validator import normalize_mime_type
from core.db import session_lock
from core.exceptions import MetadataUnavailable, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

# Metadata keys the free-text search looks at
SEARCHABLE_METADATA_KEYS = ("title", "description")
ANONYMOUS_UPLOADER = "anonymous"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StatsSnapshot:
    """Aggregates read in one pass over the store"""

    total_files: int = 0
    total_bytes: int = 0
    count_by_mime_type: dict[str, int] = field(default_factory=dict)
    count_by_uploader: dict[str, int] = field(default_factory=dict)

    def add(self, mime_type: str, uploaded_by: str | None, count: int, size: int) -> None:
        uploader = uploaded_by or ANONYMOUS_UPLOADER
        self.total_files += count
        self.total_bytes += size
        self.count_by_mime_type[mime_type] = self.count_by_mime_type.get(mime_type, 0) + count
        self.count_by_uploader[uploader] = self.count_by_uploader.get(uploader, 0) + count


@runtime_checkable
class MetadataStore(Protocol):
    """Narrow contract the file services need from the metadata database"""

    def create(self, record: FileRecordPublic) -> FileRecordPublic: ...

    def get(self, file_id: uuid.UUID) -> FileRecordPublic:
        """Raises NotFound"""
        ...

    def update(self, file_id: uuid.UUID, changes: FileUpdate) -> FileRecordPublic:
        """Merge mutable fields and refresh updated_at. Raises NotFound."""
        ...

    def delete(self, file_id: uuid.UUID) -> None:
        """Raises NotFound"""
        ...

    def query(self, query: FileQuery) -> FilePage:
        """Raises ValidationFailed on malformed paging input"""
        ...

    def stats(self) -> StatsSnapshot: ...

    def iter_storage_refs(self) -> Iterator[str]: ...


def check_paging(query: FileQuery) -> None:
    if query.page < 1:
        raise ValidationFailed(f"page must be 1 or greater, got {query.page}")
    if query.limit < 1:
        raise ValidationFailed(f"limit must be 1 or greater, got {query.limit}")


def encode_metadata_value(value) -> str:
    return json.dumps(value, ensure_ascii=False)


def _aware(moment: datetime) -> datetime:
    # SQLite hands datetimes back without their timezone
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _to_public(row: FileRecord) -> FileRecordPublic:
    return FileRecordPublic(
        id=row.id,
        storage_ref=row.storage_ref,
        url=row.url,
        secure_url=row.secure_url,
        original_name=row.original_name,
        sanitized_name=row.sanitized_name,
        mime_type=row.mime_type,
        size_bytes=row.size_bytes,
        checksum=row.checksum,
        uploaded_by=row.uploaded_by,
        tags=sorted(tag.tag for tag in row.tags),
        is_public=row.is_public,
        metadata={
            entry.key: json.loads(entry.value) for entry in row.metadata_entries
        },
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SQLMetadataStore:
    """
    MetadataStore on a SQL database.
    Every call opens its own session from the injected engine, so the
    store can be used from worker threads.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with session_lock(self.engine), Session(self.engine) as session:
                yield session
        except IntegrityError as exc:
            raise ValidationFailed(
                "File record conflicts with an existing record",
                details={"reason": str(exc.orig)},
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Metadata database error: %s", exc)
            raise MetadataUnavailable(
                "Metadata store is unavailable",
                details={"reason": str(exc)},
            ) from exc

    @staticmethod
    def _get_row(session: Session, file_id: uuid.UUID) -> FileRecord:
        row = session.get(FileRecord, file_id)
        if row is None:
            raise NotFound(f"File {file_id} not found")
        return row

    def create(self, record: FileRecordPublic) -> FileRecordPublic:
        with self._session() as session:
            row = FileRecord(
                id=record.id,
                storage_ref=record.storage_ref,
                url=record.url,
                secure_url=record.secure_url,
                original_name=record.original_name,
                sanitized_name=record.sanitized_name,
                mime_type=record.mime_type,
                size_bytes=record.size_bytes,
                checksum=record.checksum,
                uploaded_by=record.uploaded_by,
                is_public=record.is_public,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
            row.tags = [FileRecordTag(tag=tag) for tag in record.tags]
            row.metadata_entries = [
                FileRecordMetadata(key=key, value=encode_metadata_value(value))
                for key, value in record.metadata.items()
            ]
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("Created file record %s", row.id)
            return _to_public(row)

    def get(self, file_id: uuid.UUID) -> FileRecordPublic:
        with self._session() as session:
            return _to_public(self._get_row(session, file_id))

    def update(self, file_id: uuid.UUID, changes: FileUpdate) -> FileRecordPublic:
        with self._session() as session:
            row = self._get_row(session, file_id)

            if changes.tags is not None:
                # Reuse rows for tags that stay so the unique constraint holds
                existing = {tag.tag: tag for tag in row.tags}
                row.tags = [existing.get(tag) or FileRecordTag(tag=tag) for tag in changes.tags]

            if changes.metadata is not None:
                entries = {entry.key: entry for entry in row.metadata_entries}
                for key, value in changes.metadata.items():
                    if value is None:
                        if key in entries:
                            row.metadata_entries.remove(entries.pop(key))
                    elif key in entries:
                        entries[key].value = encode_metadata_value(value)
                    else:
                        entries[key] = FileRecordMetadata(
                            key=key, value=encode_metadata_value(value)
                        )
                        row.metadata_entries.append(entries[key])
                if len(entries) > MAX_METADATA_KEYS:
                    session.rollback()
                    raise ValidationFailed(
                        f"Metadata may hold at most {MAX_METADATA_KEYS} keys"
                    )

            if changes.is_public is not None:
                row.is_public = changes.is_public

            row.updated_at = utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_public(row)

    def delete(self, file_id: uuid.UUID) -> None:
        with self._session() as session:
            row = self._get_row(session, file_id)
            session.delete(row)
            session.commit()
            logger.debug("Deleted file record %s", file_id)

    def query(self, query: FileQuery) -> FilePage:
        check_paging(query)

        conditions = []
        if query.uploaded_by is not None:
            conditions.append(FileRecord.uploaded_by == query.uploaded_by)
        if query.is_public is not None:
            conditions.append(FileRecord.is_public == query.is_public)
        if query.mime_type:
            conditions.append(FileRecord.mime_type == normalize_mime_type(query.mime_type))
        if query.search and query.search.strip():
            pattern = _like_pattern(query.search.strip())
            tag_match = (
                select(FileRecordTag.id)
                .where(
                    FileRecordTag.file_record_id == FileRecord.id,
                    func.lower(FileRecordTag.tag) == query.search.strip().lower(),
                )
                .exists()
            )
            metadata_match = (
                select(FileRecordMetadata.id)
                .where(
                    FileRecordMetadata.file_record_id == FileRecord.id,
                    FileRecordMetadata.key.in_(SEARCHABLE_METADATA_KEYS),
                    FileRecordMetadata.value.ilike(pattern, escape="\\"),
                )
                .exists()
            )
            conditions.append(
                or_(
                    FileRecord.original_name.ilike(pattern, escape="\\"),
                    FileRecord.sanitized_name.ilike(pattern, escape="\\"),
                    tag_match,
                    metadata_match,
                )
            )

        # Determine sort field and direction
        sort_field = getattr(FileRecord, query.sort_by.value)
        sort_direction = sort_field.asc() if query.sort_order == "asc" else sort_field.desc()

        with self._session() as session:
            count = session.exec(
                select(func.count()).select_from(FileRecord).where(*conditions)
            ).one()
            rows = session.exec(
                select(FileRecord)
                .where(*conditions)
                .order_by(sort_direction, FileRecord.id)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            ).all()
            return FilePage(records=[_to_public(row) for row in rows], total=count)

    def stats(self) -> StatsSnapshot:
        # One grouped statement, so the figures come from one snapshot
        snapshot = StatsSnapshot()
        with self._session() as session:
            rows = session.exec(
                select(
                    FileRecord.mime_type,
                    FileRecord.uploaded_by,
                    func.count(),
                    func.coalesce(func.sum(FileRecord.size_bytes), 0),
                ).group_by(FileRecord.mime_type, FileRecord.uploaded_by)
            ).all()
        for mime_type, uploaded_by, count, size in rows:
            snapshot.add(mime_type, uploaded_by, int(count), int(size))
        return snapshot

    def iter_storage_refs(self) -> Iterator[str]:
        with self._session() as session:
            refs = session.exec(select(FileRecord.storage_ref)).all()
        yield from refs
