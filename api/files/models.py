"""
Models for the Files API
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Literal, TypeAlias
from pydantic import ConfigDict, Field as PydanticField, field_validator
from sqlalchemy import Column, ForeignKey, Text, Uuid
from sqlmodel import SQLModel, Field, Relationship, UniqueConstraint

from core.models import CamelModel

# Metadata values are bounded to scalars
MetadataValue: TypeAlias = str | int | float | bool

MAX_TAGS = 50
MAX_TAG_LENGTH = 64
MAX_METADATA_KEYS = 50
MAX_METADATA_KEY_LENGTH = 64
MAX_METADATA_VALUE_LENGTH = 2048

# Fields a client may never change once a file is stored
IMMUTABLE_FIELDS = frozenset({
    "id",
    "storage_ref",
    "url",
    "secure_url",
    "original_name",
    "sanitized_name",
    "mime_type",
    "size_bytes",
    "checksum",
    "uploaded_by",
    "created_at",
    "updated_at",
})


class SortField(str, Enum):
    """Fields a listing can be sorted by"""

    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    ORIGINAL_NAME = "original_name"
    SIZE_BYTES = "size_bytes"
    MIME_TYPE = "mime_type"


def normalize_tags(tags: list[str] | None) -> list[str]:
    """
    Trim, drop empties and collapse duplicates (keeping first-seen order).
    Raises ValueError when a tag or the tag count is out of bounds.
    """
    if not tags:
        return []
    seen: dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str):
            raise ValueError("Tags must be strings")
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Tag '{tag[:20]}...' exceeds {MAX_TAG_LENGTH} characters")
        seen.setdefault(tag, None)
    if len(seen) > MAX_TAGS:
        raise ValueError(f"A file may carry at most {MAX_TAGS} tags")
    return list(seen)


def check_metadata(metadata: dict | None, *, allow_null: bool = False) -> dict:
    """
    Enforce the bounds of the metadata mapping.
    ``allow_null`` permits None values, which an update uses to remove a key.
    """
    if not metadata:
        return {}
    if len(metadata) > MAX_METADATA_KEYS:
        raise ValueError(f"Metadata may hold at most {MAX_METADATA_KEYS} keys")
    for key, value in metadata.items():
        if not key or len(key) > MAX_METADATA_KEY_LENGTH:
            raise ValueError(
                f"Metadata keys must be 1 to {MAX_METADATA_KEY_LENGTH} characters"
            )
        if value is None:
            if not allow_null:
                raise ValueError(f"Metadata value for '{key}' cannot be null")
        elif isinstance(value, str) and len(value) > MAX_METADATA_VALUE_LENGTH:
            raise ValueError(
                f"Metadata value for '{key}' exceeds {MAX_METADATA_VALUE_LENGTH} characters"
            )
    return dict(metadata)


# ============================================================================
# Database Tables
# ============================================================================


class FileRecordTag(SQLModel, table=True):
    """One tag of a stored file"""

    __tablename__ = "file_record_tag"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    file_record_id: uuid.UUID = Field(
        sa_column=Column(
            Uuid, ForeignKey("file_record.id", ondelete="CASCADE"), nullable=False
        )
    )
    tag: str = Field(max_length=MAX_TAG_LENGTH, index=True)

    file_record: "FileRecord" = Relationship(back_populates="tags")

    __table_args__ = (
        UniqueConstraint("file_record_id", "tag", name="uq_file_record_tag"),
    )


class FileRecordMetadata(SQLModel, table=True):
    """
    One key of a file's metadata mapping.
    Values are stored JSON-encoded so ints, floats and bools round-trip.
    """

    __tablename__ = "file_record_metadata"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    file_record_id: uuid.UUID = Field(
        sa_column=Column(
            Uuid, ForeignKey("file_record.id", ondelete="CASCADE"), nullable=False
        )
    )
    key: str = Field(max_length=MAX_METADATA_KEY_LENGTH, index=True)
    value: str = Field(sa_column=Column(Text, nullable=False))

    file_record: "FileRecord" = Relationship(back_populates="metadata_entries")

    __table_args__ = (
        UniqueConstraint("file_record_id", "key", name="uq_file_record_metadata_key"),
    )


class FileRecord(SQLModel, table=True):
    """Metadata record for one file held by the object store"""

    __tablename__ = "file_record"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    storage_ref: str = Field(max_length=1024, unique=True, index=True)
    url: str = Field(max_length=2048)
    secure_url: str = Field(max_length=2048)
    original_name: str = Field(max_length=1024)
    sanitized_name: str = Field(max_length=255)
    mime_type: str = Field(max_length=255, index=True)
    size_bytes: int
    checksum: str | None = Field(default=None, max_length=64)  # SHA-256 hash
    uploaded_by: str | None = Field(default=None, max_length=255, index=True)
    is_public: bool = Field(default=False, index=True)
    created_at: datetime = Field(index=True)
    updated_at: datetime

    tags: List["FileRecordTag"] = Relationship(
        back_populates="file_record",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "lazy": "selectin",
        },
    )
    metadata_entries: List["FileRecordMetadata"] = Relationship(
        back_populates="file_record",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "lazy": "selectin",
        },
    )


# ============================================================================
# Request/Response Models (Pydantic)
# ============================================================================


class FileRecordPublic(CamelModel):
    """Public representation of a stored file"""

    id: uuid.UUID
    storage_ref: str
    url: str
    secure_url: str
    original_name: str
    sanitized_name: str
    mime_type: str
    size_bytes: int
    checksum: str | None = None
    uploaded_by: str | None = None
    tags: list[str] = PydanticField(default_factory=list)
    is_public: bool = False
    metadata: dict[str, MetadataValue] = PydanticField(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class FileUpdate(CamelModel):
    """
    Partial update of the mutable fields.
    ``tags`` replaces the tag set, ``metadata`` is merged key by key and a
    null value removes that key.
    """

    tags: list[str] | None = None
    is_public: bool | None = None
    metadata: dict[str, MetadataValue | None] | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags):
        return None if tags is None else normalize_tags(tags)

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, metadata):
        return None if metadata is None else check_metadata(metadata, allow_null=True)


class FileQuery(CamelModel):
    """Filter, sort and pagination parameters for a listing"""

    search: str | None = None
    uploaded_by: str | None = None
    is_public: bool | None = None
    mime_type: str | None = None
    sort_by: SortField = SortField.CREATED_AT
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = 1
    limit: int = 10


class FilePage(CamelModel):
    """A page of records plus the total number of matches"""

    records: list[FileRecordPublic]
    total: int


class FileStats(CamelModel):
    total_files: int
    total_bytes: int
    count_by_mime_category: dict[str, int]
    count_by_uploader: dict[str, int]


class UploadOutcome(CamelModel):
    """Result of one file in a batch upload"""

    index: int
    filename: str | None
    success: bool
    record: FileRecordPublic | None = None
    error: str | None = None
    message: str | None = None
    details: dict | None = None


class BatchUploadResult(CamelModel):
    total: int
    succeeded: int
    failed: int
    results: list[UploadOutcome]


class DeletedFile(CamelModel):
    id: uuid.UUID
    storage_ref: str
    storage_status: str
