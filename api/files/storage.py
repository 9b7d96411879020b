"""
Storage Adapter for the Files API.

The file services only depend on the StorageAdapter protocol; the S3
implementation below works against AWS S3 or any S3-compatible endpoint
(MinIO, Ceph, ...) optionally fronted by a CDN.
"""

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator, Protocol, runtime_checkable
from urllib.parse import quote

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from core.config import Settings
from core.exceptions import FileVaultError, StorageRejected, StorageUnavailable

logger = logging.getLogger(__name__)

# S3 error codes that mean the request itself was refused, so retrying
# the same upload will not help
REJECTED_ERROR_CODES = frozenset({
    "AccessDenied",
    "BadDigest",
    "EntityTooLarge",
    "EntityTooSmall",
    "InvalidArgument",
    "InvalidObjectState",
    "InvalidRequest",
    "InvalidStorageClass",
    "KeyTooLongError",
    "MalformedXML",
    "MetadataTooLarge",
})

NOT_FOUND_ERROR_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class DeleteStatus(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class StoredObject:
    """What the store hands back after a successful put"""

    storage_ref: str
    url: str
    secure_url: str
    size_bytes: int
    checksum: str


@runtime_checkable
class StorageAdapter(Protocol):
    """Narrow contract the file services need from object storage"""

    def put(self, content: BinaryIO, sanitized_name: str, mime_type: str) -> StoredObject:
        """
        Stream content to durable storage.
        Raises StorageUnavailable or StorageRejected.
        """
        ...

    def delete(self, storage_ref: str) -> DeleteStatus:
        """
        Remove an object. Deleting an absent object is a success
        (DeleteStatus.NOT_FOUND). Raises StorageUnavailable.
        """
        ...

    def signed_url(self, storage_ref: str, ttl: int) -> str:
        """Time-limited access URL. Raises StorageUnavailable."""
        ...


class HashingReader:
    """
    Read-through wrapper that counts bytes and computes a SHA-256 digest
    while the transfer consumes the stream.

    It deliberately reports itself as non-seekable so the transfer reads
    every byte exactly once, part by part.
    """

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._digest = hashlib.sha256()
        self.size = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        if chunk:
            self.size += len(chunk)
            self._digest.update(chunk)
        return chunk

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    @property
    def hexdigest(self) -> str:
        return self._digest.hexdigest()


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def translate_error(exc: Exception, action: str, *, allow_rejected: bool = True) -> FileVaultError:
    """Map a boto3/botocore failure onto STORAGE_REJECTED or STORAGE_UNAVAILABLE"""
    if isinstance(exc, S3UploadFailedError) and isinstance(exc.__cause__, ClientError):
        exc = exc.__cause__

    if isinstance(exc, ClientError):
        code = _error_code(exc)
        status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        message = exc.response.get("Error", {}).get("Message", code)
        refused = code in REJECTED_ERROR_CODES or (
            400 <= status_code < 500 and status_code not in (408, 429)
        )
        if allow_rejected and refused:
            return StorageRejected(
                f"Storage refused to {action}: {message}",
                details={"providerCode": code},
            )
        return StorageUnavailable(
            f"Storage could not {action}: {message}",
            details={"providerCode": code},
        )

    # Credentials, connection, timeouts, transfer failures
    return StorageUnavailable(f"Storage could not {action}: {exc}")


class S3StorageAdapter:
    """StorageAdapter backed by a boto3 S3 client"""

    def __init__(
        self,
        client,
        *,
        bucket: str,
        prefix: str = "",
        cdn_base_url: str | None = None,
        endpoint_url: str | None = None,
        region: str | None = None,
    ):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.cdn_base_url = cdn_base_url
        self.endpoint_url = endpoint_url
        self.region = region

    @classmethod
    def from_settings(cls, settings: Settings, client=None) -> "S3StorageAdapter":
        if client is None:
            client = boto3.client(
                "s3",
                region_name=settings.AWS_REGION,
                endpoint_url=settings.STORAGE_ENDPOINT_URL,
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                config=Config(
                    connect_timeout=settings.STORAGE_TIMEOUT,
                    read_timeout=settings.STORAGE_TIMEOUT,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        return cls(
            client,
            bucket=settings.STORAGE_BUCKET,
            prefix=settings.STORAGE_PREFIX,
            cdn_base_url=settings.CDN_BASE_URL,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            region=settings.AWS_REGION,
        )

    def _new_key(self, sanitized_name: str) -> str:
        key = f"{uuid.uuid4().hex}-{sanitized_name}"
        return f"{self.prefix}/{key}" if self.prefix else key

    def object_url(self, key: str, scheme: str = "https") -> str:
        """Public URL of an object, through the CDN when one is configured"""
        if self.cdn_base_url:
            host = re.sub(r"^https?://", "", self.cdn_base_url).rstrip("/")
            return f"{scheme}://{host}/{quote(key)}"
        if self.endpoint_url:
            host = re.sub(r"^https?://", "", self.endpoint_url).rstrip("/")
            return f"{scheme}://{host}/{self.bucket}/{quote(key)}"
        if self.region:
            return f"{scheme}://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"
        return f"{scheme}://{self.bucket}.s3.amazonaws.com/{quote(key)}"

    def put(self, content: BinaryIO, sanitized_name: str, mime_type: str) -> StoredObject:
        key = self._new_key(sanitized_name)
        reader = HashingReader(content)
        try:
            self.client.upload_fileobj(
                Fileobj=reader,
                Bucket=self.bucket,
                Key=key,
                ExtraArgs={"ContentType": mime_type},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
            logger.warning("Upload of %s to s3://%s failed: %s", key, self.bucket, exc)
            raise translate_error(exc, "store the file") from exc

        logger.info("Stored s3://%s/%s (%d bytes)", self.bucket, key, reader.size)
        return StoredObject(
            storage_ref=key,
            url=self.object_url(key, "http"),
            secure_url=self.object_url(key, "https"),
            size_bytes=reader.size,
            checksum=reader.hexdigest,
        )

    def delete(self, storage_ref: str) -> DeleteStatus:
        try:
            self.client.head_object(Bucket=self.bucket, Key=storage_ref)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_ERROR_CODES:
                logger.info("s3://%s/%s already absent", self.bucket, storage_ref)
                return DeleteStatus.NOT_FOUND
            raise translate_error(exc, "delete the file", allow_rejected=False) from exc
        except BotoCoreError as exc:
            raise translate_error(exc, "delete the file", allow_rejected=False) from exc

        try:
            self.client.delete_object(Bucket=self.bucket, Key=storage_ref)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_ERROR_CODES:
                return DeleteStatus.NOT_FOUND
            raise translate_error(exc, "delete the file", allow_rejected=False) from exc
        except BotoCoreError as exc:
            raise translate_error(exc, "delete the file", allow_rejected=False) from exc

        logger.info("Deleted s3://%s/%s", self.bucket, storage_ref)
        return DeleteStatus.DELETED

    def signed_url(self, storage_ref: str, ttl: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": storage_ref},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, "sign a download URL", allow_rejected=False) from exc

    def iter_refs(self) -> Iterator[str]:
        """Every object key under the configured prefix"""
        paginator = self.client.get_paginator("list_objects_v2")
        prefix = f"{self.prefix}/" if self.prefix else ""
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    yield obj["Key"]
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, "list stored files", allow_rejected=False) from exc
