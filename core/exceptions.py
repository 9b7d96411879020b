"""
Error codes and exceptions shared by the file services.

Every failure that reaches a client is rendered from one of these
exceptions (see the handlers in main.py), so the ``code`` is the stable
``error`` value of the response envelope.
"""

from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    """Stable error codes returned in the ``error`` field"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    OVERSIZED = "OVERSIZED"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    EMPTY_FILE = "EMPTY_FILE"
    INVALID_NAME = "INVALID_NAME"
    NOT_FOUND = "NOT_FOUND"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    STORAGE_REJECTED = "STORAGE_REJECTED"
    METADATA_UNAVAILABLE = "METADATA_UNAVAILABLE"
    PARTIAL_DELETE = "PARTIAL_DELETE"
    ORPHANED_OBJECT = "ORPHANED_OBJECT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.EMPTY_FILE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_NAME: status.HTTP_400_BAD_REQUEST,
    ErrorCode.OVERSIZED: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.UNSUPPORTED_TYPE: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.STORAGE_REJECTED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.STORAGE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.METADATA_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PARTIAL_DELETE: status.HTTP_207_MULTI_STATUS,
    ErrorCode.ORPHANED_OBJECT: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class FileVaultError(Exception):
    """Base class for every error the file services raise on purpose"""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    # Consistency failures expose their details even in production
    always_show_details: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE[self.code]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ValidationFailed(FileVaultError):
    """Bad input; ``code`` is VALIDATION_ERROR or one of the upload rejections"""

    code = ErrorCode.VALIDATION_ERROR


class NotFound(FileVaultError):
    code = ErrorCode.NOT_FOUND


class StorageUnavailable(FileVaultError):
    code = ErrorCode.STORAGE_UNAVAILABLE


class StorageRejected(FileVaultError):
    code = ErrorCode.STORAGE_REJECTED


class MetadataUnavailable(FileVaultError):
    code = ErrorCode.METADATA_UNAVAILABLE


class PartialDelete(FileVaultError):
    """The storage object is gone but its metadata record could not be removed"""

    code = ErrorCode.PARTIAL_DELETE
    always_show_details = True


class OrphanedObject(FileVaultError):
    """A stored object was left without a metadata record"""

    code = ErrorCode.ORPHANED_OBJECT
    always_show_details = True
