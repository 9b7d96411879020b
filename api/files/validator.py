"""
Upload validation.

Checks a file's declared name, size and type against the upload policy
before anything is written anywhere. Validation is pure: no I/O, no
logging, same answer for the same input.
"""

import re
import unicodedata
from dataclasses import dataclass
from enum import Enum

from core.config import Settings

MAX_NAME_LENGTH = 255
# Longest client-supplied name a record can keep as original_name
MAX_ORIGINAL_NAME_LENGTH = 1024
OTHER_CATEGORY = "other"

_WHITESPACE = re.compile(r"\s+")


class RejectionReason(str, Enum):
    OVERSIZED = "OVERSIZED"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    EMPTY_FILE = "EMPTY_FILE"
    INVALID_NAME = "INVALID_NAME"


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    sanitized_name: str | None = None
    mime_type: str | None = None
    reason: RejectionReason | None = None
    message: str | None = None


def normalize_mime_type(mime_type: str | None) -> str:
    """Lower-case the type and drop parameters such as '; charset=utf-8'"""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def sanitize_filename(raw_name: str | None) -> str:
    """
    Derive a storage-safe name from a client-supplied one.

    Only the last path component survives, control and format characters
    are dropped, whitespace runs become '_' and the result is capped at
    MAX_NAME_LENGTH characters (keeping the extension). Returns '' when
    nothing usable is left.
    """
    if not raw_name:
        return ""
    name = re.split(r"[/\\]", raw_name)[-1]
    name = "".join(
        ch for ch in name if unicodedata.category(ch) not in ("Cc", "Cf")
    )
    name = _WHITESPACE.sub("_", name.strip())
    name = name.strip("._ ")
    if len(name) > MAX_NAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and stem and len(ext) < 16:
            name = stem[: MAX_NAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            name = name[:MAX_NAME_LENGTH]
    return name


class Validator:
    """Upload policy: size bounds plus a categorized MIME allow-list"""

    def __init__(
        self,
        *,
        max_size: int,
        allowed_mime_types: dict[str, tuple[str, ...]],
    ):
        self.max_size = max_size
        self.allowed_mime_types = allowed_mime_types
        self._category_by_mime = {
            mime.lower(): category
            for category, mimes in allowed_mime_types.items()
            for mime in mimes
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "Validator":
        return cls(
            max_size=settings.MAX_FILE_SIZE,
            allowed_mime_types=settings.allowed_mime_types,
        )

    def category_for(self, mime_type: str | None) -> str:
        return self._category_by_mime.get(normalize_mime_type(mime_type), OTHER_CATEGORY)

    def validate(
        self,
        *,
        mime_type: str | None,
        size_bytes: int | None,
        raw_name: str | None,
    ) -> ValidationResult:
        """Return the first rule the file breaks, or an accepted result"""
        sanitized = sanitize_filename(raw_name)
        if not sanitized:
            return ValidationResult(
                accepted=False,
                reason=RejectionReason.INVALID_NAME,
                message=f"Invalid file name: {raw_name!r}",
            )
        if len(raw_name) > MAX_ORIGINAL_NAME_LENGTH:
            return ValidationResult(
                accepted=False,
                reason=RejectionReason.INVALID_NAME,
                message=f"File name is longer than {MAX_ORIGINAL_NAME_LENGTH} characters",
            )

        if not size_bytes or size_bytes <= 0:
            return ValidationResult(
                accepted=False,
                reason=RejectionReason.EMPTY_FILE,
                message=f"File {sanitized} is empty",
            )

        if size_bytes > self.max_size:
            return ValidationResult(
                accepted=False,
                reason=RejectionReason.OVERSIZED,
                message=(
                    f"File {sanitized} is {size_bytes} bytes; "
                    f"the limit is {self.max_size} bytes"
                ),
            )

        normalized = normalize_mime_type(mime_type)
        if normalized not in self._category_by_mime:
            return ValidationResult(
                accepted=False,
                reason=RejectionReason.UNSUPPORTED_TYPE,
                message=f"File type {mime_type or 'unknown'} is not allowed",
            )

        return ValidationResult(
            accepted=True,
            sanitized_name=sanitized,
            mime_type=normalized,
        )
