"""Policy checks for incoming files.

``validate`` is a pure decision function: it looks only at what the client
declared (filename, MIME type, size) and never touches the file bytes or the
filesystem. Checks run in a fixed order: extension, MIME type, size.

The declared size is advisory. The transport layer enforces a hard byte
ceiling while the request streams in, and the stager enforces the policy
maximum again while writing.
"""
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional, Union

from .schemas import UploadPolicy


@dataclass(frozen=True)
class Accept:
    """The file satisfies its policy."""


@dataclass(frozen=True)
class Reject:
    """The file violates its policy.

    Attributes:
        attribute: Which declared attribute failed (extension, mime_type, size).
        reason: Human-readable explanation naming the offending value.
    """
    attribute: str
    reason: str


ValidationResult = Union[Accept, Reject]


def file_extension(filename: str) -> str:
    """Lower-case extension without the dot, taken from the basename only."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return PurePosixPath(name).suffix.lstrip(".").lower()


def normalize_mime_type(mime_type: Optional[str]) -> str:
    """Strip parameters (``; charset=...``) and lower-case the MIME type."""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def validate(
    declared_mime_type: Optional[str],
    filename: str,
    declared_size: Optional[int],
    policy: UploadPolicy,
) -> ValidationResult:
    """Decide whether a file may enter the pipeline under *policy*.

    Both the extension and the MIME type must be allowed; a file with an
    allowed extension but a foreign MIME type (or the reverse) is rejected.

    Args:
        declared_mime_type: Client-declared content type.
        filename: Client-supplied filename.
        declared_size: Declared size in bytes, or ``None`` if unknown.
        policy: Rules for the upload category.

    Returns:
        ``Accept()`` or ``Reject(attribute, reason)``.
    """
    allowed_extensions = sorted({ext.lower().lstrip(".") for ext in policy.allowed_extensions})
    extension = file_extension(filename)
    if extension not in allowed_extensions:
        shown = f"'.{extension}'" if extension else "(none)"
        return Reject(
            attribute="extension",
            reason=(
                f"File extension {shown} is not allowed for {policy.name} uploads; "
                f"expected one of: {', '.join(allowed_extensions)}"
            ),
        )

    allowed_mime_types = {mime.lower() for mime in policy.allowed_mime_types}
    mime_type = normalize_mime_type(declared_mime_type)
    if mime_type not in allowed_mime_types:
        return Reject(
            attribute="mime_type",
            reason=(
                f"MIME type '{mime_type or 'unknown'}' is not allowed for "
                f"{policy.name} uploads"
            ),
        )

    if declared_size is not None and declared_size > policy.max_bytes:
        return Reject(
            attribute="size",
            reason=(
                f"File too large: {declared_size} bytes exceeds the "
                f"{policy.max_bytes} byte limit for {policy.name} uploads"
            ),
        )

    return Accept()
