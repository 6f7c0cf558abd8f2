"""Data model for the staged upload pipeline.

Pipeline-internal records are plain dataclasses:
- IncomingFile: one file part as received from the transport layer
- StagedFile: a fully written local copy awaiting transfer
- RemoteOptions: per-call instructions for the remote store
- RemoteDescriptor: what the remote store returned after a successful upload

Records that cross the HTTP boundary are pydantic models:
- UploadPolicy: immutable per-category rules, loaded from config
- UploadedFile / ErrorBody / FileOutcome: response shapes

A StagedFile path never appears in any response model.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

IMAGE_EXTENSIONS = ["jpg", "jpeg", "png", "gif"]
IMAGE_MIME_TYPES = ["image/jpeg", "image/jpg", "image/png", "image/gif"]

DOCUMENT_EXTENSIONS = ["pdf", "doc", "docx", "txt"]
DOCUMENT_MIME_TYPES = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
]

MB = 1024 * 1024


class ResourceType(str, Enum):
    """How the remote store should interpret the uploaded bytes."""
    IMAGE = "image"
    RAW = "raw"
    AUTO = "auto"


class OutcomeStatus(str, Enum):
    """Per-file result of a pipeline run.

    - UPLOADED: stored remotely, descriptor available
    - REJECTED: failed validation, never touched the disk
    - FAILED: staging or transfer failed
    """
    UPLOADED = "uploaded"
    REJECTED = "rejected"
    FAILED = "failed"


class UploadPolicy(BaseModel):
    """Validation and transfer rules for one upload category.

    Policies are frozen; they are defined once at startup and shared by
    every request that targets the category.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Category name, e.g. image/avatar/document")
    allowed_extensions: List[str] = Field(default_factory=lambda: list(IMAGE_EXTENSIONS))
    allowed_mime_types: List[str] = Field(default_factory=lambda: list(IMAGE_MIME_TYPES))
    max_bytes: int = Field(5 * MB, gt=0, description="Largest accepted file, inclusive")
    folder: str = Field("user-uploads", description="Remote folder/namespace")
    staging_subdir: str = Field("", description="Sub-directory of the staging root")
    resource_type: ResourceType = ResourceType.IMAGE
    transformation: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Ordered directives applied by the remote store",
    )
    public_id_prefix: Optional[str] = Field(
        None, description="When set, uploads use a fixed remote key built from this prefix"
    )
    overwrite: bool = False


class AsyncReadable(Protocol):
    """Anything with an awaitable ``read(size)``, e.g. starlette's UploadFile."""

    async def read(self, size: int = -1) -> bytes: ...


@dataclass
class IncomingFile:
    """One uploaded file part, valid for the duration of a single request.

    Attributes:
        field_name: Multipart field the file arrived under.
        filename: Client-supplied filename. Untrusted.
        content_type: Client-declared MIME type.
        size: Declared/observed size in bytes, ``None`` when unknown.
        stream: Source of the bytes.
    """
    field_name: str
    filename: str
    content_type: str
    size: Optional[int]
    stream: AsyncReadable


@dataclass(frozen=True)
class StagedFile:
    """A complete local copy of an IncomingFile.

    ``stored_name`` is generated; ``original_filename`` is kept for
    metadata only and is never used as a path component.
    """
    stored_name: str
    path: Path
    size_bytes: int
    original_filename: str
    content_type: str
    staged_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RemoteOptions:
    folder: str
    resource_type: ResourceType = ResourceType.IMAGE
    public_id: Optional[str] = None
    overwrite: bool = False
    transformation: List[Dict[str, Any]] = field(default_factory=list)
    content_type: Optional[str] = None

    @classmethod
    def for_policy(
        cls,
        policy: UploadPolicy,
        public_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> "RemoteOptions":
        """Build transfer options from a policy, optionally pinning the remote key."""
        return cls(
            folder=policy.folder,
            resource_type=policy.resource_type,
            public_id=public_id,
            overwrite=policy.overwrite if public_id else False,
            transformation=[dict(step) for step in policy.transformation],
            content_type=content_type,
        )


@dataclass(frozen=True)
class RemoteDescriptor:
    """Result of a successful remote upload."""
    public_id: str
    url: str
    format: Optional[str]
    width: Optional[int]
    height: Optional[int]
    bytes: int
    resource_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def format_size(size_bytes: int) -> str:
    """Human-readable size in kilobytes, two decimals (``2048 -> '2.00 KB'``)."""
    return f"{size_bytes / 1024:.2f} KB"


class UploadedFile(BaseModel):
    """Public record for a file that reached remote storage."""
    url: str = Field(..., description="Remote access URL")
    public_id: str = Field(..., description="Remote identifier")
    format: Optional[str] = Field(None, description="Final format chosen by the remote store")
    width: Optional[int] = None
    height: Optional[int] = None
    bytes: int = Field(..., description="Final size in bytes as reported by the remote store")
    size: str = Field(..., description="Display size of the original upload, e.g. '2.00 KB'")
    original_name: str = Field(..., description="Client-supplied filename")
    resource_type: str

    @classmethod
    def from_descriptor(
        cls, descriptor: RemoteDescriptor, original_name: str, original_bytes: int
    ) -> "UploadedFile":
        """``bytes`` is the stored size; ``size`` displays the size the client sent."""
        return cls(
            url=descriptor.url,
            public_id=descriptor.public_id,
            format=descriptor.format,
            width=descriptor.width,
            height=descriptor.height,
            bytes=descriptor.bytes,
            size=format_size(original_bytes),
            original_name=original_name,
            resource_type=descriptor.resource_type,
        )


class ErrorBody(BaseModel):
    """Structured error, as rendered in JSON responses."""
    error: str = Field(..., description="Human-readable message")
    reason: str = Field(..., description="Machine-readable reason code")
    attribute: Optional[str] = Field(None, description="Offending attribute for validation errors")
    details: Optional[str] = Field(None, description="Provider detail for transfer errors")


class FileOutcome(BaseModel):
    """Result for one file in a request."""
    index: int
    field: str
    original_name: str
    status: OutcomeStatus
    file: Optional[UploadedFile] = None
    error: Optional[ErrorBody] = None
    status_code: int = Field(200, exclude=True)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.UPLOADED


@dataclass(frozen=True)
class FieldRule:
    """Binding of a multipart field to a policy for multi-field uploads."""
    policy: UploadPolicy
    max_count: int = 1


class SingleUploadResponse(BaseModel):
    message: str
    file: UploadedFile
    fields: Dict[str, str] = Field(default_factory=dict, description="Accompanying text fields")


class AvatarRef(BaseModel):
    url: str
    publicId: str


class ProfileUser(BaseModel):
    username: Optional[str] = None
    userId: Optional[str] = None
    avatar: AvatarRef


class ProfileUploadResponse(BaseModel):
    message: str
    user: ProfileUser
    file: UploadedFile


class BatchUploadResponse(BaseModel):
    message: str
    files: List[FileOutcome]


class FieldsUploadResponse(BaseModel):
    message: str
    uploaded_files: Dict[str, List[FileOutcome]]


class RemoteDeleteResponse(BaseModel):
    public_id: str
    deleted: bool
