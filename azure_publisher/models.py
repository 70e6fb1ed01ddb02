"""
Value types shared by every stage of a publish.

All of these are immutable once built. Nothing here performs I/O.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UploadType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    ZIP = "ZIP"
    BOTH = "BOTH"
    INVALID = "INVALID"

    @property
    def uploads_individual(self) -> bool:
        return self in (UploadType.INDIVIDUAL, UploadType.BOTH)

    @property
    def uploads_archive(self) -> bool:
        return self in (UploadType.ZIP, UploadType.BOTH)


class BuildResult(str, Enum):
    """Result of the surrounding build at the time the publisher runs."""

    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageAccountInfo:
    account_name: str
    account_key: str = field(repr=False)
    blob_endpoint: str


@dataclass(frozen=True)
class PublishRequest:
    """Raw publisher configuration as the host job defines it.

    String fields may still contain $VAR / ${VAR} placeholders.
    """

    credential_id: str
    include_globs: str
    container_name: str
    exclude_globs: str = ""
    virtual_path: str = ""
    public_access: bool = False
    cleanup: bool = False
    allow_anonymous_access: bool = False
    upload_only_if_successful: bool = False
    do_not_fail_if_nothing: bool = False
    upload_zips: bool = False
    do_not_upload_individual_files: bool = False
    archive_name: str = "artifacts"


@dataclass(frozen=True)
class UploadSpec:
    """A request with every placeholder expanded, ready for the core."""

    container: str
    public_access: bool
    cleanup: bool
    include_globs: str
    exclude_globs: str
    virtual_path: str
    upload_type: UploadType
    archive_name: str = "artifacts"
    allow_anonymous_access: bool = False


@dataclass(frozen=True)
class CandidateFile:
    relative_path: str  # forward slashes, relative to the workspace root
    absolute_path: Path
    size: int


# ---------------------------------------------------------------------------
# Plan units
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IndividualTask:
    index: int
    file: CandidateFile
    blob_name: str

    @property
    def size(self) -> int:
        return self.file.size


@dataclass(frozen=True)
class ArchiveTask:
    index: int
    files: Tuple[CandidateFile, ...]
    blob_name: str

    @property
    def size(self) -> int:
        return sum(f.size for f in self.files)


UploadTask = Union[IndividualTask, ArchiveTask]


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlobResult:
    task_index: int
    blob_name: str
    container: str
    url: str
    content_length: int
    content_md5: str  # base64, as Azure reports Content-MD5
    uploaded_at: str  # ISO-8601, UTC
    is_archive: bool = False

    def to_dict(self) -> dict:
        return {
            "blob_name": self.blob_name,
            "container": self.container,
            "url": self.url,
            "content_length": self.content_length,
            "content_md5": self.content_md5,
            "uploaded_at": self.uploaded_at,
        }


@dataclass(frozen=True)
class TaskFailure:
    task_index: int
    blob_name: str
    attempts: int
    error: str
    cancelled: bool = False


@dataclass(frozen=True)
class PublishReport:
    upload_type: UploadType
    storage_account: str
    container: str
    individual_blobs: Tuple[BlobResult, ...] = ()
    archive_blob: Optional[BlobResult] = None
    allow_anonymous_access: bool = False
    archived_file_count: int = 0

    @property
    def files_uploaded(self) -> int:
        if self.individual_blobs:
            return len(self.individual_blobs)
        # ZIP-only publishes count the files packed into the archive
        return self.archived_file_count

    @property
    def bytes_uploaded(self) -> int:
        total = sum(b.content_length for b in self.individual_blobs)
        if self.archive_blob is not None:
            total += self.archive_blob.content_length
        return total

    @property
    def is_empty(self) -> bool:
        return not self.individual_blobs and self.archive_blob is None

    def to_dict(self) -> dict:
        return {
            "upload_type": self.upload_type.value,
            "storage_account": self.storage_account,
            "container": self.container,
            "files_uploaded": self.files_uploaded,
            "bytes_uploaded": self.bytes_uploaded,
            "allow_anonymous_access": self.allow_anonymous_access,
            "individual_blobs": [b.to_dict() for b in self.individual_blobs],
            "archive_blob": self.archive_blob.to_dict() if self.archive_blob else None,
        }
