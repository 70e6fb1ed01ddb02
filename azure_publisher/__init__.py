"""
Azure Artifact Publisher.

Uploads build output selected by Ant-style globs to Azure Blob Storage,
individually and/or as one zip archive, and reports where everything went.
"""

from .exceptions import (
    ContainerError,
    CredentialError,
    NoFilesError,
    PublishAborted,
    PublisherError,
    StorageUnavailableError,
    TransferError,
    ValidationError,
)
from .models import BlobResult, BuildResult, PublishReport, PublishRequest, UploadType
from .orchestrator import PublishOrchestrator, PublishOutcome, PublishState

__version__ = "0.1.0"

__all__ = [
    "BlobResult",
    "BuildResult",
    "ContainerError",
    "CredentialError",
    "NoFilesError",
    "PublishAborted",
    "PublishOrchestrator",
    "PublishOutcome",
    "PublishReport",
    "PublishRequest",
    "PublishState",
    "PublisherError",
    "StorageUnavailableError",
    "TransferError",
    "UploadType",
    "ValidationError",
]
