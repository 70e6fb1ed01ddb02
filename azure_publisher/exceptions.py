"""
Error taxonomy for the publisher.

Every failure the orchestrator can end in is a subclass of PublisherError.
Components raise these; PublishOrchestrator turns them into a FAILED outcome.
"""

from typing import Optional, Sequence


class PublisherError(Exception):
    """Base class for all publish failures."""


class ValidationError(PublisherError):
    """Bad or missing input, detected before any storage I/O."""

    def __init__(self, check: str, message: str) -> None:
        super().__init__(message)
        self.check = check


class CredentialError(PublisherError):
    """Credential lookup failed or the account secret was rejected."""


class StorageUnavailableError(PublisherError):
    """The storage endpoint could not be reached or answered with a non-auth error."""


class ContainerError(PublisherError):
    """The backend rejected a container operation."""

    def __init__(self, container: str, message: str) -> None:
        super().__init__(message)
        self.container = container


class NoFilesError(PublisherError):
    """Selection produced nothing to upload."""


class TransferError(PublisherError):
    """One or more upload tasks failed after exhausting their retries."""

    def __init__(self, failures: Sequence, total: int, message: Optional[str] = None) -> None:
        self.failures = list(failures)
        self.total = total
        if message is None:
            names = ", ".join(f.blob_name for f in self.failures[:5])
            more = f" (+{len(self.failures) - 5} more)" if len(self.failures) > 5 else ""
            first = self.failures[0].error if self.failures else "unknown error"
            message = (
                f"{len(self.failures)} of {total} upload task(s) failed: {names}{more}. "
                f"First cause: {first}"
            )
        super().__init__(message)


class PublishAborted(PublisherError):
    """The surrounding job was cancelled while transfers were running."""
