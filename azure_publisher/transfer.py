"""
Concurrent, retrying execution of planned uploads.

Each task runs on a worker thread that owns its own backend client. A task
that keeps failing is reported as a TaskFailure instead of raising, so one bad
file never stops the others. Results come back sorted by task index no matter
in which order the workers finished.
"""

import hashlib
import logging
import os
import tempfile
import threading
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence, Union

from azure.core.exceptions import AzureError, ClientAuthenticationError, ResourceNotFoundError

from .backend import BlobBackend
from .models import (
    ArchiveTask,
    BlobResult,
    IndividualTask,
    StorageAccountInfo,
    TaskFailure,
    UploadTask,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY = 2
UPLOADED_BY = "azure_publisher"

# Archives above this size spill from memory to a temporary file
_SPOOL_MAX_BYTES = 16 * 1024 * 1024
_READ_CHUNK = 1024 * 1024

TRANSIENT_ERRORS = (AzureError, ConnectionError, TimeoutError)
FATAL_ERRORS = (ClientAuthenticationError, ResourceNotFoundError)

BackendFactory = Callable[[StorageAccountInfo], BlobBackend]


@dataclass
class TransferOutcome:
    results: List[BlobResult] = field(default_factory=list)
    failures: List[TaskFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def bytes_uploaded(self) -> int:
        return sum(r.content_length for r in self.results)


@dataclass
class _Payload:
    stream: BinaryIO
    length: int
    md5: bytes
    content_type: str
    metadata: Dict[str, str]


class TransferEngine:
    def __init__(
        self,
        backend_factory: BackendFactory,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.backend_factory = backend_factory
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.cancel_event = cancel_event or threading.Event()
        # Default backoff wakes up early when the publish is cancelled
        self._sleep = sleep or self.cancel_event.wait
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(
        self,
        tasks: Sequence[UploadTask],
        account: StorageAccountInfo,
        container: str,
    ) -> TransferOutcome:
        outcome = TransferOutcome()
        if not tasks:
            return outcome

        total = len(tasks)
        total_bytes = sum(t.size for t in tasks)
        workers = min(self.concurrency, total)
        logger.info(
            f"Uploading {total} task(s) ({total_bytes:,} bytes) to '{container}' with {workers} thread(s)..."
        )
        t0 = time.monotonic()
        done = 0

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="publish") as pool:
            futures = {
                pool.submit(self._execute, task, account, container): task
                for task in tasks
            }
            for future in as_completed(futures):
                task = futures[future]
                done += 1
                if future.cancelled():
                    outcome.failures.append(TaskFailure(
                        task_index=task.index,
                        blob_name=task.blob_name,
                        attempts=0,
                        error="cancelled before start",
                        cancelled=True,
                    ))
                    continue

                result = future.result()
                if isinstance(result, BlobResult):
                    outcome.results.append(result)
                    elapsed = max(time.monotonic() - t0, 0.001)
                    speed_mb = (outcome.bytes_uploaded / elapsed) / (1024 * 1024)
                    logger.info(
                        f"[{done / total * 100:5.1f}%] {result.blob_name}  "
                        f"{result.content_length:,} bytes  speed={speed_mb:.1f} MB/s"
                    )
                else:
                    outcome.failures.append(result)

                if self.cancel_event.is_set():
                    pending = [f for f in futures if f.cancel()]
                    if pending:
                        logger.warning(f"Cancellation requested: {len(pending)} queued task(s) will not start.")

        outcome.results.sort(key=lambda r: r.task_index)
        outcome.failures.sort(key=lambda f: f.task_index)
        logger.info(
            f"Transfer finished in {_fmt_seconds(time.monotonic() - t0)}: "
            f"{len(outcome.results)} succeeded, {len(outcome.failures)} failed."
        )
        return outcome

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    def _backend(self, account: StorageAccountInfo) -> BlobBackend:
        backend = getattr(self._local, "backend", None)
        if backend is None:
            backend = self.backend_factory(account)
            self._local.backend = backend
        return backend

    def _execute(
        self, task: UploadTask, account: StorageAccountInfo, container: str
    ) -> Union[BlobResult, TaskFailure]:
        """Upload one task with exponential-backoff retry."""
        if self.cancel_event.is_set():
            return self._failure(task, 0, "cancelled before start", cancelled=True)

        try:
            with _open_payload(task) as payload:
                return self._upload_with_retry(task, payload, account, container)
        except OSError as exc:
            logger.error(f"{task.blob_name}: cannot read local data — {exc}")
            return self._failure(task, 1, f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.error(f"{task.blob_name}: cannot build upload payload — {exc}")
            return self._failure(task, 1, f"{type(exc).__name__}: {exc}")

    def _upload_with_retry(
        self, task: UploadTask, payload: _Payload, account: StorageAccountInfo, container: str
    ) -> Union[BlobResult, TaskFailure]:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            if self.cancel_event.is_set():
                return self._failure(task, attempt - 1, "cancelled", cancelled=True)
            payload.stream.seek(0)
            try:
                url, digest = self._backend(account).put_blob(
                    container,
                    task.blob_name,
                    payload.stream,
                    length=payload.length,
                    content_type=payload.content_type,
                    content_md5=payload.md5,
                    metadata=payload.metadata,
                )
            except FATAL_ERRORS as exc:
                logger.error(f"{task.blob_name}: non-retryable error — {exc}")
                return self._failure(task, attempt, f"{type(exc).__name__}: {exc}")
            except TRANSIENT_ERRORS as exc:
                last_exc = exc
                if attempt >= self.max_attempts:
                    break
                delay = self.retry_base_delay ** attempt
                logger.warning(
                    f"{task.blob_name}: transient error (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay}s — {exc}"
                )
                self._sleep(delay)
                continue
            except Exception as exc:
                logger.error(f"{task.blob_name}: non-retryable error — {exc}")
                return self._failure(task, attempt, f"{type(exc).__name__}: {exc}")

            return BlobResult(
                task_index=task.index,
                blob_name=task.blob_name,
                container=container,
                url=url,
                content_length=payload.length,
                content_md5=digest,
                uploaded_at=datetime.now(timezone.utc).isoformat(),
                is_archive=isinstance(task, ArchiveTask),
            )

        logger.error(f"{task.blob_name}: failed after {self.max_attempts} attempt(s) — {last_exc}")
        return self._failure(task, self.max_attempts, f"{type(last_exc).__name__}: {last_exc}")

    @staticmethod
    def _failure(task: UploadTask, attempts: int, error: str, cancelled: bool = False) -> TaskFailure:
        return TaskFailure(
            task_index=task.index,
            blob_name=task.blob_name,
            attempts=attempts,
            error=error,
            cancelled=cancelled,
        )


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

@contextmanager
def _open_payload(task: UploadTask) -> Iterator[_Payload]:
    uploaded_at = datetime.now(timezone.utc).isoformat()

    if isinstance(task, IndividualTask):
        path = task.file.absolute_path
        with path.open("rb") as fh:
            length = os.fstat(fh.fileno()).st_size
            md5 = _stream_md5(fh)
            yield _Payload(
                stream=fh,
                length=length,
                md5=md5,
                content_type=_guess_content_type(path),
                metadata={
                    "uploaded_by": UPLOADED_BY,
                    "uploaded_at": uploaded_at,
                    "original_filename": path.name,
                    "file_size_bytes": str(length),
                },
            )
        return

    with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as spool:
        write_archive(task, spool)
        length = spool.tell()
        md5 = _stream_md5(spool)
        yield _Payload(
            stream=spool,
            length=length,
            md5=md5,
            content_type="application/zip",
            metadata={
                "uploaded_by": UPLOADED_BY,
                "uploaded_at": uploaded_at,
                "original_filename": Path(task.blob_name).name,
                "file_size_bytes": str(length),
                "file_count": str(len(task.files)),
            },
        )


def write_archive(task: ArchiveTask, fileobj: BinaryIO) -> None:
    """Write every file of *task* into a zip under its workspace-relative path.

    Files dated before 1980 are stored with the earliest zip timestamp.
    """
    with zipfile.ZipFile(fileobj, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
        for candidate in task.files:
            zf.write(candidate.absolute_path, arcname=candidate.relative_path)


def _stream_md5(fh: BinaryIO) -> bytes:
    fh.seek(0)
    digest = hashlib.md5()
    for chunk in iter(lambda: fh.read(_READ_CHUNK), b""):
        digest.update(chunk)
    fh.seek(0)
    return digest.digest()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt_seconds(s: float) -> str:
    if s <= 0:
        return "0s"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"


def _guess_content_type(path: Path) -> str:
    suffix = path.suffix.lower()
    return {
        ".csv": "text/csv",
        ".json": "application/json",
        ".xml": "application/xml",
        ".html": "text/html",
        ".zip": "application/zip",
        ".gz": "application/gzip",
        ".tar": "application/x-tar",
        ".jar": "application/java-archive",
        ".txt": "text/plain",
        ".log": "text/plain",
        ".tsv": "text/tab-separated-values",
    }.get(suffix, "application/octet-stream")
