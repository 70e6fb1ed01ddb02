"""
Top-level publish sequence.

    VALIDATING → ENSURING_CONTAINER → SELECTING → PLANNING → TRANSFERRING → RECORDING → DONE

Any PublisherError raised along the way ends the run in FAILED, remembering
the state it was raised in. publish() reports the result as a PublishOutcome
instead of raising, so the caller decides what a failure means for its build.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Mapping, Optional, Tuple, Union

from azure.core.exceptions import AzureError, ClientAuthenticationError, HttpResponseError

from .backend import BlobBackend, azure_backend_factory, validate_container_name
from .config import Config
from .container import ContainerManager
from .exceptions import (
    CredentialError,
    NoFilesError,
    PublishAborted,
    PublisherError,
    StorageUnavailableError,
    TransferError,
    ValidationError,
)
from .interfaces import ConnectionStringResolver, CredentialResolver, EnvMacroExpander, MacroExpander, ReportSink
from .matcher import PathMatcher, split_patterns
from .models import (
    BuildResult,
    CandidateFile,
    PublishReport,
    PublishRequest,
    StorageAccountInfo,
    UploadSpec,
    UploadTask,
    UploadType,
)
from .planner import UploadPlanner, compute_upload_type, normalize_virtual_path
from .recorder import ResultRecorder
from .transfer import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    BackendFactory,
    TransferEngine,
)

logger = logging.getLogger(__name__)


class PublishState(str, Enum):
    VALIDATING = "validating"
    ENSURING_CONTAINER = "ensuring container"
    SELECTING = "selecting"
    PLANNING = "planning"
    TRANSFERRING = "transferring"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PublishOutcome:
    state: PublishState
    report: Optional[PublishReport] = None
    error: Optional[PublisherError] = None
    failed_in: Optional[PublishState] = None
    # Build ran but did not qualify for upload; nothing was done
    skipped: bool = False
    # Nothing matched and the job tolerates that; the host may mark the build unstable
    unstable: bool = False

    @property
    def ok(self) -> bool:
        return self.state is PublishState.DONE


@dataclass
class PublishPreview:
    spec: UploadSpec
    storage_account: str
    candidates: List[CandidateFile] = field(default_factory=list)
    tasks: List[UploadTask] = field(default_factory=list)


class PublishOrchestrator:
    def __init__(
        self,
        credential_resolver: CredentialResolver,
        backend_factory: BackendFactory = azure_backend_factory,
        macro_expander: Optional[MacroExpander] = None,
        report_sink: Optional[ReportSink] = None,
        matcher: Optional[PathMatcher] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        container_recreate_timeout: float = 120,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.credential_resolver = credential_resolver
        self.backend_factory = backend_factory
        self.macro_expander = macro_expander or EnvMacroExpander()
        self.report_sink = report_sink
        self.matcher = matcher or PathMatcher()
        self.planner = UploadPlanner()
        self.recorder = ResultRecorder()
        self.container_recreate_timeout = container_recreate_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.engine = TransferEngine(
            backend_factory,
            concurrency=concurrency,
            max_attempts=max_attempts,
            retry_base_delay=retry_base_delay,
            cancel_event=self.cancel_event,
        )

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> "PublishOrchestrator":
        kwargs.setdefault("concurrency", config.concurrency)
        kwargs.setdefault("max_attempts", config.max_attempts)
        kwargs.setdefault("retry_base_delay", config.retry_base_delay)
        kwargs.setdefault("container_recreate_timeout", config.container_recreate_timeout)
        return cls(ConnectionStringResolver(config), **kwargs)

    def cancel(self) -> None:
        """Stop scheduling uploads. Tasks already running finish or fail on their own."""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def publish(
        self,
        request: PublishRequest,
        workspace: Union[str, Path],
        environment: Optional[Mapping[str, str]] = None,
        build_result: BuildResult = BuildResult.SUCCESS,
    ) -> PublishOutcome:
        if request.upload_only_if_successful and build_result in (BuildResult.FAILURE, BuildResult.ABORTED):
            logger.info(f"Build result is {build_result.value}; skipping upload as configured.")
            return PublishOutcome(state=PublishState.DONE, skipped=True)

        state = PublishState.VALIDATING
        try:
            spec, account = self._resolve(request, environment or {})
            backend = self.backend_factory(account)
            self._validate_account(backend, account)
            self._check_cancelled("before the container was prepared")

            state = self._enter(PublishState.ENSURING_CONTAINER)
            ContainerManager(backend, recreate_timeout=self.container_recreate_timeout).ensure(
                spec.container, spec.public_access, spec.cleanup
            )

            state = self._enter(PublishState.SELECTING)
            candidates = self.matcher.select(workspace, spec.include_globs, spec.exclude_globs)
            logger.info(f"Selected {len(candidates)} file(s) from {workspace}.")

            state = self._enter(PublishState.PLANNING)
            tasks = self.planner.plan(candidates, spec.upload_type, spec.virtual_path, spec.archive_name)
            if not tasks:
                if not request.do_not_fail_if_nothing:
                    raise NoFilesError(
                        f"No files matched '{spec.include_globs}' in {workspace}; nothing was uploaded."
                    )
                logger.warning("No files matched; nothing was uploaded.")
                return PublishOutcome(
                    state=PublishState.DONE,
                    report=self.recorder.empty(spec, account.account_name),
                    unstable=True,
                )

            self._check_cancelled("before any upload started")
            state = self._enter(PublishState.TRANSFERRING)
            transfer = self.engine.run(tasks, account, spec.container)
            if self.cancel_event.is_set():
                raise PublishAborted(
                    f"Publish cancelled: {len(transfer.results)} of {len(tasks)} task(s) completed; "
                    "partially uploaded blobs are left in place."
                )
            if transfer.failures:
                raise TransferError(transfer.failures, len(tasks))

            state = self._enter(PublishState.RECORDING)
            report = self.recorder.build(
                transfer.results, spec, account.account_name, archived_file_count=len(candidates)
            )
            if self.report_sink is not None:
                self.report_sink.publish(report)
        except PublisherError as exc:
            logger.error(f"Publish failed while {state.value}: {exc}")
            return PublishOutcome(state=PublishState.FAILED, error=exc, failed_in=state)

        self._enter(PublishState.DONE)
        logger.info(f"Uploaded {report.files_uploaded} file(s) ({report.bytes_uploaded:,} bytes).")
        return PublishOutcome(state=PublishState.DONE, report=report)

    def preview(
        self,
        request: PublishRequest,
        workspace: Union[str, Path],
        environment: Optional[Mapping[str, str]] = None,
    ) -> PublishPreview:
        """Validate, select and plan without touching storage.

        Raises the PublisherError that publish() would have failed with.
        """
        spec, account = self._resolve(request, environment or {})
        candidates = self.matcher.select(workspace, spec.include_globs, spec.exclude_globs)
        tasks = self.planner.plan(candidates, spec.upload_type, spec.virtual_path, spec.archive_name)
        return PublishPreview(spec=spec, storage_account=account.account_name, candidates=candidates, tasks=tasks)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _resolve(
        self, request: PublishRequest, environment: Mapping[str, str]
    ) -> Tuple[UploadSpec, StorageAccountInfo]:
        expand = self.macro_expander.expand

        credential_id = (request.credential_id or "").strip()
        if not credential_id:
            raise ValidationError("storage_account", "No storage account credential configured.")
        account = self.credential_resolver.resolve(credential_id)
        if account is None:
            raise CredentialError(f"No storage account credential found for id '{credential_id}'.")

        include_globs = expand(request.include_globs, environment).strip()
        if not split_patterns(include_globs):
            raise ValidationError("include_globs", "Files to upload are not specified.")

        upload_type = compute_upload_type(request.upload_zips, request.do_not_upload_individual_files)
        if upload_type is UploadType.INVALID:
            raise ValidationError(
                "upload_type",
                "Individual uploads are suppressed but zip upload is off; there is nothing to upload.",
            )

        container = expand(request.container_name, environment).strip().lower()
        if not container:
            raise ValidationError("container_name", "Container name is null or empty.")
        if not validate_container_name(container):
            raise ValidationError("container_name", f"Container name '{container}' contains invalid characters.")

        spec = UploadSpec(
            container=container,
            public_access=request.public_access,
            cleanup=request.cleanup,
            include_globs=include_globs,
            exclude_globs=expand(request.exclude_globs, environment).strip(),
            virtual_path=normalize_virtual_path(expand(request.virtual_path, environment)),
            upload_type=upload_type,
            archive_name=expand(request.archive_name, environment).strip() or "artifacts",
            allow_anonymous_access=request.allow_anonymous_access,
        )
        return spec, account

    def _check_cancelled(self, when: str) -> None:
        if self.cancel_event.is_set():
            raise PublishAborted(f"Publish cancelled {when}.")

    @staticmethod
    def _validate_account(backend: BlobBackend, account: StorageAccountInfo) -> None:
        try:
            backend.validate_account()
        except ClientAuthenticationError as exc:
            raise CredentialError(
                f"Storage account '{account.account_name}' at {account.blob_endpoint} "
                f"rejected the credentials: {exc}"
            ) from exc
        except HttpResponseError as exc:
            if exc.status_code == 403:
                raise CredentialError(
                    f"Storage account '{account.account_name}' at {account.blob_endpoint} "
                    f"rejected the credentials: {exc}"
                ) from exc
            raise StorageUnavailableError(
                f"Storage account '{account.account_name}' at {account.blob_endpoint} "
                f"returned an error while checking the account: {exc}"
            ) from exc
        except AzureError as exc:
            raise StorageUnavailableError(
                f"Could not reach storage account '{account.account_name}' at {account.blob_endpoint}: {exc}"
            ) from exc

    @staticmethod
    def _enter(state: PublishState) -> PublishState:
        logger.info(f"Publish state: {state.value}")
        return state
