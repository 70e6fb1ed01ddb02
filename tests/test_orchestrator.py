"""End-to-end tests for the publish state machine against the in-memory backend."""

import io
import os
import threading
import zipfile
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ServiceRequestError

from azure_publisher.backend import ContainerBeingDeleted
from azure_publisher.exceptions import (
    ContainerError,
    CredentialError,
    NoFilesError,
    PublishAborted,
    StorageUnavailableError,
    TransferError,
    ValidationError,
)
from azure_publisher.models import BuildResult, PublishRequest, UploadType
from azure_publisher.orchestrator import PublishOrchestrator, PublishState

from conftest import InMemoryBackend


def _request(**overrides):
    fields = dict(
        credential_id="test",
        include_globs="**/*.log",
        exclude_globs="**/debug.log",
        container_name="builds",
    )
    fields.update(overrides)
    return PublishRequest(**fields)


@pytest.fixture
def sink():
    return MagicMock()


@pytest.fixture
def make_orchestrator(resolver, backend, sink):
    def _make(**kwargs):
        kwargs.setdefault("backend_factory", lambda account: backend)
        kwargs.setdefault("report_sink", sink)
        kwargs.setdefault("retry_base_delay", 0)
        return PublishOrchestrator(resolver, **kwargs)

    return _make


@pytest.fixture
def logs_workspace(make_workspace):
    return make_workspace({"app.log": b"app", "debug.log": b"debug", "sub/trace.log": b"trace"})


class TestHappyPath:
    def test_individual_upload(self, make_orchestrator, backend, sink, logs_workspace):
        outcome = make_orchestrator().publish(_request(virtual_path="out"), logs_workspace)

        assert outcome.ok and outcome.state is PublishState.DONE
        assert backend.list_blobs("builds") == ["out/app.log", "out/sub/trace.log"]
        report = outcome.report
        assert report.upload_type is UploadType.INDIVIDUAL
        assert [b.blob_name for b in report.individual_blobs] == ["out/app.log", "out/sub/trace.log"]
        assert report.archive_blob is None
        assert report.files_uploaded == 2
        assert report.storage_account == "teststore"
        sink.publish.assert_called_once_with(report)

    def test_both_uploads_archive(self, make_orchestrator, backend, logs_workspace):
        request = _request(upload_zips=True, archive_name="build-7")
        outcome = make_orchestrator().publish(request, logs_workspace)

        assert outcome.ok
        assert len(outcome.report.individual_blobs) == 2
        assert outcome.report.archive_blob.blob_name == "build-7.zip"
        with zipfile.ZipFile(io.BytesIO(backend.containers["builds"]["build-7.zip"])) as zf:
            assert sorted(zf.namelist()) == ["app.log", "sub/trace.log"]

    def test_zip_only(self, make_orchestrator, backend, logs_workspace):
        request = _request(upload_zips=True, do_not_upload_individual_files=True)
        outcome = make_orchestrator().publish(request, logs_workspace)

        assert outcome.ok
        assert backend.list_blobs("builds") == ["artifacts.zip"]
        assert outcome.report.individual_blobs == ()
        assert outcome.report.files_uploaded == 2

    def test_macros_expanded(self, make_orchestrator, backend, logs_workspace):
        request = _request(container_name="${JOB}-Logs", virtual_path="$BUILD_NUMBER")
        outcome = make_orchestrator().publish(
            request, logs_workspace, environment={"JOB": "Nightly", "BUILD_NUMBER": "42"}
        )
        assert outcome.ok
        assert backend.list_blobs("nightly-logs") == ["42/app.log", "42/sub/trace.log"]

    def test_public_access_and_cleanup(self, make_orchestrator, backend, logs_workspace):
        backend.create_container("builds")
        backend.containers["builds"]["stale.txt"] = b"old"
        outcome = make_orchestrator().publish(_request(cleanup=True, public_access=True), logs_workspace)

        assert outcome.ok
        assert "stale.txt" not in backend.list_blobs("builds")
        assert backend.public["builds"] is True
        first_put = next(i for i, e in enumerate(backend.events) if e.startswith("put:"))
        assert backend.events.index("delete:builds") < first_put

    def test_archive_of_epoch_dated_files(self, make_orchestrator, backend, logs_workspace):
        os.utime(logs_workspace / "app.log", (0, 0))
        outcome = make_orchestrator().publish(_request(upload_zips=True), logs_workspace)

        assert outcome.ok
        assert outcome.report.archive_blob.blob_name == "artifacts.zip"
        with zipfile.ZipFile(io.BytesIO(backend.containers["builds"]["artifacts.zip"])) as zf:
            assert zf.read("app.log") == b"app"


class TestSkipAndEmpty:
    @pytest.mark.parametrize("result", [BuildResult.FAILURE, BuildResult.ABORTED])
    def test_skipped_after_failed_build(self, make_orchestrator, backend, logs_workspace, result):
        outcome = make_orchestrator().publish(
            _request(upload_only_if_successful=True), logs_workspace, build_result=result
        )
        assert outcome.ok and outcome.skipped
        assert backend.events == []

    def test_unstable_build_still_uploads(self, make_orchestrator, logs_workspace):
        outcome = make_orchestrator().publish(
            _request(upload_only_if_successful=True), logs_workspace, build_result=BuildResult.UNSTABLE
        )
        assert outcome.ok and not outcome.skipped

    def test_empty_workspace_fails(self, make_orchestrator, make_workspace):
        outcome = make_orchestrator().publish(_request(), make_workspace({}))
        assert outcome.state is PublishState.FAILED
        assert isinstance(outcome.error, NoFilesError)
        assert outcome.failed_in is PublishState.PLANNING

    def test_empty_workspace_tolerated(self, make_orchestrator, sink, make_workspace):
        outcome = make_orchestrator().publish(_request(do_not_fail_if_nothing=True), make_workspace({}))
        assert outcome.ok and outcome.unstable
        assert outcome.report.is_empty
        sink.publish.assert_not_called()


class TestValidation:
    def test_invalid_upload_type_caught_before_planning(self, make_orchestrator, backend, logs_workspace):
        orchestrator = make_orchestrator()
        orchestrator.planner = MagicMock()
        outcome = orchestrator.publish(_request(do_not_upload_individual_files=True), logs_workspace)

        assert outcome.failed_in is PublishState.VALIDATING
        assert isinstance(outcome.error, ValidationError)
        assert outcome.error.check == "upload_type"
        orchestrator.planner.plan.assert_not_called()
        assert backend.events == []

    @pytest.mark.parametrize(
        "overrides, check",
        [
            ({"credential_id": ""}, "storage_account"),
            ({"include_globs": " "}, "include_globs"),
            ({"container_name": ""}, "container_name"),
            ({"container_name": "bad_name!"}, "container_name"),
        ],
    )
    def test_validation_checks(self, make_orchestrator, logs_workspace, overrides, check):
        outcome = make_orchestrator().publish(_request(**overrides), logs_workspace)
        assert isinstance(outcome.error, ValidationError)
        assert outcome.error.check == check

    def test_unknown_credential(self, make_orchestrator, logs_workspace):
        outcome = make_orchestrator().publish(_request(credential_id="missing"), logs_workspace)
        assert isinstance(outcome.error, CredentialError)

    def test_rejected_account_key(self, resolver, logs_workspace):
        backend = InMemoryBackend(reject_auth=True)
        orchestrator = PublishOrchestrator(resolver, backend_factory=lambda a: backend)
        outcome = orchestrator.publish(_request(), logs_workspace)
        assert isinstance(outcome.error, CredentialError)
        assert backend.events == []

    def test_forbidden_account(self, make_orchestrator, backend, logs_workspace):
        def forbid():
            error = HttpResponseError(message="This request is not authorized to perform this operation.")
            error.status_code = 403
            raise error

        backend.validate_account = forbid
        outcome = make_orchestrator().publish(_request(), logs_workspace)
        assert isinstance(outcome.error, CredentialError)

    def test_unreachable_storage_is_not_a_credential_error(self, make_orchestrator, backend, logs_workspace):
        def unreachable():
            raise ServiceRequestError("Failed to establish a new connection")

        backend.validate_account = unreachable
        outcome = make_orchestrator().publish(_request(), logs_workspace)
        assert isinstance(outcome.error, StorageUnavailableError)
        assert not isinstance(outcome.error, CredentialError)
        assert "Could not reach" in str(outcome.error)
        assert outcome.failed_in is PublishState.VALIDATING
        assert backend.events == []

    def test_container_rejected(self, make_orchestrator, backend, logs_workspace):
        def refuse(container):
            raise HttpResponseError(message="This request is not authorized")

        backend.create_container = refuse
        outcome = make_orchestrator().publish(_request(), logs_workspace)
        assert isinstance(outcome.error, ContainerError)
        assert outcome.failed_in is PublishState.ENSURING_CONTAINER

    def test_container_still_being_deleted(self, make_orchestrator, backend, logs_workspace):
        def pending(container):
            raise ContainerBeingDeleted(container)

        backend.create_container = pending
        outcome = make_orchestrator(container_recreate_timeout=0).publish(_request(), logs_workspace)
        assert isinstance(outcome.error, ContainerError)
        assert outcome.failed_in is PublishState.ENSURING_CONTAINER


class TestTransferFailures:
    def test_transfer_failure_fails_publish(self, make_orchestrator, backend, sink, logs_workspace):
        backend.fail_plan["sub/trace.log"] = -1
        outcome = make_orchestrator(max_attempts=2).publish(_request(), logs_workspace)

        assert outcome.state is PublishState.FAILED
        assert outcome.failed_in is PublishState.TRANSFERRING
        assert isinstance(outcome.error, TransferError)
        assert [f.blob_name for f in outcome.error.failures] == ["sub/trace.log"]
        assert outcome.error.total == 2
        assert "1 of 2" in str(outcome.error)
        assert backend.list_blobs("builds") == ["app.log"]
        sink.publish.assert_not_called()

    def test_cancelled_before_container_is_touched(self, make_orchestrator, backend, logs_workspace):
        backend.create_container("builds")
        backend.containers["builds"]["keep.txt"] = b"old"
        backend.events.clear()
        orchestrator = make_orchestrator(cancel_event=threading.Event())
        orchestrator.cancel()
        outcome = orchestrator.publish(_request(cleanup=True), logs_workspace)

        assert isinstance(outcome.error, PublishAborted)
        assert outcome.failed_in is PublishState.VALIDATING
        assert backend.events == []
        assert backend.list_blobs("builds") == ["keep.txt"]

    def test_cancelled_during_transfer(self, make_orchestrator, backend, sink, make_workspace):
        cancel = threading.Event()
        real_put = backend.put_blob

        def put_then_cancel(*args, **kwargs):
            result = real_put(*args, **kwargs)
            cancel.set()
            return result

        backend.put_blob = put_then_cancel
        root = make_workspace({f"f{i}.log": b"x" for i in range(4)})
        outcome = make_orchestrator(cancel_event=cancel, concurrency=1).publish(_request(), root)

        assert isinstance(outcome.error, PublishAborted)
        assert outcome.failed_in is PublishState.TRANSFERRING
        assert "1 of 4" in str(outcome.error)
        assert backend.list_blobs("builds") == ["f0.log"]
        sink.publish.assert_not_called()


class TestPreview:
    def test_preview_plans_without_storage(self, make_orchestrator, backend, logs_workspace):
        preview = make_orchestrator().preview(_request(upload_zips=True), logs_workspace)
        assert [c.relative_path for c in preview.candidates] == ["app.log", "sub/trace.log"]
        assert [t.blob_name for t in preview.tasks] == ["app.log", "sub/trace.log", "artifacts.zip"]
        assert preview.storage_account == "teststore"
        assert backend.events == []

    def test_preview_raises_validation_error(self, make_orchestrator, logs_workspace):
        with pytest.raises(ValidationError):
            make_orchestrator().preview(_request(container_name=""), logs_workspace)
