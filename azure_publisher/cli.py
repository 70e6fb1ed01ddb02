"""
Command-line entry point.

Usage:
    azure-publish <workspace> [container_name] --include GLOBS [options]

Selects files under <workspace> with Ant-style globs and uploads them to an
Azure Blob Storage container, individually, as one zip archive, or both.
"""

import argparse
import os
import signal
import sys
from pathlib import Path

from .config import DEFAULT_CREDENTIAL_ID, Config
from .exceptions import PublishAborted, PublisherError, TransferError
from .interfaces import JsonReportSink, LoggingReportSink
from .log import build_logger
from .matcher import PathMatcher
from .models import ArchiveTask, BuildResult, PublishRequest
from .orchestrator import PublishOrchestrator

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TRANSFER_FAILED = 2
EXIT_ABORTED = 130


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="azure-publish",
        description=(
            "Upload build artifacts selected by Ant-style globs to Azure Blob Storage, "
            "as individual blobs and/or a single zip archive."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Upload all logs except debug.log\n"
            '  azure-publish . build-logs --include "**/*.log" --exclude "**/debug.log"\n\n'
            "  # Upload a zip of the dist folder only, under a per-build prefix\n"
            '  azure-publish . releases --include "dist/" --upload-zips \\\n'
            '      --do-not-upload-individual-files --virtual-path "${JOB_NAME}/${BUILD_NUMBER}"\n\n'
            "  # Dry run: validate config and list what would be uploaded\n"
            '  azure-publish . releases --include "**/*.jar" --dry-run\n'
        ),
    )
    parser.add_argument("workspace", help="Directory the include/exclude patterns are resolved against.")
    parser.add_argument(
        "container_name",
        nargs="?",
        default=None,
        help="Target container. Overrides CONTAINER_NAME in .env. $VAR placeholders are expanded.",
    )
    parser.add_argument("--include", required=True, metavar="GLOBS", help="Comma-separated Ant globs to upload.")
    parser.add_argument("--exclude", default="", metavar="GLOBS", help="Comma-separated Ant globs to skip.")
    parser.add_argument(
        "--credential-id",
        default=DEFAULT_CREDENTIAL_ID,
        metavar="ID",
        help="Storage credential id. 'default' reads AZURE_CONN_STR, others read AZURE_CONN_STR_<ID>.",
    )
    parser.add_argument("--virtual-path", default="", metavar="PREFIX", help="Virtual folder prepended to every blob name.")
    parser.add_argument("--public-access", action="store_true", help="Make the container publicly readable.")
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete and recreate the container before uploading. Existing blobs are lost.",
    )
    parser.add_argument(
        "--allow-anonymous-access",
        action="store_true",
        help="Mark the report so download links may be shown to anonymous users.",
    )
    parser.add_argument(
        "--upload-only-if-successful",
        action="store_true",
        help="Skip the upload when --build-result is FAILURE or ABORTED.",
    )
    parser.add_argument(
        "--build-result",
        choices=[r.value for r in BuildResult],
        default=os.environ.get("BUILD_RESULT", BuildResult.SUCCESS.value),
        help="Result of the build so far (default: $BUILD_RESULT or SUCCESS).",
    )
    parser.add_argument(
        "--do-not-fail-if-empty",
        action="store_true",
        help="Succeed (exit 0) when no file matches.",
    )
    parser.add_argument("--upload-zips", action="store_true", help="Also upload everything as one zip archive.")
    parser.add_argument(
        "--do-not-upload-individual-files",
        action="store_true",
        help="Skip individual blobs; requires --upload-zips.",
    )
    parser.add_argument(
        "--archive-name",
        default=None,
        metavar="NAME",
        help="Zip blob name (default: ARCHIVE_NAME, then BUILD_TAG, then 'artifacts').",
    )
    parser.add_argument("--report", default=None, metavar="PATH", help="Write the upload report as JSON to PATH.")
    parser.add_argument(
        "--no-default-excludes",
        action="store_true",
        help="Do not skip VCS metadata and editor backup files.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config and list files that would be uploaded, without uploading.",
    )
    return parser.parse_args(argv)


def _request_from_args(args: argparse.Namespace, cfg: Config) -> PublishRequest:
    return PublishRequest(
        credential_id=args.credential_id,
        include_globs=args.include,
        exclude_globs=args.exclude,
        container_name=args.container_name or cfg.container_name,
        virtual_path=args.virtual_path,
        public_access=args.public_access,
        cleanup=args.cleanup,
        allow_anonymous_access=args.allow_anonymous_access,
        upload_only_if_successful=args.upload_only_if_successful,
        do_not_fail_if_nothing=args.do_not_fail_if_empty,
        upload_zips=args.upload_zips,
        do_not_upload_individual_files=args.do_not_upload_individual_files,
        archive_name=args.archive_name or cfg.archive_name,
    )


def main(argv=None) -> None:
    args = _parse_args(argv)

    # Config: validate everything before touching Azure
    try:
        cfg = Config()
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    logger = build_logger(cfg.log_dir)
    logger.info("=" * 60)
    logger.info("  Azure Artifact Publisher")
    logger.info("=" * 60)

    sink = JsonReportSink(Path(args.report)) if args.report else LoggingReportSink()
    orchestrator = PublishOrchestrator.from_config(
        cfg,
        report_sink=sink,
        matcher=PathMatcher(default_excludes=not args.no_default_excludes),
    )
    request = _request_from_args(args, cfg)
    workspace = Path(args.workspace).expanduser().resolve()

    if args.dry_run:
        try:
            preview = orchestrator.preview(request, workspace, os.environ)
        except PublisherError as exc:
            logger.error(f"{exc}")
            sys.exit(EXIT_FAILED)
        total = len(preview.tasks)
        logger.info(f"Account   : {preview.storage_account}")
        logger.info(f"Container : {preview.spec.container}")
        logger.info(f"Mode      : {preview.spec.upload_type.value}")
        logger.info(f"Files     : {len(preview.candidates):,}")
        logger.info("[DRY RUN] Blobs that would be uploaded:")
        for i, task in enumerate(preview.tasks, 1):
            kind = f"zip of {len(task.files)} file(s)" if isinstance(task, ArchiveTask) else "file"
            logger.info(f"  [{i:>{len(str(total))}}] {task.size:>14,} bytes  →  {task.blob_name}  ({kind})")
        logger.info("[DRY RUN] No files were uploaded.")
        sys.exit(EXIT_OK)

    def _handle_interrupt(signum, frame):  # type: ignore[override]
        logger.warning("Interrupt received. Finishing running uploads and exiting...")
        orchestrator.cancel()

    signal.signal(signal.SIGINT, _handle_interrupt)
    signal.signal(signal.SIGTERM, _handle_interrupt)

    outcome = orchestrator.publish(
        request,
        workspace,
        environment=os.environ,
        build_result=BuildResult(args.build_result),
    )

    if outcome.ok:
        if outcome.skipped:
            logger.info("Upload skipped.")
        elif outcome.unstable:
            logger.warning("No files were uploaded; the build should be marked unstable.")
        sys.exit(EXIT_OK)

    if isinstance(outcome.error, PublishAborted):
        sys.exit(EXIT_ABORTED)
    if isinstance(outcome.error, TransferError):
        for failure in outcome.error.failures:
            logger.warning(f"    - {failure.blob_name}  ({failure.attempts} attempt(s): {failure.error})")
        sys.exit(EXIT_TRANSFER_FAILED)
    sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
