from typing import Sequence

from .models import BlobResult, PublishReport, UploadSpec


class ResultRecorder:
    """Turns transfer results into the report handed to the display layer."""

    def build(
        self,
        results: Sequence[BlobResult],
        spec: UploadSpec,
        storage_account: str,
        archived_file_count: int = 0,
    ) -> PublishReport:
        ordered = sorted(results, key=lambda r: r.task_index)
        individual = tuple(r for r in ordered if not r.is_archive)
        archives = [r for r in ordered if r.is_archive]
        if len(archives) > 1:
            raise ValueError(f"Expected at most one archive blob, got {len(archives)}")

        return PublishReport(
            upload_type=spec.upload_type,
            storage_account=storage_account,
            container=spec.container,
            individual_blobs=individual,
            archive_blob=archives[0] if archives else None,
            allow_anonymous_access=spec.allow_anonymous_access,
            archived_file_count=archived_file_count if archives else 0,
        )

    def empty(self, spec: UploadSpec, storage_account: str) -> PublishReport:
        return PublishReport(
            upload_type=spec.upload_type,
            storage_account=storage_account,
            container=spec.container,
            allow_anonymous_access=spec.allow_anonymous_access,
        )
