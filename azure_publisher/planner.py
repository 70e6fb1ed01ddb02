import logging
from typing import List, Sequence

from .models import ArchiveTask, CandidateFile, IndividualTask, UploadTask, UploadType

logger = logging.getLogger(__name__)

FWD_SLASH = "/"


def compute_upload_type(upload_zips: bool, do_not_upload_individual_files: bool) -> UploadType:
    if upload_zips and not do_not_upload_individual_files:
        return UploadType.BOTH
    if not upload_zips and not do_not_upload_individual_files:
        return UploadType.INDIVIDUAL
    if upload_zips and do_not_upload_individual_files:
        return UploadType.ZIP
    # Suppressing individual files without producing a zip leaves nothing to upload
    return UploadType.INVALID


def normalize_virtual_path(virtual_path: str) -> str:
    """Return the prefix with forward slashes and exactly one trailing slash.

    An empty prefix stays empty.
    """
    prefix = (virtual_path or "").strip().replace("\\", FWD_SLASH).lstrip(FWD_SLASH)
    if prefix and not prefix.endswith(FWD_SLASH):
        prefix += FWD_SLASH
    return prefix


def archive_blob_name(virtual_path: str, archive_name: str) -> str:
    name = (archive_name or "artifacts").strip().strip(FWD_SLASH) or "artifacts"
    if not name.lower().endswith(".zip"):
        name += ".zip"
    return normalize_virtual_path(virtual_path) + name


class UploadPlanner:
    def plan(
        self,
        candidates: Sequence[CandidateFile],
        upload_type: UploadType,
        virtual_path: str = "",
        archive_name: str = "artifacts",
    ) -> List[UploadTask]:
        """Turn the selection into an ordered list of upload tasks.

        Task indexes follow list order. No tasks are produced for an empty
        selection, not even an empty archive.
        """
        if upload_type is UploadType.INVALID:
            raise ValueError("Cannot plan an upload for UploadType.INVALID")
        if not candidates:
            return []

        prefix = normalize_virtual_path(virtual_path)
        tasks: List[UploadTask] = []

        if upload_type.uploads_individual:
            for candidate in candidates:
                tasks.append(IndividualTask(
                    index=len(tasks),
                    file=candidate,
                    blob_name=prefix + candidate.relative_path,
                ))

        if upload_type.uploads_archive:
            tasks.append(ArchiveTask(
                index=len(tasks),
                files=tuple(candidates),
                blob_name=archive_blob_name(prefix, archive_name),
            ))

        logger.debug(f"Planned {len(tasks)} task(s) for {len(candidates)} file(s) as {upload_type.value}")
        return tasks
