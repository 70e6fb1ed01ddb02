"""
Seams to the host that runs the publisher.

The orchestrator only knows these protocols. The implementations below are
what the bundled CLI uses: connection strings from the environment, $VAR
expansion against the environment, and JSON or log output for the report.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from string import Template
from typing import Mapping, Optional, Protocol, runtime_checkable

from .config import Config, parse_connection_string
from .models import PublishReport, StorageAccountInfo

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialResolver(Protocol):
    def resolve(self, credential_id: str) -> Optional[StorageAccountInfo]:
        """Return the account for *credential_id*, or None if none is registered.

        Raises CredentialError when a secret exists but is unusable.
        """
        ...


@runtime_checkable
class MacroExpander(Protocol):
    def expand(self, template: str, environment: Mapping[str, str]) -> str:
        ...


@runtime_checkable
class ReportSink(Protocol):
    def publish(self, report: PublishReport) -> None:
        ...


class ConnectionStringResolver:
    """Looks credentials up as AZURE_CONN_STR / AZURE_CONN_STR_<ID> settings."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def resolve(self, credential_id: str) -> Optional[StorageAccountInfo]:
        conn_str = self.config.connection_string_for(credential_id)
        if not conn_str:
            return None
        return parse_connection_string(conn_str)


class EnvMacroExpander:
    """Replaces $NAME and ${NAME} with values from the environment.

    Unknown names are left untouched.
    """

    def expand(self, template: str, environment: Mapping[str, str]) -> str:
        if not template:
            return ""
        return Template(template).safe_substitute(environment)


class JsonReportSink:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def publish(self, report: PublishReport) -> None:
        data = report.to_dict()
        data["generated_at"] = datetime.now(timezone.utc).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        tmp.replace(self.path)  # atomic rename
        logger.info(f"Report written to {self.path}")


class LoggingReportSink:
    def publish(self, report: PublishReport) -> None:
        logger.info("=" * 60)
        logger.info(
            f"  Summary: {report.files_uploaded} file(s) uploaded to "
            f"{report.storage_account}/{report.container} as {report.upload_type.value}"
        )
        for blob in report.individual_blobs:
            logger.info(f"    {blob.url}  ({blob.content_length:,} bytes, md5={blob.content_md5})")
        if report.archive_blob is not None:
            logger.info(f"  Archive: {report.archive_blob.url}  ({report.archive_blob.content_length:,} bytes)")
        logger.info("=" * 60)
