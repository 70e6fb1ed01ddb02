"""
Runtime configuration.

Values come from the process environment, optionally seeded from a .env file
in the working directory. Storage credentials are parsed from Azure
connection strings and checked thoroughly before anything talks to Azure.
"""

import base64
import binascii
import os
import re
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .exceptions import CredentialError
from .models import StorageAccountInfo

_DEFAULTS = {
    "CONCURRENCY": 4,
    "MAX_ATTEMPTS": 5,
    "RETRY_BASE_DELAY": 2,
    "CONTAINER_RECREATE_TIMEOUT": 120,
}

DEFAULT_CREDENTIAL_ID = "default"
DEFAULT_ENDPOINT_SUFFIX = "core.windows.net"
_PLACEHOLDER_NAMES = ("your_account", "your_account_name")
_PLACEHOLDER_KEYS = ("your_account_key", "your_key")
_FRESH_COPY_HINT = "Copy a fresh connection string from Azure Portal → Storage account → Access keys."


class Config:
    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        if environ is None:
            load_dotenv()
            environ = os.environ
        self.environ = environ

        self.container_name: str = environ.get("CONTAINER_NAME", "")
        self.concurrency: int = _int_setting(environ, "CONCURRENCY")
        self.max_attempts: int = _int_setting(environ, "MAX_ATTEMPTS")
        self.retry_base_delay: float = float(
            environ.get("RETRY_BASE_DELAY", _DEFAULTS["RETRY_BASE_DELAY"])
        )
        self.container_recreate_timeout: float = float(
            environ.get("CONTAINER_RECREATE_TIMEOUT", _DEFAULTS["CONTAINER_RECREATE_TIMEOUT"])
        )
        self.log_path: Optional[str] = environ.get("LOG_PATH")
        self.archive_name: str = (
            environ.get("ARCHIVE_NAME") or environ.get("BUILD_TAG") or "artifacts"
        )

        if not 1 <= self.concurrency <= 64:
            raise ValueError(f"CONCURRENCY must be between 1 and 64. Got {self.concurrency}.")
        if self.max_attempts < 1:
            raise ValueError(f"MAX_ATTEMPTS must be at least 1. Got {self.max_attempts}.")
        if self.retry_base_delay < 0:
            raise ValueError("RETRY_BASE_DELAY must not be negative.")

    @property
    def log_dir(self) -> Path:
        return Path(self.log_path) if self.log_path else Path.cwd() / "logs"

    def connection_string_for(self, credential_id: str) -> Optional[str]:
        """Return the connection string registered under *credential_id*, if any."""
        if not credential_id or credential_id == DEFAULT_CREDENTIAL_ID:
            return self.environ.get("AZURE_CONN_STR")
        return self.environ.get(f"AZURE_CONN_STR_{credential_env_suffix(credential_id)}")


def _int_setting(environ: Mapping[str, str], name: str) -> int:
    raw = environ.get(name, _DEFAULTS[name])
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer. Got {raw!r}.")


def credential_env_suffix(credential_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()


# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------

def parse_connection_string(conn_str: str) -> StorageAccountInfo:
    """Parse and validate an Azure storage connection string.

    Raises CredentialError describing the first problem found.
    """
    cs = (conn_str or "").strip()
    if not cs:
        raise CredentialError("Connection string is empty.")

    parts = {}
    for segment in cs.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise CredentialError(
                f"Malformed connection string: segment '{segment}' has no '=' separator.\n"
                f"{_FRESH_COPY_HINT}"
            )
        key, _, value = segment.partition("=")
        parts[key.strip()] = value.strip()

    for required in ("AccountName", "AccountKey", "DefaultEndpointsProtocol"):
        if required not in parts:
            raise CredentialError(
                f"Connection string is missing the '{required}' field.\n{_FRESH_COPY_HINT}"
            )

    account_name = parts["AccountName"]
    if not account_name or account_name in _PLACEHOLDER_NAMES:
        raise CredentialError(
            "Connection string has a placeholder AccountName. "
            "Replace it with your real Azure Storage account name."
        )

    account_key = parts["AccountKey"]
    if not account_key or account_key in _PLACEHOLDER_KEYS:
        raise CredentialError(f"Connection string has a placeholder AccountKey. {_FRESH_COPY_HINT}")
    _validate_account_key(account_key)

    protocol = parts["DefaultEndpointsProtocol"].lower()
    if protocol != "https":
        raise CredentialError(
            "Connection string uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
        )

    endpoint = parts.get("BlobEndpoint")
    if not endpoint:
        suffix = parts.get("EndpointSuffix") or DEFAULT_ENDPOINT_SUFFIX
        endpoint = f"{protocol}://{account_name}.blob.{suffix}"

    return StorageAccountInfo(
        account_name=account_name,
        account_key=account_key,
        blob_endpoint=normalize_blob_endpoint(endpoint),
    )


def _validate_account_key(raw_key: str) -> None:
    # Azure storage account keys are 64-byte values, base64-encoded → 88 chars with padding
    if len(raw_key) < 40:
        raise CredentialError(
            f"AccountKey looks too short ({len(raw_key)} chars). It was likely truncated. "
            f"{_FRESH_COPY_HINT}"
        )

    padding_needed = len(raw_key) % 4
    padded = raw_key + "=" * (4 - padding_needed) if padding_needed else raw_key
    try:
        decoded = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        raise CredentialError(
            f"AccountKey is not valid base64. It is corrupted or truncated.\n{_FRESH_COPY_HINT}"
        )

    if len(decoded) != 64:
        raise CredentialError(
            f"AccountKey decoded to {len(decoded)} bytes (expected 64). "
            f"The key appears truncated.\n{_FRESH_COPY_HINT}"
        )


def normalize_blob_endpoint(url: str) -> str:
    """Ensure the endpoint has a scheme and exactly one trailing slash."""
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/") + "/"
