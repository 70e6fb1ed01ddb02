"""
Blob storage backends.

The publisher only needs a handful of container and blob operations. Any
object implementing BlobBackend can stand in for Azure; errors are reported
with azure.core exception types regardless of the provider.
"""

import base64
import logging
import re
from typing import BinaryIO, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings, PublicAccess

from .models import StorageAccountInfo

logger = logging.getLogger(__name__)

ROOT_CONTAINER = "$root"
_CONTAINER_NAME_RE = re.compile(r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){2,62}$")


def validate_container_name(name: str) -> bool:
    """Azure naming rules: 3-63 chars of lowercase letters, digits and single hyphens.

    The name must start and end with a letter or digit. ``$root`` is also allowed.
    """
    if name == ROOT_CONTAINER:
        return True
    return bool(name) and _CONTAINER_NAME_RE.match(name) is not None


class ContainerBeingDeleted(Exception):
    """Raised by create_container while a deleted container is still being purged."""


@runtime_checkable
class BlobBackend(Protocol):
    def validate_account(self) -> None:
        """Raise if the account credentials are rejected."""
        ...

    def container_exists(self, container: str) -> bool:
        ...

    def create_container(self, container: str) -> bool:
        """Create the container. Returns False if it already existed."""
        ...

    def delete_container(self, container: str) -> bool:
        """Delete the container. Returns False if it did not exist."""
        ...

    def set_public_access(self, container: str, public: bool) -> None:
        ...

    def put_blob(
        self,
        container: str,
        blob_name: str,
        data: BinaryIO,
        *,
        length: int,
        content_type: str,
        content_md5: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, str]:
        """Upload *data* and return ``(url, base64 content MD5)``."""
        ...

    def delete_blob(self, container: str, blob_name: str) -> None:
        ...

    def list_blobs(self, container: str) -> List[str]:
        ...


# ---------------------------------------------------------------------------
# Azure
# ---------------------------------------------------------------------------

class AzureBlobBackend:
    """BlobBackend over azure-storage-blob. Not shared between threads."""

    def __init__(self, account: StorageAccountInfo) -> None:
        self.account = account
        self._service = BlobServiceClient(
            account_url=account.blob_endpoint,
            credential=AzureNamedKeyCredential(account.account_name, account.account_key),
            connection_timeout=30,
            read_timeout=120,
        )

    def validate_account(self) -> None:
        self._service.get_account_information()

    def container_exists(self, container: str) -> bool:
        return self._service.get_container_client(container).exists()

    def create_container(self, container: str) -> bool:
        try:
            self._service.get_container_client(container).create_container()
        except ResourceExistsError as exc:
            if getattr(exc, "error_code", None) == "ContainerBeingDeleted":
                raise ContainerBeingDeleted(container) from exc
            logger.debug(f"Container '{container}' already exists.")
            return False
        logger.info(f"Created container '{container}'.")
        return True

    def delete_container(self, container: str) -> bool:
        try:
            self._service.get_container_client(container).delete_container()
        except ResourceNotFoundError:
            return False
        logger.info(f"Deleted container '{container}'.")
        return True

    def set_public_access(self, container: str, public: bool) -> None:
        self._service.get_container_client(container).set_container_access_policy(
            signed_identifiers={},
            public_access=PublicAccess.CONTAINER if public else None,
        )

    def put_blob(
        self,
        container: str,
        blob_name: str,
        data: BinaryIO,
        *,
        length: int,
        content_type: str,
        content_md5: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, str]:
        blob_client = self._service.get_blob_client(container, blob_name)
        response = blob_client.upload_blob(
            data,
            length=length,
            overwrite=True,
            metadata=metadata,
            content_settings=ContentSettings(
                content_type=content_type,
                content_md5=bytearray(content_md5),
            ),
        )
        # Chunked uploads report the MD5 of the commit request, not of the blob
        digest = content_md5 or (response.get("content_md5") if response else None) or b""
        return blob_client.url, base64.b64encode(bytes(digest)).decode("ascii")

    def delete_blob(self, container: str, blob_name: str) -> None:
        self._service.get_blob_client(container, blob_name).delete_blob()

    def list_blobs(self, container: str) -> List[str]:
        return [b.name for b in self._service.get_container_client(container).list_blobs()]


def azure_backend_factory(account: StorageAccountInfo) -> AzureBlobBackend:
    return AzureBlobBackend(account)
