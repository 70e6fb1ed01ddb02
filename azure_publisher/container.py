import logging
import time
from typing import Callable

from azure.core.exceptions import AzureError

from .backend import BlobBackend, ContainerBeingDeleted, validate_container_name
from .exceptions import ContainerError

logger = logging.getLogger(__name__)


class ContainerManager:
    """Prepares the destination container before any blob is written."""

    def __init__(
        self,
        backend: BlobBackend,
        recreate_timeout: float = 120,
        poll_interval: float = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.recreate_timeout = recreate_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    def ensure(self, container: str, public_access: bool, cleanup: bool) -> None:
        """Make sure *container* exists and has the requested access level.

        With *cleanup* the container is deleted and created again, so every
        blob it held before is gone. That cannot be undone.
        """
        if not validate_container_name(container):
            raise ContainerError(container, f"Invalid container name '{container}'.")

        try:
            if cleanup and self.backend.delete_container(container):
                logger.warning(f"Cleanup requested: deleted container '{container}' and all its blobs.")
            self._create(container)
            self.backend.set_public_access(container, public_access)
        except AzureError as exc:
            raise ContainerError(container, f"Container '{container}' was rejected by storage: {exc}") from exc

        logger.info(
            f"Container '{container}' ready "
            f"(public access: {'on' if public_access else 'off'}, cleaned: {'yes' if cleanup else 'no'})."
        )

    def _create(self, container: str) -> None:
        # Azure keeps a deleted container name reserved for a while, whoever deleted it
        deadline = time.monotonic() + self.recreate_timeout
        while True:
            try:
                self.backend.create_container(container)
                return
            except ContainerBeingDeleted:
                if time.monotonic() >= deadline:
                    raise ContainerError(
                        container,
                        f"Container '{container}' is still being deleted after "
                        f"{self.recreate_timeout:.0f}s; try again later.",
                    )
                logger.info(f"Container '{container}' is being deleted, retrying in {self.poll_interval}s...")
                self._sleep(self.poll_interval)
