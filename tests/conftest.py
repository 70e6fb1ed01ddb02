"""Shared fixtures: an in-memory blob backend and workspace builders."""

import base64
import hashlib
import threading
from collections import Counter

import pytest
from azure.core.exceptions import ClientAuthenticationError, ResourceNotFoundError, ServiceRequestError

from azure_publisher.models import StorageAccountInfo

ACCOUNT_KEY = base64.b64encode(b"k" * 64).decode("ascii")


def make_conn_str(account="teststore", key=ACCOUNT_KEY, **extra):
    parts = {
        "DefaultEndpointsProtocol": "https",
        "AccountName": account,
        "AccountKey": key,
        "EndpointSuffix": "core.windows.net",
    }
    parts.update(extra)
    return ";".join(f"{k}={v}" for k, v in parts.items())


class InMemoryBackend:
    """Thread-safe BlobBackend fake.

    ``fail_plan`` maps a blob name to how many put attempts should fail with a
    transient error before succeeding; a negative count fails forever.
    """

    def __init__(self, fail_plan=None, reject_auth=False, error=ServiceRequestError):
        self._lock = threading.Lock()
        self.containers = {}
        self.public = {}
        self.fail_plan = dict(fail_plan or {})
        self.reject_auth = reject_auth
        self.error = error
        self.attempts = Counter()
        self.events = []

    def validate_account(self):
        if self.reject_auth:
            raise ClientAuthenticationError(message="Server failed to authenticate the request.")

    def container_exists(self, container):
        with self._lock:
            return container in self.containers

    def create_container(self, container):
        with self._lock:
            self.events.append(f"create:{container}")
            if container in self.containers:
                return False
            self.containers[container] = {}
            return True

    def delete_container(self, container):
        with self._lock:
            self.events.append(f"delete:{container}")
            return self.containers.pop(container, None) is not None

    def set_public_access(self, container, public):
        with self._lock:
            self.public[container] = public

    def put_blob(self, container, blob_name, data, *, length, content_type, content_md5, metadata=None):
        with self._lock:
            self.attempts[blob_name] += 1
            self.events.append(f"put:{container}/{blob_name}")
            remaining = self.fail_plan.get(blob_name, 0)
            if remaining != 0:
                self.fail_plan[blob_name] = remaining - 1
                raise self.error(f"transient failure uploading {blob_name}")
            if container not in self.containers:
                raise ResourceNotFoundError(message=f"container {container} not found")
        body = data.read()
        assert len(body) == length
        assert hashlib.md5(body).digest() == content_md5
        with self._lock:
            self.containers[container][blob_name] = body
        url = f"https://teststore.blob.core.windows.net/{container}/{blob_name}"
        return url, base64.b64encode(content_md5).decode("ascii")

    def delete_blob(self, container, blob_name):
        with self._lock:
            del self.containers[container][blob_name]

    def list_blobs(self, container):
        with self._lock:
            return sorted(self.containers.get(container, {}))


class StaticResolver:
    def __init__(self, accounts):
        self.accounts = accounts

    def resolve(self, credential_id):
        return self.accounts.get(credential_id)


@pytest.fixture
def account():
    return StorageAccountInfo(
        account_name="teststore",
        account_key=ACCOUNT_KEY,
        blob_endpoint="https://teststore.blob.core.windows.net/",
    )


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def resolver(account):
    return StaticResolver({"test": account})


@pytest.fixture
def make_workspace(tmp_path):
    """Create files under tmp_path/ws from a {relative_path: bytes} mapping."""

    def _make(files):
        root = tmp_path / "ws"
        root.mkdir(exist_ok=True)
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        return root

    return _make
