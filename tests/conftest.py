import datetime
import io
from types import SimpleNamespace

import pytest

from archive_actions import ActionArchiver


class FakeWriter(io.BufferedIOBase):
    """Mirrors BlobWriter: close() commits the buffer, terminate() discards it."""

    def __init__(self, bucket, name, kwargs):
        self.bucket = bucket
        self.name = name
        self.kwargs = kwargs
        self._buffer = io.BytesIO()
        self.terminated = False

    @property
    def closed(self):
        return self._buffer.closed

    def writable(self):
        return True

    def write(self, data):
        written = self._buffer.write(data)
        if self.bucket.fail_write:
            raise IOError("connection reset")
        return written

    def close(self):
        if not self._buffer.closed:
            data = self._buffer.getvalue()
            self._buffer.close()
            if self.bucket.fail_close:
                raise IOError("quota exceeded")
            self.bucket.objects[self.name] = {
                "data": data,
                "content_type": self.kwargs.get("content_type"),
                "predefined_acl": self.kwargs.get("predefined_acl"),
            }

    def terminate(self):
        self.terminated = True
        self._buffer.close()


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    def open(self, mode, **kwargs):
        assert mode == "wb"
        writer = FakeWriter(self.bucket, self.name, kwargs)
        self.bucket.writers.append(writer)
        return writer


class FakeBucket:
    def __init__(self, name):
        self.name = name
        self.objects = {}
        self.writers = []
        self.fail_write = False
        self.fail_close = False

    def blob(self, name):
        return FakeBlob(self, name)


class FakeStorageClient:
    def __init__(self):
        self.buckets = {}

    def bucket(self, name):
        return self.buckets.setdefault(name, FakeBucket(name))


class FakeRegistry:
    def __init__(self, actions=None, error=None):
        self.actions = actions if actions is not None else []
        self.error = error
        self.calls = []

    def list_actions(self, day):
        self.calls.append(day)
        if self.error is not None:
            raise self.error
        return self.actions


def make_request(method="PUT", path="/actions:upload", **args):
    return SimpleNamespace(method=method, path=path, args=args)


@pytest.fixture
def storage_client():
    return FakeStorageClient()


@pytest.fixture
def registry():
    return FakeRegistry(actions=[{"id": 1}, {"id": 2}])


@pytest.fixture
def archiver(storage_client, registry):
    return ActionArchiver(storage_client, "actions-bucket", registry, public_host="storage.example")


@pytest.fixture
def bucket(storage_client):
    return storage_client.bucket("actions-bucket")


@pytest.fixture
def fixed_now():
    return datetime.datetime(2023, 6, 2, 0, 30, tzinfo=datetime.timezone.utc)
