"""Shared fixtures for Flood tests."""

import hashlib
import random
from pathlib import Path

import pytest

from flood.integrations.s3 import RemoteObject
from flood.schemas.transfer import Stage
from flood.staging.layout import StageLayout
from flood.transfer.executor import RetryPolicy, UploadExecutor
from flood.transfer.ledger import RetryLedger


class FakeGateway:
    """In-memory stand-in for :class:`flood.integrations.s3.S3Gateway`.

    Failures are scripted as lists of exceptions, consumed one per call.
    """

    def __init__(self, profile_name: str = "p1", buckets: set[str] | None = None) -> None:
        self.profile_name = profile_name
        self.buckets = set(buckets if buckets is not None else {"b1"})
        self.objects: dict[tuple[str, str], RemoteObject] = {}
        self.list_failures: list[Exception] = []
        self.put_failures: list[Exception] = []
        self.head_error: Exception | None = None
        self.lose_response_on_failure = False
        self.list_calls = 0
        self.head_calls = 0
        self.put_calls: list[tuple[str, str]] = []

    def list_buckets(self) -> set[str]:
        self.list_calls += 1
        if self.list_failures:
            raise self.list_failures.pop(0)
        return set(self.buckets)

    def head_object(self, bucket: str, key: str) -> RemoteObject | None:
        self.head_calls += 1
        if self.head_error is not None:
            raise self.head_error
        return self.objects.get((bucket, key))

    def put_file(self, bucket: str, key: str, path: Path, md5_hex: str) -> None:
        self.put_calls.append((bucket, key))
        data = Path(path).read_bytes()
        if self.put_failures:
            if self.lose_response_on_failure:
                self._store(bucket, key, data)
            raise self.put_failures.pop(0)
        self._store(bucket, key, data)

    def _store(self, bucket: str, key: str, data: bytes) -> None:
        digest = hashlib.md5(data).hexdigest()
        self.objects[(bucket, key)] = RemoteObject(size=len(data), etag=digest, digest=digest)


def place(layout: StageLayout, stage: Stage, relative: str, content: bytes = b"payload") -> Path:
    """Create a file at ``<server_root>/<stage>/<relative>``."""
    path = layout.root(stage) / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.fixture
def layout(tmp_path):
    layout = StageLayout(tmp_path / "server")
    layout.ensure_layout(["p1"])
    return layout


@pytest.fixture
def ledger(tmp_path):
    with RetryLedger(tmp_path / "flood.db") as ledger:
        yield ledger


@pytest.fixture
def gateway():
    return FakeGateway("p1", {"b1"})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_executor(layout, ledger, sleeps):
    """Build an UploadExecutor whose backoff sleeps are recorded, not waited."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(gateways: dict, policy: RetryPolicy | None = None) -> UploadExecutor:
        return UploadExecutor(
            layout=layout,
            ledger=ledger,
            gateways=gateways,
            policy=policy,
            sleep=fake_sleep,
            rng=random.Random(42),
        )

    return _make
