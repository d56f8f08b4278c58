"""Shared fixtures for the Atrium test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from atrium.config import Settings, override_settings
from atrium.flags import EnvFlagProvider, FlagResolver
from atrium.main import create_app
from atrium.models import Credentials, ObjectMetadata
from atrium.s3 import ListPage, ObjectBody, S3Gateway, S3OperationError, TransferCounter
from atrium.store import InMemoryStore

TEST_CREDENTIALS = Credentials(access_key_id="AKIATEST", secret_access_key="secret-test")


# ── Simulated clock ──────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── In-memory upstream ───────────────────────────────────────────────────

class FakeS3Gateway:
    """Upstream stand-in with the same interface as S3Gateway."""

    list_objects = S3Gateway.list_objects

    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.denied_buckets: set[str] = set()
        self.rejected_keys: set[str] = set()
        self.list_calls = 0
        self.transfers = TransferCounter()

    def _objects(self, credentials: Credentials, bucket: str) -> dict[str, bytes]:
        if bucket in self.denied_buckets:
            raise S3OperationError("list_objects_v2", "AccessDenied", 403)
        if bucket not in self.buckets:
            raise S3OperationError("list_objects_v2", "NoSuchBucket", 404)
        return self.buckets[bucket]

    async def validate_credentials(self, credentials: Credentials) -> None:
        await self.list_buckets(credentials)

    async def list_buckets(self, credentials: Credentials) -> list[str]:
        if credentials.access_key_id in self.rejected_keys:
            raise S3OperationError("list_buckets", "InvalidAccessKeyId", 403)
        return sorted(self.buckets)

    async def list_page(
        self,
        credentials,
        bucket,
        prefix="",
        delimiter=None,
        continuation_token=None,
        max_keys=1000,
    ) -> ListPage:
        self.list_calls += 1
        objects = self._objects(credentials, bucket)
        # (is_common_prefix, value) in listing order
        entries: list[tuple[bool, str]] = []
        for key in sorted(k for k in objects if k.startswith(prefix)):
            rest = key[len(prefix):]
            if delimiter and delimiter in rest:
                common = (True, prefix + rest.split(delimiter, 1)[0] + delimiter)
                if common not in entries:
                    entries.append(common)
            else:
                entries.append((False, key))
        start = int(continuation_token or 0)
        window = entries[start : start + max_keys]
        end = start + len(window)
        more = end < len(entries)
        return ListPage(
            objects=[
                {
                    "Key": k,
                    "Size": len(objects[k]),
                    "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
                }
                for is_common, k in window
                if not is_common
            ],
            common_prefixes=[k for is_common, k in window if is_common],
            next_token=str(end) if more else None,
            is_truncated=more,
        )

    async def put_object(self, credentials, bucket, key, body, content_type=None) -> None:
        async with self.transfers.upload():
            self._objects(credentials, bucket)[key] = body

    async def get_object(self, credentials, bucket, key) -> ObjectBody:
        objects = self._objects(credentials, bucket)
        if key not in objects:
            raise S3OperationError("get_object", "NoSuchKey", 404)
        return ObjectBody(body=objects[key], content_type="text/plain")

    async def head_object(self, credentials, bucket, key) -> ObjectMetadata:
        objects = self._objects(credentials, bucket)
        if key not in objects:
            raise S3OperationError("head_object", "NotFound", 404)
        return ObjectMetadata(bucket=bucket, key=key, size=len(objects[key]))

    async def delete_object(self, credentials, bucket, key) -> None:
        self._objects(credentials, bucket).pop(key, None)

    async def delete_prefix(self, credentials, bucket, prefix) -> int:
        objects = self._objects(credentials, bucket)
        doomed = [k for k in objects if k.startswith(prefix)]
        for key in doomed:
            del objects[key]
        return len(doomed)


# ── Fixtures ─────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def gateway() -> FakeS3Gateway:
    gw = FakeS3Gateway()
    gw.buckets["b"] = {}
    return gw


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        session_secret="test-secret-key-for-sessions",
        store_backend="memory",
        s3_endpoint="http://localhost:9000",
    )


@pytest.fixture
def app(test_settings, store, gateway):
    override_settings(test_settings)
    return create_app(
        store=store,
        gateway=gateway,
        flags=FlagResolver([EnvFlagProvider({})]),
        skip_scheduler=True,
    )


@pytest.fixture
def client(app) -> TestClient:
    """TestClient with cookie persistence."""
    return TestClient(app, cookies={})


@pytest.fixture
def auth_client(client) -> TestClient:
    """A client logged in with TEST_CREDENTIALS."""
    resp = client.post(
        "/api/auth/login",
        json={
            "access_key_id": TEST_CREDENTIALS.access_key_id,
            "secret_access_key": TEST_CREDENTIALS.secret_access_key,
        },
    )
    assert resp.status_code == 200
    return client
