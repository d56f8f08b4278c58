"""Tests for the S3 gateway.

The aioboto3 client is replaced with AsyncMocks; no network access.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from atrium.s3 import (
    S3Gateway,
    S3OperationError,
    TransferCounter,
    infer_content_type,
    is_permission_denied,
)

from conftest import TEST_CREDENTIALS


def _client_error(code, status, op="ListObjectsV2"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


def _mock_client():
    client = MagicMock()
    for name in (
        "list_buckets",
        "list_objects_v2",
        "put_object",
        "get_object",
        "head_object",
        "delete_object",
    ):
        setattr(client, name, AsyncMock())
    return client


class _ClientContext:
    def __init__(self, client):
        self.client = client

    async def __aenter__(self):
        return self.client

    async def __aexit__(self, *args):
        return False


@pytest.fixture
def client():
    return _mock_client()


@pytest.fixture
def gateway(client):
    gw = S3Gateway(endpoint_url="http://localhost:9000")
    with patch.object(gw._session, "client", side_effect=lambda *a, **k: _ClientContext(client)):
        yield gw


# ── Error classification ─────────────────────────────────────────────────

class TestPermissionDenied:
    def test_access_denied_code(self):
        assert is_permission_denied(S3OperationError("list", "AccessDenied", 403))

    def test_forbidden_status_only(self):
        assert is_permission_denied(S3OperationError("list", "Unknown", 403))

    def test_raw_client_error(self):
        assert is_permission_denied(_client_error("Forbidden", 403))

    def test_other_errors(self):
        assert not is_permission_denied(S3OperationError("list", "NoSuchBucket", 404))
        assert not is_permission_denied(RuntimeError("boom"))


def test_infer_content_type():
    assert infer_content_type("notes/readme.txt") == "text/plain"
    assert infer_content_type("blob") == "application/octet-stream"


# ── Gateway operations ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_client_uses_session_credentials(gateway, client):
    client.list_buckets.return_value = {"Buckets": []}
    await gateway.list_buckets(TEST_CREDENTIALS)
    _, kwargs = gateway._session.client.call_args
    assert kwargs["aws_access_key_id"] == "AKIATEST"
    assert kwargs["aws_secret_access_key"] == "secret-test"
    assert kwargs["endpoint_url"] == "http://localhost:9000"


@pytest.mark.asyncio
async def test_list_buckets(gateway, client):
    client.list_buckets.return_value = {"Buckets": [{"Name": "a"}, {"Name": "b"}]}
    assert await gateway.list_buckets(TEST_CREDENTIALS) == ["a", "b"]


@pytest.mark.asyncio
async def test_client_error_is_wrapped(gateway, client):
    client.list_buckets.side_effect = _client_error("InvalidAccessKeyId", 403, "ListBuckets")
    with pytest.raises(S3OperationError) as exc_info:
        await gateway.validate_credentials(TEST_CREDENTIALS)
    assert exc_info.value.code == "InvalidAccessKeyId"
    assert exc_info.value.status_code == 403
    assert exc_info.value.operation == "list_buckets"


@pytest.mark.asyncio
async def test_list_objects_builds_folders_and_files(gateway, client):
    client.list_objects_v2.return_value = {
        "CommonPrefixes": [{"Prefix": "docs/sub/"}],
        "Contents": [
            {"Key": "docs/", "Size": 0},
            {
                "Key": "docs/report.pdf",
                "Size": 2048,
                "LastModified": datetime(2024, 5, 1, tzinfo=timezone.utc),
            },
        ],
        "IsTruncated": True,
        "NextContinuationToken": "tok-2",
    }

    page = await gateway.list_objects(TEST_CREDENTIALS, "b", "docs/", max_keys=50)

    client.list_objects_v2.assert_awaited_once_with(
        Bucket="b", Prefix="docs/", MaxKeys=50, Delimiter="/"
    )
    assert [(f.key, f.name) for f in page.folders] == [("docs/sub/", "sub")]
    assert [f.name for f in page.files] == ["report.pdf"]
    assert page.files[0].size == 2048
    assert page.files[0].content_type == "application/pdf"
    assert page.files[0].last_modified == "2024-05-01T00:00:00+00:00"
    assert page.is_truncated is True
    assert page.next_continuation_token == "tok-2"


@pytest.mark.asyncio
async def test_list_page_passes_continuation_token(gateway, client):
    client.list_objects_v2.return_value = {}
    page = await gateway.list_page(TEST_CREDENTIALS, "b", continuation_token="abc")
    assert client.list_objects_v2.await_args.kwargs["ContinuationToken"] == "abc"
    assert page.objects == [] and page.next_token is None


@pytest.mark.asyncio
async def test_put_object_infers_content_type(gateway, client):
    await gateway.put_object(TEST_CREDENTIALS, "b", "a/photo.png", b"data")
    client.put_object.assert_awaited_once_with(
        Bucket="b", Key="a/photo.png", Body=b"data", ContentType="image/png"
    )
    assert gateway.transfers.uploads_in_flight == 0


@pytest.mark.asyncio
async def test_get_object_reads_body(gateway, client):
    body = MagicMock()
    stream = MagicMock()
    stream.read = AsyncMock(return_value=b"hello")
    body.__aenter__ = AsyncMock(return_value=stream)
    body.__aexit__ = AsyncMock(return_value=False)
    client.get_object.return_value = {"Body": body, "ContentType": "text/plain"}

    result = await gateway.get_object(TEST_CREDENTIALS, "b", "hello.txt")
    assert result.body == b"hello"
    assert result.content_type == "text/plain"
    assert gateway.transfers.downloads_in_flight == 0


@pytest.mark.asyncio
async def test_head_object(gateway, client):
    client.head_object.return_value = {"ContentLength": 12, "ContentType": "text/csv"}
    meta = await gateway.head_object(TEST_CREDENTIALS, "b", "data.csv")
    assert meta.size == 12
    assert meta.content_type == "text/csv"


@pytest.mark.asyncio
async def test_head_object_falls_back_when_unsupported(gateway, client):
    client.head_object.side_effect = _client_error("NotImplemented", 501, "HeadObject")
    meta = await gateway.head_object(TEST_CREDENTIALS, "b", "data.json")
    assert meta.size is None
    assert meta.content_type == "application/json"


@pytest.mark.asyncio
async def test_head_object_not_found_propagates(gateway, client):
    client.head_object.side_effect = _client_error("404", 404, "HeadObject")
    with pytest.raises(S3OperationError):
        await gateway.head_object(TEST_CREDENTIALS, "b", "missing")


@pytest.mark.asyncio
async def test_delete_prefix_pages_through_listing(gateway, client):
    client.list_objects_v2.side_effect = [
        {"Contents": [{"Key": "a/1"}, {"Key": "a/2"}], "NextContinuationToken": "t"},
        {"Contents": [{"Key": "a/3"}]},
    ]
    assert await gateway.delete_prefix(TEST_CREDENTIALS, "b", "a/") == 3
    assert [c.kwargs["Key"] for c in client.delete_object.await_args_list] == ["a/1", "a/2", "a/3"]
    assert client.list_objects_v2.await_args_list[1].kwargs["ContinuationToken"] == "t"


# ── Transfer counters ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_transfer_counter_tracks_in_flight():
    counter = TransferCounter()
    async with counter.upload():
        async with counter.download():
            assert counter.uploads_in_flight == 1
            assert counter.downloads_in_flight == 1
    assert counter.uploads_in_flight == 0
    assert counter.downloads_in_flight == 0


@pytest.mark.asyncio
async def test_transfer_counter_decrements_on_error():
    counter = TransferCounter()
    with pytest.raises(RuntimeError):
        async with counter.upload():
            raise RuntimeError("upload failed")
    assert counter.uploads_in_flight == 0
