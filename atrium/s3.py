"""Upstream S3-compatible object storage, via aioboto3.

A client is opened per call with the session's own credentials; nothing
here is shared between users except the transfer counters.
"""

from __future__ import annotations

import logging
import mimetypes
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aioboto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .models import Credentials, FileEntry, FolderEntry, ListObjectsResponse, ObjectMetadata

logger = logging.getLogger(__name__)

_PERMISSION_CODES = {"AccessDenied", "Forbidden", "403"}
_HEAD_UNSUPPORTED_CODES = {"NotImplemented", "MethodNotAllowed"}


class S3OperationError(Exception):
    """Wraps botocore ClientError with just the code and HTTP status."""

    def __init__(self, operation: str, code: str, status_code: int | None = None) -> None:
        super().__init__(f"S3 {operation} failed: {code}")
        self.operation = operation
        self.code = code
        self.status_code = status_code

    @classmethod
    def from_client_error(cls, operation: str, e: ClientError) -> "S3OperationError":
        code = e.response.get("Error", {}).get("Code", "Unknown")
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return cls(operation, code, status)


def is_permission_denied(error: BaseException) -> bool:
    if isinstance(error, ClientError):
        error = S3OperationError.from_client_error("request", error)
    if not isinstance(error, S3OperationError):
        return False
    return error.code in _PERMISSION_CODES or error.status_code == 403


def _is_head_unsupported(error: S3OperationError) -> bool:
    return error.code in _HEAD_UNSUPPORTED_CODES or error.status_code in (405, 501)


def infer_content_type(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key)
    return content_type or "application/octet-stream"


class TransferCounter:
    """In-flight upload/download counts for one gateway instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._uploads = 0
        self._downloads = 0

    @property
    def uploads_in_flight(self) -> int:
        return self._uploads

    @property
    def downloads_in_flight(self) -> int:
        return self._downloads

    @asynccontextmanager
    async def upload(self) -> AsyncIterator[None]:
        with self._lock:
            self._uploads += 1
        try:
            yield
        finally:
            with self._lock:
                self._uploads = max(0, self._uploads - 1)

    @asynccontextmanager
    async def download(self) -> AsyncIterator[None]:
        with self._lock:
            self._downloads += 1
        try:
            yield
        finally:
            with self._lock:
                self._downloads = max(0, self._downloads - 1)


@dataclass
class ListPage:
    """A raw ListObjectsV2 page."""

    objects: list[dict[str, Any]] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    next_token: str | None = None
    is_truncated: bool = False


@dataclass
class ObjectBody:
    body: bytes
    content_type: str


class S3Gateway:
    """Thin aioboto3 wrapper for the operations the browser needs."""

    def __init__(
        self,
        endpoint_url: str = "",
        region_name: str = "us-east-1",
        force_path_style: bool = True,
    ) -> None:
        self._session = aioboto3.Session()
        self._endpoint_url = endpoint_url or None
        self._region_name = region_name
        self._config = Config(
            s3={"addressing_style": "path" if force_path_style else "auto"}
        )
        self.transfers = TransferCounter()

    @asynccontextmanager
    async def _client(self, credentials: Credentials, operation: str) -> AsyncIterator[Any]:
        try:
            async with self._session.client(
                "s3",
                endpoint_url=self._endpoint_url,
                region_name=self._region_name,
                aws_access_key_id=credentials.access_key_id,
                aws_secret_access_key=credentials.secret_access_key,
                config=self._config,
            ) as client:
                yield client
        except ClientError as e:
            logger.debug("S3 %s failed: %s", operation, e)
            raise S3OperationError.from_client_error(operation, e) from e

    async def validate_credentials(self, credentials: Credentials) -> None:
        await self.list_buckets(credentials)

    async def list_buckets(self, credentials: Credentials) -> list[str]:
        async with self._client(credentials, "list_buckets") as client:
            response = await client.list_buckets()
        return [b["Name"] for b in response.get("Buckets", []) if b.get("Name")]

    async def list_page(
        self,
        credentials: Credentials,
        bucket: str,
        prefix: str = "",
        delimiter: str | None = None,
        continuation_token: str | None = None,
        max_keys: int = 1000,
    ) -> ListPage:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if delimiter:
            kwargs["Delimiter"] = delimiter
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token
        async with self._client(credentials, "list_objects_v2") as client:
            response = await client.list_objects_v2(**kwargs)
        return ListPage(
            objects=list(response.get("Contents", [])),
            common_prefixes=[
                p["Prefix"] for p in response.get("CommonPrefixes", []) if p.get("Prefix")
            ],
            next_token=response.get("NextContinuationToken"),
            is_truncated=bool(response.get("IsTruncated")),
        )

    async def list_objects(
        self,
        credentials: Credentials,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = 200,
    ) -> ListObjectsResponse:
        page = await self.list_page(
            credentials,
            bucket,
            prefix=prefix,
            delimiter="/",
            continuation_token=continuation_token,
            max_keys=max_keys,
        )
        folders = [
            FolderEntry(key=p, name=p[len(prefix):].rstrip("/"))
            for p in page.common_prefixes
        ]
        files = []
        for item in page.objects:
            key = item.get("Key")
            # The folder placeholder object itself is not a file entry
            if not key or key == prefix:
                continue
            last_modified = item.get("LastModified")
            files.append(
                FileEntry(
                    key=key,
                    name=key[len(prefix):],
                    size=item.get("Size", 0),
                    last_modified=last_modified.isoformat() if last_modified else None,
                    content_type=infer_content_type(key),
                )
            )
        return ListObjectsResponse(
            bucket=bucket,
            prefix=prefix,
            continuation_token=continuation_token,
            next_continuation_token=page.next_token,
            is_truncated=page.is_truncated,
            folders=folders,
            files=files,
        )

    async def put_object(
        self,
        credentials: Credentials,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> None:
        async with self.transfers.upload():
            async with self._client(credentials, "put_object") as client:
                await client.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type or infer_content_type(key),
                )

    async def get_object(self, credentials: Credentials, bucket: str, key: str) -> ObjectBody:
        async with self.transfers.download():
            async with self._client(credentials, "get_object") as client:
                response = await client.get_object(Bucket=bucket, Key=key)
                async with response["Body"] as stream:
                    body = await stream.read()
        return ObjectBody(
            body=body,
            content_type=response.get("ContentType") or infer_content_type(key),
        )

    async def head_object(self, credentials: Credentials, bucket: str, key: str) -> ObjectMetadata:
        try:
            async with self._client(credentials, "head_object") as client:
                response = await client.head_object(Bucket=bucket, Key=key)
        except S3OperationError as e:
            if not _is_head_unsupported(e):
                raise
            return ObjectMetadata(bucket=bucket, key=key, content_type=infer_content_type(key))
        last_modified = response.get("LastModified")
        return ObjectMetadata(
            bucket=bucket,
            key=key,
            size=response.get("ContentLength"),
            last_modified=last_modified.isoformat() if last_modified else None,
            content_type=response.get("ContentType") or infer_content_type(key),
        )

    async def delete_object(self, credentials: Credentials, bucket: str, key: str) -> None:
        async with self._client(credentials, "delete_object") as client:
            await client.delete_object(Bucket=bucket, Key=key)

    async def delete_prefix(self, credentials: Credentials, bucket: str, prefix: str) -> int:
        """Delete every object under ``prefix``, one request per object.

        Batch delete support varies between S3-compatible providers.
        """
        deleted = 0
        token = None
        async with self._client(credentials, "delete_prefix") as client:
            while True:
                kwargs: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
                if token:
                    kwargs["ContinuationToken"] = token
                response = await client.list_objects_v2(**kwargs)
                for item in response.get("Contents", []):
                    if not item.get("Key"):
                        continue
                    await client.delete_object(Bucket=bucket, Key=item["Key"])
                    deleted += 1
                token = response.get("NextContinuationToken")
                if not token:
                    break
        return deleted
