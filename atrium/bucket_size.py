"""Whole-bucket object count and size, computed in the background.

Results are cached per (bucket, credential scope) so every session using
the same access key shares one result. A lock in the shared store keeps
two workers from enumerating the same bucket at once. Enumeration is
bounded by a duration cap and an object cap because listing costs real
money (roughly one request per 1000 objects).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import os
import time
import uuid
from typing import Callable, Protocol

from pydantic import BaseModel, ValidationError

from . import KEY_PREFIX
from .listing_cache import encode_segment
from .models import Credentials, credential_scope
from .s3 import ListPage, is_permission_denied
from .store import KeyValueStore, StoreError

logger = logging.getLogger(__name__)

RESULT_PREFIX = f"{KEY_PREFIX}:bucket-size:"
LOCK_PREFIX = f"{KEY_PREFIX}:lock:bucket-size:"
PAGE_SIZE = 1000
PROGRESS_LOG_EVERY = 50_000
MIN_LOCK_TTL = 300
LOCK_TTL_SLACK = 60

SMALL_BUCKET_OBJECTS = 10_000
MEDIUM_BUCKET_OBJECTS = 100_000
HOUR = 3600
DAY = 24 * HOUR
WEEK = 7 * DAY

_UNITS = ["Bytes", "KB", "MB", "GB", "TB", "PB"]


class ComputeStatus(str, enum.Enum):
    CALCULATED = "calculated"
    ALREADY_LOCKED = "already-locked"
    ALREADY_FRESH = "already-fresh"


class BucketSizeResult(BaseModel):
    bucket: str
    total_size: int = 0
    object_count: int = 0
    is_approximate: bool = False
    is_inaccessible: bool = False
    error: str | None = None
    calculated_at: float
    duration_ms: int = 0
    size_formatted: str = "0 Bytes"


class ListingSource(Protocol):
    async def list_page(
        self,
        credentials: Credentials,
        bucket: str,
        prefix: str = "",
        delimiter: str | None = None,
        continuation_token: str | None = None,
        max_keys: int = 1000,
    ) -> ListPage: ...


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    idx = 0
    while value >= 1024 and idx < len(_UNITS) - 1:
        value /= 1024
        idx += 1
    return f"{value:.2f} {_UNITS[idx]}"


def cache_ttl_seconds(object_count: int) -> int:
    if object_count < SMALL_BUCKET_OBJECTS:
        return HOUR
    if object_count < MEDIUM_BUCKET_OBJECTS:
        return DAY
    return WEEK


def is_fresh(result: BucketSizeResult, now: float | None = None) -> bool:
    if now is None:
        now = time.time()
    return now - result.calculated_at < cache_ttl_seconds(result.object_count)


def result_key(bucket: str, access_key_id: str) -> str:
    return f"{RESULT_PREFIX}{credential_scope(access_key_id)}:{encode_segment(bucket)}"


def lock_key(bucket: str, access_key_id: str) -> str:
    return f"{LOCK_PREFIX}{credential_scope(access_key_id)}:{encode_segment(bucket)}"


class BucketSizeAggregator:
    def __init__(
        self,
        store: KeyValueStore,
        source: ListingSource,
        max_duration_ms: int = 600_000,
        max_objects: int = 1_000_000,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._source = source
        self.max_duration_ms = max_duration_ms
        self.max_objects = max_objects
        self._clock = clock
        self._monotonic = monotonic
        self._tasks: set[asyncio.Task] = set()

    @property
    def lock_ttl_seconds(self) -> int:
        return max(math.ceil(self.max_duration_ms / 1000) + LOCK_TTL_SLACK, MIN_LOCK_TTL)

    async def get_cached(self, bucket: str, access_key_id: str) -> BucketSizeResult | None:
        value = await self._store.get(result_key(bucket, access_key_id))
        if value is None:
            return None
        try:
            return BucketSizeResult.model_validate_json(value)
        except ValidationError:
            return None

    def is_fresh(self, result: BucketSizeResult) -> bool:
        return is_fresh(result, self._clock())

    async def compute_with_lock(
        self, bucket: str, credentials: Credentials, *, force: bool = False
    ) -> ComputeStatus:
        if not force:
            existing = await self.get_cached(bucket, credentials.access_key_id)
            if existing is not None and self.is_fresh(existing):
                return ComputeStatus.ALREADY_FRESH

        key = lock_key(bucket, credentials.access_key_id)
        worker_id = f"{os.getpid()}-{uuid.uuid4().hex[:12]}"
        if not await self._store.set(key, worker_id, self.lock_ttl_seconds, only_if_absent=True):
            logger.debug("Bucket size calculation for %s already running", bucket)
            return ComputeStatus.ALREADY_LOCKED

        try:
            try:
                result = await self._calculate(bucket, credentials)
            except Exception as e:
                result = self._failure_result(bucket, e)
            await self._save(credentials.access_key_id, result)
            return ComputeStatus.CALCULATED
        finally:
            try:
                await self._store.delete_if_value(key, worker_id)
            except StoreError as e:
                logger.warning("Could not release bucket size lock for %s: %s", bucket, e)

    def start(
        self, bucket: str, credentials: Credentials, *, force: bool = True
    ) -> asyncio.Task:
        """Run ``compute_with_lock`` in the background and return immediately."""
        task = asyncio.create_task(self._run_in_background(bucket, credentials, force))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_in_background(self, bucket: str, credentials: Credentials, force: bool) -> None:
        try:
            status = await self.compute_with_lock(bucket, credentials, force=force)
            logger.info("Bucket size calculation for %s: %s", bucket, status.value)
        except Exception:
            logger.exception("Bucket size calculation for %s failed", bucket)

    async def aclose(self) -> None:
        """Cancel background calculations still in flight."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _calculate(self, bucket: str, credentials: Credentials) -> BucketSizeResult:
        started = self._monotonic()
        total_size = 0
        object_count = 0
        is_approximate = False
        token = None

        while True:
            if (self._monotonic() - started) * 1000 > self.max_duration_ms:
                logger.warning("Bucket size calculation for %s exceeded max duration", bucket)
                is_approximate = True
                break
            page = await self._source.list_page(
                credentials, bucket, continuation_token=token, max_keys=PAGE_SIZE
            )
            for item in page.objects:
                total_size += item.get("Size", 0) or 0
                object_count += 1
                if object_count % PROGRESS_LOG_EVERY == 0:
                    logger.info(
                        "Bucket size calculation progress: bucket=%s objects=%d size=%s",
                        bucket,
                        object_count,
                        format_bytes(total_size),
                    )
                if object_count >= self.max_objects:
                    break
            if object_count >= self.max_objects:
                logger.warning("Bucket size calculation for %s reached max object limit", bucket)
                is_approximate = True
                break
            token = page.next_token
            if not token:
                break

        return BucketSizeResult(
            bucket=bucket,
            total_size=total_size,
            object_count=object_count,
            is_approximate=is_approximate,
            calculated_at=self._clock(),
            duration_ms=int((self._monotonic() - started) * 1000),
            size_formatted=format_bytes(total_size),
        )

    def _failure_result(self, bucket: str, error: Exception) -> BucketSizeResult:
        if is_permission_denied(error):
            logger.info("Bucket %s is not readable with these credentials", bucket)
            return BucketSizeResult(
                bucket=bucket,
                is_inaccessible=True,
                error="Access denied",
                calculated_at=self._clock(),
            )
        logger.warning("Bucket size calculation for %s failed: %s", bucket, error)
        return BucketSizeResult(
            bucket=bucket,
            is_approximate=True,
            error=str(error) or type(error).__name__,
            calculated_at=self._clock(),
        )

    async def _save(self, access_key_id: str, result: BucketSizeResult) -> None:
        await self._store.set(
            result_key(result.bucket, access_key_id),
            result.model_dump_json(),
            cache_ttl_seconds(result.object_count),
        )
