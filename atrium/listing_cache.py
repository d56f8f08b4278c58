"""TTL cache for paginated directory listings.

Cache keys are built from five segments::

    atrium:cache_s3_list:<sha256(token)>:<bucket>:<prefix>:<cursor>:<max_keys>

Bucket, prefix and cursor are base64url-encoded without padding, so no
segment can contain the ``:`` delimiter. Entries are only ever created or
deleted, never updated in place.
"""

from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from pydantic import ValidationError

from . import KEY_PREFIX
from .models import ListObjectsResponse
from .store import KeyValueStore, StoreError

logger = logging.getLogger(__name__)

LIST_CACHE_PREFIX = f"{KEY_PREFIX}:cache_s3_list:"
DELETE_BATCH_SIZE = 500
_KEY_SEGMENTS = 5


class CacheStatus(str, enum.Enum):
    """How a listing response was served."""

    HIT = "HIT"
    MISS = "MISS"
    BYPASS = "BYPASS"


@dataclass(frozen=True)
class ObjectMutation:
    """A single object was written or deleted."""

    key: str


@dataclass(frozen=True)
class PrefixMutation:
    """Everything under a prefix was deleted."""

    prefix: str


def encode_segment(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def decode_segment(value: str) -> str | None:
    try:
        padded = value + "=" * (-len(value) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def bucket_namespace(token: str, bucket: str) -> str:
    return f"{LIST_CACHE_PREFIX}{hash_token(token)}:{encode_segment(bucket)}"


def cache_key(
    token: str, bucket: str, prefix: str, cursor: str | None, max_keys: int
) -> str:
    return (
        f"{bucket_namespace(token, bucket)}:{encode_segment(prefix)}"
        f":{encode_segment(cursor or '')}:{max_keys}"
    )


def prefix_from_key(key: str) -> str | None:
    """Decode the listing prefix out of a cache key, or None if malformed."""
    if not key.startswith(LIST_CACHE_PREFIX):
        return None
    segments = key[len(LIST_CACHE_PREFIX):].split(":")
    if len(segments) != _KEY_SEGMENTS:
        return None
    return decode_segment(segments[2])


def normalize_prefix(prefix: str) -> str:
    if not prefix:
        return ""
    return prefix if prefix.endswith("/") else f"{prefix}/"


def parent_prefix(key: str) -> str:
    """``a/b/c.txt`` -> ``a/b/``; top-level keys -> ``""``."""
    slash = key.rfind("/")
    return "" if slash == -1 else key[: slash + 1]


def ancestor_prefixes(prefix: str) -> list[str]:
    """``a/b/`` -> ``["", "a/", "a/b/"]``."""
    prefixes = [""]
    current = ""
    for part in normalize_prefix(prefix).split("/"):
        if not part:
            continue
        current = f"{current}{part}/"
        prefixes.append(current)
    return prefixes


class ListingCache:
    """Per-session listing cache with targeted invalidation.

    Every operation is a no-op when the cache is disabled.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 300,
        enabled: bool = True,
        invalidation_mode: Literal["targeted", "bucket"] = "targeted",
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self.invalidation_mode = invalidation_mode

    async def get(
        self,
        token: str,
        bucket: str,
        prefix: str,
        cursor: str | None,
        max_keys: int,
    ) -> ListObjectsResponse | None:
        if not self.enabled:
            return None
        key = cache_key(token, bucket, prefix, cursor, max_keys)
        value = await self._store.get(key)
        if value is None:
            return None
        try:
            return ListObjectsResponse.model_validate_json(value)
        except ValidationError:
            logger.warning("Dropping unreadable listing cache entry for bucket %s", bucket)
            await self._store.delete(key)
            return None

    async def put(
        self,
        token: str,
        bucket: str,
        prefix: str,
        cursor: str | None,
        max_keys: int,
        page: ListObjectsResponse,
    ) -> None:
        if not self.enabled:
            return
        key = cache_key(token, bucket, prefix, cursor, max_keys)
        await self._store.set(key, page.model_dump_json(), self.ttl_seconds)

    async def invalidate_bucket(self, token: str, bucket: str) -> int:
        if not self.enabled:
            return 0
        keys = await self._store.scan(f"{bucket_namespace(token, bucket)}:")
        return await self._delete_keys(keys)

    async def invalidate_by_prefix(
        self,
        token: str,
        bucket: str,
        exact_prefixes: list[str],
        prefixes_with_children: list[str] | None = None,
    ) -> int:
        """Delete entries whose prefix is in ``exact_prefixes`` or starts
        with any of ``prefixes_with_children``.
        """
        if not self.enabled:
            return 0
        namespace = bucket_namespace(token, bucket)
        keys: set[str] = set()
        for prefix in exact_prefixes:
            keys.update(await self._store.scan(f"{namespace}:{encode_segment(prefix)}:"))
        if prefixes_with_children:
            # No secondary index: scan the whole bucket namespace.
            for key in await self._store.scan(f"{namespace}:"):
                cached_prefix = prefix_from_key(key)
                if cached_prefix is None:
                    continue
                if any(cached_prefix.startswith(p) for p in prefixes_with_children):
                    keys.add(key)
        return await self._delete_keys(sorted(keys))

    async def _delete_keys(self, keys: list[str]) -> int:
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            deleted += await self._store.delete(*keys[start : start + DELETE_BATCH_SIZE])
        return deleted

    async def invalidate_for_mutation(
        self,
        token: str | None,
        bucket: str,
        mutation: ObjectMutation | PrefixMutation,
    ) -> int:
        """Drop the cached pages a mutation could have changed.

        Store failures are logged and reported as zero deletions; they never
        fail the mutation that triggered them.
        """
        if not self.enabled or not token:
            return 0
        try:
            if self.invalidation_mode == "bucket":
                deleted = await self.invalidate_bucket(token, bucket)
            elif isinstance(mutation, ObjectMutation):
                deleted = await self.invalidate_by_prefix(
                    token, bucket, ancestor_prefixes(parent_prefix(mutation.key))
                )
            else:
                prefix = normalize_prefix(mutation.prefix)
                deleted = await self.invalidate_by_prefix(
                    token,
                    bucket,
                    ancestor_prefixes(prefix),
                    [prefix] if prefix else [],
                )
        except StoreError as e:
            logger.warning("Listing cache invalidation failed for bucket %s: %s", bucket, e)
            return 0
        logger.debug(
            "Invalidated %d listing cache entries (bucket=%s mode=%s)",
            deleted,
            bucket,
            self.invalidation_mode,
        )
        return deleted

    async def fetch(
        self,
        token: str | None,
        bucket: str,
        prefix: str,
        cursor: str | None,
        max_keys: int,
        load: Callable[[], Awaitable[ListObjectsResponse]],
    ) -> tuple[ListObjectsResponse, CacheStatus]:
        """Serve a listing page from cache, falling back to ``load``.

        A failed cache read bypasses the cache for this request entirely,
        including the write-back. A failed write-back is only logged.
        """
        if not self.enabled or not token:
            return await load(), CacheStatus.BYPASS

        try:
            cached = await self.get(token, bucket, prefix, cursor, max_keys)
        except StoreError as e:
            logger.warning("Listing cache lookup failed, bypassing: %s", e)
            return await load(), CacheStatus.BYPASS
        if cached is not None:
            return cached, CacheStatus.HIT

        page = await load()
        try:
            await self.put(token, bucket, prefix, cursor, max_keys, page)
        except StoreError as e:
            logger.warning("Listing cache store failed: %s", e)
        return page, CacheStatus.MISS
