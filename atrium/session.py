"""Server-side sessions: opaque token -> S3 credentials.

Tokens are 48 random bytes, URL-safe encoded. Every successful lookup
slides the expiry forward by the full session lifetime, so active sessions
stay alive while idle ones lapse on their own; nothing sweeps the store.
"""

from __future__ import annotations

import json
import logging
import secrets

from . import KEY_PREFIX
from .models import Credentials
from .store import KeyValueStore, StoreError

logger = logging.getLogger(__name__)

SESSION_PREFIX = f"{KEY_PREFIX}:session:"
TRACKED_BUCKETS_PREFIX = f"{KEY_PREFIX}:session-buckets:"
TRACKED_BUCKETS_TTL = 7 * 24 * 3600
TOKEN_BYTES = 48
_CREATE_ATTEMPTS = 3


class SessionError(Exception):
    """A session could not be created."""


def _decode(value: str | None) -> Credentials | None:
    if not value:
        return None
    try:
        data = json.loads(value)
        return Credentials(
            access_key_id=data["access_key_id"],
            secret_access_key=data["secret_access_key"],
        )
    except (ValueError, KeyError, TypeError):
        return None


class SessionStore:
    """Sessions and their tracked-bucket sets on top of the shared store."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 86400) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds

    async def create(self, credentials: Credentials) -> str:
        payload = json.dumps(
            {
                "access_key_id": credentials.access_key_id,
                "secret_access_key": credentials.secret_access_key,
            }
        )
        for _ in range(_CREATE_ATTEMPTS):
            token = secrets.token_urlsafe(TOKEN_BYTES)
            if await self._store.set(
                SESSION_PREFIX + token, payload, self.ttl_seconds, only_if_absent=True
            ):
                return token
            logger.warning("Session token collision, regenerating")
        raise SessionError("Could not allocate a unique session token")

    async def lookup(self, token: str) -> Credentials | None:
        """Return the session's credentials and slide its expiry.

        A failed TTL refresh is logged; the credentials are still returned.
        """
        key = SESSION_PREFIX + token
        credentials = _decode(await self._store.get(key))
        if credentials is None:
            return None
        try:
            await self._store.expire(key, self.ttl_seconds)
        except StoreError as e:
            logger.warning("Session TTL refresh failed: %s", e)
        return credentials

    async def peek(self, token: str) -> Credentials | None:
        """Read credentials without extending the session."""
        return _decode(await self._store.get(SESSION_PREFIX + token))

    async def delete(self, token: str) -> None:
        await self._store.delete(SESSION_PREFIX + token)

    async def tokens(self) -> list[str]:
        keys = await self._store.scan(SESSION_PREFIX)
        return [k[len(SESSION_PREFIX):] for k in keys if len(k) > len(SESSION_PREFIX)]

    async def track_bucket(self, token: str, bucket: str) -> None:
        await self._store.add_member(
            TRACKED_BUCKETS_PREFIX + token, bucket, TRACKED_BUCKETS_TTL
        )

    async def tracked_buckets(self, token: str) -> set[str]:
        return await self._store.members(TRACKED_BUCKETS_PREFIX + token)
