"""FastAPI dependency injection: components, session cookie, auth."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request
from itsdangerous import BadSignature, URLSafeSerializer

from .bucket_size import BucketSizeAggregator
from .config import get_settings
from .listing_cache import ListingCache
from .models import Credentials
from .s3 import S3Gateway
from .session import SessionStore
from .store import StoreError

logger = logging.getLogger(__name__)

_COOKIE_SALT = "atrium-session"


@dataclass(frozen=True)
class AuthenticatedSession:
    token: str
    credentials: Credentials


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_listing_cache(request: Request) -> ListingCache:
    return request.app.state.listing_cache


def get_aggregator(request: Request) -> BucketSizeAggregator:
    return request.app.state.aggregator


def get_gateway(request: Request) -> S3Gateway:
    return request.app.state.gateway


def _signer() -> URLSafeSerializer:
    return URLSafeSerializer(get_settings().session_secret, salt=_COOKIE_SALT)


def session_cookie(token: str | None) -> str:
    """Build a Set-Cookie value; ``None`` clears the cookie."""
    s = get_settings()
    if token is None:
        value = ""
        max_age = 0
    else:
        value = _signer().dumps(token)
        max_age = s.session_ttl_seconds

    parts = [
        f"{s.cookie_name}={value}",
        f"Max-Age={max_age}",
        "Path=/",
        "HttpOnly",
        "SameSite=lax",
    ]
    if s.session_https_only:
        parts.append("Secure")
    return "; ".join(parts)


def read_session_token(request: Request) -> str | None:
    raw = request.cookies.get(get_settings().cookie_name)
    if not raw:
        return None
    try:
        return _signer().loads(raw)
    except BadSignature:
        return None


async def require_session(request: Request) -> AuthenticatedSession:
    """Require a live session; slides its expiry as a side effect.

    A session store outage is treated as "not authenticated".
    """
    token = read_session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail={"error": "Not authenticated"})

    try:
        credentials = await get_sessions(request).lookup(token)
    except StoreError as e:
        logger.warning("Session lookup failed: %s", e)
        credentials = None

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail={"error": "Session expired. Please log in again."},
            headers={"set-cookie": session_cookie(None)},
        )
    return AuthenticatedSession(token=token, credentials=credentials)
