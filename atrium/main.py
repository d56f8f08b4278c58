"""FastAPI backend for browsing S3-compatible buckets.

Wires the shared store, session store, listing cache, bucket-size
aggregator and its scheduler into one application.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bucket_size import BucketSizeAggregator
from .config import Settings, get_settings
from .flags import FlagResolver, build_flag_resolver
from .listing_cache import ListingCache
from .routes import auth, bucket_size, health, objects
from .s3 import S3Gateway, S3OperationError
from .scheduler import BucketSizeScheduler
from .session import SessionStore
from .store import DynamoDBStore, InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: register the bucket-size scheduler (if its flag is on)."""
    await app.state.scheduler.start()
    yield
    await app.state.scheduler.stop()
    await app.state.aggregator.aclose()
    await app.state.flags.aclose()


def build_store(s: Settings) -> KeyValueStore:
    if s.store_backend == "dynamodb":
        return DynamoDBStore(
            table_name=s.dynamodb_table,
            endpoint_url=s.dynamodb_endpoint,
            region_name=s.dynamodb_region,
        )
    logger.warning("Using in-memory store: sessions and locks are not shared across processes")
    return InMemoryStore()


async def s3_error_handler(request: Request, exc: S3OperationError) -> JSONResponse:
    if exc.status_code in (403, 404):
        status = exc.status_code
    elif exc.code in ("NoSuchKey", "NoSuchBucket"):
        status = 404
    else:
        status = 502
    logger.warning("%s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": str(exc), "code": exc.code}, status_code=status)


def create_app(
    *,
    store: KeyValueStore | None = None,
    gateway: S3Gateway | None = None,
    flags: FlagResolver | None = None,
    skip_scheduler: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Shared key-value store (default: chosen by STORE_BACKEND).
        gateway: Upstream S3 gateway (default: built from S3_* settings).
        flags: Feature flag resolver (default: OFREP if configured, then env).
        skip_scheduler: Do not run the lifespan hooks (for testing).
    """
    s = get_settings()
    app = FastAPI(title="Atrium", lifespan=None if skip_scheduler else lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[s.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = store or build_store(s)
    gateway = gateway or S3Gateway(
        endpoint_url=s.s3_endpoint,
        region_name=s.s3_region,
        force_path_style=s.s3_force_path_style,
    )
    flags = flags or build_flag_resolver(s.ofrep_endpoint)

    sessions = SessionStore(store, ttl_seconds=s.session_ttl_seconds)
    aggregator = BucketSizeAggregator(
        store,
        gateway,
        max_duration_ms=s.bucket_size_max_duration_ms,
        max_objects=s.bucket_size_max_objects,
    )
    app.state.settings = s
    app.state.store = store
    app.state.gateway = gateway
    app.state.flags = flags
    app.state.sessions = sessions
    app.state.listing_cache = ListingCache(
        store,
        ttl_seconds=s.s3_list_cache_ttl_seconds,
        enabled=s.s3_list_cache_enabled,
        invalidation_mode=s.s3_list_cache_invalidation_mode,
    )
    app.state.aggregator = aggregator
    app.state.scheduler = BucketSizeScheduler(
        sessions,
        aggregator,
        flags,
        interval_seconds=s.bucket_size_calc_interval_seconds,
    )

    app.add_exception_handler(S3OperationError, s3_error_handler)

    app.include_router(auth.router)
    app.include_router(objects.router)
    app.include_router(bucket_size.router)
    app.include_router(health.router)

    return app
