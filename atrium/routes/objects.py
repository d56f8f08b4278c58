"""Bucket browsing and object mutation under /api/s3."""

import logging

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse

from ..config import get_settings
from ..dependencies import (
    AuthenticatedSession,
    get_gateway,
    get_listing_cache,
    get_sessions,
    require_session,
)
from ..listing_cache import ObjectMutation, PrefixMutation
from ..models import ListObjectsResponse, ObjectMetadata
from ..store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/s3")

LIST_CACHE_HEADER = "X-Atrium-S3-List-Cache"
PREVIEW_MAX_CHARS = 1_000_000


async def track_bucket(request: Request, token: str, bucket: str) -> None:
    try:
        await get_sessions(request).track_bucket(token, bucket)
    except StoreError as e:
        logger.debug("Could not record bucket access: %s", e)


@router.get("/buckets")
async def list_buckets(
    request: Request,
    session: AuthenticatedSession = Depends(require_session),
):
    return {"buckets": await get_gateway(request).list_buckets(session.credentials)}


@router.get("/objects", response_model=ListObjectsResponse)
async def list_objects(
    request: Request,
    response: Response,
    bucket: str = Query(min_length=1),
    prefix: str = "",
    continuation_token: str | None = None,
    max_keys: int = Query(200, ge=1, le=1000),
    session: AuthenticatedSession = Depends(require_session),
):
    gateway = get_gateway(request)

    async def load() -> ListObjectsResponse:
        return await gateway.list_objects(
            session.credentials, bucket, prefix, continuation_token, max_keys
        )

    page, status = await get_listing_cache(request).fetch(
        session.token, bucket, prefix, continuation_token, max_keys, load
    )
    if get_settings().s3_list_cache_include_headers:
        response.headers[LIST_CACHE_HEADER] = status.value

    await track_bucket(request, session.token, bucket)
    return page


@router.post("/upload")
async def upload(
    request: Request,
    bucket: str = Query(min_length=1),
    prefix: str = "",
    file: UploadFile = File(...),
    session: AuthenticatedSession = Depends(require_session),
):
    if not file.filename:
        return JSONResponse({"error": "No file uploaded"}, status_code=400)

    limit = get_settings().max_upload_size_bytes
    if file.size is not None and file.size > limit:
        return JSONResponse({"error": "File too large"}, status_code=413)

    body = await file.read()
    if len(body) > limit:
        return JSONResponse({"error": "File too large"}, status_code=413)

    key = f"{prefix}{file.filename}"
    await get_gateway(request).put_object(
        session.credentials, bucket, key, body, file.content_type
    )
    await get_listing_cache(request).invalidate_for_mutation(
        session.token, bucket, ObjectMutation(key)
    )
    return {"ok": True, "key": key}


@router.get("/download")
async def download(
    request: Request,
    bucket: str = Query(min_length=1),
    key: str = Query(min_length=1),
    inline: bool = False,
    session: AuthenticatedSession = Depends(require_session),
):
    obj = await get_gateway(request).get_object(session.credentials, bucket, key)
    filename = key.rsplit("/", 1)[-1] or key
    disposition = "inline" if inline else "attachment"
    return Response(
        content=obj.body,
        media_type=obj.content_type,
        headers={"Content-Disposition": f'{disposition}; filename="{filename}"'},
    )


@router.get("/preview-text")
async def preview_text(
    request: Request,
    bucket: str = Query(min_length=1),
    key: str = Query(min_length=1),
    session: AuthenticatedSession = Depends(require_session),
):
    obj = await get_gateway(request).get_object(session.credentials, bucket, key)
    text = obj.body.decode("utf-8", errors="replace")
    return PlainTextResponse(text[:PREVIEW_MAX_CHARS])


@router.get("/object-metadata", response_model=ObjectMetadata)
async def object_metadata(
    request: Request,
    bucket: str = Query(min_length=1),
    key: str = Query(min_length=1),
    session: AuthenticatedSession = Depends(require_session),
):
    return await get_gateway(request).head_object(session.credentials, bucket, key)


@router.delete("/object")
async def delete_object(
    request: Request,
    bucket: str = Query(min_length=1),
    key: str = Query(min_length=1),
    session: AuthenticatedSession = Depends(require_session),
):
    await get_gateway(request).delete_object(session.credentials, bucket, key)
    await get_listing_cache(request).invalidate_for_mutation(
        session.token, bucket, ObjectMutation(key)
    )
    return {"ok": True}


@router.delete("/prefix")
async def delete_prefix(
    request: Request,
    bucket: str = Query(min_length=1),
    prefix: str = Query(min_length=1),
    session: AuthenticatedSession = Depends(require_session),
):
    deleted = await get_gateway(request).delete_prefix(session.credentials, bucket, prefix)
    await get_listing_cache(request).invalidate_for_mutation(
        session.token, bucket, PrefixMutation(prefix)
    )
    return {"ok": True, "deleted": deleted}
