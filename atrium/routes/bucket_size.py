"""GET /api/s3/bucket-size and POST /api/s3/bucket-size/calculate.

Calculation never blocks the request: "calculate" starts a background
task and answers 202 at once, and the GET only reads the cached result.
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from ..dependencies import AuthenticatedSession, get_aggregator, require_session
from .objects import track_bucket

router = APIRouter(prefix="/api/s3/bucket-size")


@router.get("")
async def get_bucket_size(
    request: Request,
    bucket: str = Query(min_length=1),
    session: AuthenticatedSession = Depends(require_session),
):
    aggregator = get_aggregator(request)
    result = await aggregator.get_cached(bucket, session.credentials.access_key_id)
    if result is None:
        return {"bucket": bucket, "status": "not-calculated"}
    return {
        "status": "calculated",
        "is_fresh": aggregator.is_fresh(result),
        **result.model_dump(),
    }


@router.post("/calculate")
async def calculate_bucket_size(
    request: Request,
    bucket: str = Query(min_length=1),
    session: AuthenticatedSession = Depends(require_session),
):
    get_aggregator(request).start(bucket, session.credentials, force=True)
    await track_bucket(request, session.token, bucket)
    return JSONResponse({"bucket": bucket, "status": "accepted"}, status_code=202)
