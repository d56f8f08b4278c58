"""POST /api/auth/login, POST /api/auth/logout, GET /api/auth/me."""

import logging

from botocore.exceptions import BotoCoreError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..dependencies import (
    AuthenticatedSession,
    get_gateway,
    get_sessions,
    read_session_token,
    require_session,
    session_cookie,
)
from ..models import Credentials
from ..s3 import S3OperationError
from ..session import SessionError
from ..store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth")


class LoginRequest(BaseModel):
    access_key_id: str = Field(min_length=1)
    secret_access_key: str = Field(min_length=1)


@router.post("/login")
async def login(body: LoginRequest, request: Request):
    credentials = Credentials(
        access_key_id=body.access_key_id,
        secret_access_key=body.secret_access_key,
    )

    try:
        await get_gateway(request).validate_credentials(credentials)
    except (S3OperationError, BotoCoreError) as e:
        logger.info("Login rejected: %s", e)
        return JSONResponse(
            {"error": f"Invalid credentials or provider access denied: {e}"},
            status_code=401,
        )

    try:
        token = await get_sessions(request).create(credentials)
    except (StoreError, SessionError) as e:
        logger.error("Session creation failed: %s", e)
        return JSONResponse({"error": "Session store unavailable"}, status_code=503)

    response = JSONResponse({"ok": True})
    response.headers.append("set-cookie", session_cookie(token))
    return response


@router.post("/logout")
async def logout(request: Request):
    token = read_session_token(request)
    if token:
        try:
            await get_sessions(request).delete(token)
        except StoreError as e:
            logger.warning("Session delete failed: %s", e)

    response = JSONResponse({"ok": True})
    response.headers.append("set-cookie", session_cookie(None))
    return response


@router.get("/me")
async def me(session: AuthenticatedSession = Depends(require_session)):
    return {"ok": True, "access_key_id": session.credentials.access_key_id}
