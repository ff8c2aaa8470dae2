"""Cookie authentication for every non-public route.

A request passes when its ``auth_token`` cookie holds a JWT that verifies,
has not expired, was not logged out and was issued after the last shared
password change. The handler then sees ``request.state.user`` as
``{"name": ..., "jti": ...}``.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .auth import (
    _JWT_COOKIE_NAME,
    MissingSecretError,
    _should_refresh,
    create_jwt,
    decode_jwt,
    session_is_current,
    set_session_cookie,
)
from .db import db_conn

log = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset(
    {
        "/health",
        "/api/login",
        "/api/logout",
        "/api/update-password",  # ADMIN_SECRET
        "/api/cleanup-sessions",  # SESSION_CLEANUP_KEY
        "/docs",
        "/openapi.json",
        "/favicon.ico",
    }
)


def _check_session(claims: dict[str, Any]) -> bool:
    with db_conn() as conn:
        return session_is_current(conn, claims)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse({"detail": detail}, status_code=401)


async def _read_claims(request: Request) -> dict[str, Any] | JSONResponse:
    token = request.cookies.get(_JWT_COOKIE_NAME)
    if not token:
        return _unauthorized("Not authenticated")
    try:
        claims = decode_jwt(token)
    except pyjwt.ExpiredSignatureError:
        return _unauthorized("Session expired")
    except pyjwt.PyJWTError:
        return _unauthorized("Invalid session")

    if not await run_in_threadpool(_check_session, claims):
        return _unauthorized("Session revoked")
    return claims


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        try:
            claims = await _read_claims(request)
        except MissingSecretError:
            log.error("JWT_SECRET is not set; refusing %s", request.url.path)
            return JSONResponse({"detail": "Authentication system error"}, status_code=500)
        if isinstance(claims, JSONResponse):
            return claims

        name = claims.get("sub") or "Anonymous user"
        request.state.user = {"name": name, "jti": claims.get("jti")}
        response = await call_next(request)

        if _should_refresh(claims):
            log.debug("sliding session refresh for %s", name)
            set_session_cookie(response, create_jwt(name))
        return response
