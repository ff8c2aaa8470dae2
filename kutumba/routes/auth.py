"""Auth routes: login, logout, shared password rotation, session cleanup."""

from __future__ import annotations

import logging
import os
import secrets
import time
from collections import deque
from typing import Any, Callable, Optional

import jwt as pyjwt
import psycopg
from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel

from ..auth import (
    _JWT_COOKIE_NAME,
    cleanup_expired_sessions,
    clear_session_cookie,
    create_jwt,
    decode_jwt,
    hash_password,
    revoke_session,
    set_session_cookie,
    store_password_hash,
    validate_password,
    verify_password,
)
from ..db import db_conn

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])

# ---------------------------------------------------------------------------
# Failed-login throttle (per client IP, in process memory)
# ---------------------------------------------------------------------------


class LoginThrottle:
    """Sliding window of failed logins per IP.

    Counts only failures; a successful login clears the IP's history.
    """

    def __init__(
        self,
        max_failures: int = 5,
        window_secs: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_failures = max_failures
        self.window_secs = window_secs
        self._clock = clock
        self._failures: dict[str, deque[float]] = {}

    def _recent(self, ip: str) -> int:
        failures = self._failures.get(ip)
        if failures is None:
            return 0
        horizon = self._clock() - self.window_secs
        while failures and failures[0] <= horizon:
            failures.popleft()
        if not failures:
            del self._failures[ip]
        return len(failures)

    def check(self, ip: str) -> None:
        if self._recent(ip) >= self.max_failures:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {self.window_secs // 60} minutes.",
            )

    def fail(self, ip: str) -> None:
        now = self._clock()
        horizon = now - self.window_secs
        # Drop IPs whose newest failure has left the window.
        for stale in [k for k, v in self._failures.items() if v[-1] <= horizon]:
            del self._failures[stale]
        self._failures.setdefault(ip, deque()).append(now)

    def forget(self, ip: str) -> None:
        self._failures.pop(ip, None)

    def reset(self) -> None:
        self._failures.clear()


_throttle = LoginThrottle()


# ---------------------------------------------------------------------------
# Shared password storage
# ---------------------------------------------------------------------------


def _stored_password_hash(conn: psycopg.Connection) -> str | None:
    """Return the shared password hash, seeding it from APP_SHARED_PASSWORD if absent."""
    row = conn.execute("SELECT password_hash FROM shared_password WHERE id = 1").fetchone()
    if row:
        return row[0]

    initial = os.environ.get("APP_SHARED_PASSWORD", "")
    if not initial:
        return None

    hashed = hash_password(initial)
    store_password_hash(conn, hashed)
    log.info("shared password initialised from APP_SHARED_PASSWORD")
    return hashed


def _record_login(user_info: str, client_ip: str) -> None:
    """Best-effort audit row; a failure here must not block the login."""
    try:
        with db_conn() as conn:
            conn.execute(
                "INSERT INTO user_log (user_info, ip_address) VALUES (%s, %s)",
                (user_info, client_ip),
            )
    except psycopg.Error:
        log.warning("could not record login for %s", user_info, exc_info=True)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    password: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@router.post("/login")
def login(body: LoginRequest, request: Request, response: Response) -> dict[str, Any]:
    """Authenticate with the shared password, set session cookie."""
    if not body.password:
        raise HTTPException(status_code=400, detail="Password is required")

    client_ip = request.client.host if request.client else "unknown"
    _throttle.check(client_ip)

    with db_conn() as conn:
        stored_hash = _stored_password_hash(conn)

    if not stored_hash:
        log.error("no shared password in the database or APP_SHARED_PASSWORD")
        raise HTTPException(status_code=500, detail="Authentication system error")

    if not verify_password(body.password, stored_hash):
        _throttle.fail(client_ip)
        log.info("failed login from %s", client_ip)
        raise HTTPException(status_code=401, detail="Invalid password")

    name = (body.name or "").strip()
    phone = (body.phone or "").strip()
    user_info = name or phone or "Anonymous user"

    set_session_cookie(response, create_jwt(user_info))
    _throttle.forget(client_ip)
    _record_login(user_info, client_ip)
    log.info("login: %s", user_info)

    return {"message": "Login successful", "user": name or "Anonymous"}


@router.post("/logout")
def logout(request: Request, response: Response) -> dict[str, str]:
    token = request.cookies.get(_JWT_COOKIE_NAME)
    if token:
        try:
            claims = decode_jwt(token)
        except pyjwt.PyJWTError:
            claims = None
        if claims:
            with db_conn() as conn:
                revoke_session(conn, claims)

    clear_session_cookie(response)
    return {"message": "Logged out successfully"}


class UpdatePasswordRequest(BaseModel):
    newPassword: Optional[str] = None
    adminSecret: Optional[str] = None


@router.post("/update-password")
def update_password(body: UpdatePasswordRequest) -> dict[str, str]:
    """Rotate the shared password (admin secret required).

    Every token issued before the rotation stops being accepted.
    """
    expected = os.environ.get("ADMIN_SECRET", "")
    if not body.adminSecret or not expected:
        raise HTTPException(status_code=403, detail="Admin access required to change password")

    if not secrets.compare_digest(body.adminSecret.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin secret")

    if not body.newPassword:
        raise HTTPException(status_code=400, detail="New password is required")

    pw_err = validate_password(body.newPassword)
    if pw_err:
        raise HTTPException(status_code=400, detail=pw_err)

    with db_conn() as conn:
        store_password_hash(conn, hash_password(body.newPassword))

    log.info("shared password rotated; existing sessions invalidated")
    return {"message": "Password updated successfully via admin reset"}


@router.api_route("/cleanup-sessions", methods=["GET", "POST"])
def cleanup_sessions(key: Optional[str] = None) -> dict[str, Any]:
    """Prune expired logout revocations. Intended for a cron job."""
    expected = os.environ.get("SESSION_CLEANUP_KEY", "")
    if expected and not secrets.compare_digest((key or "").encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")

    with db_conn() as conn:
        deleted = cleanup_expired_sessions(conn)

    log.info("session cleanup removed %d expired rows", deleted)
    return {
        "success": True,
        "message": f"Successfully cleaned up {deleted} expired sessions",
        "deletedCount": deleted,
    }
