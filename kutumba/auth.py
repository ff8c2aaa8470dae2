"""Shared-password authentication.

Everyone in the family logs in with the same password; the JWT in the
``auth_token`` cookie only records who said they were logging in.

- Password rules and bcrypt hashing (passlib)
- Session tokens (PyJWT, HS256) and the cookie that carries them
- Logout revocations and the password-rotation cutoff
"""

from __future__ import annotations

import os
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import psycopg
from fastapi import HTTPException, Request, Response
from passlib.context import CryptContext

# ---------------------------------------------------------------------------
# Shared password
# ---------------------------------------------------------------------------

_pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)

_MIN_PASSWORD_LEN = 8

_PASSWORD_RULES: list[tuple[Any, str]] = [
    (lambda pw: any(c.isupper() for c in pw), "an uppercase letter"),
    (lambda pw: any(c.islower() for c in pw), "a lowercase letter"),
    (lambda pw: any(c.isdigit() for c in pw), "a digit"),
]


def validate_password(plain: str) -> str | None:
    """Return why ``plain`` is too weak for the shared password, or ``None``."""
    if len(plain) < _MIN_PASSWORD_LEN:
        return f"Password must be at least {_MIN_PASSWORD_LEN} characters long."
    missing = [label for check, label in _PASSWORD_RULES if not check(plain)]
    if missing:
        return "Password must contain " + ", ".join(missing) + "."
    return None


def hash_password(plain: str) -> str:
    return _pwd_ctx.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    return _pwd_ctx.verify(plain, hashed)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

_JWT_COOKIE_NAME = "auth_token"
_JWT_ALGORITHM = "HS256"
_JWT_LIFETIME_DAYS = 7
_DEV_JWT_SECRET = "kutumba-dev-secret"


class MissingSecretError(RuntimeError):
    """JWT_SECRET is unset where the development fallback is not allowed."""


def _jwt_secret() -> str:
    secret = os.environ.get("JWT_SECRET")
    if secret:
        return secret
    if _is_production():
        raise MissingSecretError("JWT_SECRET must be set when APP_ENV=production")
    return _DEV_JWT_SECRET


def check_jwt_secret() -> None:
    """Fail fast at startup instead of on the first login."""
    _jwt_secret()


def _is_production() -> bool:
    return os.environ.get("APP_ENV", "").strip().lower() == "production"


def create_jwt(user_info: str, *, expiry_days: int = _JWT_LIFETIME_DAYS) -> str:
    """Sign a session token for ``user_info`` (name, phone or anonymous)."""
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": user_info,
        "jti": secrets.token_hex(16),
        # Sub-second precision; compared with shared_password.updated_at.
        "iat": issued.timestamp(),
        "exp": int((issued + timedelta(days=expiry_days)).timestamp()),
    }
    return jwt.encode(claims, _jwt_secret(), algorithm=_JWT_ALGORITHM)


def decode_jwt(token: str) -> dict[str, Any]:
    # Raises jwt.ExpiredSignatureError / jwt.PyJWTError.
    return jwt.decode(token, _jwt_secret(), algorithms=[_JWT_ALGORITHM])


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=_JWT_COOKIE_NAME,
        value=token,
        max_age=_JWT_LIFETIME_DAYS * 86400,
        path="/",
        secure=_is_production(),
        httponly=True,
        samesite="strict",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=_JWT_COOKIE_NAME, path="/")


def _should_refresh(claims: dict[str, Any]) -> bool:
    """True once more than half of the token's lifetime is used up."""
    issued = int(claims.get("iat") or 0)
    expires = int(claims.get("exp") or 0)
    if not issued or expires <= issued:
        return False
    return time.time() - issued > (expires - issued) / 2


# ---------------------------------------------------------------------------
# Session state (revocations, password rotation)
# ---------------------------------------------------------------------------


def session_is_current(conn: psycopg.Connection, claims: dict[str, Any]) -> bool:
    """Return False if the token was logged out or predates a password change."""
    row = conn.execute(
        """
        SELECT
          EXISTS (SELECT 1 FROM revoked_session WHERE jti = %s),
          (SELECT updated_at FROM shared_password WHERE id = 1)
        """.strip(),
        (claims.get("jti") or "",),
    ).fetchone()
    if not row:
        return True

    revoked, rotated_at = row
    if revoked:
        return False
    if rotated_at is not None:
        if float(claims.get("iat", 0)) < rotated_at.timestamp():
            return False
    return True


def store_password_hash(conn: psycopg.Connection, hashed: str) -> None:
    """Upsert the shared password; bumping updated_at invalidates older tokens."""
    conn.execute(
        """
        INSERT INTO shared_password (id, password_hash, updated_at)
        VALUES (1, %s, now())
        ON CONFLICT (id) DO UPDATE
          SET password_hash = EXCLUDED.password_hash,
              updated_at = now()
        """.strip(),
        (hashed,),
    )


def revoke_session(conn: psycopg.Connection, claims: dict[str, Any]) -> None:
    jti = claims.get("jti")
    exp = claims.get("exp")
    if not jti or not exp:
        return
    conn.execute(
        """
        INSERT INTO revoked_session (jti, expires_at)
        VALUES (%s, %s)
        ON CONFLICT (jti) DO NOTHING
        """.strip(),
        (jti, datetime.fromtimestamp(int(exp), tz=timezone.utc)),
    )


def cleanup_expired_sessions(conn: psycopg.Connection) -> int:
    """Delete revocation rows whose tokens have expired. Returns the count."""
    rows = conn.execute(
        "DELETE FROM revoked_session WHERE expires_at < now() RETURNING jti"
    ).fetchall()
    return len(rows)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_current_user(request: Request) -> dict[str, Any]:
    """The ``{"name", "jti"}`` dict AuthMiddleware put on ``request.state``."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user
