"""CLI admin tool for secrets, schema and the shared password.

Usage:
    python -m kutumba.admin generate-jwt-secret
    python -m kutumba.admin update-jwt-secret --env-file=.env
    python -m kutumba.admin init-db
    python -m kutumba.admin set-password --password=Secret123
    python -m kutumba.admin cleanup-sessions
"""

from __future__ import annotations

import argparse
import re
import secrets
from pathlib import Path

import psycopg

from .auth import cleanup_expired_sessions, hash_password, store_password_hash, validate_password
from .db import get_database_url

_SCHEMA_SQL = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"
_JWT_SECRET_RE = re.compile(r"^JWT_SECRET=.*$", re.MULTILINE)
_SECRET_BYTES = 64


def generate_secret(nbytes: int = _SECRET_BYTES) -> str:
    return secrets.token_hex(nbytes)


def _with_jwt_secret(env_text: str, secret: str) -> str:
    """Return ``env_text`` with JWT_SECRET replaced, or appended if missing."""
    line = f"JWT_SECRET={secret}"
    if _JWT_SECRET_RE.search(env_text):
        return _JWT_SECRET_RE.sub(lambda _m: line, env_text, count=1)
    if env_text and not env_text.endswith("\n"):
        env_text += "\n"
    return env_text + f"\n# JWT secret for authentication\n{line}\n"


def _ensure_schema(conn: psycopg.Connection) -> None:
    if not _SCHEMA_SQL.exists():
        raise SystemExit(f"schema file not found: {_SCHEMA_SQL}")
    conn.execute(_SCHEMA_SQL.read_text(encoding="utf-8"))
    conn.commit()


def cmd_generate_jwt_secret(args: argparse.Namespace) -> None:
    print("Generated JWT_SECRET for your .env file:")
    print(f"JWT_SECRET={generate_secret()}")


def cmd_update_jwt_secret(args: argparse.Namespace) -> None:
    env_path = Path(args.env_file)
    existing = env_path.read_text(encoding="utf-8") if env_path.exists() else "# Environment variables\n"
    env_path.write_text(_with_jwt_secret(existing, generate_secret()), encoding="utf-8")
    print(f"JWT_SECRET updated in {env_path}.")
    print("Note: all existing sessions are now invalid; users must log in again.")


def cmd_init_db(args: argparse.Namespace) -> None:
    with psycopg.connect(get_database_url()) as conn:
        _ensure_schema(conn)
    print("Schema applied.")


def cmd_set_password(args: argparse.Namespace) -> None:
    pw_err = validate_password(args.password)
    if pw_err:
        raise SystemExit(f"Weak password: {pw_err}")
    with psycopg.connect(get_database_url()) as conn:
        _ensure_schema(conn)
        store_password_hash(conn, hash_password(args.password))
        conn.commit()
    print("Shared password updated; existing sessions invalidated.")


def cmd_cleanup_sessions(args: argparse.Namespace) -> None:
    with psycopg.connect(get_database_url()) as conn:
        deleted = cleanup_expired_sessions(conn)
        conn.commit()
    print(f"Removed {deleted} expired session revocation(s).")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Kutumba admin CLI")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("generate-jwt-secret", help="Print a new random JWT secret")

    p = sub.add_parser("update-jwt-secret", help="Write a new JWT secret into an env file")
    p.add_argument("--env-file", default=".env")

    sub.add_parser("init-db", help="Create tables (idempotent)")

    p = sub.add_parser("set-password", help="Set the shared family password")
    p.add_argument("--password", required=True)

    sub.add_parser("cleanup-sessions", help="Prune expired logout revocations")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    dispatch = {
        "generate-jwt-secret": cmd_generate_jwt_secret,
        "update-jwt-secret": cmd_update_jwt_secret,
        "init-db": cmd_init_db,
        "set-password": cmd_set_password,
        "cleanup-sessions": cmd_cleanup_sessions,
    }
    dispatch[args.command](args)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
