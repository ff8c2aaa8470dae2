from __future__ import annotations

import os
from contextlib import contextmanager

import psycopg


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    return url


@contextmanager
def db_conn() -> psycopg.Connection:
    """Yield a database connection.

    The connection commits on a clean exit from the block and rolls back if
    it raises, so multi-statement writes (e.g. deleting a person together
    with its relationships) are atomic.
    """
    with psycopg.connect(get_database_url()) as conn:
        yield conn
