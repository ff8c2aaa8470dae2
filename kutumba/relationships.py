"""Relationship rules shared by the person and relationship routes.

Rows are stored as entered, but compared in a normalised form:
``parent`` and ``child`` rows both describe a (parent, child) link, and
``spouse`` rows are unordered.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import psycopg
from fastapi import HTTPException

from .serialize import _relationship_row_to_public

log = logging.getLogger(__name__)

RELATIONSHIP_TYPES = ("parent", "child", "spouse")

_MAX_PARENTS = 2

_RELATIONSHIP_COLUMNS = "id, person1_id, person2_id, relationship_type, created_at"


def _parent_child(person1_id: str, person2_id: str, relationship_type: str) -> tuple[str, str]:
    """Return (parent_id, child_id) for a parent or child row."""
    if relationship_type == "parent":
        return person1_id, person2_id
    return person2_id, person1_id


def _validate(person1_id: str, person2_id: str, relationship_type: str) -> None:
    if relationship_type not in RELATIONSHIP_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"relationship_type must be one of: {', '.join(RELATIONSHIP_TYPES)}",
        )
    if person1_id == person2_id:
        raise HTTPException(status_code=400, detail="Cannot relate a person to themselves")


def _require_persons(conn: psycopg.Connection, person_ids: list[str]) -> None:
    rows = conn.execute(
        "SELECT id FROM persons WHERE id = ANY(%s)",
        (person_ids,),
    ).fetchall()
    found = {str(r[0]) for r in rows}
    missing = [pid for pid in person_ids if pid not in found]
    if missing:
        raise HTTPException(status_code=404, detail=f"person not found: {missing[0]}")


def _fetch_parent_ids(
    conn: psycopg.Connection,
    child_id: str,
    *,
    exclude_id: str | None = None,
) -> list[str]:
    rows = conn.execute(
        """
        SELECT id, person1_id, person2_id, relationship_type
        FROM relationships
        WHERE relationship_type IN ('parent', 'child')
          AND (person1_id = %s OR person2_id = %s)
        """.strip(),
        (child_id, child_id),
    ).fetchall()

    out: list[str] = []
    for rid, p1, p2, rtype in rows:
        if exclude_id is not None and str(rid) == exclude_id:
            continue
        parent_id, cid = _parent_child(str(p1), str(p2), rtype)
        if cid == child_id and parent_id not in out:
            out.append(parent_id)
    return out


def _fetch_spouse_ids(conn: psycopg.Connection, person_id: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT person1_id, person2_id
        FROM relationships
        WHERE relationship_type = 'spouse'
          AND (person1_id = %s OR person2_id = %s)
        """.strip(),
        (person_id, person_id),
    ).fetchall()

    out: list[str] = []
    for p1, p2 in rows:
        other = str(p2) if str(p1) == person_id else str(p1)
        if other not in out:
            out.append(other)
    return out


def _check_new_link(
    conn: psycopg.Connection,
    person1_id: str,
    person2_id: str,
    relationship_type: str,
    *,
    exclude_id: str | None = None,
) -> None:
    """Raise 409 for duplicates and for a child's third parent."""
    if relationship_type == "spouse":
        if person2_id in _fetch_spouse_ids(conn, person1_id):
            raise HTTPException(status_code=409, detail="These persons are already spouses")
        return

    parent_id, child_id = _parent_child(person1_id, person2_id, relationship_type)
    parents = _fetch_parent_ids(conn, child_id, exclude_id=exclude_id)
    if parent_id in parents:
        raise HTTPException(status_code=409, detail="This parent relationship already exists")
    if len(parents) >= _MAX_PARENTS:
        raise HTTPException(status_code=409, detail="This person already has two parents")


def insert_relationship(
    conn: psycopg.Connection,
    person1_id: str,
    person2_id: str,
    relationship_type: str,
) -> dict[str, Any]:
    row = conn.execute(
        f"""
        INSERT INTO relationships (id, person1_id, person2_id, relationship_type)
        VALUES (%s, %s, %s, %s)
        RETURNING {_RELATIONSHIP_COLUMNS}
        """.strip(),
        (str(uuid.uuid4()), person1_id, person2_id, relationship_type),
    ).fetchone()
    return _relationship_row_to_public(row)


def add_relationship(
    conn: psycopg.Connection,
    person1_id: str,
    person2_id: str,
    relationship_type: str,
) -> list[dict[str, Any]]:
    """Validate and insert a relationship; returns every row created.

    Adding a parent link also links the parent's spouse as the second parent,
    when the parent has exactly one spouse and the child has room for them.
    """
    _validate(person1_id, person2_id, relationship_type)
    _require_persons(conn, [person1_id, person2_id])
    _check_new_link(conn, person1_id, person2_id, relationship_type)

    created = [insert_relationship(conn, person1_id, person2_id, relationship_type)]
    if relationship_type == "spouse":
        return created

    parent_id, child_id = _parent_child(person1_id, person2_id, relationship_type)
    spouses = [s for s in _fetch_spouse_ids(conn, parent_id) if s != child_id]
    if len(spouses) != 1:
        if len(spouses) > 1:
            log.info("parent %s has %d spouses; not inferring a second parent", parent_id, len(spouses))
        return created

    co_parent = spouses[0]
    parents = _fetch_parent_ids(conn, child_id)
    if co_parent in parents or len(parents) >= _MAX_PARENTS:
        return created

    if relationship_type == "parent":
        created.append(insert_relationship(conn, co_parent, child_id, "parent"))
    else:
        created.append(insert_relationship(conn, child_id, co_parent, "child"))
    return created


def fetch_relationship(conn: psycopg.Connection, relationship_id: str) -> dict[str, Any]:
    row = conn.execute(
        f"SELECT {_RELATIONSHIP_COLUMNS} FROM relationships WHERE id = %s",
        (relationship_id,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"relationship not found: {relationship_id}")
    return _relationship_row_to_public(row)


def update_relationship(
    conn: psycopg.Connection,
    relationship_id: str,
    updates: dict[str, Any],
) -> dict[str, Any]:
    current = fetch_relationship(conn, relationship_id)
    person1_id = str(updates.get("person1_id") or current["person1_id"])
    person2_id = str(updates.get("person2_id") or current["person2_id"])
    relationship_type = updates.get("relationship_type") or current["relationship_type"]

    _validate(person1_id, person2_id, relationship_type)
    _require_persons(conn, [person1_id, person2_id])

    unchanged = (
        person1_id == current["person1_id"]
        and person2_id == current["person2_id"]
        and relationship_type == current["relationship_type"]
    )
    if unchanged:
        return current

    # Swapping the slots of a spouse row is not a new link.
    same_couple = (
        relationship_type == "spouse"
        and current["relationship_type"] == "spouse"
        and {person1_id, person2_id} == {current["person1_id"], current["person2_id"]}
    )
    if not same_couple:
        _check_new_link(conn, person1_id, person2_id, relationship_type, exclude_id=relationship_id)

    row = conn.execute(
        f"""
        UPDATE relationships
        SET person1_id = %s, person2_id = %s, relationship_type = %s
        WHERE id = %s
        RETURNING {_RELATIONSHIP_COLUMNS}
        """.strip(),
        (person1_id, person2_id, relationship_type, relationship_id),
    ).fetchone()
    return _relationship_row_to_public(row)


def delete_relationship(conn: psycopg.Connection, relationship_id: str) -> None:
    row = conn.execute(
        "DELETE FROM relationships WHERE id = %s RETURNING id",
        (relationship_id,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"relationship not found: {relationship_id}")
