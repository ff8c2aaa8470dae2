"""Relationship CRUD routes.

All mutations go through ``/api/relationships/all``; PUT and DELETE take the
relationship id as the ``id`` query parameter.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ..db import db_conn
from ..relationships import add_relationship, delete_relationship, update_relationship
from ..serialize import _relationship_row_to_public

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/relationships", tags=["relationships"])


class RelationshipCreate(BaseModel):
    person1_id: uuid.UUID
    person2_id: uuid.UUID
    relationship_type: str


class RelationshipUpdate(BaseModel):
    person1_id: Optional[uuid.UUID] = None
    person2_id: Optional[uuid.UUID] = None
    relationship_type: Optional[str] = None


@router.get("/all")
def list_relationships() -> list[dict[str, Any]]:
    with db_conn() as conn:
        rows = conn.execute(
            """
            SELECT id, person1_id, person2_id, relationship_type, created_at
            FROM relationships
            ORDER BY created_at, id
            """.strip()
        ).fetchall()
    return [_relationship_row_to_public(r) for r in rows]


@router.post("/all", status_code=201)
def create_relationship(body: RelationshipCreate) -> dict[str, Any]:
    with db_conn() as conn:
        created = add_relationship(
            conn,
            str(body.person1_id),
            str(body.person2_id),
            body.relationship_type,
        )
    log.info("relationship(s) created: %s", ", ".join(r["id"] for r in created))
    return {"success": True, "relationships": created}


@router.put("/all")
def edit_relationship(body: RelationshipUpdate, id: uuid.UUID = Query()) -> dict[str, Any]:
    updates = body.model_dump(exclude_none=True)
    updates = {k: (str(v) if isinstance(v, uuid.UUID) else v) for k, v in updates.items()}
    with db_conn() as conn:
        rel = update_relationship(conn, str(id), updates)
    return {"success": True, "relationship": rel}


@router.delete("/all")
def remove_relationship(id: uuid.UUID = Query()) -> dict[str, Any]:
    with db_conn() as conn:
        delete_relationship(conn, str(id))
    log.info("relationship deleted: %s", id)
    return {"success": True, "message": "Relationship deleted"}
