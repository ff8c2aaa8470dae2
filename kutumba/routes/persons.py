from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from ..auth import get_current_user
from ..db import db_conn
from ..relationships import (
    RELATIONSHIP_TYPES,
    _fetch_parent_ids,
    _fetch_spouse_ids,
    _require_persons,
    add_relationship,
)
from ..serialize import PERSON_COLUMNS, _person_row_to_public, _relationship_row_to_public

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/persons", tags=["persons"])


class PersonFields(BaseModel):
    name: Optional[str] = None
    nickname: Optional[str] = None
    birthday: Optional[date] = None
    gender: Optional[str] = None
    date_of_death: Optional[date] = None
    location: Optional[str] = None
    flagged_for_deletion: Optional[bool] = None

    @field_validator("nickname", "birthday", "gender", "date_of_death", "location", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        # Forms send "" for untouched optional inputs.
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CreatePersonRequest(BaseModel):
    person: Optional[PersonFields] = None
    relationshipType: str = "none"
    relatedPersonId: Optional[uuid.UUID] = None


def _require_name(fields: PersonFields | None) -> str:
    name = ((fields.name if fields else None) or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    return name


@router.get("")
def list_persons() -> list[dict[str, Any]]:
    with db_conn() as conn:
        rows = conn.execute(
            f"SELECT {PERSON_COLUMNS} FROM persons ORDER BY name, id"
        ).fetchall()
    return [_person_row_to_public(r) for r in rows]


@router.get("/{person_id}")
def get_person(person_id: uuid.UUID) -> dict[str, Any]:
    with db_conn() as conn:
        row = conn.execute(
            f"SELECT {PERSON_COLUMNS} FROM persons WHERE id = %s",
            (str(person_id),),
        ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Person not found")
    return _person_row_to_public(row)


@router.post("", status_code=201)
def create_person(body: CreatePersonRequest, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    """Add a person, optionally linked to an existing person.

    relationshipType says what the NEW person is to ``relatedPersonId``:
    ``spouse``, ``parent`` or ``child`` (``none`` to skip).
    """
    name = _require_name(body.person)
    fields = body.person
    rel_type = (body.relationshipType or "none").strip().lower()
    related_id = str(body.relatedPersonId) if body.relatedPersonId else None

    if rel_type != "none" and rel_type not in RELATIONSHIP_TYPES:
        raise HTTPException(status_code=400, detail=f"unknown relationshipType: {body.relationshipType}")
    linked = rel_type != "none" and related_id is not None

    with db_conn() as conn:
        if linked:
            _require_persons(conn, [related_id])

        row = conn.execute(
            f"""
            INSERT INTO persons (id, name, nickname, birthday, gender, date_of_death, location,
                                 flagged_for_deletion)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {PERSON_COLUMNS}
            """.strip(),
            (
                str(uuid.uuid4()),
                name,
                fields.nickname,
                fields.birthday,
                fields.gender,
                fields.date_of_death,
                fields.location,
                bool(fields.flagged_for_deletion),
            ),
        ).fetchone()
        person = _person_row_to_public(row)
        new_id = person["id"]

        created: list[dict[str, Any]] = []
        if linked and rel_type == "spouse":
            created += add_relationship(conn, related_id, new_id, "spouse")
        elif linked and rel_type == "parent":
            created += add_relationship(conn, new_id, related_id, "parent")
            created += _link_co_parents(conn, new_id, person["gender"], related_id)
        elif linked and rel_type == "child":
            # Also links the parent's spouse as second parent.
            created += add_relationship(conn, related_id, new_id, "parent")

    log.info("person created by %s: %s (%s)", user["name"], new_id, rel_type)
    return {"success": True, "person": person, "relationships": created}


def _link_co_parents(conn, new_parent_id: str, new_gender: str | None, child_id: str) -> list[dict[str, Any]]:
    """Marry a new parent to the child's other parent when their genders differ."""
    others = [p for p in _fetch_parent_ids(conn, child_id) if p != new_parent_id]
    if not others or not new_gender:
        return []

    other_id = others[0]
    row = conn.execute("SELECT gender FROM persons WHERE id = %s", (other_id,)).fetchone()
    other_gender = row[0] if row else None
    if not other_gender or other_gender == new_gender:
        return []
    if new_parent_id in _fetch_spouse_ids(conn, other_id):
        return []
    return add_relationship(conn, other_id, new_parent_id, "spouse")


@router.put("/{person_id}")
def update_person(person_id: uuid.UUID, body: PersonFields) -> dict[str, Any]:
    name = _require_name(body)

    with db_conn() as conn:
        row = conn.execute(
            f"""
            UPDATE persons SET
              name = %s,
              nickname = %s,
              birthday = %s,
              gender = %s,
              date_of_death = %s,
              location = %s,
              flagged_for_deletion = COALESCE(%s, flagged_for_deletion),
              updated_at = now()
            WHERE id = %s
            RETURNING {PERSON_COLUMNS}
            """.strip(),
            (
                name,
                body.nickname,
                body.birthday,
                body.gender,
                body.date_of_death,
                body.location,
                body.flagged_for_deletion,
                str(person_id),
            ),
        ).fetchone()

    if not row:
        raise HTTPException(status_code=404, detail="Person not found")
    return {"success": True, "person": _person_row_to_public(row)}


@router.delete("/{person_id}")
def delete_person(person_id: uuid.UUID, user: dict = Depends(get_current_user)) -> dict[str, Any]:
    """Delete a person and every relationship referencing them."""
    pid = str(person_id)
    with db_conn() as conn:
        removed = conn.execute(
            "DELETE FROM relationships WHERE person1_id = %s OR person2_id = %s RETURNING id",
            (pid, pid),
        ).fetchall()
        row = conn.execute("DELETE FROM persons WHERE id = %s RETURNING id", (pid,)).fetchone()
        if not row:
            # Rolls back the relationship delete as well.
            raise HTTPException(status_code=404, detail="Person not found")

    log.info("person deleted by %s: %s (%d relationships)", user["name"], pid, len(removed))
    return {
        "success": True,
        "message": "Person and relationships deleted",
        "deletedRelationships": len(removed),
    }


@router.get("/{person_id}/relationships")
def person_relationships(person_id: uuid.UUID) -> list[dict[str, Any]]:
    pid = str(person_id)
    with db_conn() as conn:
        rows = conn.execute(
            """
            SELECT id, person1_id, person2_id, relationship_type, created_at
            FROM relationships
            WHERE person1_id = %s OR person2_id = %s
            ORDER BY created_at, id
            """.strip(),
            (pid, pid),
        ).fetchall()
    return [_relationship_row_to_public(r) for r in rows]
