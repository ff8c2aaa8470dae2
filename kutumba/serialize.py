from __future__ import annotations

from datetime import date, datetime
from typing import Any

PERSON_COLUMNS = (
    "id, name, nickname, birthday, gender, date_of_death, location, "
    "created_at, updated_at, flagged_for_deletion"
)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _person_row_to_public(r: tuple[Any, ...]) -> dict[str, Any]:
    # r = (
    #   id, name, nickname, birthday, gender, date_of_death, location,
    #   created_at, updated_at, flagged_for_deletion
    # )
    (
        pid,
        name,
        nickname,
        birthday,
        gender,
        date_of_death,
        location,
        created_at,
        updated_at,
        flagged_for_deletion,
    ) = tuple(r)

    return {
        "id": str(pid),
        "name": name,
        "nickname": nickname,
        "birthday": _iso(birthday),
        "gender": gender,
        "date_of_death": _iso(date_of_death),
        "location": location,
        "created_at": _iso(created_at),
        "updated_at": _iso(updated_at),
        "flagged_for_deletion": bool(flagged_for_deletion),
    }


def _relationship_row_to_public(r: tuple[Any, ...]) -> dict[str, Any]:
    # r = (id, person1_id, person2_id, relationship_type, created_at)
    rid, person1_id, person2_id, relationship_type, created_at = tuple(r)
    return {
        "id": str(rid),
        "person1_id": str(person1_id),
        "person2_id": str(person2_id),
        "relationship_type": relationship_type,
        "created_at": _iso(created_at),
    }
