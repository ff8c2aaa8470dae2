from __future__ import annotations

import logging
import uuid
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query

from ..db import db_conn
from ..family_graph import build_family_graph, neighborhood_distances
from ..layout import LayoutError, LayoutOptions, layout_payload
from ..serialize import PERSON_COLUMNS, _person_row_to_public, _relationship_row_to_public

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["tree"])


def _load_tree() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    with db_conn() as conn:
        person_rows = conn.execute(
            f"SELECT {PERSON_COLUMNS} FROM persons ORDER BY created_at, id"
        ).fetchall()
        rel_rows = conn.execute(
            """
            SELECT id, person1_id, person2_id, relationship_type, created_at
            FROM relationships
            ORDER BY created_at, id
            """.strip()
        ).fetchall()
    return (
        [_person_row_to_public(r) for r in person_rows],
        [_relationship_row_to_public(r) for r in rel_rows],
    )


@router.get("/tree")
def family_tree(
    direction: Literal["TB", "LR"] = Query(default="TB"),
    node_sep: float = Query(default=70.0, ge=0, le=1000),
    rank_sep: float = Query(default=70.0, ge=0, le=1000),
    center_children: bool = True,
    root: Optional[uuid.UUID] = None,
    depth: int = Query(default=2, ge=0, le=50),
    max_nodes: int = Query(default=1000, ge=1, le=6000),
) -> dict[str, Any]:
    """Return the laid-out family diagram.

    - Without ``root``: the whole tree.
    - With ``root``: only people within ``depth`` generations of that person
      (plus their spouses).
    """
    persons, relationships = _load_tree()
    graph = build_family_graph(persons, relationships)

    if root is not None:
        root_id = str(root)
        if root_id not in graph:
            raise HTTPException(status_code=404, detail=f"person not found: {root_id}")
        keep = set(neighborhood_distances(graph, root_id, depth=depth, max_nodes=max_nodes))
        persons = [p for p in persons if p["id"] in keep]
        relationships = [
            r for r in relationships if r["person1_id"] in keep and r["person2_id"] in keep
        ]
        graph = build_family_graph(persons, relationships)

    options = LayoutOptions(
        direction=direction,
        node_sep=node_sep,
        rank_sep=rank_sep,
        center_children=center_children,
    )
    try:
        payload = layout_payload(graph, options)
    except LayoutError:
        log.exception("tree layout failed")
        raise HTTPException(status_code=500, detail="Tree layout failed")
    log.debug("tree layout: %d nodes, %d edges", len(payload["nodes"]), len(payload["edges"]))
    return payload
