"""Family graph construction.

Turns the flat persons/relationships tables into a networkx DiGraph with
"marriage" junction nodes, so a child of a couple hangs from one node
instead of two crossing parent edges:

    person --spouse--> marriage --child--> person
    person --parent--> person            (only one parent known)
"""

from __future__ import annotations

import hashlib
import itertools
import logging
from collections import deque
from typing import Any, Iterable

import networkx as nx

log = logging.getLogger(__name__)

PERSON = "person"
MARRIAGE = "marriage"

# Lower hex digits only, so marriage colours stay dark.
_DARK_HEX_DIGITS = "0123456789ABC"


def _pair_key(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def marriage_node_id(a: str, b: str) -> str:
    x, y = _pair_key(a, b)
    return f"marriage-{x}-{y}"


def _marriage_color(key: tuple[str, str]) -> str:
    digest = hashlib.sha1("-".join(key).encode("utf-8")).digest()
    return "#" + "".join(_DARK_HEX_DIGITS[b % len(_DARK_HEX_DIGITS)] for b in digest[:6])


def _person_data(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": p["id"],
        "label": p.get("name"),
        "name": p.get("name"),
        "nickname": p.get("nickname"),
        "birthday": p.get("birthday"),
        "gender": p.get("gender"),
        "date_of_death": p.get("date_of_death"),
        "location": p.get("location"),
    }


def build_family_graph(
    persons: Iterable[dict[str, Any]],
    relationships: Iterable[dict[str, Any]],
) -> nx.DiGraph:
    """Build the diagram graph from person and relationship dicts.

    Node attributes: ``node_type`` (person/marriage) and ``data``; marriage
    nodes also carry ``spouses`` (sorted id pair) and ``color``.
    Edge attributes: ``edge_type`` (spouse/child/parent) and ``color``.
    """
    G = nx.DiGraph()
    for p in persons:
        G.add_node(str(p["id"]), node_type=PERSON, data=_person_data(p))

    rels = list(relationships)
    marriages: dict[tuple[str, str], str] = {}

    # Spouse pairs first: one marriage node per unordered pair.
    for rel in rels:
        if rel.get("relationship_type") != "spouse":
            continue
        a, b = str(rel["person1_id"]), str(rel["person2_id"])
        if a == b or a not in G or b not in G:
            log.warning("skipping spouse relationship %s: unknown or identical persons", rel.get("id"))
            continue
        key = _pair_key(a, b)
        if key in marriages:
            continue

        mid = marriage_node_id(a, b)
        color = _marriage_color(key)
        marriages[key] = mid
        G.add_node(
            mid,
            node_type=MARRIAGE,
            spouses=key,
            color=color,
            data={"label": "Marriage", "color": color, "spouses": list(key)},
        )
        G.add_edge(key[0], mid, edge_type="spouse", color=color)
        G.add_edge(key[1], mid, edge_type="spouse", color=color)

    # Group parents by child.
    parents_by_child: dict[str, list[str]] = {}
    for rel in rels:
        rtype = rel.get("relationship_type")
        if rtype == "parent":
            parent, child = str(rel["person1_id"]), str(rel["person2_id"])
        elif rtype == "child":
            child, parent = str(rel["person1_id"]), str(rel["person2_id"])
        else:
            continue
        if parent == child or parent not in G or child not in G:
            log.warning("skipping %s relationship %s: unknown or identical persons", rtype, rel.get("id"))
            continue
        parents = parents_by_child.setdefault(child, [])
        if parent not in parents:
            parents.append(parent)

    for child, parents in parents_by_child.items():
        if len(parents) > 2:
            log.warning("child %s has %d parents: %s", child, len(parents), ", ".join(parents))

        couple: tuple[str, str] | None = None
        for p1, p2 in itertools.combinations(parents, 2):
            if _pair_key(p1, p2) in marriages:
                couple = (p1, p2)
                break

        if couple is not None:
            mid = marriages[_pair_key(*couple)]
            G.add_edge(mid, child, edge_type="child", color=G.nodes[mid]["color"])
            direct = [p for p in parents if p not in couple]
        else:
            if len(parents) == 2:
                log.warning("parents of %s are not linked as spouses: %s", child, ", ".join(parents))
            direct = parents

        for parent in direct:
            G.add_edge(parent, child, edge_type="parent", color=None)

    return G


# ---------------------------------------------------------------------------
# Person-level navigation (through marriage nodes)
# ---------------------------------------------------------------------------


def _parents_of(G: nx.DiGraph, pid: str) -> list[str]:
    out: list[str] = []
    for pred in G.predecessors(pid):
        if G.nodes[pred]["node_type"] == MARRIAGE:
            out.extend(G.nodes[pred]["spouses"])
        else:
            out.append(pred)
    return out


def _children_of(G: nx.DiGraph, pid: str) -> list[str]:
    out: list[str] = []
    for succ in G.successors(pid):
        if G.nodes[succ]["node_type"] == MARRIAGE:
            out.extend(G.successors(succ))
        else:
            out.append(succ)
    return out


def spouses_of(G: nx.DiGraph, pid: str) -> list[str]:
    out: list[str] = []
    for succ in G.successors(pid):
        if G.nodes[succ]["node_type"] == MARRIAGE:
            out.extend(s for s in G.nodes[succ]["spouses"] if s != pid)
    return out


def neighborhood_distances(
    G: nx.DiGraph,
    root: str,
    *,
    depth: int,
    max_nodes: int,
) -> dict[str, int]:
    """Return person->generation distance for a BFS around ``root``.

    Expands through parent/child links only; spouses are attached at the
    generation of the person they married and are not expanded further, so
    large lateral marriage networks stay out of view.
    """
    distances: dict[str, int] = {root: 0}
    for sp in spouses_of(G, root):
        if sp not in distances:
            distances[sp] = 0
            if len(distances) >= max_nodes:
                return distances

    frontier: deque[str] = deque([root])
    for d in range(1, depth + 1):
        next_frontier: list[str] = []
        for node in frontier:
            for nb in _parents_of(G, node) + _children_of(G, node):
                if nb in distances:
                    continue
                distances[nb] = d
                next_frontier.append(nb)
                if len(distances) >= max_nodes:
                    return distances

        for pid in next_frontier:
            for sp in spouses_of(G, pid):
                if sp in distances:
                    continue
                distances[sp] = d
                if len(distances) >= max_nodes:
                    return distances

        frontier = deque(next_frontier)
        if not frontier:
            break

    return distances


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


def graph_payload(
    G: nx.DiGraph,
    positions: dict[str, tuple[float, float]] | None = None,
    sizes: dict[str, tuple[float, float]] | None = None,
) -> dict[str, list[dict[str, Any]]]:
    """Serialize the graph as renderer-ready ``nodes`` and ``edges`` lists."""
    nodes: list[dict[str, Any]] = []
    for nid, attrs in G.nodes(data=True):
        node: dict[str, Any] = {
            "id": nid,
            "type": attrs["node_type"],
            "data": attrs["data"],
        }
        if positions is not None:
            x, y = positions.get(nid, (0.0, 0.0))
            node["position"] = {"x": x, "y": y}
        if sizes is not None and nid in sizes:
            node["width"], node["height"] = sizes[nid]
        nodes.append(node)

    edges = [
        {
            "id": f"edge-{u}-{v}",
            "source": u,
            "target": v,
            "type": attrs["edge_type"],
            "color": attrs.get("color"),
        }
        for u, v, attrs in G.edges(data=True)
    ]
    return {"nodes": nodes, "edges": edges}
