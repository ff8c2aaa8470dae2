"""Family graph layout.

Graphviz ``dot`` (driven through pydot) computes the layered layout:
ranks, crossing reduction and coordinates. The family conventions are
handed to it as dot attributes:

- per edge type ``minlen``/``weight``, so a single parent's child lands on
  the same generation as a couple's children
- a ``rank=same`` subgraph per couple
- with ``marriage_dummies``, an invisible node next to the spouse that has
  parents, feeding the marriage node, so the marriage is pulled toward the
  side of the tree that spouse already belongs to

dot knows nothing about marriages, so its output is corrected row by row,
top to bottom:

1. spouses are packed next to each other as one block
2. marriage nodes are re-centred between their spouses
3. sibling blocks are centred under their parents' marriage node
4. overlapping blocks are pushed apart
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal

import networkx as nx
import pydot

from .family_graph import MARRIAGE, PERSON, graph_payload

log = logging.getLogger(__name__)

# edge_type -> (minlen, weight)
_EDGE_RULES: dict[str, tuple[int, int]] = {
    "spouse": (1, 1),
    "child": (1, 5),
    "parent": (2, 5),
}

_POINTS_PER_INCH = 72.0
_DUMMY_WEIGHT = 5
_SPOUSE_WEIGHT = 5


class LayoutError(RuntimeError):
    """Graphviz could not be run, or returned something unreadable."""


@dataclass
class LayoutOptions:
    direction: Literal["TB", "LR"] = "TB"
    node_sep: float = 70.0
    rank_sep: float = 70.0
    splines: str = "polyline"
    person_width: float = 180.0
    person_height: float = 100.0
    marriage_width: float = 50.0
    marriage_height: float = 50.0
    marriage_dummies: bool = True
    center_children: bool = True
    align_spouses: bool = True
    prog: str = "dot"

    def node_size(self, node_type: str) -> tuple[float, float]:
        if node_type == MARRIAGE:
            return self.marriage_width, self.marriage_height
        return self.person_width, self.person_height


def _couples(G: nx.DiGraph) -> list[tuple[str, tuple[str, str]]]:
    return [(n, attrs["spouses"]) for n, attrs in G.nodes(data=True) if attrs["node_type"] == MARRIAGE]


# ---------------------------------------------------------------------------
# Graphviz
# ---------------------------------------------------------------------------


def _inches(px: float) -> str:
    return f"{px / _POINTS_PER_INCH:.4f}"


def _dummy_anchor(G: nx.DiGraph, a: str, b: str) -> str | None:
    """The spouse with parents, when the other one married into the tree."""
    roots = [p for p in (a, b) if G.in_degree(p) == 0]
    if len(roots) != 1:
        return None
    return b if roots[0] == a else a


def _to_dot(G: nx.DiGraph, options: LayoutOptions) -> tuple[pydot.Dot, dict[str, str]]:
    # dot ids are positional, so person ids never need quoting.
    names = {n: f"n{i}" for i, n in enumerate(G.nodes)}

    P = pydot.Dot(graph_type="digraph")
    P.set("rankdir", options.direction)
    P.set("splines", options.splines)
    P.set("nodesep", _inches(options.node_sep))
    P.set("ranksep", _inches(options.rank_sep))

    for n, attrs in G.nodes(data=True):
        w, h = options.node_size(attrs["node_type"])
        P.add_node(
            pydot.Node(
                names[n],
                label="",
                shape="box" if attrs["node_type"] == PERSON else "circle",
                fixedsize="true",
                width=_inches(w),
                height=_inches(h),
            )
        )

    for u, v, attrs in G.edges(data=True):
        minlen, weight = _EDGE_RULES.get(attrs.get("edge_type"), (1, 1))
        P.add_edge(pydot.Edge(names[u], names[v], minlen=str(minlen), weight=str(weight)))

    for i, (mid, (a, b)) in enumerate(_couples(G)):
        sg = pydot.Subgraph(f"couple_{i}", rank="same")
        sg.add_node(pydot.Node(names[a]))
        sg.add_node(pydot.Node(names[b]))
        sg.add_edge(pydot.Edge(names[a], names[b], style="invis", weight=str(_SPOUSE_WEIGHT)))

        anchor = _dummy_anchor(G, a, b) if options.marriage_dummies else None
        if anchor is not None:
            dummy = f"d{i}"
            sg.add_node(pydot.Node(dummy, label="", shape="point", width="0.01", height="0.01", style="invis"))
            sg.add_edge(pydot.Edge(names[anchor], dummy, style="invis", weight=str(_DUMMY_WEIGHT)))
            P.add_edge(pydot.Edge(dummy, names[mid], style="invis", minlen="1", weight=str(_DUMMY_WEIGHT)))
        P.add_subgraph(sg)

    return P, names


def _run_dot(G: nx.DiGraph, options: LayoutOptions) -> dict[str, tuple[float, float]]:
    """Return node id -> centre (x, y) from Graphviz, y growing downward."""
    P, names = _to_dot(G, options)
    try:
        raw = P.create(prog=options.prog, format="json0")
        doc = json.loads(raw)
    except (OSError, AssertionError, ValueError) as exc:
        # pydot reports a non-zero Graphviz exit status with an assert.
        raise LayoutError(f"graphviz {options.prog} failed: {exc}") from exc

    by_name: dict[str, tuple[float, float]] = {}
    for obj in doc.get("objects", []):
        if "pos" not in obj:
            continue
        x, y = (float(v) for v in obj["pos"].split(","))
        by_name[obj["name"]] = (x, -y)

    missing = [n for n, name in names.items() if name not in by_name]
    if missing:
        raise LayoutError(f"graphviz returned no position for {len(missing)} node(s)")
    return {n: by_name[name] for n, name in names.items()}


# ---------------------------------------------------------------------------
# Post-layout corrections
# ---------------------------------------------------------------------------
#
# These work on two axes: "across" runs along a row, "along" runs from one
# generation to the next. For TB that is (x, y); for LR it is (y, x).
# ``sizes`` holds (across, along) extents.


def _rows(along: dict[str, float]) -> list[list[str]]:
    rows: dict[float, list[str]] = {}
    for n, v in along.items():
        rows.setdefault(round(v, 1), []).append(n)
    return [rows[k] for k in sorted(rows)]


def _block_order(S: nx.Graph, across: dict[str, float]) -> list[str]:
    """Order a group of spouses so every couple ends up side by side."""
    members = sorted(S.nodes, key=lambda n: (across[n], n))
    is_path = nx.is_tree(S) and all(d <= 2 for _n, d in S.degree)
    if len(members) < 3 or not is_path:
        return members
    ends = [n for n in members if S.degree(n) == 1]
    return list(nx.dfs_preorder_nodes(S, ends[0]))


def _spouse_blocks(G: nx.DiGraph, persons: list[str], across: dict[str, float]) -> list[list[str]]:
    in_row = set(persons)
    S = nx.Graph()
    S.add_nodes_from(persons)
    for _mid, (a, b) in _couples(G):
        if a in in_row and b in in_row:
            S.add_edge(a, b)
    return [_block_order(S.subgraph(c), across) for c in nx.connected_components(S)]


def _block_width(block: list[str], sizes: dict[str, tuple[float, float]], node_sep: float) -> float:
    return sum(sizes[n][0] for n in block) + node_sep * (len(block) - 1)


def _block_centre(block: list[str], across: dict[str, float], sizes: dict[str, tuple[float, float]]) -> float:
    first, last = block[0], block[-1]
    return ((across[first] - sizes[first][0] / 2) + (across[last] + sizes[last][0] / 2)) / 2


def _place_block(
    block: list[str],
    centre: float,
    across: dict[str, float],
    sizes: dict[str, tuple[float, float]],
    node_sep: float,
) -> None:
    cursor = centre - _block_width(block, sizes, node_sep) / 2
    for n in block:
        w = sizes[n][0]
        across[n] = cursor + w / 2
        cursor += w + node_sep


def _resolve_overlaps(centres: list[float], widths: list[float], node_sep: float) -> list[float]:
    """Spread items (sorted by centre) so neighbours are node_sep apart.

    Averages a push-right and a push-left pass, so the row does not drift.
    """
    if len(centres) < 2:
        return list(centres)

    def _gap(i: int) -> float:
        return widths[i - 1] / 2 + node_sep + widths[i] / 2

    right = list(centres)
    for i in range(1, len(right)):
        right[i] = max(right[i], right[i - 1] + _gap(i))

    left = list(centres)
    for i in range(len(left) - 2, -1, -1):
        left[i] = min(left[i], left[i + 1] - _gap(i + 1))

    return [(r + l) / 2 for r, l in zip(right, left)]


def _child_anchor(G: nx.DiGraph, child: str) -> str | None:
    preds = list(G.predecessors(child))
    if not preds:
        return None
    for p in preds:
        if G.nodes[p]["node_type"] == MARRIAGE:
            return p
    return preds[0]


def _center_children(G: nx.DiGraph, blocks: list[list[str]], across: dict[str, float]) -> None:
    """Shift blocks so each sibling group is centred under its parents.

    A married-in spouse has no anchor and moves with the block it belongs to.
    """
    anchors = {n: _child_anchor(G, n) for block in blocks for n in block}
    siblings: dict[str, list[str]] = {}
    for n, anchor in anchors.items():
        if anchor is not None:
            siblings.setdefault(anchor, []).append(n)
    shift_for = {
        anchor: across[anchor] - sum(across[k] for k in kids) / len(kids)
        for anchor, kids in siblings.items()
    }

    for block in blocks:
        family = {anchors[n] for n in block if anchors[n] is not None}
        if not family:
            continue
        shift = sum(shift_for[a] for a in family) / len(family)
        for n in block:
            across[n] += shift


def _arrange_row(
    G: nx.DiGraph,
    row: list[str],
    across: dict[str, float],
    sizes: dict[str, tuple[float, float]],
    options: LayoutOptions,
) -> None:
    for n in row:
        if G.nodes[n]["node_type"] == MARRIAGE:
            a, b = G.nodes[n]["spouses"]
            across[n] = (across[a] + across[b]) / 2

    persons = [n for n in row if G.nodes[n]["node_type"] == PERSON]
    if not persons:
        return
    blocks = _spouse_blocks(G, persons, across)
    for block in blocks:
        centre = sum(across[n] for n in block) / len(block)
        _place_block(block, centre, across, sizes, options.node_sep)

    if options.center_children:
        _center_children(G, blocks, across)

    blocks.sort(key=lambda b: (_block_centre(b, across, sizes), b[0]))
    spread = _resolve_overlaps(
        [_block_centre(b, across, sizes) for b in blocks],
        [_block_width(b, sizes, options.node_sep) for b in blocks],
        options.node_sep,
    )
    for block, centre in zip(blocks, spread):
        _place_block(block, centre, across, sizes, options.node_sep)


def _align_spouse_rows(G: nx.DiGraph, along: dict[str, float]) -> None:
    for _mid, (a, b) in _couples(G):
        row = max(along[a], along[b])
        along[a] = along[b] = row


def _arrange(
    G: nx.DiGraph,
    centres: dict[str, tuple[float, float]],
    options: LayoutOptions,
) -> dict[str, tuple[float, float]]:
    """Apply the row corrections to engine centres; return top-left positions."""
    horizontal = options.direction == "LR"
    across: dict[str, float] = {}
    along: dict[str, float] = {}
    sizes: dict[str, tuple[float, float]] = {}
    for n, attrs in G.nodes(data=True):
        w, h = options.node_size(attrs["node_type"])
        cx, cy = centres[n]
        if horizontal:
            across[n], along[n], sizes[n] = cy, cx, (h, w)
        else:
            across[n], along[n], sizes[n] = cx, cy, (w, h)

    # Top-down, so each row sees its parents' final positions.
    for row in _rows(along):
        _arrange_row(G, row, across, sizes, options)
    if options.align_spouses:
        _align_spouse_rows(G, along)

    positions: dict[str, tuple[float, float]] = {}
    for n, attrs in G.nodes(data=True):
        w, h = options.node_size(attrs["node_type"])
        cx, cy = (along[n], across[n]) if horizontal else (across[n], along[n])
        positions[n] = (cx - w / 2, cy - h / 2)

    min_x = min(p[0] for p in positions.values())
    min_y = min(p[1] for p in positions.values())
    return {n: (round(px - min_x, 2), round(py - min_y, 2)) for n, (px, py) in positions.items()}


def layout_family_graph(
    G: nx.DiGraph,
    options: LayoutOptions | None = None,
) -> dict[str, tuple[float, float]]:
    """Return node id -> top-left (x, y) for every node of ``G``.

    Raises LayoutError when Graphviz is missing or fails.
    """
    options = options or LayoutOptions()
    if G.number_of_nodes() == 0:
        return {}
    return _arrange(G, _run_dot(G, options), options)


def layout_payload(G: nx.DiGraph, options: LayoutOptions | None = None) -> dict[str, Any]:
    options = options or LayoutOptions()
    positions = layout_family_graph(G, options)
    sizes = {n: options.node_size(attrs["node_type"]) for n, attrs in G.nodes(data=True)}
    return graph_payload(G, positions, sizes)
