"""Connection graph derived from the ``connected_to`` frontmatter field.

The structure is a :mod:`networkx` ``DiGraph``. Targets that are not in the
corpus are kept as placeholder nodes (``missing=True``) because connections
are only a best-effort hint: dangling and one-sided edges are reported, never
rejected. :func:`build_graph_chart` renders the same node/edge list with
:mod:`altair` for notebook or browser display.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Iterable

import networkx as nx

from kg.errors import KGError, PerFileError, ValidationError

if TYPE_CHECKING:
    import altair as alt

    from kg.note import Note
    from kg.store import Corpus, NoteStore

logger = logging.getLogger(__name__)

CONNECTIONS_KEY = "connected_to"

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <title>Knowledge Graph Visualization</title>
    <script src="https://d3js.org/d3.v5.min.js"></script>
    <script src="https://unpkg.com/@hpcc-js/wasm@0.3.11/dist/index.min.js"></script>
    <script src="https://unpkg.com/d3-graphviz@3.0.5/build/d3-graphviz.js"></script>
</head>
<body>
    <div id="graph" style="text-align: center;"></div>
    <script>
        d3.select("#graph").graphviz().renderDot(__DOT__);
    </script>
</body>
</html>
"""


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class ConnectionGraph:
    """Read-only graph view over one loaded corpus."""

    def __init__(self, corpus: "Corpus") -> None:
        self.corpus = corpus
        self._position = {note_id: i for i, note_id in enumerate(corpus.notes)}
        self.graph: nx.DiGraph = nx.DiGraph()
        for note in corpus:
            self.graph.add_node(note.id, title=note.title, tags=list(note.tags), missing=False)
        for src, tgt in self.edges():
            if tgt not in self.graph:
                self.graph.add_node(tgt, title=tgt, tags=[], missing=True)
            self.graph.add_edge(src, tgt)

    # ------------------------------------------------------------------
    # Edges and degrees
    # ------------------------------------------------------------------

    def edges(self, *, unique: bool = False) -> list[tuple[str, str]]:
        """Return ``(source_id, target_id)`` for every connection entry.

        This is a literal dump: dangling targets and repeated entries are
        included unless *unique* is set.
        """
        result: list[tuple[str, str]] = []
        for note in self.corpus:
            for target in note.connections:
                edge = (note.id, target)
                if unique and edge in result:
                    continue
                result.append(edge)
        return result

    def out_degree(self, note_id: str) -> int:
        return len(self.corpus.get(note_id).connections)

    def most_connected(self, k: int) -> list["Note"]:
        """Top *k* notes by out-degree; ties keep corpus order."""
        ranked = sorted(self.corpus, key=lambda n: len(n.connections), reverse=True)
        return ranked[: max(k, 0)]

    def backlinks(self, note_id: str) -> list[str]:
        """Ids of notes whose connections include *note_id*, in corpus order."""
        if note_id not in self.graph:
            return []
        sources = self.graph.predecessors(note_id)
        return sorted(sources, key=lambda s: self._position.get(s, len(self._position)))

    def dangling(self) -> list[tuple[str, str]]:
        """Edges whose target is not a note in the corpus."""
        return [(s, t) for s, t in self.edges(unique=True) if t not in self.corpus]

    def asymmetric(self) -> list[tuple[str, str]]:
        """Edges to an existing note that does not connect back."""
        return [
            (s, t)
            for s, t in self.edges(unique=True)
            if t in self.corpus and s != t and not self.graph.has_edge(t, s)
        ]

    # ------------------------------------------------------------------
    # Graph description
    # ------------------------------------------------------------------

    def _included(self, filter_tags: Iterable[str]) -> list["Note"]:
        wanted = set(filter_tags)
        if not wanted:
            return list(self.corpus)
        return [n for n in self.corpus if wanted.intersection(n.tags)]

    def to_dot(self, filter_tags: Iterable[str] = (), layout: str = "dot") -> str:
        """Directed-graph text: one box node per included note, one edge per connection."""
        lines = ["digraph KnowledgeGraph {", f"  layout={layout};"]
        included = self._included(filter_tags)
        for note in included:
            lines.append(f"  {_quote(note.id)} [label={_quote(note.title)}, shape=box];")
        for note in included:
            for target in note.connections:
                lines.append(f"  {_quote(note.id)} -> {_quote(target)};")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def to_html(self, filter_tags: Iterable[str] = (), layout: str = "dot") -> str:
        """Standalone page rendering :meth:`to_dot` output with d3-graphviz."""
        dot = json.dumps(self.to_dot(filter_tags, layout)).replace("</", "<\\/")
        return _HTML_TEMPLATE.replace("__DOT__", dot)


# ---------------------------------------------------------------------------
# Chart
# ---------------------------------------------------------------------------


def build_graph_chart(
    graph: ConnectionGraph,
    *,
    highlight: str | None = None,
    width: int = 640,
    height: int = 480,
    seed: int = 42,
) -> "alt.LayerChart":
    """Return an Altair force-directed chart of the connection graph.

    Parameters
    ----------
    graph:
        A :class:`ConnectionGraph` built from a loaded corpus.
    highlight:
        Id of the currently-selected note (rendered in a distinct colour).
    width / height:
        Canvas dimensions in pixels.
    seed:
        Random seed passed to ``networkx.spring_layout`` for reproducible
        positioning.
    """
    import altair as alt
    import polars as pl

    g = graph.graph
    pos: dict[str, Any] = nx.spring_layout(g, seed=seed) if len(g) else {}

    def _state(node_id: str) -> str:
        if node_id == highlight:
            return "selected"
        return "missing" if g.nodes[node_id]["missing"] else "note"

    node_schema = {"id": pl.Utf8, "title": pl.Utf8, "x": pl.Float64, "y": pl.Float64, "out_degree": pl.Int64, "state": pl.Utf8}
    nodes_df = pl.DataFrame(
        [
            {
                "id": node_id,
                "title": g.nodes[node_id]["title"],
                "x": float(pos[node_id][0]),
                "y": float(pos[node_id][1]),
                "out_degree": int(g.out_degree(node_id)),
                "state": _state(node_id),
            }
            for node_id in g.nodes()
        ],
        schema=node_schema,
    )
    edge_schema = {"source": pl.Utf8, "target": pl.Utf8, "x": pl.Float64, "y": pl.Float64, "x2": pl.Float64, "y2": pl.Float64}
    edges_df = pl.DataFrame(
        [
            {
                "source": src,
                "target": tgt,
                "x": float(pos[src][0]),
                "y": float(pos[src][1]),
                "x2": float(pos[tgt][0]),
                "y2": float(pos[tgt][1]),
            }
            for src, tgt in g.edges()
        ],
        schema=edge_schema,
    )

    x = alt.X("x:Q", axis=None)
    y = alt.Y("y:Q", axis=None)
    edge_layer = (
        alt.Chart(edges_df)
        .mark_rule(color="#888", strokeWidth=1, opacity=0.55 if len(edges_df) else 0)
        .encode(
            x=x,
            y=y,
            x2="x2:Q",
            y2="y2:Q",
            tooltip=[alt.Tooltip("source:N", title="from"), alt.Tooltip("target:N", title="to")],
        )
    )
    node_layer = (
        alt.Chart(nodes_df)
        .mark_circle(opacity=0.9)
        .encode(
            x=x,
            y=y,
            size=alt.Size("out_degree:Q", scale=alt.Scale(range=[80, 400]), legend=None),
            color=alt.Color(
                "state:N",
                scale=alt.Scale(domain=["note", "missing", "selected"], range=["#4B90D9", "#BBBBBB", "#7C3AED"]),
                legend=None,
            ),
            tooltip=[alt.Tooltip("title:N", title="note"), alt.Tooltip("id:N", title="id")],
        )
    )
    label_layer = (
        alt.Chart(nodes_df)
        .mark_text(dy=-12, fontSize=11)
        .encode(x=x, y=y, text="title:N")
    )

    return (
        (edge_layer + node_layer + label_layer)
        .properties(width=width, height=height)
        .configure_view(strokeWidth=0)
    )


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------


def connect(
    store: "NoteStore",
    a: str,
    b: str,
    *,
    summary: str | None = None,
    today: date | None = None,
) -> str | None:
    """Record a connection between notes *a* and *b* in both notes' frontmatter.

    Phase one writes ``b`` into ``a``, phase two writes ``a`` into ``b``; the
    two writes are not atomic and :func:`reconcile` repairs a half-done pair.
    A side that already lists the other is left alone. When *summary* (text
    from an external generator) is given, a ``<a>-<b>-connection`` note holding
    it is created first and its id returned.
    """
    a_id = store.resolve(a)
    b_id = store.resolve(b)
    if a_id == b_id:
        raise ValidationError("a note cannot be connected to itself", field=CONNECTIONS_KEY, note_id=a_id)

    created: str | None = None
    if summary is not None:
        created = store.create(
            f"{a_id}-{b_id}-connection",
            tags=[a_id, b_id],
            body=summary,
            today=today,
            extra={"connects": [a_id, b_id]},
        )

    for src, dst in ((a_id, b_id), (b_id, a_id)):
        if dst in store.read(src).connections:
            logger.debug("Note %s already connects to %s", src, dst)
            continue
        store.update_field(src, CONNECTIONS_KEY, dst)

    logger.info("Connected %s <-> %s", a_id, b_id)
    return created


@dataclass
class ReconcileResult:
    repaired: list[tuple[str, str]] = field(default_factory=list)
    errors: list[PerFileError] = field(default_factory=list)


def reconcile(store: "NoteStore") -> ReconcileResult:
    """Add the missing reverse entry for every one-sided connection."""
    loaded = store.load()
    result = ReconcileResult(errors=list(loaded.errors))
    for src, dst in ConnectionGraph(loaded.corpus).asymmetric():
        try:
            store.update_field(dst, CONNECTIONS_KEY, src)
        except (KGError, OSError) as exc:
            error = PerFileError(store.path_for(dst), exc)
            logger.warning("Could not repair %s -> %s: %s", dst, src, error)
            result.errors.append(error)
            continue
        result.repaired.append((dst, src))
    logger.info("Reconciled %d one-sided connections", len(result.repaired))
    return result
