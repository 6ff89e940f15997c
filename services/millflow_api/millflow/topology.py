"""
Flowsheet graph analysis.

The graph is an arena of unit nodes (addressed by index) plus an index-based
edge list, so the cyclic flowsheet never needs object references between
units.  Resolution runs in three steps:

  1. Tarjan's algorithm finds the strongly connected components (recycles)
  2. Tear streams are chosen per component until it becomes acyclic
  3. Kahn's algorithm orders the remaining DAG
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from loguru import logger

from . import schemas
from .errors import Issue, StructuralError
from .registry import lookup


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Edge:
    """A directed stream in the flowsheet graph."""

    index: int
    stream_id: str
    source: Optional[int]  # None = feed stream
    source_port: Optional[str]
    target: Optional[int]  # None = product stream
    target_port: Optional[str]
    recycle: bool = False

    @property
    def internal(self) -> bool:
        return self.source is not None and self.target is not None


@dataclass
class FlowsheetGraph:
    unit_ids: List[str]
    unit_types: List[str]
    unit_params: List[Dict[str, Any]]
    edges: List[Edge]
    # Problems found while building (dangling endpoints ...)
    issues: List[Issue] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._index = {uid: i for i, uid in enumerate(self.unit_ids)}

    def index_of(self, unit_id: str) -> Optional[int]:
        return self._index.get(unit_id)

    @property
    def internal_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.internal]

    def inlets_of(self, unit: int) -> Dict[str, str]:
        """port -> stream id for every edge entering ``unit``."""
        return {e.target_port: e.stream_id for e in self.edges if e.target == unit}

    def outlets_of(self, unit: int) -> Dict[str, str]:
        return {e.source_port: e.stream_id for e in self.edges if e.source == unit}

    @property
    def feed_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.source is None]

    @property
    def product_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.target is None]

    # ------------------------------------------------------------------
    # Build from payload
    # ------------------------------------------------------------------

    @classmethod
    def from_payload(cls, payload: schemas.FlowsheetPayload) -> "FlowsheetGraph":
        """Parse a FlowsheetPayload into the index-based graph.

        Missing port names are filled in from the unit class's declared
        ports, in declaration order, skipping ports claimed explicitly.
        """
        unit_ids = [u.id for u in payload.units]
        unit_types = [u.type for u in payload.units]
        unit_params = [dict(u.parameters) for u in payload.units]
        # Duplicate ids resolve to the first declaration; validation reports them
        index: Dict[str, int] = {}
        for i, uid in enumerate(unit_ids):
            index.setdefault(uid, i)
        issues: List[Issue] = []

        def resolve(uid: Optional[str], stream_id: str, role: str) -> Optional[int]:
            if uid is None:
                return None
            idx = index.get(uid)
            if idx is None:
                issues.append(Issue(
                    "dangling_endpoint",
                    f"{role} unit '{uid}' does not exist",
                    stream_id=stream_id,
                ))
            return idx

        endpoints = []
        claimed_in: Dict[int, Set[str]] = defaultdict(set)
        claimed_out: Dict[int, Set[str]] = defaultdict(set)
        for spec in payload.streams:
            src = resolve(spec.source, spec.id, "source")
            dst = resolve(spec.target, spec.id, "target")
            if src is not None and spec.source_port:
                claimed_out[src].add(spec.source_port)
            if dst is not None and spec.target_port:
                claimed_in[dst].add(spec.target_port)
            endpoints.append((spec, src, dst))

        edges: List[Edge] = []
        for i, (spec, src, dst) in enumerate(endpoints):
            src_port = spec.source_port
            if src is not None and not src_port:
                src_port = _next_default_port(unit_types[src], unit_params[src], claimed_out[src], "outlet")
                claimed_out[src].add(src_port)
            dst_port = spec.target_port
            if dst is not None and not dst_port:
                dst_port = _next_default_port(unit_types[dst], unit_params[dst], claimed_in[dst], "inlet")
                claimed_in[dst].add(dst_port)
            edges.append(Edge(
                index=i,
                stream_id=spec.id,
                source=src,
                source_port=src_port if src is not None else None,
                target=dst,
                target_port=dst_port if dst is not None else None,
                recycle=spec.recycle,
            ))

        return cls(
            unit_ids=unit_ids,
            unit_types=unit_types,
            unit_params=unit_params,
            edges=edges,
            issues=issues,
        )


def _next_default_port(unit_type: str, params: Mapping[str, Any], claimed: Set[str], direction: str) -> str:
    """Return the first declared port of the unit class not yet claimed.

    For a washer with two incoming edges both missing a port, the first call
    returns "pulp" and the second "wash".
    """
    cls = lookup(unit_type)
    if cls is None:
        return "in" if direction == "inlet" else "out"

    if direction == "inlet":
        if cls.variable_inlets:
            k = 1
            while f"in-{k}" in claimed:
                k += 1
            return f"in-{k}"
        ports = tuple(cls.required_inlets(params)) + tuple(cls.optional_inlets)
    else:
        ports = tuple(cls.declared_outlets(params))

    for port in ports:
        if port not in claimed:
            return port
    # Exhausted: reuse the first port so validation reports the collision
    if ports:
        return ports[0]
    return "in" if direction == "inlet" else "out"


# ---------------------------------------------------------------------------
# Graph algorithms
# ---------------------------------------------------------------------------


def strongly_connected(nodes: Iterable[int], adj: Mapping[int, List[int]]) -> List[List[int]]:
    """Tarjan's algorithm, iterative so deep flowsheets cannot hit the recursion limit.

    Components come out in reverse topological order; nodes within a
    component are sorted.
    """
    index_counter = 0
    index: Dict[int, int] = {}
    lowlink: Dict[int, int] = {}
    on_stack: Set[int] = set()
    stack: List[int] = []
    sccs: List[List[int]] = []

    for root in nodes:
        if root in index:
            continue
        work: List[Tuple[int, int]] = [(root, 0)]
        while work:
            v, child_i = work.pop()
            if child_i == 0:
                index[v] = lowlink[v] = index_counter
                index_counter += 1
                stack.append(v)
                on_stack.add(v)
            children = adj.get(v, [])
            recurse = False
            while child_i < len(children):
                w = children[child_i]
                child_i += 1
                if w not in index:
                    work.append((v, child_i))
                    work.append((w, 0))
                    recurse = True
                    break
                if w in on_stack:
                    lowlink[v] = min(lowlink[v], index[w])
            if recurse:
                continue
            if lowlink[v] == index[v]:
                component: List[int] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    component.append(w)
                    if w == v:
                        break
                sccs.append(sorted(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[v])

    return sccs


def _adjacency(edges: Iterable[Edge], skip: Set[int] = frozenset()) -> Dict[int, List[int]]:
    adj: Dict[int, List[int]] = defaultdict(list)
    for e in edges:
        if e.index in skip or not e.internal:
            continue
        adj[e.source].append(e.target)
    return adj


def _cyclic_nodes(nodes: List[int], edges: List[Edge], torn: Set[int]) -> Set[int]:
    """Nodes that still sit on a cycle once ``torn`` edges are removed."""
    adj = _adjacency(edges, torn)
    cyclic: Set[int] = set()
    for comp in strongly_connected(nodes, adj):
        if len(comp) > 1 or comp[0] in adj.get(comp[0], []):
            cyclic.update(comp)
    return cyclic


def recycle_components(graph: FlowsheetGraph) -> List[List[int]]:
    """Strongly connected components that contain a cycle (incl. self-loops)."""
    n = len(graph.unit_ids)
    adj = _adjacency(graph.edges)
    comps = strongly_connected(range(n), adj)
    cyclic = [c for c in comps if len(c) > 1 or c[0] in adj.get(c[0], [])]
    return sorted(cyclic, key=lambda c: c[0])


def _enters_soft_inlet(graph: FlowsheetGraph, edge: Edge) -> bool:
    """Edges into a mixer or an optional inlet make forgiving tear streams."""
    cls = lookup(graph.unit_types[edge.target])
    if cls is None:
        return False
    return cls.variable_inlets or edge.target_port in cls.optional_inlets


def select_tear_streams(graph: FlowsheetGraph, sccs: List[List[int]]) -> List[Edge]:
    """Choose a minimal set of edges whose removal makes every SCC acyclic.

    Per component: tear the edges tagged ``recycle`` first, then greedily the
    edge that leaves the fewest units on a cycle, and finally drop any tear
    the component can do without.  Ties go to edges entering a mixer or an
    optional inlet (whitewater, dilution, wash), then to the edge declared
    first.
    """
    tears: List[Edge] = []
    for scc in sccs:
        members = set(scc)
        internal = [e for e in graph.edges if e.internal and e.source in members and e.target in members]
        torn: Set[int] = {e.index for e in internal if e.recycle}

        remaining = _cyclic_nodes(scc, internal, torn)
        while remaining:
            candidates = [
                e for e in internal
                if e.index not in torn and e.source in remaining and e.target in remaining
            ]
            if not candidates:
                break
            best = min(
                candidates,
                key=lambda e: (
                    len(_cyclic_nodes(scc, internal, torn | {e.index})),
                    not _enters_soft_inlet(graph, e),
                    e.index,
                ),
            )
            torn.add(best.index)
            remaining = _cyclic_nodes(scc, internal, torn)

        # Redundancy pass: untagged tears first, then tears into fixed
        # inlets, latest choices first
        by_index = {e.index: e for e in internal}
        for idx in sorted(
            torn,
            key=lambda i: (by_index[i].recycle, _enters_soft_inlet(graph, by_index[i]), -i),
        ):
            trial = torn - {idx}
            if not _cyclic_nodes(scc, internal, trial):
                torn = trial

        tears.extend(by_index[i] for i in sorted(torn))

    return sorted(tears, key=lambda e: e.index)


def evaluation_order(graph: FlowsheetGraph, tears: Iterable[Edge]) -> List[int]:
    """Kahn's algorithm over the graph minus tear edges.

    Ready units are taken in declaration order so the schedule is
    reproducible.  Raises StructuralError if a cycle survives the tears.
    """
    n = len(graph.unit_ids)
    torn = {e.index for e in tears}
    adj = _adjacency(graph.edges, torn)
    in_degree = [0] * n
    for targets in adj.values():
        for v in targets:
            in_degree[v] += 1

    ready = [u for u in range(n) if in_degree[u] == 0]
    heapq.heapify(ready)
    order: List[int] = []
    while ready:
        u = heapq.heappop(ready)
        order.append(u)
        for v in adj.get(u, []):
            in_degree[v] -= 1
            if in_degree[v] == 0:
                heapq.heappush(ready, v)

    if len(order) < n:
        stuck = [graph.unit_ids[u] for u in range(n) if u not in set(order)]
        raise StructuralError([
            Issue("no_total_order", f"units {stuck} remain on an unresolved cycle")
        ])
    return order


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TopologyPlan:
    order: List[str]
    tear_streams: List[str]
    recycles: List[List[str]]
    feed_streams: List[str]
    product_streams: List[str]


def resolve(graph: FlowsheetGraph) -> TopologyPlan:
    """Compute tear streams and the evaluation order of ``graph``."""
    sccs = recycle_components(graph)
    tears = select_tear_streams(graph, sccs)
    order = evaluation_order(graph, tears)

    if tears:
        logger.info(
            "{} recycle loop(s) detected, tear streams: {}",
            len(sccs), [e.stream_id for e in tears],
        )

    return TopologyPlan(
        order=[graph.unit_ids[u] for u in order],
        tear_streams=[e.stream_id for e in tears],
        recycles=[[graph.unit_ids[u] for u in scc] for scc in sccs],
        feed_streams=[e.stream_id for e in graph.feed_edges],
        product_streams=[e.stream_id for e in graph.product_edges],
    )
