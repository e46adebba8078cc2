"""Graph compiler: editable WorkflowGraph -> immutable ExecutionGraph.

Compilation validates the structure (unknown endpoints, cycles, orphans,
entry nodes, fan-out regions) with NetworkX and precomputes everything the
edge walker needs at runtime:

- node and edge lookup tables, outgoing/incoming edge ids per node
- entry nodes (no incoming edges) and terminal nodes (no outgoing edges)
- required-predecessor count per node
- for every splitter, its branch region and the collectors it feeds

An ExecutionGraph is frozen; editing a graph means compiling a new one.
"""

from __future__ import annotations

import logging
from collections import deque

import networkx as nx
from pydantic import BaseModel, ConfigDict

from stitch.core.errors import GraphValidationError, NotFoundError
from stitch.core.graph_schema import (
    CollectorNode,
    Edge,
    EdgeKind,
    JourneyCanvas,
    Node,
    SplitterNode,
    UXNode,
    WorkflowGraph,
)

logger = logging.getLogger(__name__)


class ExecutionGraph(BaseModel):
    """Compiled, lookup-optimized graph. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    graph_id: str
    name: str
    nodes: dict[str, Node]
    edges: dict[str, Edge]
    outgoing: dict[str, list[str]]  # node id -> edge ids, declaration order
    incoming: dict[str, list[str]]
    entry_nodes: list[str]
    terminal_nodes: list[str]
    required_counts: dict[str, int]
    # splitter id -> node ids between it and its collectors (topological order)
    branch_regions: dict[str, list[str]]
    # splitter id -> {collector id: arrivals each branch delivers to it}
    splitter_collectors: dict[str, dict[str, int]]
    # region node id -> owning splitter id
    region_of: dict[str, str]

    def node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise NotFoundError(f"Node '{node_id}' not found in graph '{self.graph_id}'") from None

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [self.edges[edge_id] for edge_id in self.outgoing.get(node_id, [])]

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return [self.edges[edge_id] for edge_id in self.incoming.get(node_id, [])]

    def static_nodes(self) -> list[str]:
        """Nodes that get a NodeState at run start (branch instances are created lazily)."""
        return [node_id for node_id in self.nodes if node_id not in self.region_of]


def _structural_errors(graph: WorkflowGraph) -> list[str]:
    """Duplicate ids, dangling edges and malformed mappings."""
    errors = []

    if not graph.nodes:
        errors.append("Graph has no nodes")

    seen_node_ids = set()
    for node in graph.nodes:
        if node.id in seen_node_ids:
            errors.append(f"Duplicate node ID: '{node.id}'")
        seen_node_ids.add(node.id)

    seen_edge_ids = set()
    seen_pairs = set()
    for edge in graph.edges:
        if edge.id in seen_edge_ids:
            errors.append(f"Duplicate edge ID: '{edge.id}'")
        seen_edge_ids.add(edge.id)

        pair = (edge.source, edge.target)
        if pair in seen_pairs:
            errors.append(f"Duplicate edge from '{edge.source}' to '{edge.target}'")
        seen_pairs.add(pair)

        if edge.source not in seen_node_ids:
            errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
        if edge.target not in seen_node_ids:
            errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
        if edge.kind == EdgeKind.JOURNEY:
            errors.append(f"Edge {edge.id}: journey edges belong on a canvas, not a workflow")

        for target_field, source_path in edge.mapping.items():
            if not target_field.strip() or not source_path.strip():
                errors.append(f"Edge {edge.id}: mapping entries need a target field and a source path")

    return errors


def _analyze_regions(
    G: nx.DiGraph, nodes: dict[str, Node]
) -> tuple[dict[str, list[str]], dict[str, dict[str, int]], dict[str, str], list[str]]:
    """Walk from each splitter to the collectors that close its fan-out.

    Everything reachable from a splitter before hitting a collector is the
    splitter's branch region; those nodes run once per array element.
    """
    errors = []
    regions: dict[str, list[str]] = {}
    pairs: dict[str, dict[str, int]] = {}
    region_of: dict[str, str] = {}
    order = {node_id: i for i, node_id in enumerate(nx.topological_sort(G))}

    for splitter_id, node in nodes.items():
        if not isinstance(node, SplitterNode):
            continue
        if G.out_degree(splitter_id) == 0:
            errors.append(f"Splitter '{splitter_id}' has no outgoing edges")
            continue

        region: set[str] = set()
        collectors: set[str] = set()
        queue = deque(G.successors(splitter_id))
        while queue:
            current = queue.popleft()
            if current in region or current in collectors:
                continue
            if isinstance(nodes[current], CollectorNode):
                collectors.add(current)
                continue
            region.add(current)
            queue.extend(G.successors(current))

        if not collectors:
            errors.append(f"Splitter '{splitter_id}' does not reach a Collector")

        for region_node in sorted(region, key=order.get):
            if isinstance(nodes[region_node], SplitterNode):
                errors.append(
                    f"Splitter '{region_node}' is nested inside the branches of '{splitter_id}'"
                )
            if G.out_degree(region_node) == 0:
                errors.append(
                    f"Node '{region_node}' ends a branch of splitter '{splitter_id}' "
                    f"without reaching a Collector"
                )
            outside = [
                p for p in G.predecessors(region_node) if p != splitter_id and p not in region
            ]
            if outside:
                errors.append(
                    f"Node '{region_node}' in the branches of '{splitter_id}' has "
                    f"predecessors outside them: {', '.join(sorted(outside))}"
                )
            if region_node in region_of:
                errors.append(
                    f"Node '{region_node}' belongs to the branches of both "
                    f"'{region_of[region_node]}' and '{splitter_id}'"
                )
            region_of.setdefault(region_node, splitter_id)

        members = region | {splitter_id}
        pairs[splitter_id] = {}
        for collector_id in sorted(collectors):
            sources = list(G.predecessors(collector_id))
            if any(s not in members for s in sources):
                errors.append(
                    f"Collector '{collector_id}' mixes branches of '{splitter_id}' with other inputs"
                )
            if nodes[collector_id].config.expected_count is None:
                errors.append(
                    f"Collector '{collector_id}' fed by splitter '{splitter_id}' "
                    f"must declare expected_count"
                )
            pairs[splitter_id][collector_id] = sum(1 for s in sources if s in members)

        regions[splitter_id] = sorted(region, key=order.get)

    return regions, pairs, region_of, errors


def compile_graph(graph: WorkflowGraph) -> ExecutionGraph:
    """Validate ``graph`` and freeze it into an ExecutionGraph.

    Raises:
        GraphValidationError: listing every problem found.
    """
    errors = _structural_errors(graph)
    if errors:
        raise GraphValidationError(errors)

    nodes = graph.node_map()
    G = graph._to_networkx()

    try:
        cycle = nx.find_cycle(G)
        cycle_path = " -> ".join([edge[0] for edge in cycle] + [cycle[-1][1]])
        raise GraphValidationError([f"Cycle detected: {cycle_path}"])
    except nx.NetworkXNoCycle:
        pass

    if len(nodes) > 1:
        for node_id in nodes:
            if G.in_degree(node_id) == 0 and G.out_degree(node_id) == 0:
                errors.append(f"Node '{node_id}' is orphaned (no incoming or outgoing edges)")

    entry_nodes = [n.id for n in graph.nodes if G.in_degree(n.id) == 0]
    terminal_nodes = [n.id for n in graph.nodes if G.out_degree(n.id) == 0]
    if not entry_nodes:
        errors.append("Graph has no entry nodes")

    reachable = set(entry_nodes)
    for entry in entry_nodes:
        reachable |= nx.descendants(G, entry)
    for node_id in nodes:
        if node_id not in reachable:
            errors.append(f"Node '{node_id}' is not reachable from any entry node")

    regions, pairs, region_of, region_errors = _analyze_regions(G, nodes)
    errors.extend(region_errors)
    paired = {c for collectors in pairs.values() for c in collectors}

    required_counts = {}
    for node_id, node in nodes.items():
        in_degree = G.in_degree(node_id)
        if in_degree == 0:
            required_counts[node_id] = 0
        elif isinstance(node, CollectorNode) and node.config.expected_count is not None:
            if node_id not in paired and node.config.expected_count > in_degree:
                errors.append(
                    f"Collector '{node_id}' expects {node.config.expected_count} arrivals "
                    f"but has only {in_degree} incoming edges"
                )
            required_counts[node_id] = node.config.expected_count
        else:
            required_counts[node_id] = in_degree

    if errors:
        raise GraphValidationError(errors)

    outgoing: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    incoming: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    for edge in graph.edges:
        outgoing[edge.source].append(edge.id)
        incoming[edge.target].append(edge.id)

    logger.debug(
        f"Compiled graph {graph.id}: {len(nodes)} nodes, entries={entry_nodes}, "
        f"terminals={terminal_nodes}"
    )
    return ExecutionGraph(
        graph_id=graph.id,
        name=graph.name,
        nodes=nodes,
        edges={edge.id: edge for edge in graph.edges},
        outgoing=outgoing,
        incoming=incoming,
        entry_nodes=entry_nodes,
        terminal_nodes=terminal_nodes,
        required_counts=required_counts,
        branch_regions=regions,
        splitter_collectors=pairs,
        region_of=region_of,
    )


def validate_canvas(canvas: JourneyCanvas) -> list[str]:
    """Check a journey canvas. Returns a list of errors (empty when valid)."""
    errors = []
    nodes = {}
    for node in canvas.nodes:
        if node.id in nodes:
            errors.append(f"Duplicate node ID: '{node.id}'")
        nodes[node.id] = node

    outgoing_journey: dict[str, int] = {}
    for edge in canvas.edges:
        if edge.source not in nodes:
            errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            continue
        if edge.target not in nodes:
            errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            continue
        if edge.kind != EdgeKind.JOURNEY:
            continue
        if not isinstance(nodes[edge.source], UXNode) or not isinstance(nodes[edge.target], UXNode):
            errors.append(f"Journey edge {edge.id} must connect two UX nodes")
        outgoing_journey[edge.source] = outgoing_journey.get(edge.source, 0) + 1

    for node_id, count in outgoing_journey.items():
        if count > 1:
            errors.append(
                f"UX node '{node_id}' has {count} outgoing journey edges; the spine allows one"
            )

    for ux_node_id in canvas.system_paths:
        if not isinstance(nodes.get(ux_node_id), UXNode):
            errors.append(f"System path mapped to '{ux_node_id}', which is not a UX node")

    return errors


def check_canvas(canvas: JourneyCanvas) -> JourneyCanvas:
    """Raise GraphValidationError if the canvas is invalid, else return it."""
    errors = validate_canvas(canvas)
    if errors:
        raise GraphValidationError(errors)
    return canvas
