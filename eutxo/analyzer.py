"""Structural pattern detection.

Pure computation, no I/O. Operates on a finished (classified) StateGraph
to produce a PatternReport: the dominant shape plus supporting metrics.
Read-only; the graph is not modified.
"""

from __future__ import annotations

from collections import Counter, deque

from eutxo import ContractPattern, PatternReport, StateGraph, UtxoRef

WHITE, GREY, BLACK = 0, 1, 2


def detect_pattern(graph: StateGraph) -> PatternReport:
    """Classify the graph's shape and compute its metrics.

    Rules, first match wins:
    - UNKNOWN: fewer than two nodes
    - CYCLE: some node reaches itself
    - DISCONNECTED: more than one weakly connected component
    - LINEAR: every node has at most one incoming and one outgoing edge
    - TREE: every node has at most one incoming edge, some branch
    - UNKNOWN: anything else (merge points outside a cycle)
    """
    nodes = list(graph.nodes)
    if not nodes:
        return _empty_report()

    node_count = len(nodes)
    edge_count = len(graph.edges)
    adjacency = _adjacency(graph)
    out_degrees = graph.out_degrees()
    in_degrees = graph.in_degrees()
    max_out = max(out_degrees.values())
    max_in = max(in_degrees.values())

    cycle_members = find_cycle_members(nodes, adjacency)
    component_count = count_components(graph)
    max_depth = 0 if cycle_members else _longest_path(nodes, adjacency, in_degrees)

    class_counts = dict(Counter(n.classification.value for n in graph.nodes.values()))

    if node_count < 2:
        pattern = ContractPattern.UNKNOWN
    elif cycle_members:
        pattern = ContractPattern.CYCLE
    elif component_count > 1:
        pattern = ContractPattern.DISCONNECTED
    elif max_in <= 1 and max_out <= 1:
        pattern = ContractPattern.LINEAR
    elif max_in <= 1:
        pattern = ContractPattern.TREE
    else:
        pattern = ContractPattern.UNKNOWN

    return PatternReport(
        pattern=pattern,
        node_count=node_count,
        edge_count=edge_count,
        max_out_degree=max_out,
        max_in_degree=max_in,
        component_count=component_count,
        cycle_members=frozenset(cycle_members),
        branching_factor=round(edge_count / node_count, 2),
        max_depth=max_depth,
        class_counts=class_counts,
    )


def find_cycle_members(
    nodes: list[UtxoRef], adjacency: dict[UtxoRef, list[UtxoRef]]
) -> set[UtxoRef]:
    """Return every node that lies on some directed cycle.

    Iterative DFS with white/grey/black colouring finds back edges; each
    back edge seeds its strongly connected component so that members only
    reachable through already-finished nodes are included too.
    """
    color = dict.fromkeys(nodes, WHITE)
    seeds: list[UtxoRef] = []

    for root in nodes:
        if color[root] != WHITE:
            continue
        color[root] = GREY
        path = [root]
        stack = [iter(adjacency[root])]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = BLACK
                stack.pop()
            elif color[child] == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append(iter(adjacency[child]))
            elif color[child] == GREY:
                seeds.append(child)

    if not seeds:
        return set()

    reverse: dict[UtxoRef, list[UtxoRef]] = {ref: [] for ref in nodes}
    for source, targets in adjacency.items():
        for target in targets:
            reverse[target].append(source)

    members: set[UtxoRef] = set()
    for seed in seeds:
        if seed in members:
            continue
        members |= _reachable(seed, adjacency) & _reachable(seed, reverse)
    return members


def count_components(graph: StateGraph) -> int:
    """Number of weakly connected components."""
    neighbours: dict[UtxoRef, set[UtxoRef]] = {ref: set() for ref in graph.nodes}
    for edge in graph.edges:
        neighbours[edge.source].add(edge.target)
        neighbours[edge.target].add(edge.source)

    seen: set[UtxoRef] = set()
    components = 0
    for ref in graph.nodes:
        if ref in seen:
            continue
        components += 1
        seen |= _reachable(ref, neighbours)
    return components


# ── Helpers ───────────────────────────────────────────────────────────────────


def _adjacency(graph: StateGraph) -> dict[UtxoRef, list[UtxoRef]]:
    adjacency: dict[UtxoRef, list[UtxoRef]] = {ref: [] for ref in graph.nodes}
    for edge in graph.edges:
        adjacency[edge.source].append(edge.target)
    return adjacency


def _reachable(start: UtxoRef, adjacency) -> set[UtxoRef]:
    """Nodes reachable from ``start``, including itself."""
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in adjacency[current]:
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def _longest_path(
    nodes: list[UtxoRef],
    adjacency: dict[UtxoRef, list[UtxoRef]],
    in_degrees: dict[UtxoRef, int],
) -> int:
    """Edge count of the longest path. Only valid for acyclic graphs."""
    remaining = dict(in_degrees)
    depth = dict.fromkeys(nodes, 0)
    queue = deque(ref for ref in nodes if remaining[ref] == 0)
    while queue:
        current = queue.popleft()
        for nxt in adjacency[current]:
            depth[nxt] = max(depth[nxt], depth[current] + 1)
            remaining[nxt] -= 1
            if remaining[nxt] == 0:
                queue.append(nxt)
    return max(depth.values())


def _empty_report() -> PatternReport:
    """Return zeroed-out metrics for an empty graph."""
    return PatternReport(
        pattern=ContractPattern.UNKNOWN,
        node_count=0,
        edge_count=0,
    )
