# app/core/validator.py
"""
Structural validation for flow graphs.

Runs once when a flow is deployed; the step evaluator assumes the graph it is
given has passed `validate()`.
"""
import logging
from collections import Counter, deque
from typing import List, Set, Tuple

from app.core.errors import GraphError
from app.models.flow import DecisionNode, FlowGraph, entry_candidates

logger = logging.getLogger("ivr-flow-engine.core.validator")


def find_problems(graph: FlowGraph) -> List[str]:
    problems: List[str] = []

    if not graph.nodes:
        return ["flow has no nodes"]

    counts = Counter(graph.node_ids)
    for node_id, count in counts.items():
        if count > 1:
            problems.append(f"duplicate node id {node_id!r}")

    for node in graph.nodes:
        if isinstance(node, DecisionNode):
            if not (node.default or "").strip():
                problems.append(f"decision node {node.id!r} has no default target")
            for branch in node.conditions:
                if not branch.match.strip():
                    problems.append(f"decision node {node.id!r} has an empty match value")
        if not node.terminal and not node.transitions():
            problems.append(f"node {node.id!r} has no transition")
        for target in node.transitions():
            if not graph.has_node(target):
                problems.append(f"node {node.id!r} references unknown node {target!r}")

    for edge in graph.edges:
        for end in (edge.source, edge.target):
            if not graph.has_node(end):
                problems.append(f"edge {edge.source!r}->{edge.target!r} references unknown node {end!r}")

    problems.extend(_edge_consistency(graph))

    entries = entry_candidates(graph)
    if len(entries) != 1:
        if entries:
            problems.append(f"flow must have exactly one entry node, found {len(entries)}: {', '.join(entries)}")
        else:
            problems.append("flow has no entry node (every node has an incoming transition)")
    else:
        unreachable = [n for n in graph.node_ids if n not in _reachable(graph, entries[0])]
        for node_id in unreachable:
            problems.append(f"node {node_id!r} is unreachable from entry {entries[0]!r}")

    return problems


def _edge_consistency(graph: FlowGraph) -> List[str]:
    """Edges are optional, but when present they must mirror the in-node transitions."""
    if not graph.edges:
        return []
    declared: Set[Tuple[str, str]] = {(e.source, e.target) for e in graph.edges}
    implied: Set[Tuple[str, str]] = set()
    for node in graph.nodes:
        for target in node.transitions():
            implied.add((node.id, target))
    problems = []
    for source, target in sorted(implied - declared):
        problems.append(f"transition {source!r}->{target!r} has no matching edge")
    for source, target in sorted(declared - implied):
        problems.append(f"edge {source!r}->{target!r} does not match any transition of {source!r}")
    return problems


def _reachable(graph: FlowGraph, entry: str) -> Set[str]:
    seen = {entry}
    queue = deque([entry])
    while queue:
        node = graph.node(queue.popleft())
        if node is None:
            continue
        for target in node.transitions():
            if target not in seen and graph.has_node(target):
                seen.add(target)
                queue.append(target)
    return seen


def validate(graph: FlowGraph) -> FlowGraph:
    """Return the graph unchanged if it is valid, otherwise raise GraphError with every problem found."""
    problems = find_problems(graph)
    if problems:
        logger.info("Rejected flow %s: %d problem(s)", graph.id, len(problems))
        raise GraphError(problems, flow_id=graph.id)
    return graph
