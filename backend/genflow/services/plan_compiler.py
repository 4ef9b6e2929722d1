"""
Plan compiler: transforms an editor graph into a toposorted execution plan.

Pipeline: Filter executable nodes -> Build adjacency -> Toposort (Kahn) -> Steps

Ordering contract: the Kahn queue is a stable FIFO seeded in the original node
order, so nodes that become ready at the same time keep their array order.
Plans are therefore reproducible for identical inputs.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Iterable

from genflow.exceptions import CycleError
from genflow.models.graph import Edge, ExecutionStep, Node

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Edge classification
# ---------------------------------------------------------------------------


def is_adapter_edge(edge: Edge) -> bool:
    return edge.is_adapter


def get_text_input_node_ids(node_id: str, edges: Iterable[Edge]) -> list[str]:
    """IDs of nodes that feed text into ``node_id`` (non-adapter edges), in edge order."""
    return [e.source for e in edges if e.target == node_id and not e.is_adapter]


def get_adapter_input_node_ids(node_id: str, edges: Iterable[Edge]) -> list[str]:
    """IDs of adapter nodes attached to ``node_id`` (adapter-* target handles), in edge order."""
    return [e.source for e in edges if e.target == node_id and e.is_adapter]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def executable_nodes(nodes: Iterable[Node]) -> list[Node]:
    """Drop group containers and duplicate ids (first occurrence wins)."""
    seen: set[str] = set()
    result: list[Node] = []
    for node in nodes:
        if node.is_group or node.id in seen:
            continue
        seen.add(node.id)
        result.append(node)
    return result


def build_plan(nodes: list[Node], edges: list[Edge]) -> list[ExecutionStep]:
    """
    Build a topologically sorted execution plan.

    Both text and adapter edges count towards in-degree, so an adapter source
    always runs before its consumer. Predecessor lists are computed from the
    full edge list, which lets a plan over a node subset still see inputs
    that live outside the subset.

    Raises CycleError if the plan cannot cover every executable node.
    """
    node_map = {n.id: n for n in executable_nodes(nodes)}

    in_degree: dict[str, int] = {nid: 0 for nid in node_map}
    adjacency: dict[str, list[str]] = defaultdict(list)

    for edge in edges:
        if edge.source in node_map and edge.target in node_map:
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

    queue: deque[str] = deque(nid for nid, deg in in_degree.items() if deg == 0)
    steps: list[ExecutionStep] = []

    while queue:
        nid = queue.popleft()
        node = node_map[nid]
        steps.append(ExecutionStep(
            node_id=nid,
            node_type=node.type or "unknown",
            input_node_ids=get_text_input_node_ids(nid, edges),
            adapter_node_ids=get_adapter_input_node_ids(nid, edges),
        ))
        for neighbor in adjacency[nid]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    # The remaining in-degrees do not isolate the cycle itself, so no node is named
    if len(steps) < len(node_map):
        raise CycleError()

    logger.debug("Compiled plan: %s", [s.node_id for s in steps])
    return steps


# ---------------------------------------------------------------------------
# Graph closures
# ---------------------------------------------------------------------------


def get_downstream_nodes(start_node_id: str, nodes: list[Node], edges: list[Edge]) -> set[str]:
    """BFS along text and adapter edges (forward); includes the start node."""
    node_ids = {n.id for n in nodes}
    downstream = {start_node_id}
    queue: deque[str] = deque([start_node_id])
    while queue:
        current = queue.popleft()
        for edge in edges:
            if edge.source == current and edge.target in node_ids and edge.target not in downstream:
                downstream.add(edge.target)
                queue.append(edge.target)
    return downstream


def get_upstream_nodes(start_node_id: str, nodes: list[Node], edges: list[Edge]) -> set[str]:
    """BFS along text and adapter edges (backward); includes the start node."""
    node_ids = {n.id for n in nodes}
    upstream = {start_node_id}
    queue: deque[str] = deque([start_node_id])
    while queue:
        current = queue.popleft()
        for edge in edges:
            if edge.target == current and edge.source in node_ids and edge.source not in upstream:
                upstream.add(edge.source)
                queue.append(edge.source)
    return upstream
