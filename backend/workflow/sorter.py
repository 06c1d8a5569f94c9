"""Topological ordering of workflow graphs.

Kahn's algorithm with a min-heap keyed on each node's position in the
submitted node list, so independent nodes always come out in the order
the editor sent them. The same graph always yields the same order.
"""

import heapq
from typing import Sequence

from core.exceptions import GraphInvalidError
from workflow.models import Edge, Node


def topological_sort(nodes: Sequence[Node], edges: Sequence[Edge]) -> list[Node]:
    """Return ``nodes`` in a dependency-respecting, deterministic order.

    Raises:
        GraphInvalidError: duplicate node id, edge referencing a missing
            node, or a cycle (self loops included). Nothing is dropped.
    """
    index: dict[str, int] = {}
    for i, node in enumerate(nodes):
        if node.id in index:
            raise GraphInvalidError(
                f'Duplicate node ID detected: "{node.id}"',
                code="DUPLICATE_NODE_ID",
            )
        index[node.id] = i

    successors: list[list[int]] = [[] for _ in nodes]
    in_degree = [0] * len(nodes)

    for edge in edges:
        missing = [end for end in (edge.source, edge.target) if end not in index]
        if missing:
            raise GraphInvalidError(
                f'Edge "{edge.display_id}" references non-existent node "{missing[0]}"',
                code="DANGLING_EDGE",
            )
        src, dst = index[edge.source], index[edge.target]
        successors[src].append(dst)
        in_degree[dst] += 1

    ready = [i for i, degree in enumerate(in_degree) if degree == 0]
    heapq.heapify(ready)

    order: list[int] = []
    while ready:
        current = heapq.heappop(ready)
        order.append(current)
        for nxt in successors[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                heapq.heappush(ready, nxt)

    if len(order) < len(nodes):
        stuck = [nodes[i].id for i, degree in enumerate(in_degree) if degree > 0]
        raise GraphInvalidError(
            f"Cycle detected among nodes: {', '.join(stuck)}",
            code="CYCLE_DETECTED",
        )

    return [nodes[i] for i in order]
