"""
Topological scheduling of spec nodes.

Without ``depends_on`` edges nodes run in declaration order. With edges,
Kahn's algorithm produces the order; among nodes that are ready at the same
time, the one declared first goes first, so the result is deterministic.
"""

import heapq

from sagarun.errors import CyclicGraphError
from sagarun.schemas import OrchestrationSpec


def order(spec: OrchestrationSpec) -> list[str]:
    """
    Compute the execution order of a validated spec.

    Raises:
        CyclicGraphError: If the dependency edges form a cycle
    """
    if not spec.has_edges:
        return spec.node_ids

    position = {node.id: i for i, node in enumerate(spec.nodes)}
    in_degree = {node.id: 0 for node in spec.nodes}
    dependents: dict[str, list[str]] = {node.id: [] for node in spec.nodes}

    for node in spec.nodes:
        for dep in set(node.depends_on):
            in_degree[node.id] += 1
            dependents[dep].append(node.id)

    ready = [position[node_id] for node_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    result: list[str] = []
    while ready:
        node_id = spec.nodes[heapq.heappop(ready)].id
        result.append(node_id)
        for child in dependents[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, position[child])

    if len(result) != len(spec.nodes):
        remaining = [n.id for n in spec.nodes if n.id not in set(result)]
        raise CyclicGraphError(remaining)

    return result
