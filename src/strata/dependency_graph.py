"""Dependency graph builder.

Turns resource declarations into a deterministic topological ordering where
every referenced resource precedes the resources that reference it.

Among nodes whose dependencies are all placed, the one with the smallest
(kind, name) goes first, so identical input always yields identical output.
"""

import heapq
import logging
from collections.abc import Iterable, Mapping

from strata.errors import CycleDetected
from strata.resource_model import DesiredState, ResourceId, ResourceNode, find_cycle

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed acyclic graph of resource identities.

    Edges point from a node to the nodes it depends on. Edges to identities
    outside the graph are ignored, which lets a graph be built over a subset
    of resources (for example, only the ones scheduled for deletion).
    """

    def __init__(self, adjacency: Mapping[ResourceId, Iterable[ResourceId]]):
        nodes = set(adjacency)
        self._dependencies: dict[ResourceId, frozenset[ResourceId]] = {
            node: frozenset(dep for dep in deps if dep in nodes)
            for node, deps in adjacency.items()
        }
        self._dependents: dict[ResourceId, set[ResourceId]] = {node: set() for node in nodes}
        for node, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].add(node)

    @classmethod
    def from_desired(cls, desired: DesiredState) -> "DependencyGraph":
        return cls(desired.adjacency())

    def __contains__(self, identity: object) -> bool:
        return identity in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    def dependencies(self, identity: ResourceId) -> frozenset[ResourceId]:
        return self._dependencies[identity]

    def dependents(self, identity: ResourceId) -> frozenset[ResourceId]:
        return frozenset(self._dependents[identity])

    def order(self) -> list[ResourceId]:
        """Return dependencies-first ordering.

        Raises:
            CycleDetected: If the graph contains a cycle
        """
        remaining = {node: len(deps) for node, deps in self._dependencies.items()}
        ready = [node for node, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        ordered: list[ResourceId] = []

        while ready:
            node = heapq.heappop(ready)
            ordered.append(node)
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(ordered) != len(self._dependencies):
            placed = set(ordered)
            unplaced = {
                node: deps for node, deps in self._dependencies.items() if node not in placed
            }
            cycle = find_cycle(unplaced)
            if cycle is None:
                # Every unplaced node waits on another unplaced node, so a cycle exists.
                cycle = tuple(sorted(unplaced))
            logger.error(f"Cycle in dependency graph: {' -> '.join(map(str, cycle))}")
            raise CycleDetected(cycle)

        return ordered

    def reverse_order(self) -> list[ResourceId]:
        """Return dependents-first ordering (used for deletion)."""
        return list(reversed(self.order()))


def topological_order(desired: DesiredState) -> list[ResourceNode]:
    """Order declared nodes so each reference target precedes its referrer.

    Raises:
        CycleDetected: If the declarations contain a reference cycle
    """
    graph = DependencyGraph.from_desired(desired)
    ordered = [desired[identity] for identity in graph.order()]
    logger.debug(f"Topological order: {', '.join(str(node.identity) for node in ordered)}")
    return ordered


__all__ = ["DependencyGraph", "topological_order"]
