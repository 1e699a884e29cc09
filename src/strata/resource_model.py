"""Resource model: typed nodes and typed references between them.

This module is pure data. It has no I/O and no side effects.

Public API:
    ResourceId: (kind, logical name) identity of a declared resource
    Reference: edge to an attribute produced by another resource
    OpaqueBlob: provider-shaped value compared by equality only
    ResourceNode: one declared resource
    DesiredState: validated set of nodes for one deployment generation
    find_cycle: locate a cycle in an adjacency mapping

Example:
    >>> vpc = ResourceNode.declare("vpc", "main", {"cidr_block": "10.0.0.0/16"})
    >>> subnet = ResourceNode.declare(
    ...     "subnet", "public_a", {"vpc_id": Reference.parse("vpc.main.id")}
    ... )
    >>> desired = DesiredState([vpc, subnet])
    >>> desired.dependencies_of(subnet.identity)
    frozenset({ResourceId(kind='vpc', name='main')})
"""

import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from strata.errors import ConfigurationError, InvalidGraph


@dataclass(frozen=True, order=True)
class ResourceId:
    """Identity of a resource, unique within a deployment."""

    kind: str
    name: str

    def __post_init__(self):
        if not self.kind or not self.name:
            raise ConfigurationError("Resource kind and name must be non-empty")
        if "." in self.kind:
            raise ConfigurationError(f"Resource kind cannot contain '.': {self.kind!r}")

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> "ResourceId":
        """Parse 'kind.name' into a ResourceId.

        Raises:
            ConfigurationError: If the string is not in 'kind.name' form
        """
        kind, sep, name = value.partition(".")
        if not sep:
            raise ConfigurationError(f"Invalid resource id {value!r}. Expected 'kind.name'")
        return cls(kind, name)


@dataclass(frozen=True)
class Reference:
    """Value that resolves to an attribute produced by another resource."""

    target: ResourceId
    attribute: str

    def __str__(self) -> str:
        return f"{self.target}.{self.attribute}"

    @classmethod
    def parse(cls, value: str) -> "Reference":
        """Parse 'kind.name.attribute' into a Reference.

        Raises:
            ConfigurationError: If the string has fewer than three parts
        """
        head, sep, attribute = value.rpartition(".")
        if not sep or not attribute:
            raise ConfigurationError(
                f"Invalid reference {value!r}. Expected 'kind.name.attribute'"
            )
        return cls(ResourceId.parse(head), attribute)


@dataclass(frozen=True, eq=False)
class OpaqueBlob:
    """Provider-specific value (JSON policy, log configuration, ...).

    The engine never looks inside a blob. Two blobs are equal when their
    canonical JSON serializations are equal.
    """

    value: Any

    def canonical(self) -> str:
        return json.dumps(self.value, sort_keys=True, separators=(",", ":"), default=str)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OpaqueBlob):
            return NotImplemented
        return self.canonical() == other.canonical()

    def __hash__(self) -> int:
        return hash(self.canonical())


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested in an attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


@dataclass(frozen=True)
class ResourceNode:
    """A declared resource.

    Attributes are frozen on construction. Attribute names listed in
    ignore_changes keep their observed value once the resource exists.
    """

    identity: ResourceId
    attributes: Mapping[str, Any] = field(default_factory=dict)
    ignore_changes: frozenset[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "ignore_changes", frozenset(self.ignore_changes))

    @classmethod
    def declare(
        cls,
        kind: str,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        ignore_changes: Iterable[str] = (),
    ) -> "ResourceNode":
        return cls(ResourceId(kind, name), attributes or {}, frozenset(ignore_changes))

    @property
    def references(self) -> tuple[tuple[str, Reference], ...]:
        """(attribute name, reference) pairs in attribute order."""
        return tuple(
            (name, ref)
            for name, value in self.attributes.items()
            for ref in iter_references(value)
        )

    @property
    def dependencies(self) -> frozenset[ResourceId]:
        return frozenset(ref.target for _, ref in self.references)


def find_cycle(graph: Mapping[ResourceId, Iterable[ResourceId]]) -> tuple[ResourceId, ...] | None:
    """Find a cycle in an adjacency mapping (node -> nodes it depends on).

    Iterative depth-first search with a visiting/visited color set. Nodes are
    explored in sorted order so the reported cycle is stable across runs.

    Returns:
        The cycle as a path whose first and last members are the same node,
        or None when the graph is acyclic.
    """
    visiting: set[ResourceId] = set()
    visited: set[ResourceId] = set()

    for root in sorted(graph):
        if root in visited:
            continue
        path: list[ResourceId] = [root]
        stack: list[Iterator[ResourceId]] = [iter(sorted(graph.get(root, ())))]
        visiting.add(root)

        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                done = path.pop()
                visiting.discard(done)
                visited.add(done)
                continue
            if child in visiting:
                start = path.index(child)
                return tuple(path[start:]) + (child,)
            if child in visited:
                continue
            visiting.add(child)
            path.append(child)
            stack.append(iter(sorted(graph.get(child, ()))))

    return None


class DesiredState:
    """Full set of declared resources for one deployment generation.

    Construction validates the set: identities are unique, every reference
    resolves to a declared node, and no references form a cycle.

    Raises:
        ConfigurationError: On duplicate identities
        InvalidGraph: On missing reference targets or cycles
    """

    def __init__(self, nodes: Iterable[ResourceNode] = (), validate: bool = True):
        self._nodes: dict[ResourceId, ResourceNode] = {}
        for node in nodes:
            if node.identity in self._nodes:
                raise ConfigurationError(f"Duplicate resource declaration: {node.identity}")
            self._nodes[node.identity] = node
        if validate:
            self.validate()

    def validate(self) -> None:
        for node in self:
            for attribute, ref in node.references:
                if ref.target not in self._nodes:
                    raise InvalidGraph(
                        f"{node.identity}.{attribute} references undeclared resource "
                        f"{ref.target}",
                        members=(node.identity, ref.target),
                    )

        cycle = find_cycle(self.adjacency())
        if cycle is not None:
            path = " -> ".join(str(member) for member in cycle)
            raise InvalidGraph(f"Reference cycle between declarations: {path}", members=cycle)

    def adjacency(self) -> dict[ResourceId, frozenset[ResourceId]]:
        """Map each node to the nodes it depends on."""
        return {identity: node.dependencies for identity, node in self._nodes.items()}

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, identity: object) -> bool:
        return identity in self._nodes

    def __getitem__(self, identity: ResourceId) -> ResourceNode:
        return self._nodes[identity]

    def get(self, identity: ResourceId) -> ResourceNode | None:
        return self._nodes.get(identity)

    @property
    def identities(self) -> frozenset[ResourceId]:
        return frozenset(self._nodes)

    def dependencies_of(self, identity: ResourceId) -> frozenset[ResourceId]:
        return self._nodes[identity].dependencies

    def transitive_dependencies_of(self, identity: ResourceId) -> frozenset[ResourceId]:
        seen: set[ResourceId] = set()
        pending = list(self._nodes[identity].dependencies)
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            node = self._nodes.get(current)
            if node is not None:
                pending.extend(node.dependencies)
        return frozenset(seen)

    def dependents_of(self, identity: ResourceId) -> frozenset[ResourceId]:
        return frozenset(node.identity for node in self if identity in node.dependencies)


__all__ = [
    "DesiredState",
    "OpaqueBlob",
    "Reference",
    "ResourceId",
    "ResourceNode",
    "find_cycle",
    "iter_references",
]
