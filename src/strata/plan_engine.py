"""Diff / plan engine.

Compares desired declarations against observed state and produces an
immutable, ordered ChangeSet. Planning never mutates anything and is safe to
call repeatedly.

Ordering:
- Creates, updates and no-ops follow the dependency graph's topological
  order (dependencies first).
- Deletes come after all of them, dependents first.

Value flow:
    A reference to an attribute that will only be known once another change
    is applied resolves to PENDING. Such a change is never a NoOp, and it
    lists the producing change in depends_on, so the executor will not start
    it until the producer is Applied.
"""

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from strata.dependency_graph import DependencyGraph, topological_order
from strata.errors import InvalidGraph
from strata.resource_model import DesiredState, OpaqueBlob, Reference, ResourceId, ResourceNode
from strata.state_store import ObservedRecord, ObservedState, encode_value

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class _Pending:
    """Marker for a value known only after a dependency is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<known after apply>"


PENDING = _Pending()


def contains_pending(value: Any) -> bool:
    if value is PENDING:
        return True
    if isinstance(value, Mapping):
        return any(contains_pending(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_pending(v) for v in value)
    return False


def _freeze(values: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class Change:
    """One planned operation on one resource.

    Attributes:
        identity: Resource the change applies to
        kind: Create, Update, Delete or NoOp
        desired_attrs: Declared attributes, references intact
        observed_attrs: Attributes last applied (empty for Create)
        planned_attrs: desired_attrs with every resolvable reference resolved
        depends_on: Changes that must be Applied before this one starts
        resource_dependencies: Resources this one references (persisted on apply)
        observed_generation: Generation the plan was computed against
        remote_id: Remote identifier of the existing resource, if any
    """

    identity: ResourceId
    kind: ChangeKind
    desired_attrs: Mapping[str, Any] = field(default_factory=dict)
    observed_attrs: Mapping[str, Any] = field(default_factory=dict)
    planned_attrs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: frozenset[ResourceId] = frozenset()
    resource_dependencies: frozenset[ResourceId] = frozenset()
    observed_generation: int | None = None
    remote_id: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "desired_attrs", _freeze(self.desired_attrs))
        object.__setattr__(self, "observed_attrs", _freeze(self.observed_attrs))
        object.__setattr__(self, "planned_attrs", _freeze(self.planned_attrs))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "resource_dependencies", frozenset(self.resource_dependencies))

    @property
    def changed_attributes(self) -> tuple[str, ...]:
        """Names whose planned value differs from the observed one."""
        names = set(self.planned_attrs) | set(self.observed_attrs)
        return tuple(
            sorted(
                name
                for name in names
                if name not in self.planned_attrs
                or name not in self.observed_attrs
                or contains_pending(self.planned_attrs[name])
                or encode_value(self.planned_attrs[name])
                != encode_value(self.observed_attrs[name])
            )
        )


@dataclass(frozen=True)
class ChangeSet:
    """Ordered, immutable plan produced by one planning cycle."""

    changes: tuple[Change, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def get(self, identity: ResourceId) -> Change | None:
        for change in self.changes:
            if change.identity == identity:
                return change
        return None

    def of_kind(self, kind: ChangeKind) -> tuple[Change, ...]:
        return tuple(change for change in self.changes if change.kind == kind)

    @property
    def has_changes(self) -> bool:
        return any(change.kind != ChangeKind.NOOP for change in self.changes)

    def summary(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in ChangeKind}
        for change in self.changes:
            counts[change.kind.value] += 1
        return counts


class PlanEngine:
    """Computes ChangeSets from desired and observed state."""

    def plan(self, desired: DesiredState, observed: ObservedState) -> ChangeSet:
        """Diff desired against observed.

        Raises:
            CycleDetected: If desired contains a reference cycle
            InvalidGraph: If a reference names a resource that is not declared
        """
        planned: dict[ResourceId, Change] = {}
        ordered_changes: list[Change] = []

        for node in topological_order(desired):
            change = self._plan_node(node, observed.get(node.identity), planned, observed)
            planned[node.identity] = change
            ordered_changes.append(change)

        ordered_changes.extend(self._plan_deletions(desired, observed))

        change_set = ChangeSet(tuple(ordered_changes))
        logger.info(
            "Planned "
            + ", ".join(f"{count} {kind}" for kind, count in change_set.summary().items())
        )
        return change_set

    def _plan_node(
        self,
        node: ResourceNode,
        record: ObservedRecord | None,
        planned: Mapping[ResourceId, Change],
        observed: ObservedState,
    ) -> Change:
        desired_attrs = dict(node.attributes)
        if record is not None:
            for name in node.ignore_changes:
                if name in record.attributes:
                    desired_attrs[name] = record.attributes[name]

        planned_attrs = {
            name: self._resolve(value, planned, observed) for name, value in desired_attrs.items()
        }

        if record is None:
            kind = ChangeKind.CREATE
        elif contains_pending(planned_attrs):
            kind = ChangeKind.UPDATE
        elif encode_value(planned_attrs) != encode_value(dict(record.attributes)):
            kind = ChangeKind.UPDATE
        else:
            kind = ChangeKind.NOOP

        if kind != ChangeKind.NOOP:
            logger.debug(f"{node.identity}: {kind.value}")

        return Change(
            identity=node.identity,
            kind=kind,
            desired_attrs=desired_attrs,
            observed_attrs=record.attributes if record is not None else {},
            planned_attrs=planned_attrs,
            depends_on=node.dependencies,
            resource_dependencies=node.dependencies,
            observed_generation=record.generation if record is not None else None,
            remote_id=record.remote_id if record is not None else None,
        )

    def _resolve(
        self,
        value: Any,
        planned: Mapping[ResourceId, Change],
        observed: ObservedState,
    ) -> Any:
        if isinstance(value, Reference):
            return self._resolve_reference(value, planned, observed)
        if isinstance(value, OpaqueBlob):
            return value
        if isinstance(value, Mapping):
            return {k: self._resolve(v, planned, observed) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(v, planned, observed) for v in value]
        return value

    @staticmethod
    def _resolve_reference(
        ref: Reference,
        planned: Mapping[ResourceId, Change],
        observed: ObservedState,
    ) -> Any:
        producer = planned.get(ref.target)
        if producer is None:
            raise InvalidGraph(f"Reference {ref} targets undeclared resource {ref.target}")
        record = observed.get(ref.target)

        if producer.kind == ChangeKind.NOOP and record is not None:
            try:
                return record.output(ref.attribute)
            except KeyError:
                return PENDING

        if ref.attribute != "id" and ref.attribute in producer.planned_attrs:
            return producer.planned_attrs[ref.attribute]

        if producer.kind == ChangeKind.CREATE or record is None:
            return PENDING

        try:
            return record.output(ref.attribute)
        except KeyError:
            return PENDING

    @staticmethod
    def _plan_deletions(desired: DesiredState, observed: ObservedState) -> list[Change]:
        doomed = {identity: observed[identity] for identity in observed if identity not in desired}
        if not doomed:
            return []

        graph = DependencyGraph({identity: record.depends_on for identity, record in doomed.items()})
        deletions = []
        for identity in graph.reverse_order():
            record = doomed[identity]
            # Dependents go first: doomed resources that reference this one, and
            # surviving resources whose applied state still references it.
            blockers = {
                other for other, other_record in observed.items()
                if other != identity and identity in other_record.depends_on
            }
            deletions.append(
                Change(
                    identity=identity,
                    kind=ChangeKind.DELETE,
                    observed_attrs=record.attributes,
                    depends_on=frozenset(blockers),
                    resource_dependencies=record.depends_on,
                    observed_generation=record.generation,
                    remote_id=record.remote_id,
                )
            )
            logger.debug(f"{identity}: delete")
        return deletions


def plan(desired: DesiredState, observed: ObservedState) -> ChangeSet:
    """Module-level shortcut for PlanEngine().plan."""
    return PlanEngine().plan(desired, observed)


__all__ = [
    "PENDING",
    "Change",
    "ChangeKind",
    "ChangeSet",
    "PlanEngine",
    "contains_pending",
    "plan",
]
