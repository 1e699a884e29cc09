"""Observed state persistence.

ObservedState is the engine's record of what exists remotely: for each
resource identity, the attributes last applied, the attributes the remote
returned, the remote id, the identities it depended on, and a generation
counter.

Every write is a compare-and-swap on the generation counter. A writer states
the generation it planned against (None for "must not exist yet"); if the
stored generation differs, the write fails with ConcurrentModification
instead of overwriting.

Generations never go backwards for an identity. A delete leaves a tombstone
with the last generation, and a re-create continues from it, so a plan made
before the delete cannot match the re-created record.

Public API:
    ObservedRecord: one persisted resource record
    ObservedState: read-only snapshot keyed by identity
    StateStore: abstract store interface
    InMemoryStateStore: thread-safe in-process store
    JsonFileStateStore: durable JSON file store with file locking
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any

from strata.errors import ConcurrentModification, ConfigurationError
from strata.file_lock_manager import acquire_file_lock
from strata.resource_model import OpaqueBlob, ResourceId

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
BLOB_KEY = "$blob"


def encode_value(value: Any) -> Any:
    """Convert an attribute value into JSON-compatible data."""
    if isinstance(value, OpaqueBlob):
        return {BLOB_KEY: value.value}
    if isinstance(value, Mapping):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Inverse of encode_value."""
    if isinstance(value, dict):
        if set(value) == {BLOB_KEY}:
            return OpaqueBlob(value[BLOB_KEY])
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


@dataclass(frozen=True)
class ObservedRecord:
    """Last known remote state of one resource."""

    identity: ResourceId
    remote_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: frozenset[ResourceId] = frozenset()
    generation: int = 0

    def __post_init__(self):
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    def output(self, attribute: str) -> Any:
        """Look up an attribute a dependent may reference.

        Remote outputs win over applied attributes; ``id`` is always the
        remote id.

        Raises:
            KeyError: If neither outputs nor attributes carry the name
        """
        if attribute == "id":
            return self.remote_id
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes[attribute]

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_id": self.remote_id,
            "attributes": encode_value(self.attributes),
            "outputs": encode_value(self.outputs),
            "depends_on": sorted(str(dep) for dep in self.depends_on),
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, identity: ResourceId, data: Mapping[str, Any]) -> "ObservedRecord":
        return cls(
            identity=identity,
            remote_id=data["remote_id"],
            attributes=decode_value(data.get("attributes", {})),
            outputs=decode_value(data.get("outputs", {})),
            depends_on=frozenset(ResourceId.parse(dep) for dep in data.get("depends_on", [])),
            generation=int(data.get("generation", 0)),
        )


class ObservedState(Mapping[ResourceId, ObservedRecord]):
    """Immutable snapshot of a StateStore."""

    def __init__(self, records: Mapping[ResourceId, ObservedRecord] | None = None):
        self._records = dict(records or {})

    def __getitem__(self, identity: ResourceId) -> ObservedRecord:
        return self._records[identity]

    def __iter__(self) -> Iterator[ResourceId]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"ObservedState({sorted(str(i) for i in self._records)})"


class StateStore(ABC):
    """Durable key-value persistence for observed state."""

    @abstractmethod
    def get(self, identity: ResourceId) -> ObservedRecord | None:
        """Return the record for identity, or None."""

    @abstractmethod
    def snapshot(self) -> ObservedState:
        """Return a consistent read-only copy of all records."""

    @abstractmethod
    def write(self, record: ObservedRecord, expected_generation: int | None) -> ObservedRecord:
        """Store record if the current generation equals expected_generation.

        expected_generation None means the identity must not exist yet.

        Returns:
            The stored record with its new generation

        Raises:
            ConcurrentModification: On generation mismatch
        """

    @abstractmethod
    def delete(self, identity: ResourceId, expected_generation: int) -> None:
        """Remove a record if its generation equals expected_generation.

        Raises:
            ConcurrentModification: On generation mismatch or missing record
        """


def _check_generation(
    identity: ResourceId, current: ObservedRecord | None, expected: int | None
) -> None:
    actual = current.generation if current is not None else None
    if actual != expected:
        raise ConcurrentModification(identity, expected, actual)


def _next_generation(
    record: ObservedRecord, expected: int | None, tombstones: Mapping[ResourceId, int]
) -> ObservedRecord:
    floor = max(expected or 0, tombstones.get(record.identity, 0))
    return replace(record, generation=floor + 1)


class InMemoryStateStore(StateStore):
    """Thread-safe process-local store."""

    def __init__(self, records: Mapping[ResourceId, ObservedRecord] | None = None):
        self._records: dict[ResourceId, ObservedRecord] = dict(records or {})
        self._tombstones: dict[ResourceId, int] = {}
        self._lock = threading.Lock()

    def get(self, identity: ResourceId) -> ObservedRecord | None:
        with self._lock:
            return self._records.get(identity)

    def snapshot(self) -> ObservedState:
        with self._lock:
            return ObservedState(self._records)

    def write(self, record: ObservedRecord, expected_generation: int | None) -> ObservedRecord:
        with self._lock:
            _check_generation(record.identity, self._records.get(record.identity), expected_generation)
            stored = _next_generation(record, expected_generation, self._tombstones)
            self._tombstones.pop(record.identity, None)
            self._records[record.identity] = stored
            return stored

    def delete(self, identity: ResourceId, expected_generation: int) -> None:
        with self._lock:
            _check_generation(identity, self._records.get(identity), expected_generation)
            self._tombstones[identity] = self._records.pop(identity).generation


class JsonFileStateStore(StateStore):
    """Observed state persisted as a JSON document.

    Writes hold an exclusive lock on ``<path>.lock`` across the whole
    read-compare-write cycle and replace the file atomically. The file is
    created with 0600 permissions.
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path).expanduser()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.RLock()

    def _read(self) -> tuple[dict[ResourceId, ObservedRecord], dict[ResourceId, int]]:
        """Load (records, tombstones) from disk."""
        if not self.path.exists():
            return {}, {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read state file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"State file {self.path} must contain a JSON object")
        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise ConfigurationError(
                f"Unsupported state file version {version!r} in {self.path}"
            )
        resources = data.get("resources", {})
        tombstones = data.get("tombstones", {})
        if not isinstance(resources, dict) or not isinstance(tombstones, dict):
            raise ConfigurationError(
                f"State file {self.path}: 'resources' and 'tombstones' must be JSON objects"
            )
        try:
            records = {
                ResourceId.parse(key): ObservedRecord.from_dict(ResourceId.parse(key), value)
                for key, value in resources.items()
            }
            deleted = {ResourceId.parse(key): int(value) for key, value in tombstones.items()}
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed record in state file {self.path}: {e}") from e
        return records, deleted

    def _write(
        self,
        records: Mapping[ResourceId, ObservedRecord],
        tombstones: Mapping[ResourceId, int],
    ) -> None:
        payload = {
            "version": STATE_FORMAT_VERSION,
            "resources": {str(k): records[k].to_dict() for k in sorted(records)},
            "tombstones": {str(k): tombstones[k] for k in sorted(tombstones)},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.chmod(temp_path, 0o600)
            temp_path.replace(self.path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
        logger.debug(f"Saved {len(records)} records to {self.path}")

    def get(self, identity: ResourceId) -> ObservedRecord | None:
        return self.snapshot().get(identity)

    def snapshot(self) -> ObservedState:
        with self._thread_lock, acquire_file_lock(self.lock_path, self.lock_timeout, "state read"):
            records, _ = self._read()
            return ObservedState(records)

    def write(self, record: ObservedRecord, expected_generation: int | None) -> ObservedRecord:
        with self._thread_lock, acquire_file_lock(self.lock_path, self.lock_timeout, "state write"):
            records, tombstones = self._read()
            _check_generation(record.identity, records.get(record.identity), expected_generation)
            stored = _next_generation(record, expected_generation, tombstones)
            tombstones.pop(record.identity, None)
            records[record.identity] = stored
            self._write(records, tombstones)
            return stored

    def delete(self, identity: ResourceId, expected_generation: int) -> None:
        with self._thread_lock, acquire_file_lock(self.lock_path, self.lock_timeout, "state delete"):
            records, tombstones = self._read()
            _check_generation(identity, records.get(identity), expected_generation)
            tombstones[identity] = records.pop(identity).generation
            self._write(records, tombstones)


__all__ = [
    "InMemoryStateStore",
    "JsonFileStateStore",
    "ObservedRecord",
    "ObservedState",
    "StateStore",
    "decode_value",
    "encode_value",
]
