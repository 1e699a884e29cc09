"""Remote control plane adapter interface and an in-memory implementation.

Adapters translate engine operations into provider API calls. They raise
TransientError (or RemoteTimeout) for retryable failures and PermanentError
for rejected requests; any other exception is treated as permanent.

LocalControlPlane keeps resources and metric samples in memory. It backs the
test suite and is the CLI's default adapter for dry local runs.
"""

import importlib
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any

from strata.errors import ConfigurationError, PermanentError
from strata.metrics import MetricSample

logger = logging.getLogger(__name__)


class ControlPlaneAdapter(ABC):
    """Contract between the engine and a remote control plane."""

    @abstractmethod
    def create(self, kind: str, attrs: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource; return (remote id, attributes as stored remotely)."""

    @abstractmethod
    def update(self, remote_id: str, attrs: Mapping[str, Any]) -> dict[str, Any]:
        """Update a resource in place; return attributes as stored remotely."""

    @abstractmethod
    def delete(self, remote_id: str) -> None:
        """Delete a resource."""

    @abstractmethod
    def get_metric(
        self, resource_id: str, metric_kind: str, window: float
    ) -> list[MetricSample]:
        """Return samples for resource_id from the last ``window`` seconds."""


@dataclass
class RemoteResource:
    """A resource as held by LocalControlPlane."""

    remote_id: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)


class LocalControlPlane(ControlPlaneAdapter):
    """In-memory control plane.

    Remote ids look like ``<kind>-1f3a9c0e``. Every resource also gets an
    ``arn`` output. Metric samples are fed with record_metric().

    With strict=False (the default) updates to unknown ids adopt the resource
    and deletes of unknown ids succeed, so a state file can outlive the
    process that created it. strict=True rejects both with PermanentError.
    """

    def __init__(self, clock=None, strict: bool = False):
        self.strict = strict
        self.resources: dict[str, RemoteResource] = {}
        self._samples: dict[tuple[str, str], list[MetricSample]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, kind: str, attrs: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        with self._lock:
            remote_id = f"{kind}-{uuid.uuid4().hex[:8]}"
            resource = RemoteResource(remote_id, kind, deepcopy(dict(attrs)))
            self.resources[remote_id] = resource
        logger.debug(f"Created {remote_id}")
        return remote_id, self._outputs(resource)

    def update(self, remote_id: str, attrs: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            resource = self.resources.get(remote_id)
            if resource is None:
                if self.strict:
                    raise PermanentError(f"Resource not found: {remote_id}")
                resource = RemoteResource(remote_id, remote_id.rsplit("-", 1)[0])
                self.resources[remote_id] = resource
            resource.attributes = deepcopy(dict(attrs))
        logger.debug(f"Updated {remote_id}")
        return self._outputs(resource)

    def delete(self, remote_id: str) -> None:
        with self._lock:
            if self.resources.pop(remote_id, None) is None and self.strict:
                raise PermanentError(f"Resource not found: {remote_id}")
        logger.debug(f"Deleted {remote_id}")

    def record_metric(self, sample: MetricSample) -> None:
        with self._lock:
            self._samples.setdefault((sample.resource_id, str(sample.metric_kind)), []).append(sample)

    def get_metric(
        self, resource_id: str, metric_kind: str, window: float
    ) -> list[MetricSample]:
        with self._lock:
            samples = list(self._samples.get((resource_id, str(metric_kind)), []))
        if self._clock is None or not samples:
            return samples
        cutoff = self._clock() - window
        return [sample for sample in samples if sample.timestamp >= cutoff]

    @staticmethod
    def _outputs(resource: RemoteResource) -> dict[str, Any]:
        outputs = deepcopy(resource.attributes)
        outputs["arn"] = f"arn:local:{resource.kind}/{resource.remote_id}"
        return outputs


def load_adapter(spec: str) -> ControlPlaneAdapter:
    """Instantiate an adapter from a ``module:factory`` string.

    Raises:
        ConfigurationError: If the module or factory cannot be loaded, or the
            factory does not return a ControlPlaneAdapter
    """
    module_name, sep, factory_name = spec.partition(":")
    if not sep or not module_name or not factory_name:
        raise ConfigurationError(f"Invalid adapter {spec!r}. Expected 'module:factory'")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, factory_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load adapter {spec!r}: {e}") from e

    adapter = factory()
    if not isinstance(adapter, ControlPlaneAdapter):
        raise ConfigurationError(f"Adapter {spec!r} is not a ControlPlaneAdapter")
    return adapter


__all__ = ["ControlPlaneAdapter", "LocalControlPlane", "RemoteResource", "load_adapter"]
