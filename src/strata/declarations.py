"""Declaration source: load resource declarations from YAML.

Format:

    resources:
      - kind: vpc
        name: main
        attributes:
          cidr_block: 10.0.0.0/16
      - kind: ecs_service
        name: app
        attributes:
          cluster: {ref: ecs_cluster.main.arn}
          desired_count: 2
          log_configuration: {blob: {logDriver: awslogs}}
        ignore_changes: [desired_count]

    scaling_policies:
      - name: cpu
        target: ecs_service.app
        metric: cpu_utilization
        target_value: 60
        scale_out_cooldown: 60
        scale_in_cooldown: 300
        min_capacity: 1
        max_capacity: 10

A mapping with the single key ``ref`` is a Reference ("kind.name.attribute");
a mapping with the single key ``blob`` is an opaque value.

Security:
    Uses yaml.safe_load() to prevent arbitrary code execution
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml

from strata.autoscaler import ScalingPolicy
from strata.errors import ConfigurationError
from strata.resource_model import DesiredState, OpaqueBlob, Reference, ResourceId, ResourceNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Declarations:
    """Everything one declaration file describes."""

    desired: DesiredState
    policies: tuple[ScalingPolicy, ...] = ()


class DeclarationSource(Protocol):
    """Anything that can produce a DesiredState snapshot on demand."""

    def load(self) -> Declarations: ...


def parse_value(value: Any) -> Any:
    """Turn YAML data into attribute values (references, blobs, literals)."""
    if isinstance(value, dict):
        if set(value) == {"ref"}:
            if not isinstance(value["ref"], str):
                raise ConfigurationError(f"ref must be a string, got {value['ref']!r}")
            return Reference.parse(value["ref"])
        if set(value) == {"blob"}:
            return OpaqueBlob(value["blob"])
        return {str(k): parse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    return value


def parse_declarations(data: Any) -> Declarations:
    """Build Declarations from already-parsed YAML/JSON data.

    Raises:
        ConfigurationError: On any shape error, bad reference or cycle
    """
    if not isinstance(data, dict) or "resources" not in data:
        raise ConfigurationError("Declarations must contain a 'resources' key")

    resources = data["resources"] or []
    if not isinstance(resources, list):
        raise ConfigurationError("'resources' must be a list")

    nodes = []
    for index, item in enumerate(resources):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Resource #{index} must be a mapping")
        if "kind" not in item or "name" not in item:
            raise ConfigurationError(f"Resource #{index} must have 'kind' and 'name'")
        attributes = item.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ConfigurationError(f"{item['kind']}.{item['name']}: attributes must be a mapping")
        ignore_changes = item.get("ignore_changes") or []
        if not isinstance(ignore_changes, list):
            raise ConfigurationError(
                f"{item['kind']}.{item['name']}: ignore_changes must be a list"
            )
        nodes.append(
            ResourceNode.declare(
                str(item["kind"]),
                str(item["name"]),
                {str(k): parse_value(v) for k, v in attributes.items()},
                ignore_changes=[str(name) for name in ignore_changes],
            )
        )

    desired = DesiredState(nodes)
    policies = tuple(
        _parse_policy(index, item) for index, item in enumerate(data.get("scaling_policies") or [])
    )
    for policy in policies:
        if policy.target not in desired:
            raise ConfigurationError(
                f"Scaling policy {policy.name} targets undeclared resource {policy.target}"
            )
    return Declarations(desired, policies)


def _parse_policy(index: int, item: Any) -> ScalingPolicy:
    if not isinstance(item, dict):
        raise ConfigurationError(f"Scaling policy #{index} must be a mapping")
    missing = [key for key in ("target", "metric", "target_value") if key not in item]
    if missing:
        raise ConfigurationError(f"Scaling policy #{index} is missing: {', '.join(missing)}")
    try:
        return ScalingPolicy(
            target=ResourceId.parse(str(item["target"])),
            metric_kind=str(item["metric"]),
            target_value=float(item["target_value"]),
            scale_out_cooldown=float(item.get("scale_out_cooldown", 300)),
            scale_in_cooldown=float(item.get("scale_in_cooldown", 300)),
            min_capacity=int(item.get("min_capacity", 1)),
            max_capacity=int(item.get("max_capacity", 10)),
            name=str(item.get("name", "")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Scaling policy #{index} is invalid: {e}") from e


class YamlDeclarationSource:
    """Declaration source backed by a YAML file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Declarations:
        """Parse the file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        if not self.path.exists():
            raise ConfigurationError(f"Declaration file not found: {self.path}")

        try:
            with self.path.open() as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML: {e}") from e

        declarations = parse_declarations(data)
        logger.debug(
            f"Loaded {len(declarations.desired)} resources and "
            f"{len(declarations.policies)} scaling policies from {self.path}"
        )
        return declarations


__all__ = [
    "DeclarationSource",
    "Declarations",
    "YamlDeclarationSource",
    "parse_declarations",
    "parse_value",
]
