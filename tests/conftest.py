"""
Shared test fixtures for strata tests.

This module provides common fixtures used across all test types:
- In-memory state store and control plane
- A control plane with injectable failures
- A manually advanced clock for autoscaling tests
- Retry settings that never sleep
"""

from pathlib import Path

import pytest

from strata import config_manager
from strata.apply_executor import ApplyExecutor
from strata.metrics import MetricSample
from strata.plan_engine import PlanEngine
from strata.resource_model import DesiredState, Reference, ResourceNode
from strata.retry_config import RetryConfig, reset_retry_config
from strata.state_store import InMemoryStateStore
from tests.mocks.control_plane_mock import FlakyControlPlane, ManualClock

EXAMPLES_DIR = Path(__file__).resolve().parents[1] / "examples"

# ============================================================================
# ENGINE FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.strata directory and environment."""
    config_dir = tmp_path / ".strata"
    monkeypatch.setattr(config_manager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    monkeypatch.setattr("strata.cli.DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    for name in (
        "STRATA_RETRY_MAX_ATTEMPTS",
        "STRATA_RETRY_INITIAL_DELAY",
        "STRATA_RETRY_MAX_DELAY",
        "STRATA_RETRY_JITTER_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_retry_config()
    yield config_dir
    reset_retry_config()


@pytest.fixture
def clock():
    """Manual clock starting at t=1000s."""
    return ManualClock()


@pytest.fixture
def store():
    """Empty in-memory state store."""
    return InMemoryStateStore()


@pytest.fixture
def control_plane(clock):
    """Strict control plane with failure injection, sharing the test clock."""
    return FlakyControlPlane(clock=clock)


@pytest.fixture
def retry_config():
    """Three attempts with zero delay."""
    return RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter_enabled=False)


@pytest.fixture
def sleeps():
    """Records the delays the executor would have slept."""
    return []


@pytest.fixture
def executor(control_plane, store, retry_config, sleeps):
    """Sequential executor that never actually sleeps."""
    return ApplyExecutor(control_plane, store, retry_config=retry_config, sleep=sleeps.append)


@pytest.fixture
def planner():
    return PlanEngine()


# ============================================================================
# DECLARATION FIXTURES
# ============================================================================


def node(kind: str, name: str, ignore_changes=(), **attributes) -> ResourceNode:
    """Declare a resource whose ``name`` attribute mirrors its logical name."""
    return ResourceNode.declare(kind, name, {"name": name, **attributes}, ignore_changes)


def ref(value: str) -> Reference:
    return Reference.parse(value)


@pytest.fixture
def network_desired():
    """vpc <- subnet <- service, plus an unrelated bucket."""
    return DesiredState(
        [
            node("vpc", "main", cidr_block="10.0.0.0/16"),
            node("subnet", "a", vpc_id=ref("vpc.main.id"), cidr_block="10.0.1.0/24"),
            node(
                "ecs_service",
                "app",
                subnet_ids=[ref("subnet.a.id")],
                desired_count=2,
                ignore_changes=("desired_count",),
            ),
            node("bucket", "logs", versioning=True),
        ]
    )


def cpu_sample(resource_id: str, value: float, timestamp: float) -> MetricSample:
    return MetricSample(resource_id, "cpu_utilization", value, timestamp)
