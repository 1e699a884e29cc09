"""Provisioner: the engine's entry points.

    plan(desired) -> ChangeSet           read-only, safe to call repeatedly
    apply(change_set) -> ApplyReport     mutating, convergent on re-run
    converge(source) -> list[ApplyReport]
    start_autoscaling(policies) -> AutoscalingHandle
    stop(handle)

Structural errors (bad declarations, cycles) surface from plan() before any
remote call. Per-resource failures surface in the ApplyReport.
"""

import logging
import time
from collections.abc import Callable, Iterable

from strata.apply_executor import ApplyExecutor, ApplyReport, CancellationToken, ResourceLocks
from strata.autoscaler import AutoscalingController, AutoscalingHandle, ScalingPolicy
from strata.config_manager import EngineConfig
from strata.declarations import DeclarationSource
from strata.errors import ConfigurationError
from strata.plan_engine import ChangeKind, ChangeSet, PlanEngine
from strata.remote import ControlPlaneAdapter
from strata.resource_model import DesiredState
from strata.state_store import StateStore

logger = logging.getLogger(__name__)


class Provisioner:
    """Ties together planning, applying and autoscaling over one state store.

    Provisioning and autoscaling share one ResourceLocks registry, so they
    never modify the same resource concurrently.
    """

    def __init__(
        self,
        adapter: ControlPlaneAdapter,
        store: StateStore,
        config: EngineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.adapter = adapter
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock
        self.sleep = sleep
        self.locks = ResourceLocks()
        self.planner = PlanEngine()
        self.executor = ApplyExecutor(
            adapter,
            store,
            retry_config=self.config.retry,
            max_workers=self.config.max_workers,
            locks=self.locks,
            sleep=sleep,
        )
        self._controllers: list[AutoscalingController] = []

    def plan(self, desired: DesiredState) -> ChangeSet:
        """Diff desired against a fresh snapshot of observed state."""
        desired.validate()
        return self.planner.plan(desired, self.store.snapshot())

    def apply(
        self, change_set: ChangeSet, cancel_token: CancellationToken | None = None
    ) -> ApplyReport:
        return self.executor.apply(change_set, cancel_token)

    def converge(self, source: DeclarationSource, max_rounds: int = 5) -> list[ApplyReport]:
        """Plan and apply until nothing changes.

        Stops early when a round applies nothing new (a permanent failure
        would repeat forever). Declarations are reloaded every round.

        Raises:
            ConfigurationError: If the source cannot produce declarations
        """
        reports: list[ApplyReport] = []
        for round_number in range(1, max_rounds + 1):
            desired = source.load().desired
            change_set = self.plan(desired)
            if not change_set.has_changes:
                logger.info(f"Converged after {round_number - 1} apply rounds")
                return reports

            report = self.apply(change_set)
            reports.append(report)
            progressed = any(
                outcome.change.kind != ChangeKind.NOOP for outcome in report.applied
            )
            if not progressed:
                logger.warning(f"Round {round_number} made no progress, stopping")
                return reports

        logger.warning(f"Not converged after {max_rounds} rounds")
        return reports

    def autoscaling_controller(self, policies: Iterable[ScalingPolicy]) -> AutoscalingController:
        """Build a controller bound to this provisioner's executor and store."""
        return AutoscalingController(
            self.executor,
            self.store,
            self.adapter,
            policies,
            capacity_attribute=self.config.capacity_attribute,
            poll_interval=self.config.poll_interval_seconds,
            metric_window=self.config.metric_window_seconds,
            failure_backoff=self.config.failure_backoff_seconds,
            max_failure_backoff=self.config.max_failure_backoff_seconds,
            clock=self.clock,
            sleep=self.sleep,
        )

    def start_autoscaling(self, policies: Iterable[ScalingPolicy]) -> AutoscalingHandle:
        """Start a background controller for policies.

        Raises:
            ConfigurationError: If no policies are given or their bounds conflict
        """
        policies = list(policies)
        if not policies:
            raise ConfigurationError("start_autoscaling needs at least one scaling policy")
        controller = self.autoscaling_controller(policies)
        self._controllers.append(controller)
        return controller.start()

    def stop(self, handle: AutoscalingHandle, timeout: float | None = None) -> None:
        handle.stop(timeout)
        if handle.controller in self._controllers:
            self._controllers.remove(handle.controller)

    def stop_all(self, timeout: float | None = None) -> None:
        for controller in list(self._controllers):
            controller.stop(timeout)
        self._controllers.clear()


__all__ = ["Provisioner"]
