"""Closed-loop autoscaling controller (target tracking).

Each tick, for every target resource that exists in observed state:

1. Pull the latest metric sample for each of its policies.
2. Per policy: desired = round(current * observed / target), clamped to
   [min_capacity, max_capacity].
3. Reconcile policies by taking the maximum. Any one metric above target is
   enough to add capacity; every metric must agree before removing it, so a
   policy without fresh data blocks scale-in.
4. Respect per-resource cooldowns: scale-out only if scale_out_cooldown has
   elapsed since the last scale-out, scale-in likewise.
5. Route the capacity change through the ApplyExecutor as an Update, and
   record the action time only when it is applied.

Per target: Steady -> ScalingOut -> Cooldown(out) -> Steady, and the same
for scale-in. A failed tick never stops the loop; the target backs off
exponentially before it is tried again.
"""

import logging
import math
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from strata.apply_executor import ApplyExecutor, ChangeState
from strata.errors import ConfigurationError, StrataError, TransientError
from strata.metrics import MetricKind, MetricWindow
from strata.plan_engine import Change, ChangeKind, ChangeSet
from strata.remote import ControlPlaneAdapter
from strata.resource_model import ResourceId
from strata.retry_config import RetryConfig
from strata.retry_handler import call_with_retry, safe_error_message
from strata.state_store import ObservedRecord, StateStore

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_ATTRIBUTE = "desired_count"


class ScalerState(str, Enum):
    STEADY = "steady"
    SCALING_OUT = "scaling_out"
    SCALING_IN = "scaling_in"
    COOLDOWN_OUT = "cooldown_out"
    COOLDOWN_IN = "cooldown_in"


@dataclass(frozen=True)
class ScalingPolicy:
    """Target-tracking policy attached to one resource."""

    target: ResourceId
    metric_kind: MetricKind
    target_value: float
    scale_out_cooldown: float = 300.0
    scale_in_cooldown: float = 300.0
    min_capacity: int = 1
    max_capacity: int = 10
    name: str = ""

    def __post_init__(self):
        """Validate configuration."""
        try:
            object.__setattr__(self, "metric_kind", MetricKind(self.metric_kind))
        except ValueError:
            known = ", ".join(kind.value for kind in MetricKind)
            raise ConfigurationError(
                f"Unknown metric {self.metric_kind!r} for {self.target} (expected one of: {known})"
            ) from None
        if not self.name:
            object.__setattr__(self, "name", f"{self.target}:{self.metric_kind}")
        if self.target_value <= 0:
            raise ConfigurationError(f"{self.name}: target_value must be positive")
        if self.min_capacity < 0:
            raise ConfigurationError(f"{self.name}: min_capacity cannot be negative")
        if self.max_capacity < self.min_capacity:
            raise ConfigurationError(f"{self.name}: max_capacity must be >= min_capacity")
        if self.scale_out_cooldown < 0 or self.scale_in_cooldown < 0:
            raise ConfigurationError(f"{self.name}: cooldowns cannot be negative")


def compute_desired_capacity(current: int, observed: float, policy: ScalingPolicy) -> int:
    """Target-tracking recommendation for one policy.

    Rounds half away from zero, then clamps to the policy bounds.
    """
    raw = current * (observed / policy.target_value)
    desired = math.floor(raw + 0.5)
    return max(policy.min_capacity, min(policy.max_capacity, desired))


def reconcile(recommendations: Iterable[int], current: int, complete: bool = True) -> int:
    """Combine per-policy recommendations: the maximum wins.

    When ``complete`` is False (some policy had no data) the result never
    drops below ``current``.
    """
    values = list(recommendations)
    if not values:
        return current
    desired = max(values)
    if not complete and desired < current:
        return current
    return desired


@dataclass
class ScalingDecision:
    """Outcome of evaluating one target during one tick."""

    target: ResourceId
    current_capacity: int
    desired_capacity: int
    action: Literal["scale_out", "scale_in", "maintain"]
    reason: str
    recommendations: dict[str, int] = field(default_factory=dict)
    applied: bool = False


@dataclass
class TargetStatus:
    """Controller bookkeeping for one target resource."""

    state: ScalerState = ScalerState.STEADY
    last_scale_out: float | None = None
    last_scale_in: float | None = None
    consecutive_failures: int = 0
    next_attempt_at: float = 0.0
    last_decision: ScalingDecision | None = None
    last_error: str | None = None


class AutoscalingController:
    """Drives capacity of target resources toward their policies' targets.

    Args:
        executor: Executor used for capacity updates (shares resource locks
            with provisioning)
        store: Observed state store
        adapter: Source of metric samples
        policies: Policies to enforce; those sharing a target must share
            min_capacity and max_capacity
        capacity_attribute: Attribute holding the replica count
        poll_interval: Seconds between ticks when running in the background
        metric_window: Sliding window for samples, in seconds
        failure_backoff: First backoff after a failed tick for a target
        max_failure_backoff: Backoff cap
        clock: Returns current time in seconds (same clock as sample timestamps)
        metric_retry: Backoff for metric fetches
        sleep: Sleep function used between metric fetch retries

    Raises:
        ConfigurationError: If policies for one target disagree on bounds
    """

    def __init__(
        self,
        executor: ApplyExecutor,
        store: StateStore,
        adapter: ControlPlaneAdapter,
        policies: Iterable[ScalingPolicy],
        capacity_attribute: str = DEFAULT_CAPACITY_ATTRIBUTE,
        poll_interval: float = 60.0,
        metric_window: float = 300.0,
        failure_backoff: float = 30.0,
        max_failure_backoff: float = 600.0,
        clock: Callable[[], float] = time.time,
        metric_retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.store = store
        self.adapter = adapter
        self.capacity_attribute = capacity_attribute
        self.poll_interval = poll_interval
        self.metric_window = metric_window
        self.failure_backoff = failure_backoff
        self.max_failure_backoff = max_failure_backoff
        self.clock = clock
        self.sleep = sleep
        self.metric_retry = metric_retry or RetryConfig(
            max_attempts=2, initial_delay=0.5, max_delay=2.0
        )

        self.policies: dict[ResourceId, list[ScalingPolicy]] = defaultdict(list)
        for policy in policies:
            self.policies[policy.target].append(policy)
        self._validate_shared_bounds()

        self.window = MetricWindow(metric_window)
        self._status: dict[ResourceId, TargetStatus] = {
            target: TargetStatus() for target in self.policies
        }
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _validate_shared_bounds(self) -> None:
        for target, policies in self.policies.items():
            bounds = {(p.min_capacity, p.max_capacity) for p in policies}
            if len(bounds) > 1:
                raise ConfigurationError(
                    f"Scaling policies for {target} disagree on capacity bounds: "
                    f"{sorted(bounds)}"
                )

    @property
    def targets(self) -> list[ResourceId]:
        return sorted(self.policies)

    def status(self, target: ResourceId) -> TargetStatus:
        return self._status[target]

    def tick(self) -> list[ScalingDecision]:
        """Evaluate every target once. Failures are contained per target."""
        now = self.clock()
        decisions = []
        for target in self.targets:
            status = self._status[target]
            if now < status.next_attempt_at:
                logger.debug(
                    f"{target}: backing off for {status.next_attempt_at - now:.0f}s more"
                )
                continue
            try:
                decision = self._evaluate(target, now)
            except Exception as e:
                self._record_failure(target, now, e)
                continue
            if decision is not None:
                status.last_decision = decision
                decisions.append(decision)
        return decisions

    def _evaluate(self, target: ResourceId, now: float) -> ScalingDecision | None:
        status = self._status[target]
        policies = self.policies[target]

        record = self.store.get(target)
        if record is None:
            logger.debug(f"{target}: not provisioned yet, no scaling")
            return None

        self._expire_cooldowns(status, policies, now)
        current = self._current_capacity(record)

        recommendations: dict[str, int] = {}
        for policy in policies:
            sample = self._latest_sample(record, policy, now)
            if sample is None:
                logger.debug(f"{target}: no fresh {policy.metric_kind} sample")
                continue
            recommendations[policy.name] = compute_desired_capacity(current, sample.value, policy)

        if not recommendations:
            return ScalingDecision(target, current, current, "maintain", "No metric data")

        complete = len(recommendations) == len(policies)
        desired = reconcile(recommendations.values(), current, complete)

        if desired == current:
            reason = f"Capacity {current} is on target"
            if not complete:
                reason += " (scale-in needs data from every policy)"
            return ScalingDecision(target, current, desired, "maintain", reason, recommendations)

        scale_out = desired > current
        action = "scale_out" if scale_out else "scale_in"
        last = status.last_scale_out if scale_out else status.last_scale_in
        cooldown = self._cooldown(policies, scale_out)
        if last is not None and now - last < cooldown:
            remaining = cooldown - (now - last)
            return ScalingDecision(
                target,
                current,
                desired,
                action,
                f"Cooldown period active (remaining: {remaining:.0f}s)",
                recommendations,
            )

        return self._scale(target, record, current, desired, scale_out, recommendations, now)

    def _scale(
        self,
        target: ResourceId,
        record: ObservedRecord,
        current: int,
        desired: int,
        scale_out: bool,
        recommendations: dict[str, int],
        now: float,
    ) -> ScalingDecision:
        status = self._status[target]
        action = "scale_out" if scale_out else "scale_in"
        status.state = ScalerState.SCALING_OUT if scale_out else ScalerState.SCALING_IN
        logger.info(f"{target}: {action} {current} -> {desired} ({recommendations})")

        attrs = dict(record.attributes)
        attrs[self.capacity_attribute] = desired
        change = Change(
            identity=target,
            kind=ChangeKind.UPDATE,
            desired_attrs=attrs,
            observed_attrs=record.attributes,
            planned_attrs=attrs,
            resource_dependencies=record.depends_on,
            observed_generation=record.generation,
            remote_id=record.remote_id,
        )
        outcome = self.executor.apply(ChangeSet((change,))).outcomes[0]

        if outcome.state != ChangeState.APPLIED:
            status.state = ScalerState.STEADY
            raise StrataError(f"{action} to {desired} failed: {outcome.error}")

        if scale_out:
            status.last_scale_out = now
            status.state = ScalerState.COOLDOWN_OUT
        else:
            status.last_scale_in = now
            status.state = ScalerState.COOLDOWN_IN
        status.consecutive_failures = 0
        status.last_error = None

        return ScalingDecision(
            target,
            current,
            desired,
            action,
            f"Policies recommend {desired}",
            recommendations,
            applied=True,
        )

    @staticmethod
    def _cooldown(policies: list[ScalingPolicy], scale_out: bool) -> float:
        # Tracked per resource; the strictest policy sets it.
        if scale_out:
            return max(p.scale_out_cooldown for p in policies)
        return max(p.scale_in_cooldown for p in policies)

    def _expire_cooldowns(
        self, status: TargetStatus, policies: list[ScalingPolicy], now: float
    ) -> None:
        if status.state == ScalerState.COOLDOWN_OUT and status.last_scale_out is not None:
            if now - status.last_scale_out >= self._cooldown(policies, True):
                status.state = ScalerState.STEADY
        elif status.state == ScalerState.COOLDOWN_IN and status.last_scale_in is not None:
            if now - status.last_scale_in >= self._cooldown(policies, False):
                status.state = ScalerState.STEADY

    def _current_capacity(self, record: ObservedRecord) -> int:
        value = record.attributes.get(self.capacity_attribute)
        if value is None:
            raise ConfigurationError(
                f"{record.identity} has no {self.capacity_attribute!r} attribute to scale"
            )
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"{record.identity}.{self.capacity_attribute} is not an integer: {value!r}"
            ) from e

    def _latest_sample(self, record: ObservedRecord, policy: ScalingPolicy, now: float):
        samples = call_with_retry(
            lambda: self.adapter.get_metric(
                record.remote_id, policy.metric_kind.value, self.metric_window
            ),
            self.metric_retry,
            retryable_exceptions=(TransientError,),
            sleep=self.sleep,
            description=f"get_metric {record.identity} {policy.metric_kind}",
        )
        self.window.add(samples)
        return self.window.latest(record.remote_id, policy.metric_kind.value, now)

    def _record_failure(self, target: ResourceId, now: float, error: Exception) -> None:
        status = self._status[target]
        status.consecutive_failures += 1
        status.last_error = safe_error_message(error)
        delay = min(
            self.failure_backoff * (2 ** (status.consecutive_failures - 1)),
            self.max_failure_backoff,
        )
        status.next_attempt_at = now + delay
        logger.error(
            f"{target}: autoscaling tick failed ({status.consecutive_failures} in a row), "
            f"next attempt in {delay:.0f}s: {status.last_error}"
        )

    # Background loop

    def start(self) -> "AutoscalingHandle":
        """Run tick() every poll_interval seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            raise StrataError("Autoscaling controller is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="strata-autoscaler", daemon=True
        )
        self._thread.start()
        logger.info(
            f"Autoscaling started for {len(self.policies)} targets "
            f"(interval {self.poll_interval}s)"
        )
        return AutoscalingHandle(self)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Autoscaling stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in autoscaling loop: {safe_error_message(e)}")
            self._stop_event.wait(self.poll_interval)


class AutoscalingHandle:
    """Handle returned by start(); stops the background loop."""

    def __init__(self, controller: AutoscalingController):
        self.controller = controller

    @property
    def running(self) -> bool:
        return self.controller.running

    def stop(self, timeout: float | None = None) -> None:
        self.controller.stop(timeout)


__all__ = [
    "AutoscalingController",
    "AutoscalingHandle",
    "ScalerState",
    "ScalingDecision",
    "ScalingPolicy",
    "TargetStatus",
    "compute_desired_capacity",
    "reconcile",
]
