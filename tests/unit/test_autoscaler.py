"""Tests for the target-tracking autoscaling controller.

The controlled resource is provisioned through the real executor first, so
every capacity change goes through the same compare-and-swap path as a
provisioning run. Time comes from a manual clock.
"""

import time
from unittest.mock import patch

import pytest

from strata.apply_executor import ChangeState, FailureReason
from strata.autoscaler import (
    AutoscalingController,
    ScalerState,
    ScalingPolicy,
    compute_desired_capacity,
    reconcile,
)
from strata.errors import ConfigurationError, PermanentError, TransientError
from strata.metrics import MetricKind, MetricSample
from strata.plan_engine import ChangeKind, PlanEngine
from strata.resource_model import DesiredState, ResourceId
from strata.retry_config import RetryConfig
from tests.conftest import cpu_sample, node

SERVICE = ResourceId("ecs_service", "app")
FAST_METRIC_RETRY = RetryConfig(max_attempts=2, initial_delay=0.0, max_delay=0.0, jitter_enabled=False)


def cpu_policy(**overrides):
    fields = {
        "target": SERVICE,
        "metric_kind": "cpu_utilization",
        "target_value": 100.0,
        "scale_out_cooldown": 60.0,
        "scale_in_cooldown": 120.0,
        "min_capacity": 1,
        "max_capacity": 10,
        "name": "cpu",
    }
    fields.update(overrides)
    return ScalingPolicy(**fields)


def request_policy(**overrides):
    return cpu_policy(metric_kind="request_count_per_target", target_value=1000.0, name="requests", **overrides)


def service_desired(desired_count=2):
    return DesiredState(
        [node("ecs_service", "app", image="app:v1", desired_count=desired_count, ignore_changes=("desired_count",))]
    )


@pytest.fixture
def provision(executor, store):
    """Create the service with a given starting capacity; return its remote id."""

    def _provision(desired_count=2):
        change_set = PlanEngine().plan(service_desired(desired_count), store.snapshot())
        assert executor.apply(change_set).succeeded
        return store.get(SERVICE).remote_id

    return _provision


@pytest.fixture
def make_controller(executor, store, control_plane, clock):
    def _make(*policies, **kwargs):
        kwargs.setdefault("metric_retry", FAST_METRIC_RETRY)
        return AutoscalingController(
            executor, store, control_plane, policies or [cpu_policy()], clock=clock, **kwargs
        )

    return _make


def capacity(store):
    return store.get(SERVICE).attributes["desired_count"]


class TestComputeDesiredCapacity:
    """Test the per-policy target-tracking formula."""

    @pytest.mark.parametrize(
        "current,observed,expected",
        [
            (2, 200.0, 4),
            (4, 50.0, 2),
            (3, 100.0, 3),
            (1, 250.0, 3),  # 2.5 rounds up
            (3, 50.0, 2),  # 1.5 rounds up
            (2, 1_000.0, 10),  # clamped to max
            (4, 1.0, 1),  # clamped to min
        ],
    )
    def test_formula(self, current, observed, expected):
        """Verify round(current * observed / target) clamped to bounds."""
        assert compute_desired_capacity(current, observed, cpu_policy()) == expected

    def test_zero_capacity_stays_zero_above_floor(self):
        """Verify a scaled-to-zero resource is lifted only by min_capacity."""
        assert compute_desired_capacity(0, 500.0, cpu_policy(min_capacity=0)) == 0
        assert compute_desired_capacity(0, 500.0, cpu_policy(min_capacity=2)) == 2


class TestReconcile:
    """Test combining recommendations across policies."""

    def test_max_wins(self):
        """Verify 3 and 5 reconcile to 5."""
        assert reconcile([3, 5], current=2) == 5

    def test_incomplete_data_blocks_scale_in(self):
        """Verify missing data never lowers capacity."""
        assert reconcile([2], current=4, complete=False) == 4
        assert reconcile([6], current=4, complete=False) == 6

    def test_no_recommendations_keeps_current(self):
        assert reconcile([], current=3) == 3


class TestScalingPolicy:
    """Test policy validation."""

    def test_default_name(self):
        """Verify an unnamed policy is named after target and metric."""
        policy = ScalingPolicy(SERVICE, "cpu_utilization", 60.0)

        assert policy.name == "ecs_service.app:cpu_utilization"

    def test_metric_kind_parsed(self):
        """Verify a metric name string becomes a MetricKind."""
        policy = cpu_policy(metric_kind="request_count_per_target")

        assert policy.metric_kind is MetricKind.REQUEST_COUNT_PER_TARGET

    def test_unknown_metric_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown metric 'disk_io'"):
            cpu_policy(metric_kind="disk_io")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"target_value": 0},
            {"min_capacity": -1},
            {"min_capacity": 5, "max_capacity": 2},
            {"scale_out_cooldown": -1},
        ],
    )
    def test_invalid_policy_rejected(self, overrides):
        """Verify nonsensical settings raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            cpu_policy(**overrides)

    def test_policies_sharing_target_must_share_bounds(self, make_controller):
        """Verify conflicting min/max for one resource is a configuration error."""
        with pytest.raises(ConfigurationError, match="disagree on capacity bounds"):
            make_controller(cpu_policy(), request_policy(max_capacity=20))


class TestScaleOut:
    """Test adding capacity."""

    def test_metric_above_target_scales_out(self, provision, make_controller, control_plane, store, clock):
        """Verify capacity 2 at 200% of target becomes 4."""
        remote_id = provision(2)
        controller = make_controller()
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))

        decisions = controller.tick()

        assert len(decisions) == 1
        decision = decisions[0]
        assert decision.applied
        assert decision.action == "scale_out"
        assert (decision.current_capacity, decision.desired_capacity) == (2, 4)
        assert capacity(store) == 4
        assert store.get(SERVICE).generation == 2
        status = controller.status(SERVICE)
        assert status.state == ScalerState.COOLDOWN_OUT
        assert status.last_scale_out == clock.now

    def test_cooldown_suppresses_second_scale_out(self, provision, make_controller, control_plane, store, clock):
        """Verify no change is emitted inside the scale-out cooldown."""
        remote_id = provision(2)
        controller = make_controller()
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        controller.tick()
        updates = len(control_plane.calls_for("update"))

        clock.advance(10)
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        decision = controller.tick()[0]

        assert not decision.applied
        assert decision.desired_capacity == 8
        assert decision.reason == "Cooldown period active (remaining: 50s)"
        assert len(control_plane.calls_for("update")) == updates
        assert capacity(store) == 4

    def test_scale_out_resumes_after_cooldown(self, provision, make_controller, control_plane, store, clock):
        """Verify the cooldown ends and the state machine returns to steady."""
        remote_id = provision(2)
        controller = make_controller()
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        controller.tick()

        clock.advance(61)
        control_plane.record_metric(cpu_sample(remote_id, 100.0, clock.now))
        decision = controller.tick()[0]
        assert decision.action == "maintain"
        assert controller.status(SERVICE).state == ScalerState.STEADY

        clock.advance(1)
        control_plane.record_metric(cpu_sample(remote_id, 150.0, clock.now))
        decision = controller.tick()[0]
        assert decision.applied
        assert capacity(store) == 6

    def test_highest_recommendation_wins(self, provision, make_controller, control_plane, store, clock):
        """Verify CPU asking for 3 and requests asking for 5 yields 5."""
        remote_id = provision(2)
        controller = make_controller(cpu_policy(), request_policy())
        control_plane.record_metric(cpu_sample(remote_id, 150.0, clock.now))
        control_plane.record_metric(
            MetricSample(remote_id, "request_count_per_target", 2500.0, clock.now)
        )

        decision = controller.tick()[0]

        assert decision.recommendations == {"cpu": 3, "requests": 5}
        assert decision.desired_capacity == 5
        assert capacity(store) == 5

    def test_clamped_to_max_capacity(self, provision, make_controller, control_plane, store, clock):
        """Verify a huge spike never exceeds max_capacity."""
        remote_id = provision(2)
        controller = make_controller()
        control_plane.record_metric(cpu_sample(remote_id, 5_000.0, clock.now))

        controller.tick()

        assert capacity(store) == 10


class TestScaleIn:
    """Test removing capacity."""

    def test_all_policies_must_agree(self, provision, make_controller, control_plane, store, clock):
        """Verify one policy without data blocks scale-in until data arrives."""
        remote_id = provision(4)
        controller = make_controller(cpu_policy(), request_policy())
        control_plane.record_metric(cpu_sample(remote_id, 50.0, clock.now))

        decision = controller.tick()[0]
        assert decision.action == "maintain"
        assert "scale-in needs data from every policy" in decision.reason
        assert capacity(store) == 4

        control_plane.record_metric(
            MetricSample(remote_id, "request_count_per_target", 500.0, clock.now)
        )
        decision = controller.tick()[0]
        assert decision.applied
        assert decision.action == "scale_in"
        assert capacity(store) == 2
        assert controller.status(SERVICE).state == ScalerState.COOLDOWN_IN

    def test_scale_in_cooldown_independent_of_scale_out(self, provision, make_controller, control_plane, store, clock):
        """Verify a recent scale-out does not delay the first scale-in."""
        remote_id = provision(2)
        controller = make_controller()
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        controller.tick()

        clock.advance(1)
        control_plane.record_metric(cpu_sample(remote_id, 25.0, clock.now))
        decision = controller.tick()[0]

        assert decision.applied
        assert capacity(store) == 1

        clock.advance(1)
        control_plane.record_metric(cpu_sample(remote_id, 400.0, clock.now))
        decision = controller.tick()[0]
        assert not decision.applied
        assert decision.reason.startswith("Cooldown period active")
        assert capacity(store) == 1


class TestMissingData:
    """Test behavior without usable samples."""

    def test_no_samples_maintains(self, provision, make_controller, store):
        """Verify absent metrics never change capacity."""
        provision(3)

        decision = make_controller().tick()[0]

        assert decision.action == "maintain"
        assert decision.reason == "No metric data"
        assert capacity(store) == 3

    def test_stale_samples_ignored(self, provision, make_controller, control_plane, store, clock):
        """Verify samples older than the window are not acted on."""
        remote_id = provision(2)
        controller = make_controller(metric_window=300.0)
        control_plane.record_metric(cpu_sample(remote_id, 900.0, clock.now - 400))

        decision = controller.tick()[0]

        assert decision.reason == "No metric data"
        assert capacity(store) == 2

    def test_unprovisioned_target_skipped(self, make_controller):
        """Verify a target absent from observed state yields no decision."""
        assert make_controller().tick() == []


class TestFailureHandling:
    """Test that failures back off per target without stopping the loop."""

    def test_metric_failure_backs_off(self, provision, make_controller, control_plane, clock):
        """Verify a failing metrics source is retried with growing delays."""
        provision(2)
        controller = make_controller(failure_backoff=30.0, max_failure_backoff=600.0)

        with patch.object(
            control_plane, "get_metric", side_effect=PermanentError("metrics unavailable")
        ) as get_metric:
            assert controller.tick() == []
            status = controller.status(SERVICE)
            assert status.consecutive_failures == 1
            assert status.next_attempt_at == clock.now + 30
            assert status.last_error == "metrics unavailable"

            clock.advance(10)
            controller.tick()
            assert get_metric.call_count == 1

            clock.advance(20)
            controller.tick()
            assert get_metric.call_count == 2
            assert status.consecutive_failures == 2
            assert status.next_attempt_at == clock.now + 60

    def test_transient_metric_error_retried_in_tick(self, provision, make_controller, control_plane, store, clock):
        """Verify one throttled metric fetch does not cost a tick."""
        remote_id = provision(2)
        controller = make_controller()
        samples = [cpu_sample(remote_id, 200.0, clock.now)]

        with patch.object(
            control_plane, "get_metric", side_effect=[TransientError("throttled"), samples]
        ):
            decision = controller.tick()[0]

        assert decision.applied
        assert capacity(store) == 4

    def test_metric_retry_uses_injected_sleep(self, provision, executor, store, control_plane, clock):
        """Verify metric fetch backoff goes through the controller's sleep function."""
        remote_id = provision(2)
        sleeps = []
        controller = AutoscalingController(
            executor,
            store,
            control_plane,
            [cpu_policy()],
            clock=clock,
            metric_retry=RetryConfig(max_attempts=2, initial_delay=5.0, max_delay=5.0, jitter_enabled=False),
            sleep=sleeps.append,
        )
        samples = [cpu_sample(remote_id, 200.0, clock.now)]

        with patch.object(
            control_plane, "get_metric", side_effect=[TransientError("throttled"), samples]
        ):
            decision = controller.tick()[0]

        assert decision.applied
        assert sleeps == [5.0]

    def test_failed_scale_does_not_start_cooldown(self, provision, make_controller, control_plane, store, clock):
        """Verify a rejected capacity update leaves timestamps untouched."""
        remote_id = provision(2)
        controller = make_controller()
        control_plane.inject("update", "app", PermanentError("service locked"))
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))

        assert controller.tick() == []

        status = controller.status(SERVICE)
        assert status.last_scale_out is None
        assert status.state == ScalerState.STEADY
        assert status.consecutive_failures == 1
        assert capacity(store) == 2

    def test_success_resets_failure_count(self, provision, make_controller, control_plane, clock):
        """Verify a good tick clears the backoff."""
        remote_id = provision(2)
        controller = make_controller(failure_backoff=30.0)
        control_plane.inject("update", "app", PermanentError("service locked"), times=1)
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        controller.tick()

        clock.advance(30)
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        decision = controller.tick()[0]

        assert decision.applied
        assert controller.status(SERVICE).consecutive_failures == 0
        assert controller.status(SERVICE).last_error is None


class TestProvisioningInteraction:
    """Test that autoscaling and provisioning share state safely."""

    def test_plan_after_scaling_is_noop(self, provision, make_controller, control_plane, store, clock):
        """Verify ignore_changes keeps provisioning from undoing a scale-out."""
        remote_id = provision(2)
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        make_controller().tick()

        change_set = PlanEngine().plan(service_desired(2), store.snapshot())

        assert change_set.get(SERVICE).kind == ChangeKind.NOOP

    def test_stale_provisioning_plan_loses_to_scaling(
        self, provision, make_controller, executor, control_plane, store, clock
    ):
        """Verify an update planned before a scale-out fails instead of clobbering it."""
        remote_id = provision(2)
        stale = PlanEngine().plan(
            DesiredState(
                [node("ecs_service", "app", image="app:v2", desired_count=2, ignore_changes=("desired_count",))]
            ),
            store.snapshot(),
        )
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))
        make_controller().tick()

        outcome = executor.apply(stale).get(SERVICE)

        assert outcome.state == ChangeState.FAILED
        assert outcome.reason == FailureReason.CONCURRENT_MODIFICATION
        assert capacity(store) == 4
        assert store.get(SERVICE).attributes["image"] == "app:v1"


class TestBackgroundLoop:
    """Test start/stop of the daemon thread."""

    def test_start_and_stop(self, provision, make_controller, control_plane, store, clock):
        """Verify the loop ticks in the background and stops on request."""
        remote_id = provision(2)
        controller = make_controller(poll_interval=0.01)
        control_plane.record_metric(cpu_sample(remote_id, 200.0, clock.now))

        handle = controller.start()
        deadline = time.monotonic() + 5
        while capacity(store) != 4 and time.monotonic() < deadline:
            time.sleep(0.01)
        handle.stop(timeout=5)

        assert capacity(store) == 4
        assert not handle.running

    def test_double_start_rejected(self, make_controller):
        """Verify one controller runs at most one loop."""
        controller = make_controller(poll_interval=0.01)
        handle = controller.start()
        try:
            with pytest.raises(Exception, match="already running"):
                controller.start()
        finally:
            handle.stop(timeout=5)
