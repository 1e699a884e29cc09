"""Tests for the metric sliding window."""

from strata.metrics import MetricKind, MetricSample, MetricWindow


def sample(value, timestamp, resource_id="svc-1", kind="cpu_utilization"):
    return MetricSample(resource_id, kind, value, timestamp)


class TestMetricWindow:
    """Test sample retention and lookup."""

    def test_latest_returns_newest_in_window(self):
        """Verify the most recent sample wins."""
        window = MetricWindow(300)
        window.add([sample(40, 100), sample(80, 200), sample(60, 150)])

        assert window.latest("svc-1", "cpu_utilization", now=250).value == 80

    def test_out_of_order_samples_sorted(self):
        """Verify late-arriving samples do not displace newer ones."""
        window = MetricWindow(300)
        window.add([sample(80, 200)])
        window.add([sample(10, 120)])

        assert window.latest("svc-1", "cpu_utilization", now=210).value == 80
        assert len(window) == 2

    def test_duplicate_timestamps_dropped(self):
        """Verify overlapping fetches do not double-count samples."""
        window = MetricWindow(300)
        window.add([sample(40, 100), sample(80, 200)])
        window.add([sample(40, 100), sample(80, 200)])

        assert len(window) == 2

    def test_stale_samples_evicted(self):
        """Verify samples older than the window are not used."""
        window = MetricWindow(60)
        window.add([sample(90, 100)])

        assert window.latest("svc-1", "cpu_utilization", now=200) is None
        assert len(window) == 0

    def test_series_keyed_by_resource_and_kind(self):
        """Verify series never mix across resources or metrics."""
        window = MetricWindow(300)
        window.add(
            [
                sample(50, 100),
                sample(900, 100, kind=MetricKind.REQUEST_COUNT_PER_TARGET),
                sample(10, 100, resource_id="svc-2"),
            ]
        )

        assert window.latest("svc-1", "cpu_utilization", 150).value == 50
        assert window.latest("svc-1", MetricKind.REQUEST_COUNT_PER_TARGET, 150).value == 900
        assert window.latest("svc-2", "cpu_utilization", 150).value == 10

    def test_metric_kind_prints_as_value(self):
        """Verify enum members and plain strings address the same series."""
        assert str(MetricKind.CPU_UTILIZATION) == "cpu_utilization"
