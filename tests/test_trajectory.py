"""Tests for run-to-run trajectory tracking.

Tests cover:
- Stability as overlap / max(len) of axiom hashes, normalized text
- First point has zero stability; two empty sets are fully stable
- Stabilization run, attractor strength and variance
- History is capped at max_points
"""

import pytest

from neon_soul.trajectory import (
    TrajectoryTracker,
    format_trajectory_report,
    hash_text,
)


class TestHashText:
    def test_case_and_whitespace_insensitive(self):
        assert hash_text("Honesty  above\tcomfort") == hash_text("honesty above comfort")

    def test_different_text(self):
        assert hash_text("honesty") != hash_text("kindness")


class TestRecord:
    def test_first_point_zero(self):
        point = TrajectoryTracker().record(["a", "b"], 4)
        assert point.stability == 0.0
        assert point.axiom_count == 2
        assert point.principle_count == 4

    def test_overlap_over_largest(self):
        tracker = TrajectoryTracker()
        tracker.record(["a", "b", "c", "d"], 4)
        point = tracker.record(["a", "b", "c"], 3)
        assert point.stability == pytest.approx(0.75)

    def test_duplicates_collapse(self):
        tracker = TrajectoryTracker()
        tracker.record(["Honesty"], 1)
        point = tracker.record(["honesty", "HONESTY "], 1)
        assert point.axiom_count == 1
        assert point.stability == 1.0

    def test_both_empty_is_stable(self):
        tracker = TrajectoryTracker()
        tracker.record([], 0)
        assert tracker.record([], 0).stability == 1.0

    def test_capped(self):
        tracker = TrajectoryTracker(max_points=3)
        for i in range(5):
            tracker.record([str(i)], 1, run_at=f"run-{i}")
        assert [p.run_at for p in tracker.points] == ["run-2", "run-3", "run-4"]

    def test_points_is_a_copy(self):
        tracker = TrajectoryTracker()
        tracker.record(["a"], 1)
        tracker.points.clear()
        assert len(tracker.points) == 1


class TestMetrics:
    def test_single_point(self):
        tracker = TrajectoryTracker()
        tracker.record(["a"], 1)
        metrics = tracker.metrics()
        assert metrics.history == [0.0]
        assert not metrics.is_stable
        assert metrics.stabilization_run == 0

    def test_stabilizes(self):
        tracker = TrajectoryTracker()
        tracker.record(["a", "b"], 2)  # 0.0
        tracker.record(["a", "c"], 2)  # 0.5
        tracker.record(["a", "c"], 2)  # 1.0
        tracker.record(["a", "c"], 2)  # 1.0

        metrics = tracker.metrics()

        assert metrics.history == [0.0, 0.5, 1.0, 1.0]
        assert metrics.stabilization_run == 2
        assert metrics.attractor_strength == 1.0
        assert metrics.is_stable
        assert metrics.variance == 0.0

    def test_unstable_variance(self):
        tracker = TrajectoryTracker()
        tracker.record(["a", "b"], 2)
        tracker.record(["a", "c"], 2)  # 0.5
        tracker.record(["d", "e"], 2)  # 0.0

        metrics = tracker.metrics()

        assert metrics.stabilization_run == 0
        assert not metrics.is_stable
        assert metrics.variance == pytest.approx(0.0625)

    def test_report(self):
        tracker = TrajectoryTracker()
        tracker.record(["a"], 1)
        tracker.record(["a"], 1)
        report = format_trajectory_report(tracker.metrics())
        assert report.startswith("## Trajectory")
        assert "| Stable | Yes |" in report
        assert "2. 100% " in report
