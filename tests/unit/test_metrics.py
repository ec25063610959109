"""Tests for the metrics recorder."""

from __future__ import annotations

import pytest

from ensemble.metrics import MetricsRecorder


class TestMetricsRecorder:
    """Tests for MetricsRecorder."""

    def test_empty_summary(self, metrics: MetricsRecorder) -> None:
        summary = metrics.summary()

        assert summary["steps"]["count"] == 0
        assert summary["steps"]["avg_duration_ms"] == 0.0
        assert summary["discussions"]["convergence_rate"] == 0.0
        assert summary["tasks"] == {}

    def test_steps_and_workflows(self, metrics: MetricsRecorder) -> None:
        metrics.record_step("completed", 100.0)
        metrics.record_step("failed", 300.0, retries=2)
        metrics.record_workflow("completed", 1000.0)
        metrics.record_workflow("cancelled", 0.0)

        summary = metrics.summary()

        assert summary["steps"] == {
            "count": 2,
            "succeeded": 1,
            "failed": 1,
            "avg_duration_ms": 200.0,
            "retries": 2,
        }
        assert summary["workflows"]["by_status"] == {"completed": 1, "cancelled": 1}
        assert metrics.registry.get_sample_value("ensemble_workflow_step_retries_total") == 2

    def test_tasks_by_pattern(self, metrics: MetricsRecorder) -> None:
        metrics.record_task("parallel", True, 10.0)
        metrics.record_task("parallel", False, 30.0)
        metrics.record_task("sequential", True, 5.0)

        tasks = metrics.summary()["tasks"]

        assert tasks["parallel"]["failed"] == 1
        assert tasks["parallel"]["avg_duration_ms"] == 20.0
        assert tasks["sequential"]["count"] == 1
        assert (
            metrics.registry.get_sample_value(
                "ensemble_orchestration_tasks_total",
                {"pattern": "parallel", "outcome": "failure"},
            )
            == 1
        )

    def test_protocol_loops(self, metrics: MetricsRecorder) -> None:
        metrics.record_discussion(rounds=2, converged=True, consensus_score=0.9, duration_ms=50)
        metrics.record_discussion(rounds=4, converged=False, consensus_score=0.5, duration_ms=150)
        metrics.record_critique(
            iterations=3, converged=True, final_score=0.9, duration_ms=20, improvement=0.4
        )

        summary = metrics.summary()

        assert summary["discussions"]["convergence_rate"] == 0.5
        assert summary["discussions"]["avg_rounds"] == 3
        assert summary["discussions"]["avg_score"] == pytest.approx(0.7)
        assert summary["critiques"]["avg_iterations"] == 3
        assert summary["critiques"]["avg_improvement"] == pytest.approx(0.4)

    def test_recorders_are_isolated(self) -> None:
        """Each recorder owns its registry."""
        first = MetricsRecorder()
        second = MetricsRecorder()

        first.record_workflow("completed", 1.0)

        assert second.summary()["workflows"]["count"] == 0
