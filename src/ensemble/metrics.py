"""Execution metrics accumulators.

Prometheus collectors live on a registry owned by each recorder, so several
engines (or tests) can coexist in one process. The in-memory totals back
``summary()`` without scraping the collectors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

_DURATION_BUCKETS = (0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 900, float("inf"))


@dataclass
class _Totals:
    count: int = 0
    succeeded: int = 0
    duration_ms: float = 0.0

    def add(self, success: bool, duration_ms: float) -> None:
        self.count += 1
        self.succeeded += int(success)
        self.duration_ms += duration_ms

    def as_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "succeeded": self.succeeded,
            "failed": self.count - self.succeeded,
            "avg_duration_ms": self.duration_ms / self.count if self.count else 0.0,
        }


@dataclass
class _LoopTotals:
    count: int = 0
    converged: int = 0
    loops: int = 0
    score: float = 0.0
    improvement: float = 0.0
    duration_ms: float = 0.0

    def as_dict(self, loop_name: str) -> dict[str, float]:
        return {
            "count": self.count,
            "converged": self.converged,
            "convergence_rate": self.converged / self.count if self.count else 0.0,
            f"avg_{loop_name}": self.loops / self.count if self.count else 0.0,
            "avg_score": self.score / self.count if self.count else 0.0,
            "avg_duration_ms": self.duration_ms / self.count if self.count else 0.0,
        }


class MetricsRecorder:
    """Counts, durations and convergence rates of executions."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.step_total = Counter(
            "ensemble_workflow_steps_total",
            "Workflow steps by terminal status",
            labelnames=("status",),
            registry=self.registry,
        )
        self.step_retries_total = Counter(
            "ensemble_workflow_step_retries_total",
            "Retried step attempts",
            registry=self.registry,
        )
        self.step_duration = Histogram(
            "ensemble_workflow_step_duration_seconds",
            "Step duration including retries",
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.workflow_total = Counter(
            "ensemble_workflows_total",
            "Workflow executions by terminal status",
            labelnames=("status",),
            registry=self.registry,
        )
        self.workflow_duration = Histogram(
            "ensemble_workflow_duration_seconds",
            "Workflow execution duration",
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.workflows_active = Gauge(
            "ensemble_workflows_active",
            "Workflows running or paused",
            registry=self.registry,
        )
        self.task_total = Counter(
            "ensemble_orchestration_tasks_total",
            "Orchestration tasks by pattern and outcome",
            labelnames=("pattern", "outcome"),
            registry=self.registry,
        )
        self.task_duration = Histogram(
            "ensemble_orchestration_task_duration_seconds",
            "Orchestration task duration",
            labelnames=("pattern",),
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.protocol_total = Counter(
            "ensemble_protocol_runs_total",
            "Collaboration protocol runs",
            labelnames=("protocol", "converged"),
            registry=self.registry,
        )
        self.protocol_loops = Histogram(
            "ensemble_protocol_loops",
            "Rounds or iterations used per protocol run",
            labelnames=("protocol",),
            buckets=(1, 2, 3, 4, 5, 6, 8, 10),
            registry=self.registry,
        )

        self._steps = _Totals()
        self._retries = 0
        self._workflows = _Totals()
        self._workflow_statuses: dict[str, int] = {}
        self._tasks: dict[str, _Totals] = {}
        self._discussions = _LoopTotals()
        self._critiques = _LoopTotals()

    def record_step(self, status: str, duration_ms: float, retries: int = 0) -> None:
        self.step_total.labels(status=status).inc()
        self.step_duration.observe(duration_ms / 1000)
        if retries:
            self.step_retries_total.inc(retries)
            self._retries += retries
        self._steps.add(status == "completed", duration_ms)

    def record_workflow(self, status: str, duration_ms: float) -> None:
        self.workflow_total.labels(status=status).inc()
        self.workflow_duration.observe(duration_ms / 1000)
        self._workflows.add(status == "completed", duration_ms)
        self._workflow_statuses[status] = self._workflow_statuses.get(status, 0) + 1

    def set_active_workflows(self, count: int) -> None:
        self.workflows_active.set(count)

    def record_task(self, pattern: str, success: bool, duration_ms: float) -> None:
        self.task_total.labels(pattern=pattern, outcome="success" if success else "failure").inc()
        self.task_duration.labels(pattern=pattern).observe(duration_ms / 1000)
        self._tasks.setdefault(pattern, _Totals()).add(success, duration_ms)

    def record_discussion(
        self, rounds: int, converged: bool, consensus_score: float, duration_ms: float
    ) -> None:
        self._record_loop(
            self._discussions, "discussion", rounds, converged, consensus_score, duration_ms
        )

    def record_critique(
        self,
        iterations: int,
        converged: bool,
        final_score: float,
        duration_ms: float,
        improvement: float = 0.0,
    ) -> None:
        self._record_loop(
            self._critiques, "self_critique", iterations, converged, final_score, duration_ms
        )
        self._critiques.improvement += improvement

    def _record_loop(
        self,
        totals: _LoopTotals,
        protocol: str,
        loops: int,
        converged: bool,
        score: float,
        duration_ms: float,
    ) -> None:
        self.protocol_total.labels(protocol=protocol, converged=str(converged).lower()).inc()
        self.protocol_loops.labels(protocol=protocol).observe(loops)
        totals.count += 1
        totals.converged += int(converged)
        totals.loops += loops
        totals.score += score
        totals.duration_ms += duration_ms

    def summary(self) -> dict[str, Any]:
        """Snapshot of the accumulated totals."""
        critiques = self._critiques.as_dict("iterations")
        critiques["avg_improvement"] = (
            self._critiques.improvement / self._critiques.count if self._critiques.count else 0.0
        )
        return {
            "steps": {**self._steps.as_dict(), "retries": self._retries},
            "workflows": {**self._workflows.as_dict(), "by_status": dict(self._workflow_statuses)},
            "tasks": {pattern: totals.as_dict() for pattern, totals in self._tasks.items()},
            "discussions": self._discussions.as_dict("rounds"),
            "critiques": critiques,
        }
