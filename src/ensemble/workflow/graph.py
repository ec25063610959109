"""Dependency graph of workflow steps.

Partitions steps into dependency levels and answers which steps are
blocked by a failure.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from ensemble.exceptions import DependencyError

from .models import WorkflowStep

logger = structlog.get_logger()


@dataclass
class StepNode:
    """Node in dependency graph."""

    id: str
    index: int
    dependencies: list[str] = field(default_factory=list)


class DependencyGraph:
    """Dependency graph for step execution ordering."""

    def __init__(self, steps: Iterable[WorkflowStep]) -> None:
        """Build graph from steps in definition order.

        Args:
            steps: Workflow steps; dependencies must reference known steps
        """
        self.nodes: dict[str, StepNode] = {}
        self.dependents: dict[str, set[str]] = defaultdict(set)

        for index, step in enumerate(steps):
            self.nodes[step.id] = StepNode(
                id=step.id,
                index=index,
                dependencies=list(dict.fromkeys(step.dependencies)),
            )

        for node in self.nodes.values():
            for dep_id in node.dependencies:
                self.dependents[dep_id].add(node.id)

    def levels(self) -> list[list[str]]:
        """Partition steps into dependency levels (Kahn's algorithm).

        Level 0 holds steps without dependencies; level N holds steps whose
        dependencies all sit in earlier levels. Steps keep definition order
        within a level.

        Raises:
            DependencyError: If some steps can never become ready (cycle)
        """
        in_degree = {
            node_id: sum(1 for dep in node.dependencies if dep in self.nodes)
            for node_id, node in self.nodes.items()
        }
        current = [node_id for node_id, degree in in_degree.items() if degree == 0]
        levels: list[list[str]] = []
        placed = 0

        while current:
            levels.append(current)
            placed += len(current)
            released: set[str] = set()
            for node_id in current:
                for dependent in self.dependents.get(node_id, ()):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        released.add(dependent)
            current = sorted(released, key=lambda n: self.nodes[n].index)

        if placed != len(self.nodes):
            stuck = [n for n, degree in in_degree.items() if degree > 0]
            raise DependencyError(
                f"Dependency cycle among steps: {', '.join(stuck)}",
                cycles=[stuck],
            )

        logger.debug("dependency_levels_computed", levels=len(levels), steps=placed)
        return levels

    def dependents_closure(self, step_id: str) -> list[str]:
        """Every step that transitively depends on ``step_id``, in definition order."""
        seen: set[str] = set()
        queue = deque(self.dependents.get(step_id, ()))
        while queue:
            node_id = queue.popleft()
            if node_id in seen:
                continue
            seen.add(node_id)
            queue.extend(self.dependents.get(node_id, ()))
        return sorted(seen, key=lambda n: self.nodes[n].index)
