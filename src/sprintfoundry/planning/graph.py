from __future__ import annotations

from collections.abc import Mapping
from graphlib import TopologicalSorter

from sprintfoundry.models import ExecutionPlan, StepExecution

SCHEDULABLE_STATES = frozenset({"pending", "ready"})


class DependencyGraph:
    """Readiness queries over a plan's ``depends_on`` edges."""

    def __init__(self, plan: ExecutionPlan) -> None:
        self._order = [step.step_number for step in plan.steps]
        self._dependencies = {step.step_number: tuple(step.depends_on) for step in plan.steps}
        self._groups = [tuple(group) for group in plan.parallel_groups]

    def dependencies(self, step_number: int) -> tuple[int, ...]:
        return self._dependencies.get(step_number, ())

    def dependents(self, step_number: int) -> list[int]:
        return [
            number for number in self._order if step_number in self._dependencies[number]
        ]

    def ancestors(self, step_number: int) -> set[int]:
        seen: set[int] = set()
        stack = list(self.dependencies(step_number))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies(current))
        return seen

    def topological_order(self) -> list[int]:
        # Raises graphlib.CycleError when the plan was not validated.
        sorter = TopologicalSorter(self._dependencies)
        return list(sorter.static_order())

    def is_ready(self, step_number: int, steps: Mapping[int, StepExecution]) -> bool:
        for dependency in self.dependencies(step_number):
            upstream = steps.get(dependency)
            if upstream is None or upstream.state != "completed":
                return False
        return True

    def ready_set(self, steps: Mapping[int, StepExecution]) -> list[StepExecution]:
        ready: list[StepExecution] = []
        for number in self._order:
            step = steps.get(number)
            if step is None or step.state not in SCHEDULABLE_STATES:
                continue
            if self.is_ready(number, steps):
                ready.append(step)
        return ready

    def parallel_batch(self, ready: list[StepExecution]) -> list[StepExecution]:
        if not ready:
            return []
        by_number = {step.step_number: step for step in ready}
        for group in self._groups:
            members = [by_number[number] for number in group if number in by_number]
            if len(members) > 1:
                return members
        return [ready[0]]
