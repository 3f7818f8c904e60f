from __future__ import annotations

import logging
from collections.abc import Mapping
from graphlib import CycleError, TopologicalSorter
from typing import Any, Literal

from sprintfoundry.config import ROLE_ORDER, AgentDefinition, PlatformConfig, ProjectConfig
from sprintfoundry.models import ExecutionPlan, HumanGate, PlanStep, Ticket
from sprintfoundry.planning.graph import DependencyGraph
from sprintfoundry.planning.rules import condition_matches

logger = logging.getLogger(__name__)

ValidationErrorKind = Literal[
    "MalformedPlan",
    "DuplicateStep",
    "DanglingDependency",
    "CyclicDependency",
    "MissingMandatoryStep",
    "UnknownAgent",
    "InvalidGate",
    "InvalidParallelGroup",
]

INJECTED_PREFIX = "[AUTO-INJECTED BY RULE]"


class ValidationError(ValueError):
    """Raised when a plan cannot be normalised into an executable plan."""

    def __init__(
        self,
        message: str,
        *,
        kind: ValidationErrorKind,
        step_number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.step_number = step_number


class PlanValidator:
    def __init__(self, platform: PlatformConfig, project: ProjectConfig) -> None:
        self.platform = platform
        self.project = project
        self.rules = [rule for rule in [*platform.rules, *project.rules] if rule.enforced]
        self.agents: list[AgentDefinition] = list(platform.agents)
        self.catalog: list[str] = list(project.agents)
        self._roles = {agent.type: agent.role for agent in self.agents}

    def validate(
        self,
        raw_plan: ExecutionPlan | Mapping[str, Any],
        ticket: Ticket | None = None,
    ) -> ExecutionPlan:
        plan = self._coerce(raw_plan)
        self._check_duplicates(plan)
        self._remap_agents(plan)
        self._check_dependencies(plan)
        self._check_acyclic(plan)
        self._expand_after_step_gates(plan)

        model_rules: dict[str, str] = {}
        for rule in self.rules:
            if not condition_matches(rule.condition, ticket, plan):
                continue
            action_type = rule.action.get("type")
            if action_type == "require_agent":
                self._require_agent(plan, str(rule.action.get("agent", "")), rule.id)
            elif action_type == "require_role":
                self._require_role(plan, str(rule.action.get("role", "")), rule.id)
            elif action_type == "require_human_gate":
                self._require_gate(plan, str(rule.action.get("after_agent", "")))
            elif action_type == "set_model":
                model = rule.action.get("model")
                if isinstance(model, dict):
                    model = model.get("model")
                if rule.action.get("agent") and model:
                    model_rules[str(rule.action["agent"])] = str(model)
            # set_budget applies at execution time.

        for step in plan.steps:
            if step.agent in model_rules:
                step.model = model_rules[step.agent]
            elif not step.model:
                step.model = resolve_model(self.platform, self.project, step.agent)

        self._check_gates(plan)
        self._check_parallel_groups(plan)
        self._check_acyclic(plan)
        return plan

    @staticmethod
    def _coerce(raw_plan: ExecutionPlan | Mapping[str, Any]) -> ExecutionPlan:
        payload = raw_plan.to_dict() if isinstance(raw_plan, ExecutionPlan) else dict(raw_plan)
        try:
            return ExecutionPlan.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed plan: {exc}", kind="MalformedPlan") from exc

    def role_of(self, agent_id: str) -> str | None:
        return self._roles.get(agent_id)

    def _step_roles(self, plan: ExecutionPlan) -> list[tuple[PlanStep, str | None]]:
        return [(step, self.role_of(step.agent)) for step in plan.steps]

    @staticmethod
    def _check_duplicates(plan: ExecutionPlan) -> None:
        seen: set[int] = set()
        for step in plan.steps:
            if step.step_number in seen:
                raise ValidationError(
                    f"duplicate step number {step.step_number}",
                    kind="DuplicateStep",
                    step_number=step.step_number,
                )
            seen.add(step.step_number)

    def _remap_agents(self, plan: ExecutionPlan) -> None:
        for step in plan.steps:
            if step.agent in self._roles:
                continue
            replacement = self._resolve_unknown_agent(step.agent)
            if replacement is None:
                raise ValidationError(
                    f"step {step.step_number} uses unknown agent '{step.agent}'",
                    kind="UnknownAgent",
                    step_number=step.step_number,
                )
            logger.warning(
                "Remapped unknown agent %r to %r at step %d",
                step.agent,
                replacement,
                step.step_number,
            )
            step.agent = replacement

    def _resolve_unknown_agent(self, agent_id: str) -> str | None:
        lowered = agent_id.lower()
        candidate = lowered
        while "-" in candidate:
            candidate = candidate.split("-", 1)[1]
            if candidate in self._roles:
                return candidate
        for role in sorted(ROLE_ORDER, key=len, reverse=True):
            if role in lowered:
                return self._agent_for_role(role)
        return None

    def _agent_for_role(self, role: str) -> str | None:
        for agent_id in self.catalog:
            if self.role_of(agent_id) == role:
                return agent_id
        for agent in self.agents:
            if agent.role == role:
                return agent.type
        return None

    @staticmethod
    def _check_dependencies(plan: ExecutionPlan) -> None:
        numbers = {step.step_number for step in plan.steps}
        for step in plan.steps:
            for dependency in step.depends_on:
                if dependency not in numbers:
                    raise ValidationError(
                        f"step {step.step_number} depends on non-existent step {dependency}",
                        kind="DanglingDependency",
                        step_number=step.step_number,
                    )

    @staticmethod
    def _check_acyclic(plan: ExecutionPlan) -> None:
        sorter = TopologicalSorter({step.step_number: step.depends_on for step in plan.steps})
        try:
            sorter.prepare()
        except CycleError as exc:
            cycle = " -> ".join(str(number) for number in exc.args[1])
            raise ValidationError(
                f"dependency cycle detected: {cycle}",
                kind="CyclicDependency",
                step_number=exc.args[1][0],
            ) from exc

    @staticmethod
    def _next_step_number(plan: ExecutionPlan) -> int:
        return max((step.step_number for step in plan.steps), default=0) + 1

    def _anchor_steps(self, plan: ExecutionPlan, role: str | None) -> list[int]:
        """Terminal steps of the nearest role preceding ``role`` in the canonical order."""
        position = ROLE_ORDER.index(role) if role in ROLE_ORDER else len(ROLE_ORDER)
        step_roles = self._step_roles(plan)
        for prior_role in reversed(ROLE_ORDER[:position]):
            members = [step for step, step_role in step_roles if step_role == prior_role]
            if members:
                return _terminal(members)
        return _terminal(plan.steps)

    def _insert_step(self, plan: ExecutionPlan, agent_id: str, task: str) -> PlanStep:
        step = PlanStep(
            step_number=self._next_step_number(plan),
            agent=agent_id,
            task=task,
            depends_on=self._anchor_steps(plan, self.role_of(agent_id)),
            estimated_complexity="medium",
        )
        plan.steps.append(step)
        return step

    def _require_agent(self, plan: ExecutionPlan, agent_id: str, rule_id: str) -> None:
        if any(step.agent == agent_id for step in plan.steps):
            return
        if agent_id not in self._roles:
            raise ValidationError(
                f"rule '{rule_id}' requires agent '{agent_id}' which is not registered",
                kind="MissingMandatoryStep",
            )
        step = self._insert_step(
            plan,
            agent_id,
            f"{INJECTED_PREFIX} Run {agent_id} agent scan/review",
        )
        logger.info("Rule %s inserted step %d (%s)", rule_id, step.step_number, agent_id)

    def _require_role(self, plan: ExecutionPlan, role: str, rule_id: str) -> None:
        if any(step_role == role for _, step_role in self._step_roles(plan)):
            return
        agent_id = self._agent_for_role(role)
        if agent_id is None:
            raise ValidationError(
                f"rule '{rule_id}' requires role '{role}' but no agent provides it",
                kind="MissingMandatoryStep",
            )
        definition = next(agent for agent in self.agents if agent.type == agent_id)
        step = self._insert_step(
            plan,
            agent_id,
            f"{INJECTED_PREFIX} Run {definition.name} (role: {role})",
        )
        logger.info("Rule %s inserted step %d (%s)", rule_id, step.step_number, agent_id)

    def _require_gate(self, plan: ExecutionPlan, after_agent: str) -> None:
        matches = [step for step in plan.steps if step.agent == after_agent]
        if not matches:
            role = self.role_of(after_agent) or after_agent
            matches = [step for step, step_role in self._step_roles(plan) if step_role == role]
        if not matches:
            return
        for target in _review_targets(plan, matches[-1].step_number):
            if plan.gate_for(target) is not None:
                continue
            plan.human_gates.append(
                HumanGate(
                    gate_id=f"gate-step-{target}",
                    step_number=target,
                    required=True,
                    reason=f"[RULE] Human review required at {after_agent} agent boundary",
                )
            )

    @staticmethod
    def _expand_after_step_gates(plan: ExecutionPlan) -> None:
        numbers = {step.step_number for step in plan.steps}
        gates: list[HumanGate] = []
        for gate in plan.human_gates:
            if gate.after_step is None:
                gates.append(gate)
                continue
            if gate.after_step not in numbers:
                raise ValidationError(
                    f"gate {gate.gate_id} follows non-existent step {gate.after_step}",
                    kind="InvalidGate",
                    step_number=gate.after_step,
                )
            targets = _review_targets(plan, gate.after_step)
            for target in targets:
                if any(g.step_number == target and g.required for g in gates):
                    continue
                gates.append(
                    HumanGate(
                        gate_id=gate.gate_id if len(targets) == 1 else f"{gate.gate_id}-{target}",
                        step_number=target,
                        required=gate.required,
                        reason=gate.reason,
                        rework_target=gate.rework_target,
                    )
                )
        plan.human_gates = gates

    def _check_gates(self, plan: ExecutionPlan) -> None:
        numbers = {step.step_number for step in plan.steps}
        gate_ids: set[str] = set()
        for gate in plan.human_gates:
            if gate.step_number not in numbers:
                raise ValidationError(
                    f"gate {gate.gate_id} references non-existent step {gate.step_number}",
                    kind="InvalidGate",
                    step_number=gate.step_number,
                )
            if gate.gate_id in gate_ids:
                raise ValidationError(f"duplicate gate id {gate.gate_id}", kind="InvalidGate")
            gate_ids.add(gate.gate_id)
            if gate.rework_target is not None and gate.rework_target not in self._roles:
                raise ValidationError(
                    f"gate {gate.gate_id} routes rework to unknown agent '{gate.rework_target}'",
                    kind="UnknownAgent",
                    step_number=gate.step_number,
                )

    @staticmethod
    def _check_parallel_groups(plan: ExecutionPlan) -> None:
        numbers = {step.step_number for step in plan.steps}
        graph = DependencyGraph(plan)
        for group in plan.parallel_groups:
            for number in group:
                if number not in numbers:
                    raise ValidationError(
                        f"parallel group {group} references non-existent step {number}",
                        kind="InvalidParallelGroup",
                        step_number=number,
                    )
            for number in group:
                overlap = graph.ancestors(number).intersection(group)
                if overlap:
                    raise ValidationError(
                        f"parallel group {group}: step {number} depends on "
                        f"step {min(overlap)} in the same group",
                        kind="InvalidParallelGroup",
                        step_number=number,
                    )


def _review_targets(plan: ExecutionPlan, step_number: int) -> list[int]:
    # A review after a step holds the steps that follow it, or the step itself at the end.
    return DependencyGraph(plan).dependents(step_number) or [step_number]


def resolve_model(platform: PlatformConfig, project: ProjectConfig, agent_id: str) -> str:
    return (
        project.model_overrides.get(agent_id)
        or platform.defaults.model_per_agent.get(agent_id)
        or platform.defaults.model_per_agent.get("developer")
        or ""
    )


def _terminal(steps: list[PlanStep]) -> list[int]:
    members = {step.step_number for step in steps}
    depended_on = {
        dependency for step in steps for dependency in step.depends_on if dependency in members
    }
    return sorted(members - depended_on)


def validate_plan(
    raw_plan: ExecutionPlan | Mapping[str, Any],
    platform: PlatformConfig,
    project: ProjectConfig,
    ticket: Ticket | None = None,
) -> ExecutionPlan:
    return PlanValidator(platform, project).validate(raw_plan, ticket)
