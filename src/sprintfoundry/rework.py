from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from typing import Literal

from sprintfoundry.config import FoundryConfig
from sprintfoundry.models import AgentResult, StepExecution, Ticket
from sprintfoundry.planning.rules import condition_matches

Disposition = Literal["completed", "needs_rework", "failed"]


@dataclass(slots=True, frozen=True)
class ReworkDecision:
    disposition: Disposition
    target: str | None = None
    reason: str = ""
    ceiling_exceeded: bool = False


def reworks_used(step: StepExecution) -> int:
    return max(0, step.attempt_count - 1)


def decide(
    result: AgentResult,
    step: StepExecution,
    ceiling: int,
    known_agents: Collection[str] | None = None,
) -> ReworkDecision:
    label = f"Step {step.step_number} ({step.agent})"
    if result.status == "complete":
        return ReworkDecision("completed")

    if result.status == "needs_rework":
        target = result.rework_target
        if not target:
            return ReworkDecision(
                "failed", reason=f"{label} requested rework without a rework_target"
            )
        if known_agents is not None and target not in known_agents:
            return ReworkDecision(
                "failed",
                target=target,
                reason=f"{label} requested rework by unknown agent '{target}'",
            )
        if reworks_used(step) >= ceiling:
            return ReworkDecision(
                "failed",
                target=target,
                reason=f"{label} exceeded max rework cycles ({ceiling})",
                ceiling_exceeded=True,
            )
        return ReworkDecision(
            "needs_rework",
            target=target,
            reason=result.rework_reason or result.summary,
        )

    detail = "; ".join(result.issues) if result.issues else result.summary
    if result.status == "blocked":
        return ReworkDecision("failed", reason=f"{label} blocked: {detail}")
    return ReworkDecision("failed", reason=f"{label} failed: {detail}")


def resolve_ceiling(config: FoundryConfig, ticket: Ticket | None = None) -> int:
    """Rework ceiling for a run, applying any matching ``set_budget`` rules."""
    ceiling = config.platform.defaults.max_rework_cycles
    if config.project.max_rework_cycles is not None:
        ceiling = config.project.max_rework_cycles
    for rule in [*config.platform.rules, *config.project.rules]:
        if not rule.enforced or rule.action.get("type") != "set_budget":
            continue
        if "max_rework_cycles" not in rule.action:
            continue
        if condition_matches(rule.condition, ticket, None):
            ceiling = int(rule.action["max_rework_cycles"])
    return max(0, ceiling)
