from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

StepState = Literal[
    "pending",
    "blocked",
    "ready",
    "running",
    "awaiting_commit",
    "completed",
    "failed",
    "needs_rework",
]
RunStatus = Literal["running", "blocked_on_gate", "failed", "completed"]
ResultStatus = Literal["complete", "needs_rework", "blocked", "failed"]
GateStatus = Literal["approved", "rejected", "changes_requested", "pending"]
Complexity = Literal["low", "medium", "high"]
ErrorKind = Literal[
    "step_failed",
    "step_blocked",
    "rework_ceiling_exceeded",
    "invalid_rework",
    "commit_error",
    "gate_rejected",
    "deadlock",
    "aborted",
    "internal_error",
]

RESULT_STATUSES: frozenset[str] = frozenset({"complete", "needs_rework", "blocked", "failed"})
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"failed", "completed"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Ticket:
    id: str
    title: str = ""
    description: str = ""
    labels: list[str] = field(default_factory=list)
    priority: str = "p2"
    acceptance_criteria: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ticket:
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            labels=[str(label) for label in data.get("labels", [])],
            priority=str(data.get("priority", "p2")).lower(),
            acceptance_criteria=[str(item) for item in data.get("acceptance_criteria", [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "labels": list(self.labels),
            "priority": self.priority,
            "acceptance_criteria": list(self.acceptance_criteria),
        }


@dataclass(slots=True)
class PlanStep:
    step_number: int
    agent: str
    task: str
    depends_on: list[int] = field(default_factory=list)
    estimated_complexity: Complexity = "medium"
    context_inputs: list[dict[str, Any]] = field(default_factory=list)
    model: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanStep:
        return cls(
            step_number=int(data["step_number"]),
            agent=str(data["agent"]),
            task=str(data.get("task", "")),
            depends_on=[int(item) for item in data.get("depends_on", [])],
            estimated_complexity=data.get("estimated_complexity", "medium"),
            context_inputs=[dict(item) for item in data.get("context_inputs", [])],
            model=str(data.get("model") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "agent": self.agent,
            "task": self.task,
            "depends_on": list(self.depends_on),
            "estimated_complexity": self.estimated_complexity,
            "context_inputs": [dict(item) for item in self.context_inputs],
            "model": self.model,
        }


@dataclass(slots=True)
class HumanGate:
    gate_id: str
    step_number: int
    required: bool = True
    reason: str = ""
    rework_target: str | None = None
    after_step: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HumanGate:
        """Read a gate that blocks ``step_number`` or reviews ``after_step``.

        An ``after_step`` gate is a review once that step completes; the plan
        validator turns it into gates on the steps that follow it.
        """
        after_step = data.get("after_step")
        if after_step is not None:
            after_step = int(after_step)
            step_number = after_step
            default_id = f"gate-after-step-{after_step}"
        elif data.get("step_number") is not None:
            step_number = int(data["step_number"])
            default_id = f"gate-step-{step_number}"
        else:
            raise KeyError("step_number")
        return cls(
            gate_id=str(data.get("gate_id") or default_id),
            step_number=step_number,
            required=bool(data.get("required", True)),
            reason=str(data.get("reason", "")),
            rework_target=data.get("rework_target"),
            after_step=after_step,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "step_number": self.step_number,
            "required": self.required,
            "reason": self.reason,
            "rework_target": self.rework_target,
            "after_step": self.after_step,
        }


@dataclass(slots=True)
class ExecutionPlan:
    plan_id: str
    ticket_id: str
    classification: str = "new_feature"
    reasoning: str = ""
    steps: list[PlanStep] = field(default_factory=list)
    parallel_groups: list[list[int]] = field(default_factory=list)
    human_gates: list[HumanGate] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionPlan:
        return cls(
            plan_id=str(data.get("plan_id", "")),
            ticket_id=str(data.get("ticket_id", "")),
            classification=str(data.get("classification", "new_feature")),
            reasoning=str(data.get("reasoning", "")),
            steps=[PlanStep.from_dict(item) for item in data.get("steps", [])],
            parallel_groups=[
                [int(number) for number in group] for group in data.get("parallel_groups", [])
            ],
            human_gates=[HumanGate.from_dict(item) for item in data.get("human_gates", [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "ticket_id": self.ticket_id,
            "classification": self.classification,
            "reasoning": self.reasoning,
            "steps": [step.to_dict() for step in self.steps],
            "parallel_groups": [list(group) for group in self.parallel_groups],
            "human_gates": [gate.to_dict() for gate in self.human_gates],
        }

    def step(self, step_number: int) -> PlanStep | None:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def gate_for(self, step_number: int) -> HumanGate | None:
        for gate in self.human_gates:
            if gate.after_step is not None:
                continue
            if gate.step_number == step_number and gate.required:
                return gate
        return None


@dataclass(slots=True)
class AgentResult:
    status: ResultStatus
    summary: str
    artifacts_created: list[str] = field(default_factory=list)
    artifacts_modified: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    rework_reason: str | None = None
    rework_target: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, summary: str, issues: list[str] | None = None) -> AgentResult:
        return cls(status="failed", summary=summary, issues=list(issues or [summary]))

    @classmethod
    def from_dict(cls, data: Any) -> AgentResult:
        if not isinstance(data, dict):
            return cls.failed("Agent result is not a JSON object")
        status = data.get("status")
        summary = data.get("summary")
        if not status or not summary:
            return cls.failed(
                "Agent did not produce a valid result file",
                ["Missing required fields in .agent-result.json"],
            )
        if status not in RESULT_STATUSES:
            return cls.failed(f"Unknown agent result status: {status}")
        return cls(
            status=status,
            summary=str(summary),
            artifacts_created=[str(item) for item in data.get("artifacts_created", [])],
            artifacts_modified=[str(item) for item in data.get("artifacts_modified", [])],
            issues=[str(item) for item in data.get("issues", [])],
            rework_reason=data.get("rework_reason"),
            rework_target=data.get("rework_target"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary,
            "artifacts_created": list(self.artifacts_created),
            "artifacts_modified": list(self.artifacts_modified),
            "issues": list(self.issues),
            "rework_reason": self.rework_reason,
            "rework_target": self.rework_target,
            "metadata": dict(self.metadata),
        }

    @property
    def tokens_used(self) -> int:
        try:
            return int(self.metadata.get("tokens_used") or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def cost_usd(self) -> float:
        try:
            return float(self.metadata.get("cost_usd") or 0.0)
        except (TypeError, ValueError):
            return 0.0


@dataclass(slots=True)
class StepExecution:
    step_number: int
    agent: str
    task: str
    depends_on: list[int] = field(default_factory=list)
    state: StepState = "pending"
    attempt_count: int = 1
    instance: int = 1
    result: AgentResult | None = None
    committed: bool = False
    tokens_used: int = 0
    cost_usd: float = 0.0
    error: str | None = None
    return_agent: str | None = None
    return_task: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "agent": self.agent,
            "task": self.task,
            "depends_on": list(self.depends_on),
            "state": self.state,
            "attempt_count": self.attempt_count,
            "instance": self.instance,
            "result": self.result.to_dict() if self.result else None,
            "committed": self.committed,
            "tokens_used": self.tokens_used,
            "cost_usd": self.cost_usd,
            "error": self.error,
            "return_agent": self.return_agent,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass(slots=True)
class Run:
    run_id: str
    plan: ExecutionPlan
    ticket: Ticket
    workspace: str
    steps: dict[int, StepExecution] = field(default_factory=dict)
    history: list[StepExecution] = field(default_factory=list)
    status: RunStatus = "running"
    error: str | None = None
    error_kind: ErrorKind | None = None
    total_tokens_used: int = 0
    total_cost_usd: float = 0.0
    pr_url: str | None = None
    gate_decisions: dict[str, dict[str, Any]] = field(default_factory=dict)
    aborted: bool = False
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def fail(self, kind: ErrorKind, message: str) -> None:
        if self.is_terminal:
            return
        self.status = "failed"
        self.error = message
        self.error_kind = kind
        self.completed_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan": self.plan.to_dict(),
            "ticket": self.ticket.to_dict(),
            "workspace": self.workspace,
            "status": self.status,
            "error": self.error,
            "error_kind": self.error_kind,
            "steps": [step.to_dict() for step in self.steps.values()],
            "history": [step.to_dict() for step in self.history],
            "total_tokens_used": self.total_tokens_used,
            "total_cost_usd": round(self.total_cost_usd, 6),
            "pr_url": self.pr_url,
            "gate_decisions": {key: dict(value) for key, value in self.gate_decisions.items()},
            "aborted": self.aborted,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
