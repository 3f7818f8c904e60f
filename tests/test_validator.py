from graphlib import TopologicalSorter
from typing import Any

import pytest

from sprintfoundry.config import DefaultsConfig, PlatformConfig, ProjectConfig, Rule
from sprintfoundry.models import ExecutionPlan, Ticket
from sprintfoundry.planning import PlanValidator, ValidationError, resolve_model, validate_plan


def _plan(steps: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    return {"plan_id": "plan-1", "ticket_id": "T-1", "steps": steps, **extra}


def _step(number: int, agent: str, depends_on: list[int] | None = None, **extra: Any) -> dict:
    return {
        "step_number": number,
        "agent": agent,
        "task": f"task for {agent}",
        "depends_on": depends_on or [],
        **extra,
    }


def _validator(project: ProjectConfig | None = None) -> PlanValidator:
    return PlanValidator(PlatformConfig(), project or ProjectConfig())


def _is_acyclic(plan: ExecutionPlan) -> bool:
    sorter = TopologicalSorter({step.step_number: step.depends_on for step in plan.steps})
    return len(list(sorter.static_order())) == len(plan.steps)


def test_inserts_single_qa_step_after_final_developer_step() -> None:
    raw = _plan([_step(1, "product"), _step(2, "developer", [1]), _step(3, "developer", [2])])

    plan = _validator().validate(raw, Ticket(id="T-1"))

    qa_steps = [step for step in plan.steps if step.agent == "qa"]
    assert len(qa_steps) == 1
    assert qa_steps[0].step_number == 4
    assert qa_steps[0].depends_on == [3]
    assert qa_steps[0].task.startswith("[AUTO-INJECTED BY RULE]")
    assert _is_acyclic(plan)


def test_qa_depends_on_every_terminal_developer_step() -> None:
    raw = _plan([_step(1, "architect"), _step(2, "developer", [1]), _step(3, "go-developer", [1])])

    plan = _validator().validate(raw)

    qa = next(step for step in plan.steps if step.agent == "qa")
    assert qa.depends_on == [2, 3]


def test_existing_qa_step_is_not_duplicated() -> None:
    raw = _plan([_step(1, "developer"), _step(2, "go-qa", [1])])

    plan = _validator().validate(raw)

    assert [step.agent for step in plan.steps] == ["developer", "go-qa"]


def test_role_injection_prefers_project_catalog() -> None:
    raw = _plan([_step(1, "go-developer")])
    project = ProjectConfig(agents=["go-developer", "go-qa"])

    plan = _validator(project).validate(raw)

    assert plan.steps[-1].agent == "go-qa"
    assert plan.steps[-1].depends_on == [1]


def test_validation_is_deterministic_and_does_not_mutate_input() -> None:
    raw = _plan([_step(1, "developer")])
    ticket = Ticket(id="T-1", labels=["Security"], priority="p0")

    first = _validator().validate(raw, ticket)
    second = _validator().validate(raw, ticket)

    assert first.to_dict() == second.to_dict()
    assert len(raw["steps"]) == 1


def test_security_label_and_p0_gate_rules() -> None:
    raw = _plan([_step(1, "developer")])
    ticket = Ticket(id="T-1", labels=["needs-SECURITY-review"], priority="p0")

    plan = _validator().validate(raw, ticket)

    agents = {step.agent: step for step in plan.steps}
    assert agents["qa"].step_number == 2
    assert agents["security"].step_number == 3
    assert agents["security"].depends_on == [2]
    assert [gate.step_number for gate in plan.human_gates] == [3]
    assert plan.human_gates[0].gate_id == "gate-step-3"
    assert plan.human_gates[0].required is True


def test_gate_attaches_to_boundary_step_when_nothing_follows() -> None:
    raw = _plan([_step(1, "developer"), _step(2, "qa", [1])])

    plan = _validator().validate(raw, Ticket(id="T-1", priority="p0"))

    assert [gate.step_number for gate in plan.human_gates] == [2]


def test_existing_gate_is_not_duplicated() -> None:
    raw = _plan(
        [_step(1, "developer"), _step(2, "qa", [1]), _step(3, "devops", [2])],
        human_gates=[{"gate_id": "release", "step_number": 3}],
    )

    plan = _validator().validate(raw, Ticket(id="T-1", priority="p0"))

    assert [gate.gate_id for gate in plan.human_gates] == ["release"]


def test_after_step_gate_holds_the_following_step() -> None:
    raw = _plan(
        [_step(1, "developer"), _step(2, "qa", [1])],
        human_gates=[{"after_step": 1, "reason": "check the diff"}],
    )

    plan = PlanValidator(PlatformConfig(rules=[]), ProjectConfig()).validate(raw)

    assert [(gate.gate_id, gate.step_number) for gate in plan.human_gates] == [
        ("gate-after-step-1", 2)
    ]
    assert plan.human_gates[0].after_step is None
    assert plan.gate_for(1) is None
    assert plan.gate_for(2) is not None


def test_after_step_gate_on_last_step_holds_that_step() -> None:
    raw = _plan(
        [_step(1, "developer"), _step(2, "qa", [1])],
        human_gates=[{"gate_id": "final", "after_step": 2}],
    )

    plan = PlanValidator(PlatformConfig(rules=[]), ProjectConfig()).validate(raw)

    assert [(gate.gate_id, gate.step_number) for gate in plan.human_gates] == [("final", 2)]


def test_after_step_gate_with_several_followers_gets_one_gate_each() -> None:
    raw = _plan(
        [_step(1, "architect"), _step(2, "developer", [1]), _step(3, "go-developer", [1])],
        human_gates=[{"gate_id": "design", "after_step": 1}],
    )

    plan = PlanValidator(PlatformConfig(rules=[]), ProjectConfig()).validate(raw)

    assert [(gate.gate_id, gate.step_number) for gate in plan.human_gates] == [
        ("design-2", 2),
        ("design-3", 3),
    ]


def test_step_number_gate_still_blocks_that_step() -> None:
    raw = _plan(
        [_step(1, "developer"), _step(2, "qa", [1])],
        human_gates=[{"step_number": 1}],
    )

    plan = PlanValidator(PlatformConfig(rules=[]), ProjectConfig()).validate(raw)

    assert [(gate.gate_id, gate.step_number) for gate in plan.human_gates] == [
        ("gate-step-1", 1)
    ]


def test_after_step_gate_for_unknown_step_is_rejected() -> None:
    raw = _plan([_step(1, "developer")], human_gates=[{"after_step": 7}])

    with pytest.raises(ValidationError) as exc_info:
        PlanValidator(PlatformConfig(rules=[]), ProjectConfig()).validate(raw)

    assert exc_info.value.kind == "InvalidGate"


def test_models_follow_overrides_defaults_and_set_model_rules() -> None:
    platform = PlatformConfig(
        defaults=DefaultsConfig(model_per_agent={"developer": "sonnet", "qa": "haiku"}),
        rules=[
            Rule(
                id="security-model",
                action={"type": "set_model", "agent": "security", "model": {"model": "opus"}},
            )
        ],
    )
    project = ProjectConfig(model_overrides={"qa": "qa-large"})
    raw = _plan(
        [
            _step(1, "developer"),
            _step(2, "qa", [1]),
            _step(3, "security", [2]),
            _step(4, "devops", [3], model="pinned"),
        ]
    )

    plan = PlanValidator(platform, project).validate(raw)

    assert [step.model for step in plan.steps] == ["sonnet", "qa-large", "opus", "pinned"]
    assert resolve_model(platform, project, "architect") == "sonnet"
    assert resolve_model(PlatformConfig(), ProjectConfig(), "qa") == ""


def test_file_path_rule_matches_context_inputs() -> None:
    raw = _plan(
        [
            _step(
                1,
                "developer",
                context_inputs=[{"type": "file", "path": "src/payments/charge.py"}],
            )
        ]
    )

    plan = _validator().validate(raw)

    assert any(step.agent == "security" for step in plan.steps)


def test_advisory_rules_are_skipped() -> None:
    project = ProjectConfig(
        rules=[
            Rule(
                id="devops-always",
                action={"type": "require_agent", "agent": "devops"},
                enforced=False,
            )
        ]
    )

    plan = _validator(project).validate(_plan([_step(1, "developer")]))

    assert all(step.agent != "devops" for step in plan.steps)


def test_unknown_agent_is_remapped() -> None:
    raw = _plan([_step(1, "js-developer"), _step(2, "qa-engineer", [1])])

    plan = _validator().validate(raw)

    assert [step.agent for step in plan.steps] == ["developer", "qa"]


def test_unresolvable_agent_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(_plan([_step(1, "astrologer")]))

    assert exc_info.value.kind == "UnknownAgent"


def test_cycle_is_rejected() -> None:
    raw = _plan([_step(1, "developer", [3]), _step(2, "developer", [1]), _step(3, "qa", [2])])

    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(raw)

    assert exc_info.value.kind == "CyclicDependency"


def test_self_dependency_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(_plan([_step(1, "developer", [1])]))

    assert exc_info.value.kind == "CyclicDependency"


def test_dangling_dependency_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(_plan([_step(1, "developer", [7])]))

    assert exc_info.value.kind == "DanglingDependency"
    assert "non-existent step 7" in str(exc_info.value)


def test_duplicate_step_number_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(_plan([_step(1, "developer"), _step(1, "qa")]))

    assert exc_info.value.kind == "DuplicateStep"


def test_missing_mandatory_role_without_registered_agent() -> None:
    platform = PlatformConfig()
    platform.agents = [agent for agent in platform.agents if agent.role != "qa"]

    with pytest.raises(ValidationError) as exc_info:
        validate_plan(_plan([_step(1, "developer")]), platform, ProjectConfig())

    assert exc_info.value.kind == "MissingMandatoryStep"


def test_parallel_group_members_must_be_independent() -> None:
    raw = _plan(
        [_step(1, "developer"), _step(2, "developer", [1]), _step(3, "qa", [2])],
        parallel_groups=[[1, 2]],
    )

    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(raw)

    assert exc_info.value.kind == "InvalidParallelGroup"


def test_gate_rework_target_must_be_registered() -> None:
    raw = _plan(
        [_step(1, "developer"), _step(2, "qa", [1])],
        human_gates=[{"gate_id": "g", "step_number": 2, "rework_target": "intern"}],
    )

    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(raw)

    assert exc_info.value.kind == "UnknownAgent"


def test_gate_for_unknown_step_is_rejected() -> None:
    raw = _plan([_step(1, "developer")], human_gates=[{"gate_id": "g", "step_number": 9}])

    with pytest.raises(ValidationError) as exc_info:
        _validator().validate(raw)

    assert exc_info.value.kind == "InvalidGate"


def test_malformed_plan_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        _validator().validate({"plan_id": "p", "steps": [{"agent": "developer"}]})

    assert exc_info.value.kind == "MalformedPlan"
