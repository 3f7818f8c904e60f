from sprintfoundry.config import FoundryConfig, Rule
from sprintfoundry.models import AgentResult, StepExecution, Ticket
from sprintfoundry.rework import decide, resolve_ceiling

AGENTS = {"developer", "qa", "security"}


def _step(attempt: int = 1) -> StepExecution:
    return StepExecution(step_number=2, agent="qa", task="test", attempt_count=attempt)


def test_complete_result_completes() -> None:
    decision = decide(AgentResult("complete", "done"), _step(), ceiling=3)

    assert decision.disposition == "completed"


def test_needs_rework_under_ceiling_routes_to_target() -> None:
    result = AgentResult(
        "needs_rework", "tests fail", rework_reason="fix login", rework_target="developer"
    )

    decision = decide(result, _step(attempt=2), ceiling=2, known_agents=AGENTS)

    assert decision.disposition == "needs_rework"
    assert decision.target == "developer"
    assert decision.reason == "fix login"


def test_needs_rework_at_ceiling_fails() -> None:
    result = AgentResult("needs_rework", "still failing", rework_target="developer")

    decision = decide(result, _step(attempt=3), ceiling=2, known_agents=AGENTS)

    assert decision.disposition == "failed"
    assert decision.ceiling_exceeded is True
    assert "max rework cycles (2)" in decision.reason


def test_needs_rework_without_target_is_not_guessed() -> None:
    decision = decide(AgentResult("needs_rework", "redo"), _step(), ceiling=3)

    assert decision.disposition == "failed"
    assert decision.target is None
    assert "without a rework_target" in decision.reason


def test_needs_rework_with_unregistered_target_fails() -> None:
    result = AgentResult("needs_rework", "redo", rework_target="intern")

    decision = decide(result, _step(), ceiling=3, known_agents=AGENTS)

    assert decision.disposition == "failed"
    assert "unknown agent 'intern'" in decision.reason


def test_blocked_result_surfaces_issues_verbatim() -> None:
    result = AgentResult("blocked", "cannot proceed", issues=["missing API key", "no schema"])

    decision = decide(result, _step(), ceiling=3)

    assert decision.disposition == "failed"
    assert decision.reason == "Step 2 (qa) blocked: missing API key; no schema"


def test_ceiling_resolution_prefers_project_and_budget_rules() -> None:
    config = FoundryConfig.default()
    assert resolve_ceiling(config) == 3

    config.project.max_rework_cycles = 1
    assert resolve_ceiling(config) == 1

    config.project.rules.append(
        Rule(
            id="p0-extra-rework",
            condition={"type": "priority_is", "values": ["p0"]},
            action={"type": "set_budget", "max_rework_cycles": 5},
        )
    )
    assert resolve_ceiling(config, Ticket(id="T", priority="p0")) == 5
    assert resolve_ceiling(config, Ticket(id="T", priority="p2")) == 1
