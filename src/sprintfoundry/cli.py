from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from sprintfoundry import __version__
from sprintfoundry.config import FoundryConfig, load_config, save_config
from sprintfoundry.gates import HumanGateResolver
from sprintfoundry.models import ExecutionPlan, Ticket
from sprintfoundry.planning import PlanValidator, ValidationError
from sprintfoundry.runners import AgentRunner, ProcessAgentRunner
from sprintfoundry.scheduler import Scheduler
from sprintfoundry.state import CheckpointCommitter, RunStore, RunStoreError

DECISION_CHOICES = {
    "approve": "approved",
    "reject": "rejected",
    "changes": "changes_requested",
}


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: FoundryConfig
    validator: PlanValidator
    scheduler: Scheduler


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _build_runner(config: FoundryConfig) -> AgentRunner:
    return ProcessAgentRunner(config.runner)


def _load_runtime(
    workspace: Path,
    config_path: Path,
    runner: AgentRunner | None = None,
) -> Runtime:
    config = load_config(config_path)
    scheduler = Scheduler(
        runner=runner or _build_runner(config),
        committer=CheckpointCommitter(config.git),
        gate_resolver=HumanGateResolver(config.gates.review_dir),
        config=config,
    )
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        validator=PlanValidator(config.platform, config.project),
        scheduler=scheduler,
    )


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Cannot read {path}: {exc}") from exc


def _load_ticket(ticket_file: Path | None, plan_payload: dict[str, Any]) -> Ticket:
    if ticket_file is not None:
        return Ticket.from_dict(_read_json(ticket_file))
    embedded = plan_payload.get("ticket")
    if isinstance(embedded, dict):
        return Ticket.from_dict(embedded)
    ticket_id = str(plan_payload.get("ticket_id", ""))
    return Ticket(id=ticket_id, title=ticket_id)


def _validate(runtime: Runtime, plan_payload: Any, ticket: Ticket) -> ExecutionPlan:
    if not isinstance(plan_payload, dict):
        raise click.ClickException("Plan file must contain a JSON object.")
    try:
        return runtime.validator.validate(plan_payload, ticket)
    except ValidationError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc


@click.group()
@click.version_option(__version__, prog_name="sprintfoundry")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """SprintFoundry execution scheduler."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="sprintfoundry.toml", show_default=True)
@click.option("--project-id", default=None)
def init_command(config_value: str, project_id: str | None) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if project_id:
        config.project.project_id = project_id
    save_config(config_path, config)
    (root / ".sprintfoundry").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized SprintFoundry in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agents: {', '.join(sorted(config.platform.agent_ids()))}")


@cli.command("validate")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--ticket", "ticket_file", type=click.Path(exists=True, path_type=Path))
@click.option("--config", "config_value", default="sprintfoundry.toml", show_default=True)
def validate_command(plan_file: Path, ticket_file: Path | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    payload = _read_json(plan_file)
    ticket = _load_ticket(ticket_file, payload if isinstance(payload, dict) else {})
    plan = _validate(runtime, payload, ticket)
    click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))


@cli.command("run")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--ticket", "ticket_file", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@click.option("--poll-seconds", type=float, default=None)
@click.option("--max-polls", type=int, default=None, help="Stop waiting on gates after N polls.")
@click.option("--config", "config_value", default="sprintfoundry.toml", show_default=True)
def run_command(
    plan_file: Path,
    ticket_file: Path | None,
    workspace: Path,
    poll_seconds: float | None,
    max_polls: int | None,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    workspace = workspace.resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(root, config_value))
    payload = _read_json(plan_file)
    ticket = _load_ticket(ticket_file, payload if isinstance(payload, dict) else {})
    plan = _validate(runtime, payload, ticket)

    run = asyncio.run(
        runtime.scheduler.execute(
            plan,
            workspace,
            ticket,
            poll_seconds=poll_seconds,
            max_polls=max_polls,
        )
    )

    click.echo(f"Run ID: {run.run_id}")
    click.echo(f"Status: {run.status}")
    completed = sum(1 for step in run.steps.values() if step.state == "completed")
    click.echo(f"Steps: {completed}/{len(run.steps)}")
    click.echo(f"Tokens: {run.total_tokens_used} Cost: ${run.total_cost_usd:.2f}")
    if run.pr_url:
        click.echo(f"PR: {run.pr_url}")
    if run.status == "blocked_on_gate":
        blocked = [step.step_number for step in run.steps.values() if step.state == "blocked"]
        click.echo(f"Waiting on human review before steps: {blocked}")
    if run.status == "failed":
        raise click.ClickException(run.error or "Run failed")


@cli.command("status")
@click.argument("run_id", required=False)
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@click.option("--verbose", is_flag=True, default=False)
def status_command(run_id: str | None, workspace: Path, verbose: bool) -> None:
    store = RunStore(workspace.resolve())
    if run_id is None:
        run_id = store.latest_run_id()
        if run_id is None:
            click.echo(json.dumps({"runs": []}, indent=2))
            return
    try:
        data = store.load(run_id)
    except RunStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    if not verbose:
        data = {
            "run_id": data.get("run_id"),
            "status": data.get("status"),
            "error": data.get("error"),
            "pr_url": data.get("pr_url"),
            "total_tokens_used": data.get("total_tokens_used"),
            "total_cost_usd": data.get("total_cost_usd"),
            "steps": [
                {
                    "step_number": step.get("step_number"),
                    "agent": step.get("agent"),
                    "state": step.get("state"),
                    "attempt_count": step.get("attempt_count"),
                    "committed": step.get("committed"),
                }
                for step in data.get("steps", [])
            ],
        }
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


@cli.command("reviews")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@click.option("--config", "config_value", default="sprintfoundry.toml", show_default=True)
def reviews_command(workspace: Path, config_value: str) -> None:
    config = load_config(_resolve_config_path(Path.cwd().resolve(), config_value))
    resolver = HumanGateResolver(config.gates.review_dir)
    requests = resolver.pending_requests(workspace.resolve())
    click.echo(json.dumps(requests, ensure_ascii=False, indent=2))


@cli.command("decide")
@click.argument("gate_id")
@click.argument("decision", type=click.Choice(sorted(DECISION_CHOICES)))
@click.option("--feedback", default="", help="Reviewer feedback passed to the rework target.")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@click.option("--config", "config_value", default="sprintfoundry.toml", show_default=True)
def decide_command(
    gate_id: str,
    decision: str,
    feedback: str,
    workspace: Path,
    config_value: str,
) -> None:
    config = load_config(_resolve_config_path(Path.cwd().resolve(), config_value))
    resolver = HumanGateResolver(config.gates.review_dir)
    path = resolver.write_decision(
        workspace.resolve(), gate_id, DECISION_CHOICES[decision], feedback
    )
    click.echo(f"Recorded {DECISION_CHOICES[decision]} for {gate_id}: {path}")
