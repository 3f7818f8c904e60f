from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sprintfoundry.config import FoundryConfig
from sprintfoundry.gates import GateDecision, HumanGateResolver
from sprintfoundry.models import (
    AgentResult,
    ErrorKind,
    ExecutionPlan,
    HumanGate,
    Run,
    StepExecution,
    Ticket,
    utcnow_iso,
)
from sprintfoundry.planning.graph import DependencyGraph
from sprintfoundry.planning.validator import resolve_model
from sprintfoundry.rework import decide, resolve_ceiling, reworks_used
from sprintfoundry.runners.base import AgentRunner, StepExecutionError
from sprintfoundry.state.checkpoints import CheckpointCommitter, CommitError
from sprintfoundry.state.events import EventLog
from sprintfoundry.state.run_store import RunStore, RunStoreError

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class Scheduler:
    """Drives a validated plan to a terminal run state, one tick at a time."""

    def __init__(
        self,
        runner: AgentRunner,
        committer: CheckpointCommitter,
        gate_resolver: HumanGateResolver | None = None,
        config: FoundryConfig | None = None,
        *,
        store: RunStore | None = None,
        events: EventLog | None = None,
    ) -> None:
        self.runner = runner
        self.committer = committer
        self.config = config or FoundryConfig.default()
        self.gate_resolver = gate_resolver or HumanGateResolver(self.config.gates.review_dir)
        self.store = store
        self.events = events
        self.known_agents = self.config.platform.agent_ids()
        self._graphs: dict[str, DependencyGraph] = {}
        self._ceilings: dict[str, int] = {}
        self._stores: dict[str, RunStore] = {}
        self._event_logs: dict[str, EventLog] = {}
        self._commit_locks: dict[str, asyncio.Lock] = {}

    @property
    def timeout_seconds(self) -> float:
        return max(1.0, float(self.config.platform.defaults.agent_timeout_minutes) * 60.0)

    def start(
        self,
        plan: ExecutionPlan,
        workspace: Path,
        ticket: Ticket | None = None,
    ) -> Run:
        graph = DependencyGraph(plan)
        graph.topological_order()
        ticket = ticket or Ticket(id=plan.ticket_id, title=plan.ticket_id)
        run = Run(
            run_id=new_run_id(),
            plan=plan,
            ticket=ticket,
            workspace=str(Path(workspace).resolve()),
        )
        for plan_step in plan.steps:
            run.steps[plan_step.step_number] = StepExecution(
                step_number=plan_step.step_number,
                agent=plan_step.agent,
                task=plan_step.task,
                depends_on=list(plan_step.depends_on),
                state="pending" if plan_step.depends_on else "ready",
            )
        self._graphs[run.run_id] = graph
        self._ceilings[run.run_id] = resolve_ceiling(self.config, ticket)
        self._stores[run.run_id] = self.store or RunStore(Path(run.workspace))
        events_dir = self.config.platform.events_dir
        self._event_logs[run.run_id] = self.events or EventLog(
            Path(run.workspace),
            Path(events_dir) if events_dir else None,
        )

        self._emit(
            run,
            "task.started",
            {
                "plan_id": plan.plan_id,
                "ticket_id": ticket.id,
                "steps": len(plan.steps),
                "rework_ceiling": self._ceilings[run.run_id],
            },
        )
        logger.info("Run %s started with %d steps", run.run_id, len(plan.steps))
        self._refresh(run)
        self._persist(run)
        return run

    def abort(self, run: Run, reason: str = "aborted by operator") -> None:
        if run.is_terminal:
            return
        run.aborted = True
        self._fail(run, "aborted", f"Run aborted: {reason}")

    async def tick(self, run: Run) -> bool:
        """Advance the run once; returns whether any state changed."""
        if run.is_terminal or run.aborted:
            return False
        try:
            return await self._tick(run)
        except Exception as exc:
            logger.exception("Scheduler error in run %s", run.run_id)
            self._fail(run, "internal_error", f"Scheduler error: {exc}")
            return True

    async def run_until_settled(self, run: Run) -> Run:
        while not run.is_terminal:
            progressed = await self.tick(run)
            if run.status == "blocked_on_gate" or not progressed:
                break
        return run

    async def execute(
        self,
        plan: ExecutionPlan,
        workspace: Path,
        ticket: Ticket | None = None,
        *,
        poll_seconds: float | None = None,
        max_polls: int | None = None,
    ) -> Run:
        if poll_seconds is None:
            poll_seconds = self.config.platform.defaults.gate_poll_seconds
        run = self.start(plan, workspace, ticket)
        polls = 0
        while True:
            await self.run_until_settled(run)
            if run.is_terminal:
                return run
            if max_polls is not None and polls >= max_polls:
                logger.info("Run %s still waiting on a human gate", run.run_id)
                return run
            polls += 1
            await asyncio.sleep(poll_seconds)

    async def _tick(self, run: Run) -> bool:
        progress = self._refresh(run)
        progress = self._resolve_gates(run) or progress
        if run.is_terminal:
            return True

        graph = self._graphs[run.run_id]
        if self._all_completed(run):
            await self._complete(run)
            return True

        ready = graph.ready_set(run.steps)
        if not ready:
            if any(step.state == "blocked" for step in run.steps.values()):
                if run.status != "blocked_on_gate":
                    run.status = "blocked_on_gate"
                    self._persist(run)
                    progress = True
                return progress
            self._fail(run, "deadlock", "Deadlock: no executable steps remaining")
            return True

        run.status = "running"
        await self._dispatch(run, graph.parallel_batch(ready))
        if not run.is_terminal and self._all_completed(run):
            await self._complete(run)
        return True

    @staticmethod
    def _all_completed(run: Run) -> bool:
        return all(step.state == "completed" for step in run.steps.values())

    def _gate_pending(self, run: Run, step: StepExecution) -> HumanGate | None:
        # Rework instances run ahead of the review they were routed from.
        if step.return_agent is not None:
            return None
        gate = run.plan.gate_for(step.step_number)
        if gate is None:
            return None
        if run.gate_decisions.get(gate.gate_id, {}).get("status") == "approved":
            return None
        return gate

    def _refresh(self, run: Run) -> bool:
        graph = self._graphs[run.run_id]
        changed = False
        for step in run.steps.values():
            if step.state not in {"pending", "ready"}:
                continue
            if not graph.is_ready(step.step_number, run.steps):
                continue
            gate = self._gate_pending(run, step)
            if gate is not None:
                step.state = "blocked"
                self._request_review(run, gate)
                changed = True
            elif step.state == "pending":
                step.state = "ready"
                changed = True
        if changed:
            self._persist(run)
        return changed

    def _request_review(self, run: Run, gate: HumanGate) -> None:
        upstream = [
            run.steps[number]
            for number in self._graphs[run.run_id].dependencies(gate.step_number)
            if number in run.steps
        ]
        summary = "\n".join(
            f"Step {step.step_number} ({step.agent}): {step.result.summary}"
            for step in upstream
            if step.result is not None
        )
        artifacts = sorted(
            {
                path
                for step in upstream
                if step.result is not None
                for path in [*step.result.artifacts_created, *step.result.artifacts_modified]
            }
        )
        path = self.gate_resolver.request(
            gate,
            Path(run.workspace),
            run_id=run.run_id,
            summary=summary,
            artifacts=artifacts,
        )
        self._emit(
            run,
            "human_gate.requested",
            {"gate_id": gate.gate_id, "step_number": gate.step_number, "request": str(path)},
        )

    def _resolve_gates(self, run: Run) -> bool:
        progress = False
        workspace = Path(run.workspace)
        for step in list(run.steps.values()):
            if step.state != "blocked":
                continue
            gate = run.plan.gate_for(step.step_number)
            if gate is None:
                step.state = "ready"
                progress = True
                continue
            record = run.gate_decisions.setdefault(gate.gate_id, {"status": "pending"})
            decision = self.gate_resolver.resolve(
                gate, workspace, handled=record.get("handled", [])
            )
            if decision.status == "pending":
                continue
            progress = True
            record.update(decision.to_dict())
            if decision.status == "approved":
                step.state = "ready"
                self.gate_resolver.clear_request(gate, workspace)
                self._emit(run, "human_gate.approved", {"gate_id": gate.gate_id})
            elif decision.status == "rejected":
                step.state = "failed"
                step.error = decision.reviewer_feedback or "rejected by reviewer"
                self.gate_resolver.clear_request(gate, workspace)
                self._emit(
                    run,
                    "human_gate.rejected",
                    {"gate_id": gate.gate_id, "feedback": decision.reviewer_feedback},
                )
                message = f"Human gate {gate.gate_id} rejected at step {step.step_number}"
                if decision.reviewer_feedback:
                    message = f"{message}: {decision.reviewer_feedback}"
                self._fail(run, "gate_rejected", message)
                return True
            else:
                record.setdefault("handled", []).append(decision.fingerprint)
                self.gate_resolver.clear_request(gate, workspace)
                self._route_gate_changes(run, step, gate, decision)
                if run.is_terminal:
                    return True
        if progress:
            self._persist(run)
        return progress

    def _route_gate_changes(
        self,
        run: Run,
        step: StepExecution,
        gate: HumanGate,
        decision: GateDecision,
    ) -> None:
        target = gate.rework_target or self.config.gates.rework_target
        self._emit(
            run,
            "human_gate.changes_requested",
            {"gate_id": gate.gate_id, "target": target, "feedback": decision.reviewer_feedback},
        )
        ceiling = self._ceilings[run.run_id]
        if target not in self.known_agents:
            step.state = "failed"
            self._fail(
                run,
                "invalid_rework",
                f"Human gate {gate.gate_id} routes changes to unknown agent '{target}'",
            )
            return
        if reworks_used(step) >= ceiling:
            step.state = "failed"
            self._fail(
                run,
                "rework_ceiling_exceeded",
                f"Step {step.step_number} exceeded max rework cycles ({ceiling}) "
                f"after changes requested at gate {gate.gate_id}",
            )
            return
        reason = decision.reviewer_feedback or "Reviewer requested changes"
        self._schedule_rework(run, step, target, reason, force_return=True)

    async def _dispatch(self, run: Run, batch: list[StepExecution]) -> None:
        graph = self._graphs[run.run_id]
        for step in batch:
            if not graph.is_ready(step.step_number, run.steps):
                raise RuntimeError(f"step {step.step_number} dispatched before its dependencies")
            step.state = "running"
            step.started_at = utcnow_iso()
            self._emit(
                run,
                "step.started",
                {
                    "step_number": step.step_number,
                    "agent": step.agent,
                    "attempt": step.attempt_count,
                },
            )
        self._persist(run)

        self._commit_locks[run.run_id] = asyncio.Lock()
        outcomes = await asyncio.gather(
            *(self._execute_step(run, step) for step in batch),
            return_exceptions=True,
        )
        for step, outcome in zip(batch, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "Step %d raised while handling its result",
                    step.step_number,
                    exc_info=outcome,
                )
                step.state = "failed"
                step.error = str(outcome)
                self._fail(
                    run,
                    "internal_error",
                    f"Step {step.step_number} ({step.agent}) errored: {outcome}",
                )

    async def _execute_step(self, run: Run, step: StepExecution) -> None:
        try:
            result = await self.runner.run(
                step.agent,
                step.task,
                Path(run.workspace),
                self.timeout_seconds,
                context=self._step_context(run, step),
            )
        except StepExecutionError as exc:
            result = AgentResult.failed(str(exc))
        await self._handle_result(run, step, result)

    def _step_context(self, run: Run, step: StepExecution) -> dict[str, Any]:
        plan_step = run.plan.step(step.step_number)
        context_inputs = plan_step.context_inputs if plan_step else []
        model = plan_step.model if plan_step and plan_step.agent == step.agent else ""
        if not model:
            model = resolve_model(self.config.platform, self.config.project, step.agent)
        previous = [
            {
                "step_number": other.step_number,
                "agent": other.agent,
                "result": other.result.to_dict(),
            }
            for other in sorted(run.steps.values(), key=lambda item: item.step_number)
            if other.state == "completed" and other.result is not None
        ]
        return {
            "run_id": run.run_id,
            "step_number": step.step_number,
            "attempt": step.attempt_count,
            "model": model,
            "context_inputs": [dict(item) for item in context_inputs],
            "previous_results": previous,
        }

    def _discard_result(
        self, run: Run, step: StepExecution, result: AgentResult, *, committed: bool = False
    ) -> None:
        logger.warning(
            "Discarding result for step %d: run %s is %s",
            step.step_number,
            run.run_id,
            run.status,
        )
        self._emit(
            run,
            "step.result_discarded",
            {"step_number": step.step_number, "status": result.status, "committed": committed},
        )

    async def _handle_result(self, run: Run, step: StepExecution, result: AgentResult) -> None:
        if run.is_terminal or run.aborted:
            self._discard_result(run, step, result)
            return

        step.result = result
        decision = decide(result, step, self._ceilings[run.run_id], self.known_agents)
        if decision.disposition == "completed":
            await self._checkpoint(run, step, result)
        elif decision.disposition == "needs_rework":
            if decision.target is None:
                raise RuntimeError(f"rework for step {step.step_number} has no target")
            self._schedule_rework(run, step, decision.target, decision.reason)
        else:
            step.state = "failed"
            step.error = decision.reason
            step.completed_at = utcnow_iso()
            self._emit(
                run,
                "step.failed",
                {"step_number": step.step_number, "agent": step.agent, "error": decision.reason},
            )
            kind: ErrorKind = "step_failed"
            if decision.ceiling_exceeded:
                kind = "rework_ceiling_exceeded"
            elif result.status == "needs_rework":
                kind = "invalid_rework"
            elif result.status == "blocked":
                kind = "step_blocked"
            self._fail(run, kind, decision.reason)
        self._persist(run)

    async def _checkpoint(self, run: Run, step: StepExecution, result: AgentResult) -> None:
        step.state = "awaiting_commit"
        self._persist(run)
        lock = self._commit_locks.setdefault(run.run_id, asyncio.Lock())
        async with lock:
            if run.is_terminal or run.aborted:
                self._discard_result(run, step, result)
                return
            try:
                committed = await asyncio.to_thread(
                    self.committer.commit_step_checkpoint,
                    Path(run.workspace),
                    run.run_id,
                    step.step_number,
                    step.agent,
                )
            except CommitError as exc:
                if run.is_terminal or run.aborted:
                    self._discard_result(run, step, result)
                    return
                self._commit_failed(run, step, exc)
                return
            if run.is_terminal or run.aborted:
                self._discard_result(run, step, result, committed=committed)
                return
            self._commit_succeeded(run, step, result, committed)

    def _commit_failed(self, run: Run, step: StepExecution, exc: CommitError) -> None:
        step.state = "failed"
        step.error = str(exc)
        step.completed_at = utcnow_iso()
        self._emit(
            run,
            "step.failed",
            {"step_number": step.step_number, "agent": step.agent, "error": str(exc)},
        )
        self._fail(
            run,
            "commit_error",
            f"Git checkpoint commit failed at step {step.step_number}: {exc}",
        )

    def _commit_succeeded(
        self, run: Run, step: StepExecution, result: AgentResult, committed: bool
    ) -> None:
        step.committed = committed
        step.tokens_used = result.tokens_used
        step.cost_usd = result.cost_usd
        step.completed_at = utcnow_iso()
        run.total_tokens_used += step.tokens_used
        run.total_cost_usd += step.cost_usd
        if committed:
            self._emit(run, "step.committed", {"step_number": step.step_number})

        step.state = "completed"
        if step.return_agent is not None:
            self._return_to_origin(run, step)
            return
        self._emit(
            run,
            "step.completed",
            {
                "step_number": step.step_number,
                "agent": step.agent,
                "committed": committed,
                "tokens_used": step.tokens_used,
                "cost_usd": step.cost_usd,
            },
        )

    def _schedule_rework(
        self,
        run: Run,
        step: StepExecution,
        target: str,
        reason: str,
        *,
        force_return: bool = False,
    ) -> None:
        plan_step = run.plan.step(step.step_number)
        origin_agent = plan_step.agent if plan_step else step.agent
        origin_task = plan_step.task if plan_step else step.task
        step.state = "needs_rework"
        step.completed_at = utcnow_iso()
        run.history.append(step)

        successor = StepExecution(
            step_number=step.step_number,
            agent=target,
            task=_rework_task(step, reason, origin_agent, origin_task),
            depends_on=list(step.depends_on),
            attempt_count=step.attempt_count + 1,
            instance=step.instance + 1,
        )
        if force_return or target != origin_agent:
            successor.return_agent = origin_agent
            successor.return_task = origin_task
        graph = self._graphs[run.run_id]
        successor.state = "ready" if graph.is_ready(step.step_number, run.steps) else "pending"
        run.steps[step.step_number] = successor
        self._emit(
            run,
            "step.rework_triggered",
            {
                "step_number": step.step_number,
                "from_agent": step.agent,
                "target": target,
                "attempt": successor.attempt_count,
                "reason": reason,
            },
        )
        logger.info(
            "Step %d rework %d routed to %s",
            step.step_number,
            successor.attempt_count - 1,
            target,
        )

    def _return_to_origin(self, run: Run, step: StepExecution) -> None:
        if step.return_agent is None:
            raise RuntimeError(f"step {step.step_number} has no agent to return to")
        run.history.append(step)
        origin = StepExecution(
            step_number=step.step_number,
            agent=step.return_agent,
            task=step.return_task or step.task,
            depends_on=list(step.depends_on),
            attempt_count=step.attempt_count,
            instance=step.instance + 1,
            state="pending",
        )
        run.steps[step.step_number] = origin
        self._emit(
            run,
            "step.rework_completed",
            {
                "step_number": step.step_number,
                "rework_agent": step.agent,
                "resume_agent": origin.agent,
            },
        )
        self._refresh(run)

    async def _complete(self, run: Run) -> None:
        run.status = "completed"
        run.completed_at = utcnow_iso()
        self._emit(
            run,
            "task.completed",
            {
                "total_tokens_used": run.total_tokens_used,
                "total_cost_usd": round(run.total_cost_usd, 6),
                "reworks": len(run.history),
            },
        )
        self._persist(run)
        try:
            run.pr_url = await asyncio.to_thread(
                self.committer.create_pull_request, Path(run.workspace), run
            )
        except CommitError as exc:
            logger.warning("Pull request creation failed for run %s: %s", run.run_id, exc)
            self._emit(run, "pr.failed", {"error": str(exc)})
        else:
            if run.pr_url:
                self._emit(run, "pr.created", {"pr_url": run.pr_url})
        self._persist(run)
        logger.info("Run %s completed", run.run_id)

    def _fail(self, run: Run, kind: ErrorKind, message: str) -> None:
        if run.is_terminal:
            return
        run.fail(kind, message)
        logger.error("Run %s failed (%s): %s", run.run_id, kind, message)
        self._emit(run, "task.failed", {"error": message, "error_kind": kind})
        self._persist(run)

    def _emit(self, run: Run, event_type: str, data: dict[str, Any]) -> None:
        log = self._event_logs.get(run.run_id)
        if log is not None:
            log.emit(run.run_id, event_type, data)

    def _persist(self, run: Run) -> None:
        store = self._stores.get(run.run_id)
        if store is None:
            return
        try:
            store.save(run)
        except (OSError, RunStoreError):
            logger.exception("Could not persist run %s", run.run_id)


def _rework_task(step: StepExecution, reason: str, origin_agent: str, origin_task: str) -> str:
    issues = ""
    if step.result is not None and step.result.issues:
        issues = "\n\nReported issues:\n" + "\n".join(f"- {issue}" for issue in step.result.issues)
    return (
        f"[REWORK attempt {step.attempt_count}] Step {step.step_number} "
        f"({step.agent}) needs changes.\n\nReason: {reason}{issues}\n\n"
        f"Original task for {origin_agent}:\n{origin_task}"
    )
