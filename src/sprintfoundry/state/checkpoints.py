from __future__ import annotations

import logging
import re
import subprocess
import threading
from pathlib import Path

from sprintfoundry.config import GitConfig
from sprintfoundry.models import Run

logger = logging.getLogger(__name__)

RUNTIME_LOG_PATTERN = re.compile(
    r"^\.(claude|codex)-runtime\.step-.*\."
    r"(debug\.json|stdout\.log|stderr\.log|retry\.stdout\.log|retry\.stderr\.log)$"
)


class CommitError(RuntimeError):
    """Raised when a git operation behind a checkpoint fails."""

    def __init__(
        self,
        message: str,
        *,
        step_number: int | None = None,
        command: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.step_number = step_number
        self.command = command


def checkpoint_message(run_id: str, step_number: int, agent_id: str) -> str:
    return f"chore(sprintfoundry): run {run_id} step {step_number} {agent_id}"


def build_pr_body(run: Run) -> str:
    ticket = run.ticket
    lines: list[str] = ["## Summary", ""]
    if run.plan.classification:
        lines.append(f"**Type**: {run.plan.classification.replace('_', ' ')}")
    lines.append(f"**Ticket**: {ticket.id} - {ticket.title}")
    lines.append(f"**Priority**: {ticket.priority.upper()}")
    if ticket.labels:
        lines.append(f"**Labels**: {', '.join(ticket.labels)}")
    lines.append("")

    if ticket.description:
        lines.extend(["## Description", "", ticket.description, ""])

    if ticket.acceptance_criteria:
        lines.extend(["## Acceptance Criteria", ""])
        lines.extend(f"- [ ] {item}" for item in ticket.acceptance_criteria)
        lines.append("")

    finished = [(step, step.result) for step in run.steps.values() if step.result is not None]
    if finished:
        lines.extend(["## Agent Results", ""])
        for step, result in finished:
            lines.extend([f"### Step {step.step_number}: {step.agent}", "", result.summary, ""])
            touched = len(result.artifacts_created) + len(result.artifacts_modified)
            if touched:
                lines.append(f"<details><summary>Files touched ({touched})</summary>")
                lines.append("")
                lines.extend(f"- `{path}` (new)" for path in result.artifacts_created)
                lines.extend(f"- `{path}` (modified)" for path in result.artifacts_modified)
                lines.extend(["", "</details>", ""])
            if result.issues:
                lines.extend([f"**Issues**: {'; '.join(result.issues)}", ""])

    lines.extend(
        [
            "## Stats",
            "",
            "| Metric | Value |",
            "| --- | --- |",
            f"| Tokens used | {run.total_tokens_used:,} |",
            f"| Cost | ${run.total_cost_usd:.2f} |",
            f"| Steps | {len(run.steps)} |",
            f"| Reworks | {len(run.history)} |",
            f"| Run ID | `{run.run_id}` |",
            "",
        ]
    )
    return "\n".join(lines)


class CheckpointCommitter:
    """Stages, commits and pushes per-step checkpoints, one run at a time."""

    def __init__(self, git: GitConfig | None = None) -> None:
        self.git = git or GitConfig()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _run_lock(self, run_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[run_id] = lock
            return lock

    @staticmethod
    def _run_git(
        workspace: Path,
        args: list[str],
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        try:
            proc = subprocess.run(
                command,
                cwd=workspace,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise CommitError(f"Unable to run git: {exc}", command=command) from exc
        if check and proc.returncode != 0:
            raise CommitError(proc.stderr.strip() or proc.stdout.strip(), command=command)
        return proc

    def _has_head(self, workspace: Path) -> bool:
        proc = self._run_git(workspace, ["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return proc.returncode == 0

    def _unstage(self, workspace: Path, paths: list[str], has_head: bool) -> None:
        for path in paths:
            if has_head:
                self._run_git(workspace, ["reset", "-q", "HEAD", "--", path], check=False)
            else:
                self._run_git(
                    workspace,
                    ["rm", "-r", "-q", "--cached", "--ignore-unmatch", "--", path],
                    check=False,
                )

    def _stage(self, workspace: Path) -> None:
        self._run_git(workspace, ["add", "-A"])
        has_head = self._has_head(workspace)
        self._unstage(workspace, list(self.git.checkpoint_exclude), has_head)
        staged = self._run_git(workspace, ["diff", "--staged", "--name-only"]).stdout
        runtime_logs = [
            line.strip()
            for line in staged.splitlines()
            if RUNTIME_LOG_PATTERN.match(line.strip())
        ]
        self._unstage(workspace, runtime_logs, has_head)

    def _has_staged_changes(self, workspace: Path) -> bool:
        proc = self._run_git(workspace, ["diff", "--staged", "--quiet"], check=False)
        if proc.returncode == 0:
            return False
        if proc.returncode == 1:
            return True
        raise CommitError(proc.stderr.strip() or "git diff --staged failed")

    def _push(self, workspace: Path) -> None:
        if self.git.push:
            self._run_git(workspace, ["push", "-u", self.git.remote, "HEAD"])

    def commit_step_checkpoint(
        self,
        workspace: Path,
        run_id: str,
        step_number: int,
        agent_id: str,
    ) -> bool:
        """Commit the step's changes; ``False`` means there was nothing to commit."""
        workspace = Path(workspace)
        with self._run_lock(run_id):
            try:
                self._stage(workspace)
                if not self._has_staged_changes(workspace):
                    logger.info("Step %d (%s): no changes to checkpoint", step_number, agent_id)
                    return False
                self._run_git(
                    workspace,
                    ["commit", "-m", checkpoint_message(run_id, step_number, agent_id)],
                )
                self._push(workspace)
            except CommitError as exc:
                exc.step_number = step_number
                raise
        logger.info("Step %d (%s): checkpoint committed", step_number, agent_id)
        return True

    def current_branch(self, workspace: Path) -> str:
        proc = self._run_git(Path(workspace), ["rev-parse", "--abbrev-ref", "HEAD"])
        return proc.stdout.strip()

    def create_pull_request(self, workspace: Path, run: Run) -> str | None:
        workspace = Path(workspace)
        with self._run_lock(run.run_id):
            self._stage(workspace)
            if self._has_staged_changes(workspace):
                self._run_git(
                    workspace,
                    ["commit", "-m", f"chore(sprintfoundry): finalize run {run.run_id}"],
                )
            self._push(workspace)

        if not self.git.create_pull_request:
            return None

        title = f"[SprintFoundry] {run.ticket.title or run.ticket.id}"
        command = [
            self.git.pr_binary,
            "pr",
            "create",
            "--title",
            title,
            "--body",
            build_pr_body(run),
            "--base",
            self.git.default_branch,
            "--head",
            self.current_branch(workspace),
        ]
        try:
            proc = subprocess.run(command, cwd=workspace, text=True, capture_output=True)
        except FileNotFoundError:
            logger.warning(
                "%s not found. Branch pushed; create the PR manually for %s.",
                self.git.pr_binary,
                run.ticket.id,
            )
            return None
        if proc.returncode != 0:
            logger.warning(
                "PR creation failed (%s). Branch pushed; create the PR manually for %s.",
                proc.stderr.strip() or proc.stdout.strip(),
                run.ticket.id,
            )
            return None
        lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
        return lines[-1] if lines else None
