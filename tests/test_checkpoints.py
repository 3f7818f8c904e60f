import subprocess
import threading
import time
from pathlib import Path

import pytest

from sprintfoundry.config import GitConfig
from sprintfoundry.models import AgentResult, ExecutionPlan, Run, StepExecution, Ticket
from sprintfoundry.state import CheckpointCommitter, CommitError
from sprintfoundry.state.checkpoints import build_pr_body


def _git(args: list[str], cwd: Path) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo: Path) -> None:
    _git(["init"], cwd=repo)
    _git(["config", "user.email", "test@example.com"], cwd=repo)
    _git(["config", "user.name", "Test User"], cwd=repo)
    (repo / "README.md").write_text("# demo\n", encoding="utf-8")
    _git(["add", "README.md"], cwd=repo)
    _git(["commit", "-m", "initial"], cwd=repo)


def _commit_count(repo: Path) -> int:
    return int(_git(["rev-list", "--count", "HEAD"], cwd=repo))


def _local_committer() -> CheckpointCommitter:
    return CheckpointCommitter(GitConfig(push=False, create_pull_request=False))


def test_no_diff_means_no_commit(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    committer = _local_committer()

    committed = committer.commit_step_checkpoint(tmp_path, "run-1", 1, "qa")

    assert committed is False
    assert _commit_count(tmp_path) == 1


def test_orchestration_files_alone_do_not_produce_a_commit(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / ".agent-task.md").write_text("task", encoding="utf-8")
    (tmp_path / ".agent-result.json").write_text("{}", encoding="utf-8")
    (tmp_path / ".sprintfoundry" / "runs").mkdir(parents=True)
    (tmp_path / ".sprintfoundry" / "runs" / "run-1.json").write_text("{}", encoding="utf-8")
    (tmp_path / ".claude-runtime.step-1.stdout.log").write_text("log", encoding="utf-8")

    committed = _local_committer().commit_step_checkpoint(tmp_path, "run-1", 1, "developer")

    assert committed is False
    assert _commit_count(tmp_path) == 1


def test_step_changes_are_committed_with_checkpoint_message(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "feature.py").write_text("print('hi')\n", encoding="utf-8")
    (tmp_path / ".agent-result.json").write_text("{}", encoding="utf-8")
    (tmp_path / ".codex-runtime.step-2.debug.json").write_text("{}", encoding="utf-8")

    committed = _local_committer().commit_step_checkpoint(tmp_path, "run-9", 2, "developer")

    assert committed is True
    assert _commit_count(tmp_path) == 2
    assert _git(["log", "-1", "--format=%s"], cwd=tmp_path) == (
        "chore(sprintfoundry): run run-9 step 2 developer"
    )
    files = _git(["show", "--name-only", "--format=", "HEAD"], cwd=tmp_path).splitlines()
    assert files == ["feature.py"]


def test_checkpoint_pushes_to_remote(tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    remote.mkdir()
    _git(["init", "--bare"], cwd=remote)
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    _git(["remote", "add", "origin", str(remote)], cwd=repo)
    (repo / "feature.py").write_text("x = 1\n", encoding="utf-8")

    committer = CheckpointCommitter(GitConfig(push=True, create_pull_request=False))
    assert committer.commit_step_checkpoint(repo, "run-1", 1, "developer") is True

    branch = committer.current_branch(repo)
    assert _git(["rev-parse", branch], cwd=remote) == _git(["rev-parse", "HEAD"], cwd=repo)


def test_push_failure_raises_commit_error_with_step(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "feature.py").write_text("x = 1\n", encoding="utf-8")
    committer = CheckpointCommitter(GitConfig(remote="nowhere", push=True))

    with pytest.raises(CommitError) as exc_info:
        committer.commit_step_checkpoint(tmp_path, "run-1", 4, "developer")

    assert exc_info.value.step_number == 4


def test_commit_outside_repository_raises(tmp_path: Path) -> None:
    (tmp_path / "feature.py").write_text("x = 1\n", encoding="utf-8")

    with pytest.raises(CommitError):
        _local_committer().commit_step_checkpoint(tmp_path, "run-1", 1, "developer")


def test_create_pull_request_commits_leftovers_without_pr_tool(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "notes.md").write_text("leftover\n", encoding="utf-8")
    run = Run(
        run_id="run-3",
        plan=ExecutionPlan(plan_id="p", ticket_id="T-1"),
        ticket=Ticket(id="T-1", title="Login"),
        workspace=str(tmp_path),
    )

    pr_url = _local_committer().create_pull_request(tmp_path, run)

    assert pr_url is None
    assert _git(["log", "-1", "--format=%s"], cwd=tmp_path) == (
        "chore(sprintfoundry): finalize run run-3"
    )


def test_pr_body_lists_ticket_results_and_stats() -> None:
    run = Run(
        run_id="run-5",
        plan=ExecutionPlan(plan_id="p", ticket_id="T-7", classification="bug_fix"),
        ticket=Ticket(
            id="T-7",
            title="Fix login",
            description="Users cannot log in.",
            labels=["auth"],
            priority="p1",
            acceptance_criteria=["login works"],
        ),
        workspace="/tmp/ws",
        total_tokens_used=12345,
        total_cost_usd=1.5,
    )
    step = StepExecution(step_number=1, agent="developer", task="fix", state="completed")
    step.result = AgentResult(
        "complete",
        "Fixed the session check",
        artifacts_modified=["src/auth.py"],
        issues=["flaky test"],
    )
    run.steps[1] = step

    body = build_pr_body(run)

    assert "**Type**: bug fix" in body
    assert "**Priority**: P1" in body
    assert "- [ ] login works" in body
    assert "### Step 1: developer" in body
    assert "- `src/auth.py` (modified)" in body
    assert "**Issues**: flaky test" in body
    assert "| Tokens used | 12,345 |" in body
    assert "| Cost | $1.50 |" in body


class _OverlapCommitter(CheckpointCommitter):
    def __init__(self) -> None:
        super().__init__(GitConfig(push=False, create_pull_request=False))
        self.trace: list[str] = []

    def _stage(self, workspace: Path) -> None:
        self.trace.append("enter")
        time.sleep(0.1)
        self.trace.append("exit")

    def _has_staged_changes(self, workspace: Path) -> bool:
        return False


def test_commits_for_the_same_run_do_not_overlap(tmp_path: Path) -> None:
    committer = _OverlapCommitter()
    threads = [
        threading.Thread(
            target=committer.commit_step_checkpoint,
            args=(tmp_path, "run-1", number, "developer"),
        )
        for number in (1, 2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert committer.trace == ["enter", "exit", "enter", "exit"]
