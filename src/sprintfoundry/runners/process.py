from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from sprintfoundry.config import RunnerConfig
from sprintfoundry.models import AgentResult
from sprintfoundry.runners.base import (
    AgentProcessError,
    AgentRunner,
    AgentTimeoutError,
    StepExecutionError,
)

logger = logging.getLogger(__name__)

CONTEXT_DIR = ".agent-context"

RESULT_INSTRUCTIONS = """\
When you are done, write `{result_file}` in the workspace root as JSON:

{{
  "status": "complete" | "needs_rework" | "blocked" | "failed",
  "summary": "what you did",
  "artifacts_created": [],
  "artifacts_modified": [],
  "issues": [],
  "rework_reason": null,
  "rework_target": null,
  "metadata": {{}}
}}
"""


def _describe_input(item: dict[str, Any], task_file: str) -> str:
    kind = item.get("type")
    if kind == "ticket":
        return f"- Read ticket details in `{task_file}`"
    if kind == "file":
        return f"- Relevant file: `{item.get('path', '')}`"
    if kind == "directory":
        return f"- Relevant directory: `{item.get('path', '')}`"
    if kind == "step_output":
        number = item.get("step_number")
        return f"- Output from step {number}: see `{CONTEXT_DIR}/step-{number}-*.json`"
    if kind == "artifact":
        return f"- Artifact: `artifacts/{item.get('name', '')}`"
    return ""


def parse_usage(stdout: str) -> dict[str, Any]:
    """Pull token and cost figures out of JSON lines printed by the agent CLI."""
    usage: dict[str, Any] = {}
    candidates = [stdout.strip(), *stdout.splitlines()]
    for raw in candidates:
        raw = raw.strip()
        if not raw.startswith("{"):
            continue
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        cost = payload.get("total_cost_usd", payload.get("cost_usd"))
        if isinstance(cost, int | float):
            usage["cost_usd"] = float(cost)
        tokens = payload.get("usage")
        if isinstance(tokens, dict):
            total = sum(
                int(tokens.get(key) or 0)
                for key in ("input_tokens", "output_tokens")
                if isinstance(tokens.get(key), int | float)
            )
            if total:
                usage["tokens_used"] = total
    return usage


class ProcessAgentRunner(AgentRunner):
    def __init__(self, config: RunnerConfig | None = None) -> None:
        self.config = config or RunnerConfig()

    def build_command(self, agent_id: str, context: dict[str, Any]) -> list[str]:
        values = {
            "{agent}": agent_id,
            "{task_file}": self.config.task_file,
            "{result_file}": self.config.result_file,
            "{step}": str(context.get("step_number", "")),
            "{run_id}": str(context.get("run_id", "")),
            "{model}": str(context.get("model", "")),
        }
        command: list[str] = []
        for part in self.config.command:
            for placeholder, value in values.items():
                part = part.replace(placeholder, value)
            command.append(part)
        return command

    def write_task_file(
        self,
        workspace: Path,
        agent_id: str,
        task: str,
        context_inputs: list[dict[str, Any]] | None = None,
    ) -> Path:
        task_path = workspace / self.config.task_file
        sections = [f"# Task for {agent_id}", "", task.strip(), ""]
        lines = [_describe_input(item, self.config.task_file) for item in context_inputs or []]
        lines = [line for line in lines if line]
        if lines:
            sections.extend(["## Context", *lines, ""])
        task_path.write_text(
            "\n".join(sections)
            + "\n"
            + RESULT_INSTRUCTIONS.format(result_file=self.config.result_file),
            encoding="utf-8",
        )
        return task_path

    @staticmethod
    def write_context(workspace: Path, previous_results: list[dict[str, Any]]) -> list[Path]:
        """Write each earlier step result to ``.agent-context/step-<n>-<agent>.json``."""
        if not previous_results:
            return []
        context_dir = workspace / CONTEXT_DIR
        context_dir.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        for item in previous_results:
            path = context_dir / f"step-{item['step_number']}-{item['agent']}.json"
            path.write_text(
                json.dumps(item.get("result") or {}, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            written.append(path)
        return written

    async def _execute(
        self,
        command: list[str],
        workspace: Path,
        env: dict[str, str],
        timeout_seconds: float,
        agent_id: str,
    ) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {command[0]}", agent=agent_id
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise AgentTimeoutError(
                f"Agent {agent_id} timed out after {timeout_seconds:.1f}s",
                agent=agent_id,
            ) from exc
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def read_result(self, workspace: Path) -> AgentResult:
        result_path = workspace / self.config.result_file
        try:
            payload = json.loads(result_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            return AgentResult.failed(
                "Agent did not produce a valid result file",
                [f"Failed to read {self.config.result_file}: {exc}"],
            )
        return AgentResult.from_dict(payload)

    async def run(
        self,
        agent_id: str,
        task: str,
        workspace: Path,
        timeout_seconds: float,
        context: dict[str, Any] | None = None,
    ) -> AgentResult:
        workspace = Path(workspace)
        context = dict(context or {})
        self.write_task_file(workspace, agent_id, task, context.get("context_inputs"))
        self.write_context(workspace, list(context.get("previous_results") or []))
        (workspace / self.config.result_file).unlink(missing_ok=True)

        env = os.environ.copy()
        env["SPRINTFOUNDRY_AGENT"] = agent_id
        env["SPRINTFOUNDRY_RUN_ID"] = str(context.get("run_id", ""))
        env["SPRINTFOUNDRY_STEP"] = str(context.get("step_number", ""))
        env["SPRINTFOUNDRY_ATTEMPT"] = str(context.get("attempt", 1))
        env["SPRINTFOUNDRY_MODEL"] = str(context.get("model", ""))
        env["SPRINTFOUNDRY_TASK_FILE"] = self.config.task_file
        env["SPRINTFOUNDRY_RESULT_FILE"] = self.config.result_file

        command = self.build_command(agent_id, context)
        logger.info("Running agent %s: %s", agent_id, command[0])
        try:
            exit_code, stdout, stderr = await self._execute(
                command, workspace, env, timeout_seconds, agent_id
            )
        except StepExecutionError as exc:
            logger.warning("Agent %s failed to run: %s", agent_id, exc)
            return AgentResult.failed(str(exc))

        if exit_code != 0:
            detail = stderr.strip()[-500:] or stdout.strip()[-500:]
            return AgentResult.failed(
                f"Agent {agent_id} exited with code {exit_code}",
                [f"Agent {agent_id} exited with code {exit_code}: {detail}"],
            )

        result = self.read_result(workspace)
        for key, value in parse_usage(stdout).items():
            result.metadata.setdefault(key, value)
        return result
