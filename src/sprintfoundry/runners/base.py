from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from sprintfoundry.models import AgentResult


class StepExecutionError(RuntimeError):
    """Raised when an agent process cannot be run to completion."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code


class AgentTimeoutError(StepExecutionError):
    """Raised when an agent exceeds its timeout."""


class AgentProcessError(StepExecutionError):
    """Raised when the agent process cannot be started or exits abnormally."""


class AgentRunner(ABC):
    @abstractmethod
    async def run(
        self,
        agent_id: str,
        task: str,
        workspace: Path,
        timeout_seconds: float,
        context: dict[str, Any] | None = None,
    ) -> AgentResult:
        """Run one step and return its result; failures come back as ``failed`` results."""
