from sprintfoundry.runners.base import (
    AgentProcessError,
    AgentRunner,
    AgentTimeoutError,
    StepExecutionError,
)
from sprintfoundry.runners.process import ProcessAgentRunner

__all__ = [
    "AgentProcessError",
    "AgentRunner",
    "AgentTimeoutError",
    "ProcessAgentRunner",
    "StepExecutionError",
]
