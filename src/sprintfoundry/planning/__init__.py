from sprintfoundry.planning.graph import DependencyGraph
from sprintfoundry.planning.validator import (
    PlanValidator,
    ValidationError,
    resolve_model,
    validate_plan,
)

__all__ = ["DependencyGraph", "PlanValidator", "ValidationError", "resolve_model", "validate_plan"]
