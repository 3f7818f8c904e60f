from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

from sprintfoundry.models import ExecutionPlan, Ticket


@lru_cache(maxsize=128)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a path glob (``*``, ``**``, ``?``, ``{a,b}``) into an anchored regex."""
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "{":
            closing = pattern.find("}", index)
            if closing == -1:
                parts.append(re.escape(char))
            else:
                options = pattern[index + 1 : closing].split(",")
                parts.append("(?:" + "|".join(re.escape(option) for option in options) + ")")
                index = closing + 1
                continue
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$")


def _context_paths(plan: ExecutionPlan | None) -> list[str]:
    if plan is None:
        return []
    paths: list[str] = []
    for step in plan.steps:
        for item in step.context_inputs:
            if item.get("type") in {"file", "directory"} and item.get("path"):
                paths.append(str(item["path"]).removeprefix("./"))
    return paths


def condition_matches(
    condition: dict[str, Any],
    ticket: Ticket | None,
    plan: ExecutionPlan | None,
) -> bool:
    kind = condition.get("type", "always")
    if kind == "always":
        return True
    if kind == "classification_is":
        if plan is None:
            return False
        return plan.classification in condition.get("values", [])
    if kind == "label_contains":
        if ticket is None:
            return False
        needle = str(condition.get("value", "")).lower()
        return any(needle in label.lower() for label in ticket.labels)
    if kind == "file_path_matches":
        regex = glob_to_regex(str(condition.get("pattern", "")))
        return any(regex.match(path) for path in _context_paths(plan))
    if kind == "priority_is":
        if ticket is None:
            return False
        return ticket.priority in condition.get("values", [])
    return False
