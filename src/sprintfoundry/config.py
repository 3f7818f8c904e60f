from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

AgentRole = Literal[
    "product",
    "architect",
    "ui-ux",
    "developer",
    "code-review",
    "qa",
    "security",
    "devops",
]

ROLE_ORDER: tuple[str, ...] = (
    "product",
    "architect",
    "ui-ux",
    "developer",
    "code-review",
    "qa",
    "security",
    "devops",
)

DEFAULT_CHECKPOINT_EXCLUDE: tuple[str, ...] = (
    "CLAUDE.md",
    "AGENTS.md",
    ".agent-task.md",
    ".agent-result.json",
    ".agent-profile.md",
    ".agent-context",
    ".sprintfoundry",
    ".claude-runtime.stdout.log",
    ".claude-runtime.stderr.log",
    ".claude-runtime.debug.json",
    ".codex-runtime.stdout.log",
    ".codex-runtime.stderr.log",
    ".codex-runtime.debug.json",
    ".codex-home",
    ".events.jsonl",
    "artifacts",
)


@dataclass(slots=True)
class AgentDefinition:
    type: str
    name: str
    role: str
    description: str = ""


@dataclass(slots=True)
class Rule:
    id: str
    condition: dict[str, Any] = field(default_factory=lambda: {"type": "always"})
    action: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    enforced: bool = True


def default_agents() -> list[AgentDefinition]:
    return [
        AgentDefinition("product", "Product Agent", "product", "Analyzes tickets, writes specs"),
        AgentDefinition("architect", "Architecture Agent", "architect", "System design"),
        AgentDefinition("ui-ux", "UI/UX Agent", "ui-ux", "Wireframes and component specs"),
        AgentDefinition("developer", "Developer Agent", "developer", "Implements features"),
        AgentDefinition("go-developer", "Go Developer Agent", "developer", "Go services"),
        AgentDefinition("code-review", "Code Review Agent", "code-review", "Reviews diffs"),
        AgentDefinition("qa", "QA Agent", "qa", "Writes and runs tests"),
        AgentDefinition("go-qa", "Go QA Agent", "qa", "Tests Go services"),
        AgentDefinition("security", "Security Agent", "security", "Security scans and review"),
        AgentDefinition("devops", "DevOps Agent", "devops", "CI/CD and infrastructure"),
    ]


def default_rules() -> list[Rule]:
    return [
        Rule(
            id="always-qa-after-code",
            description="A QA-role agent must always run after code changes",
            condition={"type": "always"},
            action={"type": "require_role", "role": "qa"},
        ),
        Rule(
            id="security-on-label",
            description="Security review for tickets labelled security",
            condition={"type": "label_contains", "value": "security"},
            action={"type": "require_agent", "agent": "security"},
        ),
        Rule(
            id="security-on-sensitive-paths",
            description="Security review when auth or payments code is touched",
            condition={"type": "file_path_matches", "pattern": "src/{auth,payments}/**"},
            action={"type": "require_agent", "agent": "security"},
        ),
        Rule(
            id="human-gate-p0",
            description="P0 tickets need human review after QA",
            condition={"type": "priority_is", "values": ["p0"]},
            action={"type": "require_human_gate", "after_agent": "qa"},
        ),
    ]


@dataclass(slots=True)
class DefaultsConfig:
    max_rework_cycles: int = 3
    agent_timeout_minutes: float = 30.0
    gate_poll_seconds: float = 5.0
    model_per_agent: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PlatformConfig:
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    events_dir: str = ""
    agents: list[AgentDefinition] = field(default_factory=default_agents)
    rules: list[Rule] = field(default_factory=default_rules)

    def agent_ids(self) -> set[str]:
        return {agent.type for agent in self.agents}

    def agent(self, agent_id: str) -> AgentDefinition | None:
        for agent in self.agents:
            if agent.type == agent_id:
                return agent
        return None


@dataclass(slots=True)
class ProjectConfig:
    project_id: str = "my-project"
    name: str = "My Project"
    agents: list[str] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)
    max_rework_cycles: int | None = None
    model_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class RunnerConfig:
    command: list[str] = field(
        default_factory=lambda: [
            "claude",
            "-p",
            "Read {task_file} and complete the task it describes.",
            "--output-format",
            "json",
        ]
    )
    task_file: str = ".agent-task.md"
    result_file: str = ".agent-result.json"


@dataclass(slots=True)
class GitConfig:
    remote: str = "origin"
    default_branch: str = "main"
    push: bool = True
    create_pull_request: bool = True
    pr_binary: str = "gh"
    checkpoint_exclude: list[str] = field(
        default_factory=lambda: list(DEFAULT_CHECKPOINT_EXCLUDE)
    )


@dataclass(slots=True)
class GatesConfig:
    rework_target: str = "developer"
    review_dir: str = ".sprintfoundry/reviews"


def _rule_from_dict(data: dict[str, Any]) -> Rule:
    return Rule(
        id=str(data.get("id", "")),
        condition=dict(data.get("condition") or {"type": "always"}),
        action=dict(data.get("action") or {}),
        description=str(data.get("description", "")),
        enforced=bool(data.get("enforced", True)),
    )


def _rule_to_dict(rule: Rule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "description": rule.description,
        "enforced": rule.enforced,
        "condition": dict(rule.condition),
        "action": dict(rule.action),
    }


@dataclass(slots=True)
class FoundryConfig:
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    git: GitConfig = field(default_factory=GitConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)

    @classmethod
    def default(cls) -> FoundryConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FoundryConfig:
        platform_data = dict(data.get("platform", {}))
        platform = PlatformConfig(
            defaults=DefaultsConfig(**platform_data.get("defaults", {})),
            events_dir=str(platform_data.get("events_dir", "")),
        )
        if "agents" in platform_data:
            platform.agents = [AgentDefinition(**item) for item in platform_data["agents"]]
        if "rules" in platform_data:
            platform.rules = [_rule_from_dict(item) for item in platform_data["rules"]]

        project_data = dict(data.get("project", {}))
        project_rules = [_rule_from_dict(item) for item in project_data.pop("rules", [])]
        project = ProjectConfig(**project_data)
        project.rules = project_rules

        return cls(
            platform=platform,
            project=project,
            runner=RunnerConfig(**data.get("runner", {})),
            git=GitConfig(**data.get("git", {})),
            gates=GatesConfig(**data.get("gates", {})),
        )

    def to_dict(self) -> dict:
        project: dict[str, Any] = {
            "project_id": self.project.project_id,
            "name": self.project.name,
            "agents": list(self.project.agents),
            "model_overrides": dict(self.project.model_overrides),
        }
        if self.project.max_rework_cycles is not None:
            project["max_rework_cycles"] = self.project.max_rework_cycles
        project["rules"] = [_rule_to_dict(rule) for rule in self.project.rules]
        return {
            "platform": {
                "events_dir": self.platform.events_dir,
                "defaults": {
                    "max_rework_cycles": self.platform.defaults.max_rework_cycles,
                    "agent_timeout_minutes": self.platform.defaults.agent_timeout_minutes,
                    "gate_poll_seconds": self.platform.defaults.gate_poll_seconds,
                    "model_per_agent": dict(self.platform.defaults.model_per_agent),
                },
                "agents": [
                    {
                        "type": agent.type,
                        "name": agent.name,
                        "role": agent.role,
                        "description": agent.description,
                    }
                    for agent in self.platform.agents
                ],
                "rules": [_rule_to_dict(rule) for rule in self.platform.rules],
            },
            "project": project,
            "runner": {
                "command": list(self.runner.command),
                "task_file": self.runner.task_file,
                "result_file": self.runner.result_file,
            },
            "git": {
                "remote": self.git.remote,
                "default_branch": self.git.default_branch,
                "push": self.git.push,
                "create_pull_request": self.git.create_pull_request,
                "pr_binary": self.git.pr_binary,
                "checkpoint_exclude": list(self.git.checkpoint_exclude),
            },
            "gates": {
                "rework_target": self.gates.rework_target,
                "review_dir": self.gates.review_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def _dump_table(lines: list[str], header: str, values: dict[str, Any]) -> None:
    lines.append(header)
    for key, value in values.items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")


def dumps_toml(config: FoundryConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []

    platform = data["platform"]
    _dump_table(lines, "[platform]", {"events_dir": platform["events_dir"]})
    _dump_table(lines, "[platform.defaults]", platform["defaults"])
    for agent in platform["agents"]:
        _dump_table(lines, "[[platform.agents]]", agent)
    for rule in platform["rules"]:
        _dump_table(lines, "[[platform.rules]]", rule)

    project = dict(data["project"])
    project_rules = project.pop("rules")
    _dump_table(lines, "[project]", project)
    for rule in project_rules:
        _dump_table(lines, "[[project.rules]]", rule)

    for section in ("runner", "git", "gates"):
        _dump_table(lines, f"[{section}]", data[section])
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FoundryConfig:
    if not path.exists():
        return FoundryConfig.default()
    return FoundryConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FoundryConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
