import tomllib
from pathlib import Path

from sprintfoundry import __version__
from sprintfoundry.config import FoundryConfig, Rule, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "sprintfoundry.toml"
    config = FoundryConfig.default()
    config.project.project_id = "checkout"
    config.project.agents = ["go-developer", "go-qa"]
    config.project.max_rework_cycles = 2
    config.project.rules.append(
        Rule(
            id="devops-for-infra",
            condition={"type": "classification_is", "values": ["infrastructure"]},
            action={"type": "require_agent", "agent": "devops"},
        )
    )
    config.platform.defaults.agent_timeout_minutes = 12.5
    config.runner.command = ["sh", "-c", "run-agent {agent} {task_file}"]
    config.git.push = False
    config.git.checkpoint_exclude = [".agent-task.md", "artifacts"]
    config.gates.rework_target = "go-developer"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.project_id == "checkout"
    assert loaded.project.agents == ["go-developer", "go-qa"]
    assert loaded.project.max_rework_cycles == 2
    assert loaded.project.rules[0].id == "devops-for-infra"
    assert loaded.project.rules[0].condition == {
        "type": "classification_is",
        "values": ["infrastructure"],
    }
    assert loaded.platform.defaults.agent_timeout_minutes == 12.5
    assert loaded.platform.defaults.max_rework_cycles == 3
    assert loaded.runner.command == ["sh", "-c", "run-agent {agent} {task_file}"]
    assert loaded.git.push is False
    assert loaded.git.checkpoint_exclude == [".agent-task.md", "artifacts"]
    assert loaded.gates.rework_target == "go-developer"
    assert [agent.type for agent in loaded.platform.agents] == [
        agent.type for agent in config.platform.agents
    ]
    assert [rule.id for rule in loaded.platform.rules] == [
        rule.id for rule in config.platform.rules
    ]


def test_toml_dump_is_parseable_and_has_sections() -> None:
    rendered = dumps_toml(FoundryConfig.default())
    parsed = tomllib.loads(rendered)

    assert "[platform.defaults]" in rendered
    assert "[[platform.rules]]" in rendered
    assert "[git]" in rendered
    assert parsed["platform"]["rules"][0]["action"] == {"type": "require_role", "role": "qa"}
    assert "max_rework_cycles" not in parsed["project"]


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.platform.defaults.max_rework_cycles == 3
    assert "qa" in config.platform.agent_ids()
    assert config.git.remote == "origin"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
