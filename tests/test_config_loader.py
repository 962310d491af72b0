"""Tests for agent descriptor loading."""

from __future__ import annotations

from pathlib import Path

from roadmap_runner.agents.config_loader import (
    AgentCapabilities,
    AgentConfig,
    AgentConfigLoader,
    StaticConfigLoader,
    parse_frontmatter,
)
from roadmap_runner.models import AgentType, ModelProvider, ThinkingLevel


def _write_agent(agents_dir: Path, name: str, text: str) -> Path:
    agents_dir.mkdir(parents=True, exist_ok=True)
    path = agents_dir / f"{name}.md"
    path.write_text(text, encoding="utf-8")
    return path


class TestParseFrontmatter:
    def test_splits_header_and_body(self):
        data, body = parse_frontmatter("---\nname: Planner\ntools: [Read]\n---\nYou plan.\n")
        assert data == {"name": "Planner", "tools": ["Read"]}
        assert body == "You plan."

    def test_no_frontmatter(self):
        assert parse_frontmatter("Just a prompt") == ({}, "Just a prompt")

    def test_non_mapping_frontmatter_is_ignored(self):
        data, body = parse_frontmatter("---\n- a\n- b\n---\nbody")
        assert data == {}
        assert body == "body"


class TestAgentConfig:
    def test_defaults_per_type(self):
        orchestrator = AgentConfig.from_frontmatter("orchestrator", {})
        implementer = AgentConfig.from_frontmatter("implementer", {})
        assert orchestrator.model == ModelProvider.CLAUDE
        assert orchestrator.thinking_level == ThinkingLevel.MAX
        assert implementer.model == ModelProvider.GLM
        assert implementer.thinking_level == ThinkingLevel.OFF
        assert implementer.model_override_allowed is True

    def test_yaml_off_is_thinking_off(self):
        config = AgentConfig.from_frontmatter("planner", {"thinking_level": False})
        assert config.thinking_level == ThinkingLevel.OFF

    def test_unknown_model_falls_back(self):
        config = AgentConfig.from_frontmatter("security", {"model": "gpt-9"})
        assert config.model == ModelProvider.CLAUDE

    def test_comma_separated_tools(self):
        config = AgentConfig.from_frontmatter("implementer", {"tools": "Read, Write, Bash"})
        assert config.tools == ("Read", "Write", "Bash")

    def test_capabilities_from_tools(self):
        caps = AgentCapabilities.from_tools(["Task", "Edit", "Bash", "WebSearch", "Grep"])
        assert caps.can_spawn_agents
        assert caps.can_modify_files
        assert caps.can_run_commands
        assert caps.can_access_network
        assert caps.can_read_files
        assert caps.can_execute_tools

        bare = AgentCapabilities.from_tools([])
        assert not bare.can_modify_files
        assert bare.can_execute_tools


class TestAgentConfigLoader:
    def test_load_from_markdown(self, tmp_path: Path):
        agents_dir = tmp_path / "agents"
        path = _write_agent(
            agents_dir,
            "reviewer",
            "---\n"
            "name: Reviewer\n"
            "description: Reviews diffs\n"
            "tools: [Read, Grep]\n"
            "model: claude\n"
            "model_override_allowed: false\n"
            "thinking_level: think\n"
            "---\n"
            "You review code.\n",
        )
        config = AgentConfigLoader(agents_dir).load("reviewer")
        assert config is not None
        assert config.name == "Reviewer"
        assert config.description == "Reviews diffs"
        assert config.model == ModelProvider.CLAUDE
        assert config.model_override_allowed is False
        assert config.thinking_level == ThinkingLevel.THINK
        assert config.system_prompt == "You review code."
        assert config.capabilities.can_read_files
        assert config.file_path == str(path)

    def test_missing_descriptor_is_none(self, tmp_path: Path):
        assert AgentConfigLoader(tmp_path).load("implementer") is None

    def test_bad_yaml_is_none(self, tmp_path: Path):
        _write_agent(tmp_path, "tester", "---\nname: [unclosed\n---\nbody\n")
        assert AgentConfigLoader(tmp_path).load("tester") is None

    def test_available_agent_types_skips_readme(self, tmp_path: Path):
        for name in ("planner", "tester", "README"):
            _write_agent(tmp_path, name, "body")
        assert AgentConfigLoader(tmp_path).available_agent_types() == ["planner", "tester"]
        assert AgentConfigLoader(tmp_path / "missing").available_agent_types() == []


class TestStaticConfigLoader:
    def test_with_defaults_covers_every_type(self):
        loader = StaticConfigLoader.with_defaults()
        assert loader.available_agent_types() == sorted(t.value for t in AgentType)
        assert loader.load("debugger").model == ModelProvider.GLM

    def test_register(self):
        loader = StaticConfigLoader()
        assert loader.load("custom") is None
        loader.register(AgentConfig(type="custom", name="Custom"))
        assert loader.load("custom").name == "Custom"
