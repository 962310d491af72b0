"""Tests for prompt assembly."""

from __future__ import annotations

from pathlib import Path

from roadmap_runner.agents.config_loader import AgentConfig
from roadmap_runner.prompts import (
    AgentHandoff,
    DefaultPromptBuilder,
    PromptContext,
    build_handoff_section,
    build_phase_instruction,
    estimate_tokens,
)


def _context(**kwargs) -> PromptContext:
    config = AgentConfig.from_frontmatter("implementer", {}, system_prompt="You implement.")
    return PromptContext(agent_config=config, session_id="s1", user_prompt="Add login", **kwargs)


class TestPromptHelpers:
    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_phase_instruction(self):
        assert build_phase_instruction(None) == ""
        block = build_phase_instruction(3)
        assert block.startswith('<phase-instruction id="3">')
        assert "**Phase 3**" in block

    def test_handoff_section_defaults(self):
        text = build_handoff_section(AgentHandoff("agent-1", "planner", "Plan ready"))
        assert '<handoff from="planner" id="agent-1">' in text
        assert "(No files modified)" in text
        assert "(No open questions)" in text
        assert "(No recommendations)" in text

    def test_handoff_section_numbers_items(self):
        handoff = AgentHandoff("a", "planner", "s", files=["api.py"], questions=["Which DB?"])
        text = build_handoff_section(handoff)
        assert "- api.py" in text
        assert "1. Which DB?" in text


class TestDefaultPromptBuilder:
    def test_sections_in_order(self, tmp_path: Path):
        rules = tmp_path / "RULES.md"
        rules.write_text("Use type hints.\n", encoding="utf-8")
        builder = DefaultPromptBuilder(rules_file=rules)
        built = builder.build(
            _context(
                phase_id=2,
                handoff=AgentHandoff("a", "planner", "Plan"),
                additional_context={"branch": "main"},
            )
        )
        text = built.user_prompt
        positions = [
            text.index("<project-rules>"),
            text.index("<phase-instruction"),
            text.index("<handoff"),
            text.index("<additional-context>"),
            text.index("Add login"),
        ]
        assert positions == sorted(positions)
        assert built.system_prompt == "You implement."
        assert built.metadata["has_rules"] is True
        assert built.metadata["has_handoff"] is True
        assert built.metadata["model"] == "glm"

    def test_plain_prompt(self):
        built = DefaultPromptBuilder().build(_context())
        assert built.user_prompt == "Add login"
        assert built.metadata["has_rules"] is False
        assert built.metadata["total_tokens"] == estimate_tokens("You implement.") + estimate_tokens("Add login")

    def test_missing_rules_file_is_ignored(self, tmp_path: Path):
        built = DefaultPromptBuilder(rules_file=tmp_path / "absent.md").build(_context())
        assert "<project-rules>" not in built.user_prompt
