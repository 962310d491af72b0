"""Prompt assembly for agent runs.

The builder layers optional context around the caller's prompt: project
rules, a phase instruction block, a handoff from a previous agent and any
free-form extra context, in that order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from .agents.config_loader import AgentConfig


@dataclass
class AgentHandoff:
    from_agent_id: str
    from_agent_type: str
    summary: str
    files: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class PromptContext:
    agent_config: AgentConfig
    session_id: str
    user_prompt: str
    project_id: Optional[str] = None
    phase_id: Optional[int] = None
    handoff: Optional[AgentHandoff] = None
    additional_context: Optional[dict[str, Any]] = None


@dataclass
class BuiltPrompt:
    system_prompt: str
    user_prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)


class PromptBuilder(Protocol):
    def build(self, context: PromptContext) -> BuiltPrompt:
        ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate at four characters per token."""
    return math.ceil(len(text) / 4)


def build_phase_instruction(phase_id: Optional[int]) -> str:
    if phase_id is None:
        return ""
    return (
        f'<phase-instruction id="{phase_id}">\n'
        f"You are currently working on **Phase {phase_id}** of the project roadmap.\n"
        "\n"
        "Important notes for this phase:\n"
        "- Follow the tasks defined in the roadmap for this phase\n"
        "- Meet all acceptance criteria before marking the phase as complete\n"
        "- Test your work before considering the phase complete\n"
        "</phase-instruction>"
    )


def _numbered(items: list[str], empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


def build_handoff_section(handoff: Optional[AgentHandoff]) -> str:
    if handoff is None:
        return ""
    files = "\n".join(f"- {f}" for f in handoff.files) if handoff.files else "(No files modified)"
    return "\n".join([
        f'<handoff from="{handoff.from_agent_type}" id="{handoff.from_agent_id}">',
        "## Summary",
        handoff.summary,
        "",
        "## Files Modified",
        files,
        "",
        "## Open Questions",
        _numbered(handoff.questions, "(No open questions)"),
        "",
        "## Recommendations",
        _numbered(handoff.recommendations, "(No recommendations)"),
        "</handoff>",
    ])


class DefaultPromptBuilder:
    """Builds prompts from in-memory context plus an optional rules file."""

    def __init__(self, rules_file: Optional[Path] = None) -> None:
        self.rules_file = Path(rules_file) if rules_file else None

    def _rules_section(self) -> str:
        if self.rules_file is None or not self.rules_file.exists():
            return ""
        content = self.rules_file.read_text(encoding="utf-8").strip()
        if not content:
            return ""
        return f'<project-rules>\n{content}\n</project-rules>'

    def build(self, context: PromptContext) -> BuiltPrompt:
        sections: list[str] = []

        rules = self._rules_section()
        if rules:
            sections.append(rules)

        phase_instruction = build_phase_instruction(context.phase_id)
        if phase_instruction:
            sections.append(phase_instruction)

        handoff = build_handoff_section(context.handoff)
        if handoff:
            sections.append(handoff)

        if context.additional_context:
            lines = [f"- **{k}:** {v}" for k, v in context.additional_context.items()]
            sections.append("<additional-context>\n" + "\n".join(lines) + "\n</additional-context>")

        sections.append(context.user_prompt)
        user_prompt = "\n\n".join(sections)
        system_prompt = context.agent_config.system_prompt

        return BuiltPrompt(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            metadata={
                "agent_type": context.agent_config.type,
                "model": context.agent_config.model.value,
                "thinking_level": context.agent_config.thinking_level.value,
                "has_rules": bool(rules),
                "has_handoff": context.handoff is not None,
                "total_tokens": estimate_tokens(system_prompt) + estimate_tokens(user_prompt),
            },
        )
