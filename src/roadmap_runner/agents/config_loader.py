"""Agent-type descriptors and the loaders that produce them.

A descriptor is a markdown file per agent type whose YAML frontmatter holds
the settings and whose body is the system prompt::

    ---
    name: Implementer
    tools: [Read, Write, Edit, Bash]
    model: glm
    thinking_level: off
    ---
    You implement one task at a time...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml

from ..models import AgentType, ModelProvider, ThinkingLevel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults per agent type
# ---------------------------------------------------------------------------

DEFAULT_AGENT_MODELS: dict[str, ModelProvider] = {
    AgentType.ORCHESTRATOR.value: ModelProvider.CLAUDE,
    AgentType.PLANNER.value: ModelProvider.CLAUDE,
    AgentType.ARCHITECT.value: ModelProvider.CLAUDE,
    AgentType.SECURITY.value: ModelProvider.CLAUDE,
    AgentType.IMPLEMENTER.value: ModelProvider.GLM,
    AgentType.REVIEWER.value: ModelProvider.GLM,
    AgentType.TESTER.value: ModelProvider.GLM,
    AgentType.DEBUGGER.value: ModelProvider.GLM,
}

DEFAULT_THINKING_LEVELS: dict[str, ThinkingLevel] = {
    AgentType.ORCHESTRATOR.value: ThinkingLevel.MAX,
    AgentType.PLANNER.value: ThinkingLevel.THINK,
    AgentType.ARCHITECT.value: ThinkingLevel.THINK,
    AgentType.SECURITY.value: ThinkingLevel.THINK,
}


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AgentCapabilities:
    can_spawn_agents: bool = False
    can_execute_tools: bool = True
    can_modify_files: bool = False
    can_run_commands: bool = False
    can_access_network: bool = False
    can_read_files: bool = False

    @classmethod
    def from_tools(cls, tools: list[str]) -> "AgentCapabilities":
        present = set(tools)
        return cls(
            can_spawn_agents="Task" in present,
            can_execute_tools=True,
            can_modify_files=bool(present & {"Write", "Edit"}),
            can_run_commands="Bash" in present,
            can_access_network=bool(present & {"WebFetch", "WebSearch"}),
            can_read_files=bool(present & {"Read", "Glob", "Grep"}),
        )


@dataclass(frozen=True)
class AgentConfig:
    """Immutable descriptor for one agent type."""

    type: str
    name: str
    description: str = ""
    tools: tuple[str, ...] = ()
    model: ModelProvider = ModelProvider.GLM
    model_override_allowed: bool = True
    thinking_level: ThinkingLevel = ThinkingLevel.OFF
    capabilities: AgentCapabilities = field(default_factory=AgentCapabilities)
    system_prompt: str = ""
    file_path: Optional[str] = None

    @classmethod
    def from_frontmatter(
        cls,
        agent_type: str,
        data: dict[str, Any],
        system_prompt: str = "",
        file_path: Optional[str] = None,
    ) -> "AgentConfig":
        """Build a descriptor, filling gaps from the per-type defaults."""
        raw_tools = data.get("tools")
        if isinstance(raw_tools, str):
            tools = [t.strip() for t in raw_tools.split(",") if t.strip()]
        elif isinstance(raw_tools, list):
            tools = [str(t) for t in raw_tools]
        else:
            tools = []

        default_model = DEFAULT_AGENT_MODELS.get(agent_type, ModelProvider.GLM)
        try:
            model = ModelProvider(str(data["model"])) if data.get("model") else default_model
        except ValueError:
            logger.warning("Unknown model %r for agent %s; using %s", data.get("model"), agent_type, default_model.value)
            model = default_model

        default_thinking = DEFAULT_THINKING_LEVELS.get(agent_type, ThinkingLevel.OFF)
        raw_thinking = data.get("thinking_level")
        # YAML reads a bare ``off`` as boolean False.
        if raw_thinking is False:
            raw_thinking = ThinkingLevel.OFF.value
        try:
            thinking = ThinkingLevel(str(raw_thinking)) if raw_thinking else default_thinking
        except ValueError:
            thinking = default_thinking

        return cls(
            type=agent_type,
            name=str(data.get("name") or agent_type),
            description=str(data.get("description") or ""),
            tools=tuple(tools),
            model=model,
            model_override_allowed=data.get("model_override_allowed") is not False,
            thinking_level=thinking,
            capabilities=AgentCapabilities.from_tools(tools),
            system_prompt=system_prompt,
            file_path=file_path,
        )


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

class ConfigLoader(Protocol):
    def load(self, agent_type: str) -> Optional[AgentConfig]:
        ...


def parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split ``---`` delimited YAML frontmatter from a markdown body."""
    if not text.startswith("---"):
        return {}, text.strip()
    lines = text.splitlines()
    for idx in range(1, len(lines)):
        if lines[idx].strip() == "---":
            header = "\n".join(lines[1:idx])
            body = "\n".join(lines[idx + 1:])
            data = yaml.safe_load(header) if header.strip() else {}
            if not isinstance(data, dict):
                logger.warning("Frontmatter is not a mapping; ignoring it")
                data = {}
            return data, body.strip()
    return {}, text.strip()


class AgentConfigLoader:
    """Loads ``<agents_dir>/<agent_type>.md`` descriptors from disk."""

    def __init__(self, agents_dir: Path) -> None:
        self.agents_dir = Path(agents_dir)

    def load(self, agent_type: str) -> Optional[AgentConfig]:
        path = self.agents_dir / f"{agent_type}.md"
        if not path.exists():
            logger.debug("Agent descriptor does not exist: %s", path)
            return None
        try:
            data, body = parse_frontmatter(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to read agent descriptor %s: %s", path, exc)
            return None
        return AgentConfig.from_frontmatter(agent_type, data, system_prompt=body, file_path=str(path))

    def available_agent_types(self) -> list[str]:
        if not self.agents_dir.is_dir():
            return []
        return sorted(
            p.stem for p in self.agents_dir.glob("*.md")
            if p.name.lower() != "readme.md"
        )


class StaticConfigLoader:
    """In-memory loader for embedded use and tests."""

    def __init__(self, configs: Optional[dict[str, AgentConfig]] = None) -> None:
        self._configs: dict[str, AgentConfig] = dict(configs or {})

    @classmethod
    def with_defaults(cls, agent_types: Optional[list[str]] = None) -> "StaticConfigLoader":
        """Descriptors for every built-in agent type using the default models."""
        types = agent_types or [t.value for t in AgentType]
        return cls({t: AgentConfig.from_frontmatter(t, {}) for t in types})

    def register(self, config: AgentConfig) -> None:
        self._configs[config.type] = config

    def load(self, agent_type: str) -> Optional[AgentConfig]:
        return self._configs.get(agent_type)

    def available_agent_types(self) -> list[str]:
        return sorted(self._configs)
