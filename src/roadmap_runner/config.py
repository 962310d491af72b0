"""Executor settings and the optional ``.roadmap_runner/config.yaml`` file."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_TURNS,
    DEFAULT_START_PHASE,
    STATE_DIR_NAME,
)
from .models import ModelProvider, ThinkingLevel

logger = logging.getLogger(__name__)


@dataclass
class PhaseExecutorConfig:
    max_parallel_agents: int = DEFAULT_MAX_PARALLEL
    dangerously_skip_permissions: bool = True
    max_turns: int = DEFAULT_MAX_TURNS
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT_SECONDS
    model_override: Optional[ModelProvider] = None
    thinking_level_override: Optional[ThinkingLevel] = None


@dataclass
class RoadmapExecutorConfig:
    start_phase: int = DEFAULT_START_PHASE
    max_parallel_agents: int = DEFAULT_MAX_PARALLEL
    max_turns: int = DEFAULT_MAX_TURNS
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT_SECONDS
    auto_advance: bool = True
    max_retries: int = DEFAULT_MAX_RETRIES
    dangerously_skip_permissions: bool = True


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = Path(project_dir).resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        return {}, f"Failed to read {path}: {exc}"
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return {}, f"Config root is not a mapping: {path}"
    return data, None


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {value!r}")


def _apply_mapping(target: Any, raw: Any, section: str) -> Any:
    if not isinstance(raw, dict):
        return target
    known = {f.name: f for f in fields(target)}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Ignoring unknown %s setting: %s", section, key)
            continue
        current = getattr(target, key)
        try:
            if isinstance(current, bool):
                value = _coerce_bool(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for %s.%s: %r", section, key, value)
            continue
        setattr(target, key, value)
    return target


def roadmap_config_from_mapping(config: dict[str, Any]) -> RoadmapExecutorConfig:
    """Build a roadmap config from the ``roadmap:`` block of the runner config."""
    return _apply_mapping(RoadmapExecutorConfig(), config.get("roadmap"), "roadmap")


def phase_config_from_mapping(config: dict[str, Any]) -> PhaseExecutorConfig:
    """Build a phase executor config from the ``phase:`` block of the runner config."""
    cfg = PhaseExecutorConfig()
    raw = config.get("phase")
    if isinstance(raw, dict):
        raw = dict(raw)
        model = raw.pop("model_override", None)
        thinking = raw.pop("thinking_level_override", None)
        _apply_mapping(cfg, raw, "phase")
        try:
            cfg.model_override = ModelProvider(model) if model else None
            cfg.thinking_level_override = ThinkingLevel(thinking) if thinking else None
        except ValueError as exc:
            logger.warning("Invalid phase override: %s", exc)
    return cfg
