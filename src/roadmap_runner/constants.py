"""Shared defaults for the roadmap runner."""

from __future__ import annotations

STATE_DIR_NAME = ".roadmap_runner"
CONFIG_FILE = "config.yaml"
AGENTS_DIR_NAME = "agents"

DEFAULT_MAX_PARALLEL = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_TURNS = 10
DEFAULT_AGENT_TIMEOUT_SECONDS = 30 * 60.0
DEFAULT_START_PHASE = 1

MAX_CONTEXT_TOKENS = 200_000
FORCE_KILL_TIMEOUT_SECONDS = 5.0
NOTIFIER_HISTORY_LIMIT = 500
ROADMAP_OUTPUT_LIMIT = 1000
