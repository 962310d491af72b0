"""Provide the ``roadmap-runner`` CLI entrypoint and its subcommands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .agents.config_loader import AgentConfigLoader, ConfigLoader, StaticConfigLoader
from .agents.runner import AgentRunner
from .agents.spawner import ProcessSpawner, ScriptedSpawner, SubprocessSpawner
from .config import load_runner_config, roadmap_config_from_mapping
from .constants import AGENTS_DIR_NAME, STATE_DIR_NAME
from .errors import RoadmapParseError
from .logging_utils import configure_logging
from .models import PhaseState, RoadmapPhase, Task, TaskStatus
from .notifications import Notifier
from .roadmap_executor import RoadmapExecutor, RoadmapStatus, parse_roadmap, read_roadmap_file
from .task_queue import TaskQueue

_STATE_STYLES = {
    PhaseState.COMPLETED: "green",
    PhaseState.FAILED: "red",
    PhaseState.CANCELLED: "red",
    PhaseState.RUNNING: "yellow",
    PhaseState.PAUSED: "magenta",
}


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def _add_roadmap_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("roadmap", type=Path, help="Path to the roadmap JSONL file")


def _build_validate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roadmap-runner validate",
        description="Roadmap Runner - check a roadmap for dependency problems",
    )
    _add_roadmap_argument(parser)
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roadmap-runner status",
        description="Roadmap Runner - show the phases of a roadmap",
    )
    _add_roadmap_argument(parser)
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roadmap-runner run",
        description="Roadmap Runner - execute a roadmap phase by phase",
    )
    _add_roadmap_argument(parser)
    parser.add_argument(
        "--cwd",
        type=Path,
        default=Path("."),
        help="Project directory the agents work in (default: current directory)",
    )
    parser.add_argument(
        "--agents-dir",
        type=Path,
        default=None,
        help=f"Directory of agent descriptors (default: <cwd>/{STATE_DIR_NAME}/{AGENTS_DIR_NAME})",
    )
    parser.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Maximum number of agents running at once",
    )
    parser.add_argument(
        "--no-auto-advance",
        action="store_true",
        help="Stop after the current phase instead of moving on",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use built-in agent descriptors and a simulated agent process",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (default: INFO)",
    )
    return parser


def _build_main_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roadmap-runner",
        description="Roadmap Runner - dispatch roadmap phases to coding agents",
    )
    parser.add_argument("command", choices=["validate", "status", "run"])
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _load_phases(path: Path) -> Optional[list[RoadmapPhase]]:
    try:
        phases, _ = parse_roadmap(read_roadmap_file(path))
    except RoadmapParseError as exc:
        sys.stderr.write(f"{exc}\n")
        return None
    return phases


def find_roadmap_problems(phases: list[RoadmapPhase]) -> list[str]:
    """Dangling task/phase references and dependency cycles, one line each.

    Tasks are copied into a scratch queue so statuses are left untouched.
    """
    problems: list[str] = []
    phase_ids = {p.id for p in phases}
    seen_ids: set[str] = set()
    for phase in phases:
        for dep in phase.dependencies:
            if dep not in phase_ids:
                problems.append(f"Phase {phase.id} depends on unknown phase {dep}")
            elif dep >= phase.id:
                problems.append(f"Phase {phase.id} depends on later phase {dep}")

        queue = TaskQueue(f"validate-{phase.id}")
        queue.add_many([Task.from_dict(t.to_dict()) for t in phase.tasks])
        for task_id, missing in sorted(queue.validate_dependencies().items()):
            for dep_id in missing:
                problems.append(f"Phase {phase.id}: task {task_id} depends on unknown task {dep_id}")
        for task in phase.tasks:
            if task.id in seen_ids:
                problems.append(f"Phase {phase.id}: duplicate task id {task.id}")
            seen_ids.add(task.id)
            if queue.has_circular_dependency(task.id):
                problems.append(f"Phase {phase.id}: task {task.id} is part of a dependency cycle")
    return problems


def _validate_command(path: Path, *, as_json: bool = False) -> int:
    phases = _load_phases(path)
    if phases is None:
        return 2
    problems = find_roadmap_problems(phases)
    if as_json:
        payload = {
            "roadmap": str(path),
            "phases": len(phases),
            "tasks": sum(len(p.tasks) for p in phases),
            "problems": problems,
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 2 if problems else 0

    sys.stdout.write(f"Roadmap: {path}\n")
    sys.stdout.write(f"Phases:  {len(phases)} ({sum(len(p.tasks) for p in phases)} tasks)\n")
    if not problems:
        sys.stdout.write("No problems found.\n")
        return 0
    sys.stdout.write("Problems:\n")
    for problem in problems:
        sys.stdout.write(f"- {problem}\n")
    return 2


def render_phase_table(phases: list[RoadmapPhase], title: str = "Roadmap") -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Phase", justify="right", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("Tasks", justify="right")
    table.add_column("Depends on")
    for phase in phases:
        style = _STATE_STYLES.get(phase.state, "white")
        done = sum(1 for t in phase.tasks if t.status == TaskStatus.COMPLETED)
        table.add_row(
            str(phase.id),
            phase.name,
            f"[{style}]{phase.state.value}[/{style}]",
            f"{done}/{len(phase.tasks)}",
            ", ".join(str(d) for d in phase.dependencies) or "-",
        )
    return table


def _status_command(path: Path, *, as_json: bool = False) -> int:
    phases = _load_phases(path)
    if phases is None:
        return 2
    if as_json:
        sys.stdout.write(json.dumps([p.to_dict() for p in phases], indent=2, sort_keys=True) + "\n")
        return 0
    Console().print(render_phase_table(phases, title=str(path)))
    return 0


def _build_runtime(args: argparse.Namespace, cwd: Path) -> tuple[ConfigLoader, ProcessSpawner]:
    if args.dry_run:
        return StaticConfigLoader.with_defaults(), ScriptedSpawner()
    agents_dir = args.agents_dir or (cwd / STATE_DIR_NAME / AGENTS_DIR_NAME)
    return AgentConfigLoader(agents_dir), SubprocessSpawner()


def _run_command(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    cwd = args.cwd.resolve()
    raw_config, config_err = load_runner_config(cwd)
    if config_err:
        logger.warning("{}", config_err)
    config = roadmap_config_from_mapping(raw_config)
    if args.max_parallel is not None:
        config.max_parallel_agents = max(1, args.max_parallel)
    if args.no_auto_advance:
        config.auto_advance = False

    config_loader, spawner = _build_runtime(args, cwd)
    notifier = Notifier()
    runner = AgentRunner(config_loader, spawner, notifier)
    executor = RoadmapExecutor(
        "cli",
        runner,
        config_loader,
        cwd=str(cwd),
        config=config,
        notifier=notifier,
        roadmap_path=args.roadmap,
    )
    try:
        status = asyncio.run(executor.start())
    except RoadmapParseError as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    except KeyboardInterrupt:
        status = executor.stop()

    console = Console()
    console.print(render_phase_table(executor.phases, title=f"Roadmap: {args.roadmap}"))
    _write_status(status)
    return 0 if status.state == PhaseState.COMPLETED.value else 1


def _write_status(status: RoadmapStatus) -> None:
    data: dict[str, Any] = asdict(status)
    sys.stdout.write(
        f"State: {data['state']}  progress={data['progress']}%  "
        f"completed={data['completed_phases']}  failed={data['failed_phases']}\n"
    )


def main(argv: list[str] | None = None) -> None:
    """Run the `roadmap-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "validate":
            args = _build_validate_parser().parse_args(argv[1:])
            raise SystemExit(_validate_command(args.roadmap, as_json=bool(args.json)))
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.roadmap, as_json=bool(args.json)))
        if argv[0] == "run":
            args = _build_run_parser().parse_args(argv[1:])
            raise SystemExit(_run_command(args))
    _build_main_parser().parse_args(argv)


if __name__ == "__main__":
    main()
