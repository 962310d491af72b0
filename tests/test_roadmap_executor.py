"""Tests for roadmap loading, phase transitions and queue-driven execution."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from roadmap_runner.agents.config_loader import StaticConfigLoader
from roadmap_runner.agents.runner import AgentRunner
from roadmap_runner.agents.spawner import ScriptedRun, ScriptedSpawner, SpawnOptions, default_script
from roadmap_runner.config import RoadmapExecutorConfig
from roadmap_runner.errors import DependencyUnmetError, InvalidTransitionError, RoadmapParseError
from roadmap_runner.models import PhaseState, QueueStatus, RoadmapPhase, Task, TaskStatus, TaskType
from roadmap_runner.notifications import Notifier
from roadmap_runner.roadmap_executor import (
    PHASE_TRANSITIONS,
    RoadmapExecutor,
    build_phase_instruction_text,
    parse_roadmap,
)


def _line(**record) -> str:
    return json.dumps(record)


def _roadmap(*lines: str) -> str:
    return "\n".join(lines) + "\n"


TWO_PHASES = _roadmap(
    _line(type="header", currentPhase=1),
    _line(
        type="phase",
        id=1,
        name="Setup",
        description="Scaffold",
        tasks=[{"id": "t1", "type": "implement", "title": "Scaffold app"}],
        acceptanceCriteria=["All tasks complete"],
    ),
    _line(
        type="phase",
        id=2,
        name="API",
        dependencies=[1],
        tasks=[
            {"id": "t2", "type": "implement", "title": "Endpoints"},
            {"id": "t3", "type": "test", "title": "Endpoint tests", "dependencies": ["t2"]},
        ],
    ),
)


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestParseRoadmap:
    def test_header_and_phases(self):
        phases, header = parse_roadmap(TWO_PHASES)
        assert header == 1
        assert [p.id for p in phases] == [1, 2]
        assert phases[0].acceptance_criteria == ["All tasks complete"]
        assert phases[1].dependencies == [1]

    def test_task_normalisation(self):
        text = _roadmap(
            _line(
                type="phase",
                id=3,
                name="Docs",
                tasks=[
                    {"type": "test", "title": "Check links", "details": "Run the checker", "status": "done"},
                    {"type": "mystery", "title": "Odd"},
                ],
            )
        )
        phases, header = parse_roadmap(text)
        assert header is None
        first, second = phases[0].tasks
        assert first.id.startswith("task-3-")
        assert first.description == "Run the checker"
        assert first.status == TaskStatus.COMPLETED
        assert first.assigned_agent_type == "tester"
        assert second.type == TaskType.IMPLEMENT
        assert second.assigned_agent_type == "implementer"
        assert second.status == TaskStatus.PENDING

    def test_bad_lines_are_skipped(self):
        text = _roadmap(
            "{not json",
            "",
            _line(type="phase", name="no id"),
            _line(type="note", text="ignored"),
            _line(type="phase", id=1, name="Good"),
        )
        phases, _ = parse_roadmap(text)
        assert [p.name for p in phases] == ["Good"]

    def test_completed_status_is_kept(self):
        phases, _ = parse_roadmap(_roadmap(_line(type="phase", id=1, name="Done", status="completed")))
        assert phases[0].state == PhaseState.COMPLETED

    def test_phase_instruction_text(self):
        phase = RoadmapPhase(
            id=2,
            name="API",
            description="HTTP layer",
            tasks=[
                Task(title="Routes", status=TaskStatus.COMPLETED, assigned_agent_type="implementer"),
                Task(title="Tests", assigned_agent_type="tester"),
            ],
            acceptance_criteria=["Tests pass"],
        )
        text = build_phase_instruction_text(phase)
        assert text.startswith("# Phase 2: API")
        assert "✓ **Routes** (implementer)" in text
        assert "○ **Tests** (tester)" in text
        assert "- Tests pass" in text
        assert text.endswith("Execute the pending tasks to complete this phase.")


class ExecutorTestCase:
    def setup_method(self):
        self.notifier = Notifier()
        self.loader = StaticConfigLoader.with_defaults()
        self.mode = {"fail": False, "hold": False}
        self.spawner = ScriptedSpawner(self._script)
        self.runner = AgentRunner(self.loader, self.spawner, self.notifier)

    def _script(self, options: SpawnOptions) -> ScriptedRun:
        if self.mode["hold"]:
            return ScriptedRun(chunks=['{"type": "message"}\n'], hold=True)
        if self.mode["fail"]:
            return ScriptedRun(chunks=['{"type": "message"}\n'], exit_code=1)
        return default_script(options)

    def _executor(self, text: str = TWO_PHASES, **config) -> RoadmapExecutor:
        executor = RoadmapExecutor(
            "s1",
            self.runner,
            self.loader,
            config=RoadmapExecutorConfig(**config),
            notifier=self.notifier,
        )
        executor.load_phases(text)
        return executor

    def events(self) -> list[str]:
        return self.notifier.events("session:s1")


class TestLoading(ExecutorTestCase):
    def test_first_pending_phase_becomes_current(self):
        text = _roadmap(
            _line(type="header", currentPhase=1),
            _line(type="phase", id=1, name="Done", status="completed"),
            _line(type="phase", id=2, name="Next"),
        )
        executor = self._executor(text)
        assert executor.current_phase_id == 2
        assert [p.id for p in executor.phases] == [1, 2]

    def test_header_used_when_nothing_pending(self):
        text = _roadmap(
            _line(type="header", currentPhase=2),
            _line(type="phase", id=1, name="A", status="completed"),
            _line(type="phase", id=2, name="B", status="completed"),
        )
        assert self._executor(text).current_phase_id == 2

    def test_missing_file_raises(self, tmp_path: Path):
        executor = self._executor()
        with pytest.raises(RoadmapParseError):
            executor.load_phases_from_file(tmp_path / "missing.jsonl")


class TestTransitions(ExecutorTestCase):
    def test_table_has_no_exits_from_terminal_states(self):
        assert PHASE_TRANSITIONS[PhaseState.COMPLETED] == frozenset()
        assert PHASE_TRANSITIONS[PhaseState.CANCELLED] == frozenset()

    def test_pending_cannot_jump_to_running(self):
        executor = self._executor()
        result = executor.update_phase_state(1, "running")
        assert not result.success
        assert result.error == "Invalid state transition: pending -> running"
        assert executor.get_phase(1).state == PhaseState.PENDING

    def test_running_cannot_skip_testing(self):
        executor = self._executor()
        executor.update_phase_state(1, PhaseState.STARTING)
        executor.update_phase_state(1, PhaseState.RUNNING)
        assert not executor.can_transition_to(PhaseState.COMPLETED)
        assert not executor.update_phase_state(1, PhaseState.COMPLETED).success

    def test_timestamps_and_events(self):
        executor = self._executor()
        executor.update_phase_state(1, PhaseState.STARTING)
        executor.update_phase_state(1, PhaseState.RUNNING)
        phase = executor.get_phase(1)
        first_start = phase.started_at
        assert first_start is not None

        executor.update_phase_state(1, PhaseState.TESTING)
        executor.update_phase_state(1, PhaseState.RUNNING)
        assert phase.started_at == first_start

        result = executor.update_phase_state(1, PhaseState.FAILED)
        assert result.success
        assert result.previous_state == PhaseState.RUNNING
        assert phase.completed_at is not None
        assert self.events().count("phase:state_changed") == 5

    def test_unknown_phase(self):
        result = self._executor().update_phase_state(9, PhaseState.STARTING)
        assert result.error == "Phase not found: 9"

    def test_transition_or_raise(self):
        executor = self._executor()
        with pytest.raises(InvalidTransitionError) as excinfo:
            executor.transition_or_raise(1, PhaseState.COMPLETED)
        assert excinfo.value.from_state == "pending"
        assert excinfo.value.to_state == "completed"


class TestExecution(ExecutorTestCase):
    def test_runs_every_phase_with_auto_advance(self):
        executor = self._executor()

        result = asyncio.run(executor.execute_current_phase())
        assert result.success
        assert executor.is_completed
        assert [p.state for p in executor.phases] == [PhaseState.COMPLETED, PhaseState.COMPLETED]
        assert all(t.status == TaskStatus.COMPLETED for p in executor.phases for t in p.tasks)
        assert len(self.spawner.spawned) == 3

        events = self.events()
        assert "roadmap:phase_advanced" in events
        assert events[-1] == "roadmap:completed"
        assert "All phases completed!" in executor.outputs

        status = executor.get_status()
        assert status.state == "completed"
        assert status.progress == 100
        assert status.completed_phases == [1, 2]

    def test_prompt_carries_phase_and_task(self):
        executor = self._executor(auto_advance=False)
        asyncio.run(executor.execute_current_phase())
        prompt = self.spawner.spawned[0].prompt
        assert "# Phase 1: Setup" in prompt
        assert "## Current Task\n**Task:** Scaffold app" in prompt

    def test_auto_advance_off_stops_after_phase(self):
        executor = self._executor(auto_advance=False)
        asyncio.run(executor.execute_current_phase())
        assert executor.current_phase_id == 1
        assert executor.get_phase(2).state == PhaseState.PENDING
        assert not executor.is_completed

    def test_task_failure_fails_phase(self):
        self.mode["fail"] = True
        executor = self._executor()

        result = asyncio.run(executor.execute_current_phase())
        assert not result.success
        assert result.error == "Some tasks failed"
        phase = executor.get_phase(1)
        assert phase.state == PhaseState.FAILED
        assert phase.tasks[0].status == TaskStatus.FAILED
        assert executor.current_phase_id == 1
        assert executor.get_status().failed_phases == [1]

    def test_failed_phase_can_be_retried(self):
        self.mode["fail"] = True
        executor = self._executor(auto_advance=False)
        asyncio.run(executor.execute_current_phase())

        self.mode["fail"] = False
        result = asyncio.run(executor.execute_current_phase())
        phase = executor.get_phase(1)
        assert result.success
        assert phase.retries == 1
        assert phase.state == PhaseState.COMPLETED
        assert phase.error is None

    def test_unmet_dependency_raises_and_fails_phase(self):
        executor = self._executor()
        executor.set_current_phase(2)

        with pytest.raises(DependencyUnmetError, match="Dependency not met: Phase 1"):
            asyncio.run(executor.execute_current_phase())
        assert executor.get_phase(2).state == PhaseState.FAILED
        assert executor.execution_results[2].error == "Dependency not met: Phase 1"
        assert self.spawner.spawned == []

    def test_missing_orchestrator_descriptor_fails_phase(self):
        self.loader = StaticConfigLoader.with_defaults(["implementer"])
        self.runner = AgentRunner(self.loader, self.spawner, self.notifier)
        executor = self._executor()

        result = asyncio.run(executor.execute_current_phase())
        assert not result.success
        assert "orchestrator" in result.error
        assert executor.get_phase(1).state == PhaseState.FAILED

    def test_completed_phase_cannot_execute_again(self):
        executor = self._executor(auto_advance=False)
        asyncio.run(executor.execute_current_phase())
        result = asyncio.run(executor.execute_current_phase())
        assert result.error == "Cannot execute phase in state completed"

    def test_start_loads_roadmap_file(self, tmp_path: Path):
        path = tmp_path / "roadmap.jsonl"
        path.write_text(TWO_PHASES, encoding="utf-8")
        executor = RoadmapExecutor("s1", self.runner, self.loader, notifier=self.notifier, roadmap_path=path)

        status = asyncio.run(executor.start())
        assert status.state == "completed"
        assert status.total_phases == 2
        assert executor.started_at is not None
        assert self.events()[0] == "roadmap:started"

    def test_start_without_phases(self):
        executor = RoadmapExecutor("s1", self.runner, self.loader)
        status = asyncio.run(executor.start())
        assert status.current_phase is None
        assert status.state == "pending"
        assert executor.outputs == ["No phases to execute"]


class TestControl(ExecutorTestCase):
    def test_pause_and_resume(self):
        self.mode["hold"] = True
        executor = self._executor(auto_advance=False)

        async def scenario():
            job = asyncio.create_task(executor.start())
            await _until(lambda: self.runner.get_running_agent_count("s1") == 1)
            paused = executor.pause()
            await job
            queued = executor.task_queue.get("t1")
            snapshot = (paused.state, executor.task_queue.status, queued.status)
            self.mode["hold"] = False
            resumed = await executor.resume()
            return snapshot, resumed

        (state, queue_status, task_status), resumed = asyncio.run(scenario())
        assert state == "paused"
        assert queue_status == QueueStatus.PAUSED
        assert task_status == TaskStatus.PENDING
        assert resumed.state == "completed"
        assert len(self.spawner.spawned) == 2
        events = self.events()
        assert events.index("roadmap:paused") < events.index("roadmap:resumed")

    def test_resume_before_paused_run_drains(self):
        self.mode["hold"] = True
        executor = self._executor(auto_advance=False)

        async def scenario():
            job = asyncio.create_task(executor.start())
            await _until(lambda: self.runner.get_running_agent_count("s1") == 1)
            executor.pause()
            self.mode["hold"] = False
            resumed = await executor.resume()
            await job
            return resumed

        resumed = asyncio.run(scenario())
        assert resumed.state == "completed"
        assert len(self.spawner.spawned) == 2
        assert executor.task_queue.get("t1").status == TaskStatus.COMPLETED
        assert executor.get_phase(1).tasks[0].status == TaskStatus.COMPLETED

    def test_phase_with_unfinished_tasks_does_not_complete(self):
        executor = self._executor(auto_advance=False)
        phase = executor.get_phase(1)
        executor.task_queue.add_task(Task.from_dict(phase.tasks[0].to_dict()))
        executor.task_queue.update("t1", status=TaskStatus.RUNNING)

        result = asyncio.run(executor.execute_current_phase())
        assert not result.success
        assert result.error == "Unfinished tasks: t1"
        assert phase.state == PhaseState.FAILED
        assert self.spawner.spawned == []

    def test_phase_events_carry_phase_id(self):
        executor = self._executor(auto_advance=False)
        asyncio.run(executor.start())
        completed = self.notifier.history("session:s1", event="phase:completed")
        assert completed[0].payload["phase_id"] == 1

    def test_pause_requires_running_phase(self):
        executor = self._executor()
        assert executor.pause().state == "pending"
        assert "roadmap:paused" not in self.events()

    def test_resume_requires_paused_phase(self):
        executor = self._executor()
        status = asyncio.run(executor.resume())
        assert status.state == "pending"
        assert self.spawner.spawned == []

    def test_stop_while_running(self):
        self.mode["hold"] = True
        executor = self._executor()

        async def scenario():
            job = asyncio.create_task(executor.start())
            await _until(lambda: self.runner.get_running_agent_count("s1") == 1)
            stopped = executor.stop()
            await job
            return stopped

        stopped = asyncio.run(scenario())
        assert stopped.state == "cancelled"
        assert executor.get_phase(1).state == PhaseState.CANCELLED
        assert executor.task_queue.tasks == []
        assert executor.stopped_at is not None
        assert "roadmap:stopped" in self.events()
        assert self.runner.get_running_agent_count("s1") == 0

    def test_stop_pending_phase_cancels_it(self):
        executor = self._executor()
        assert executor.stop().state == "cancelled"

    def test_stop_completed_phase_is_a_no_op(self):
        executor = self._executor(auto_advance=False)
        asyncio.run(executor.execute_current_phase())
        assert executor.stop().state == "completed"
        assert "roadmap:stopped" not in self.events()


class TestStatus(ExecutorTestCase):
    def test_progress_counts_earlier_phases_and_current_tasks(self):
        executor = self._executor()
        executor.get_phase(1).state = PhaseState.COMPLETED
        executor.set_current_phase(2)
        executor.get_phase(2).tasks[0].status = TaskStatus.COMPLETED
        assert executor.get_status().progress == 75

    def test_progress_without_phases(self):
        executor = RoadmapExecutor("s1", self.runner, self.loader)
        assert executor.get_status().progress == 0

    def test_to_state(self):
        executor = self._executor()
        state = executor.to_state()
        assert state["session_id"] == "s1"
        assert state["current_phase_id"] == 1
        assert [p["id"] for p in state["phases"]] == [1, 2]
        assert state["queue"]["tasks"] == {}
