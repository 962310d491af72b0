"""Tests for sequential single-phase execution."""

from __future__ import annotations

import asyncio

import pytest

from roadmap_runner.agents.config_loader import StaticConfigLoader
from roadmap_runner.agents.runner import AgentRunner
from roadmap_runner.agents.spawner import ScriptedRun, ScriptedSpawner, SpawnOptions, default_script
from roadmap_runner.models import PhaseState, RoadmapPhase, Task, TaskStatus, TaskType
from roadmap_runner.notifications import Notifier
from roadmap_runner.phase_executor import PhaseExecutor, build_task_instruction, default_task_to_agent


def _fail_marked(options: SpawnOptions) -> ScriptedRun:
    if "FAIL" in options.prompt:
        return ScriptedRun(chunks=['{"type": "message"}\n'], exit_code=3)
    return default_script(options)


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _phase(*titles: str, criteria: list[str] | None = None, dependencies: list[int] | None = None) -> RoadmapPhase:
    tasks = [Task(id=f"t{i}", title=title) for i, title in enumerate(titles, start=1)]
    return RoadmapPhase(
        id=2,
        name="Backend",
        description="Server side",
        tasks=tasks,
        acceptance_criteria=criteria or [],
        dependencies=dependencies or [],
    )


class TestTaskMapping:
    def test_explicit_assignment_wins(self):
        task = Task(title="x", type=TaskType.TEST, assigned_agent_type="architect")
        assert default_task_to_agent(task) == "architect"

    def test_type_table_and_default(self):
        assert default_task_to_agent(Task(type=TaskType.FIX)) == "debugger"
        assert default_task_to_agent(Task(type=TaskType.SECURITY)) == "security"
        assert default_task_to_agent(Task(type=TaskType.CUSTOM)) == "implementer"

    def test_task_instruction_sections(self):
        phase = _phase("Build API", criteria=["No errors"])
        text = build_task_instruction(phase, phase.tasks[0])
        assert text.startswith("# Task: Build API")
        assert "## Phase Context" in text
        assert "**Phase 2: Backend**" in text
        assert "## Acceptance Criteria for this Phase" in text
        assert text.endswith("Please complete this task following the acceptance criteria.")


class TestPhaseExecutor:
    def setup_method(self):
        self.notifier = Notifier()
        self.loader = StaticConfigLoader.with_defaults()

    def _executor(self, phase: RoadmapPhase, script=_fail_marked, **kwargs) -> tuple[PhaseExecutor, ScriptedSpawner]:
        spawner = ScriptedSpawner(script)
        runner = AgentRunner(self.loader, spawner, self.notifier)
        executor = PhaseExecutor("s1", phase, runner, self.loader, notifier=self.notifier, **kwargs)
        return executor, spawner

    def test_runs_tasks_in_order(self):
        phase = _phase("first", "second", "third")
        executor, spawner = self._executor(phase)

        result = asyncio.run(executor.execute())
        assert result.success
        assert result.tasks_completed == 3
        assert [o.prompt.count("# Task: ") for o in spawner.spawned] == [1, 1, 1]
        order = [next(t for t in ("first", "second", "third") if f"# Task: {t}" in o.prompt) for o in spawner.spawned]
        assert order == ["first", "second", "third"]
        assert all(t.status == TaskStatus.COMPLETED for t in phase.tasks)
        assert all(t.assigned_agent_id for t in phase.tasks)

        events = self.notifier.events("session:s1")
        assert "phase:started" in events
        assert events.count("phase:agent_spawned") == 3
        assert events.count("phase:task_progress") == 3
        assert "phase:completed" in events

    def test_failure_does_not_halt_iteration(self):
        phase = _phase("ok", "FAIL me", "also ok", criteria=["No errors"])
        executor, spawner = self._executor(phase)

        result = asyncio.run(executor.execute())
        assert len(spawner.spawned) == 3
        assert result.tasks_completed == 2
        assert result.tasks_failed == 1
        assert not result.success
        assert not result.all_acceptance_criteria_passed
        assert result.acceptance_criteria_results[0].reason == "Some tasks had errors"
        assert phase.tasks[1].status == TaskStatus.FAILED
        assert phase.tasks[1].error == "Process exited with code 3"
        assert "phase:failed" in self.notifier.events()

    def test_task_failure_fails_phase_even_without_criteria(self):
        executor, _ = self._executor(_phase("FAIL"))
        result = asyncio.run(executor.execute())
        assert result.all_acceptance_criteria_passed
        assert not result.success

    def test_unmet_dependency_fails_phase(self):
        dep = RoadmapPhase(id=1, name="Setup", state=PhaseState.RUNNING)
        phase = _phase("a", "b", dependencies=[1])
        executor, spawner = self._executor(phase, phase_lookup={1: dep}.get)

        result = asyncio.run(executor.execute())
        assert not result.success
        assert result.error == "Dependency not met: Phase 1"
        assert result.tasks_failed == 2
        assert spawner.spawned == []

    def test_met_dependency_runs(self):
        dep = RoadmapPhase(id=1, name="Setup", state=PhaseState.COMPLETED)
        executor, _ = self._executor(_phase("a", dependencies=[1]), phase_lookup={1: dep}.get)
        assert asyncio.run(executor.execute()).success

    def test_missing_descriptor_fails_task(self):
        phase = _phase("odd")
        phase.tasks[0].assigned_agent_type = "ghost"
        executor, spawner = self._executor(phase)

        result = asyncio.run(executor.execute())
        assert spawner.spawned == []
        assert result.tasks_failed == 1
        assert "ghost" in result.agent_results[0].error

    def test_only_pending_tasks_run(self):
        phase = _phase("done already", "todo")
        phase.tasks[0].status = TaskStatus.COMPLETED
        executor, spawner = self._executor(phase)

        result = asyncio.run(executor.execute())
        assert len(spawner.spawned) == 1
        assert result.tasks_completed == 1

    def test_stop_skips_remaining_tasks(self):
        phase = _phase("long", "next", "last")
        hold = lambda options: ScriptedRun(chunks=['{"type": "message"}\n'], hold=True)  # noqa: E731
        executor, spawner = self._executor(phase, script=hold)

        async def scenario():
            job = asyncio.create_task(executor.execute())
            await _until(lambda: executor._runner.get_running_agent_count("s1") == 1)
            executor.stop()
            return await job

        result = asyncio.run(scenario())
        assert len(spawner.spawned) == 1
        assert not result.success
        assert result.tasks_completed == 0
        assert result.tasks_skipped == 3
        assert [t.status for t in phase.tasks] == [TaskStatus.SKIPPED] * 3
        events = self.notifier.events()
        assert "phase:stopped" in events
        assert "phase:completed" not in events
        assert "phase:failed" in events
        assert not executor.is_executing

    def test_concurrent_execute_is_rejected(self):
        hold = lambda options: ScriptedRun(hold=True)  # noqa: E731
        executor, spawner = self._executor(_phase("long"), script=hold)

        async def scenario():
            job = asyncio.create_task(executor.execute())
            await _until(lambda: spawner.spawned)
            with pytest.raises(RuntimeError, match="already executing"):
                await executor.execute()
            executor.stop()
            await job

        asyncio.run(scenario())
