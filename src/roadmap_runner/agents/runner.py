"""Agent runner: lifecycle of externally executing agent processes.

Each spawned agent gets its own stream parser, a process listener, and a
completion future.  Callers ``await runner.wait(agent_id)`` instead of
listening for completion events; the future resolves exactly once, at the
agent's terminal transition.

State machine per agent::

    starting -> running -> completed | error
                   \\-> stopping -> completed | error   (decided by the exit)
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Optional

from loguru import logger

from ..errors import ConfigNotFoundError
from ..models import Agent, AgentStatus, ModelProvider, ThinkingLevel
from ..notifications import Notifier, session_room
from ..stream_parser import InitMessage, ResultMessage, StreamParser, calculate_token_usage
from .config_loader import AgentConfig, ConfigLoader
from .spawner import (
    CLI_COMMANDS,
    STATUS_STOPPED,
    ProcessListener,
    ProcessSpawner,
    SpawnOptions,
)

# Model forced whenever the effective thinking level is the maximum tier.
PRIMARY_MODEL = ModelProvider.CLAUDE


# ---------------------------------------------------------------------------
# Requests and outcomes
# ---------------------------------------------------------------------------

@dataclass
class AgentSpawnRequest:
    agent_type: str
    session_id: str
    cwd: str
    prompt: str
    model_override: Optional[ModelProvider] = None
    thinking_level_override: Optional[ThinkingLevel] = None
    parent_agent_id: Optional[str] = None
    dangerously_skip_permissions: bool = False
    max_turns: Optional[int] = None
    timeout: Optional[float] = None
    env: Optional[dict[str, str]] = None


@dataclass
class AgentOutcome:
    agent_id: str
    success: bool
    status: AgentStatus
    error: Optional[str] = None
    stopped: bool = False  # the agent was asked to stop before it finished


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------

def select_model(
    config: AgentConfig,
    model_override: Optional[ModelProvider | str] = None,
    thinking_level_override: Optional[ThinkingLevel | str] = None,
) -> ModelProvider:
    """Resolve the model for a spawn.

    Maximum thinking always runs on the primary model, even over an explicit
    override.  Otherwise an override wins when the descriptor allows it.
    """
    thinking = ThinkingLevel(thinking_level_override) if thinking_level_override else config.thinking_level
    if thinking == ThinkingLevel.MAX:
        return PRIMARY_MODEL
    if model_override and config.model_override_allowed:
        return ModelProvider(model_override)
    return config.model


def get_model_command(model: ModelProvider | str) -> str:
    return CLI_COMMANDS[ModelProvider(model).value]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class AgentRunner:
    """Owns the agent registry for one orchestrator instance."""

    def __init__(
        self,
        config_loader: ConfigLoader,
        spawner: ProcessSpawner,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._config_loader = config_loader
        self._spawner = spawner
        self._notifier = notifier
        self._agents: dict[str, Agent] = {}
        self._parsers: dict[str, StreamParser] = {}
        self._process_map: dict[str, str] = {}  # agent_id -> process_id
        self._futures: dict[str, asyncio.Future[AgentOutcome]] = {}
        self._stop_requested: set[str] = set()

    # -- Spawning ------------------------------------------------------------

    async def spawn(self, request: AgentSpawnRequest) -> Agent:
        """Start one agent process.

        Raises ``ConfigNotFoundError`` when the agent type has no descriptor;
        process-layer failures propagate from the spawner.
        """
        config = self._config_loader.load(request.agent_type)
        if config is None:
            raise ConfigNotFoundError(request.agent_type)

        model = select_model(config, request.model_override, request.thinking_level_override)
        agent = Agent(
            type=request.agent_type,
            name=config.name,
            session_id=request.session_id,
            model=model,
            parent_agent_id=request.parent_agent_id,
        )
        parser = StreamParser()
        loop = asyncio.get_running_loop()

        handle = await self._spawner.spawn(
            SpawnOptions(
                cwd=request.cwd,
                model=model,
                prompt=request.prompt,
                system_prompt=config.system_prompt,
                max_turns=request.max_turns,
                timeout=request.timeout,
                env=request.env,
                dangerously_skip_permissions=request.dangerously_skip_permissions,
                session_id=request.session_id,
            )
        )

        self._agents[agent.id] = agent
        self._parsers[agent.id] = parser
        self._process_map[agent.id] = handle.id
        self._futures[agent.id] = loop.create_future()
        self._spawner.subscribe(
            handle.id,
            ProcessListener(
                on_output=lambda pid, stream, data: self._handle_output(agent.id, pid, stream, data),
                on_exit=lambda pid, code, status: self._handle_exit(agent.id, code, status),
                on_error=lambda pid, exc: self._handle_error(agent.id, exc),
            ),
        )

        logger.info("Spawned agent {} ({}) on {} for session {}", agent.id, agent.type, model.value, agent.session_id)
        self._emit(agent, "agent:spawned", parent_agent_id=agent.parent_agent_id)
        return agent

    async def wait(self, agent_id: str) -> AgentOutcome:
        """Wait for the agent's terminal transition."""
        future = self._futures.get(agent_id)
        if future is not None:
            return await asyncio.shield(future)
        agent = self._agents.get(agent_id)
        if agent is None:
            return AgentOutcome(agent_id=agent_id, success=False, status=AgentStatus.ERROR, error="Agent not found")
        return self._outcome(agent)

    async def run(self, request: AgentSpawnRequest) -> tuple[Agent, AgentOutcome]:
        """Spawn an agent and wait for it to finish."""
        agent = await self.spawn(request)
        outcome = await self.wait(agent.id)
        return agent, outcome

    # -- Process event handlers ----------------------------------------------

    def _handle_output(self, agent_id: str, process_id: str, stream: str, data: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None or agent.is_terminal:
            return

        if agent.status == AgentStatus.STARTING:
            agent.status = AgentStatus.RUNNING
            self._emit(agent, "agent:started")

        if stream != "stdout":
            return

        parser = self._parsers.get(agent_id)
        if parser is not None:
            for result in parser.parse_chunk(data):
                if result.success:
                    self._apply_message(agent, process_id, result.message)
        self._emit(agent, "agent:output", output=data)

    def _apply_message(self, agent: Agent, process_id: str, message: Any) -> None:
        if isinstance(message, InitMessage):
            agent.cli_session_id = message.session_id
            self._spawner.set_cli_session_id(process_id, message.session_id)
        elif isinstance(message, ResultMessage) and message.usage is not None:
            agent.token_usage = calculate_token_usage(message.usage).to_token_usage()

    def _handle_exit(self, agent_id: str, code: Optional[int], status: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        parser = self._parsers.get(agent_id)
        if parser is not None:
            tail = parser.flush()
            if tail is not None and tail.success:
                self._apply_message(agent, self._process_map.get(agent_id, ""), tail.message)

        if code == 0 or status == STATUS_STOPPED:
            agent.finish(AgentStatus.COMPLETED)
            logger.info("Agent {} completed in {:.1f}s", agent.id, agent.duration or 0.0)
            self._emit(
                agent,
                "agent:completed",
                duration=agent.duration,
                token_usage=asdict(agent.token_usage) if agent.token_usage else None,
                exit_code=code,
            )
        else:
            agent.finish(AgentStatus.ERROR, f"Process exited with code {code}")
            logger.warning("Agent {} failed: {}", agent.id, agent.error_message)
            self._emit(agent, "agent:error", error=agent.error_message, exit_code=code)
        self._release(agent)

    def _handle_error(self, agent_id: str, exc: BaseException) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        agent.finish(AgentStatus.ERROR, str(exc))
        logger.warning("Agent {} process error: {}", agent.id, exc)
        self._emit(agent, "agent:error", error=str(exc))
        self._release(agent)

    def _release(self, agent: Agent) -> None:
        process_id = self._process_map.get(agent.id)
        if process_id is not None:
            self._spawner.unsubscribe(process_id)
        future = self._futures.get(agent.id)
        if future is not None and not future.done():
            future.set_result(self._outcome(agent))

    def _outcome(self, agent: Agent) -> AgentOutcome:
        return AgentOutcome(
            agent_id=agent.id,
            success=agent.status == AgentStatus.COMPLETED,
            status=agent.status,
            error=agent.error_message,
            stopped=agent.id in self._stop_requested,
        )

    def _emit(self, agent: Agent, event: str, **data: Any) -> None:
        if self._notifier is None:
            return
        payload = {
            "agent_id": agent.id,
            "session_id": agent.session_id,
            "agent_type": agent.type,
            "model": agent.model.value,
            **data,
        }
        self._notifier.notify(session_room(agent.session_id), event, payload)

    # -- Control -------------------------------------------------------------

    def stop(self, agent_id: str) -> bool:
        """Ask the backing process to terminate.

        The agent becomes ``stopping``; its terminal status follows from the
        process exit.
        """
        agent = self._agents.get(agent_id)
        process_id = self._process_map.get(agent_id)
        if agent is None or process_id is None:
            return False
        killed = self._spawner.kill(process_id)
        if killed and not agent.is_terminal:
            agent.status = AgentStatus.STOPPING
            self._stop_requested.add(agent_id)
            self._emit(agent, "agent:stopped")
        return killed

    def stop_session_agents(self, session_id: str) -> int:
        """Best-effort stop of every running agent in a session."""
        stopped = 0
        for agent in self.get_session_agents(session_id):
            if self.is_running(agent.id) and self.stop(agent.id):
                stopped += 1
        if stopped:
            logger.info("Stopped {} agent(s) for session {}", stopped, session_id)
        return stopped

    def update_progress(self, agent_id: str, progress: int, current_action: Optional[str] = None) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.progress = max(0, min(100, int(progress)))
        if current_action is not None:
            agent.current_action = current_action
        self._emit(agent, "agent:progress", progress=agent.progress, current_action=agent.current_action)
        return True

    # -- Queries -------------------------------------------------------------

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def get_all_agents(self) -> list[Agent]:
        return list(self._agents.values())

    def get_agent_status(self, agent_id: str) -> Optional[AgentStatus]:
        agent = self._agents.get(agent_id)
        return agent.status if agent else None

    def is_running(self, agent_id: str) -> bool:
        agent = self._agents.get(agent_id)
        return agent is not None and agent.status in (AgentStatus.RUNNING, AgentStatus.STARTING)

    def get_session_agents(self, session_id: str) -> list[Agent]:
        return [a for a in self._agents.values() if a.session_id == session_id]

    def get_running_agent_count(self, session_id: Optional[str] = None) -> int:
        return sum(
            1 for a in self._agents.values()
            if (session_id is None or a.session_id == session_id) and self.is_running(a.id)
        )

    # -- Cleanup -------------------------------------------------------------

    def remove_agent(self, agent_id: str) -> bool:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        process_id = self._process_map.pop(agent_id, None)
        if process_id is not None:
            self._spawner.unsubscribe(process_id)
        self._parsers.pop(agent_id, None)
        self._stop_requested.discard(agent_id)
        future = self._futures.pop(agent_id, None)
        if future is not None and not future.done():
            future.set_result(AgentOutcome(agent_id, False, agent.status, "Agent removed"))
        return True

    def cleanup_finished_agents(self) -> int:
        """Drop every completed or errored agent from tracking."""
        finished = [aid for aid, a in self._agents.items() if a.is_terminal]
        for agent_id in finished:
            self.remove_agent(agent_id)
        return len(finished)

    def clear_all_agents(self) -> None:
        """Stop everything and forget all tracking state."""
        for agent_id in list(self._agents):
            if self.is_running(agent_id):
                self.stop(agent_id)
        for agent_id in list(self._agents):
            self.remove_agent(agent_id)
