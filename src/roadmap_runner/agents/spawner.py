"""Process layer: launching agent CLIs and relaying their events.

Two spawners share one contract:

- ``SubprocessSpawner`` runs the real model CLI with asyncio subprocesses.
- ``ScriptedSpawner`` replays canned output in-process; the CLI uses it for
  ``--dry-run`` and tests use it to drive agent lifecycles deterministically.

Events for a process are delivered to the single ``ProcessListener``
subscribed under its id.  Events that arrive before a listener subscribes are
buffered and replayed on ``subscribe``.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from loguru import logger

from ..constants import FORCE_KILL_TIMEOUT_SECONDS
from ..errors import ProcessSpawnError
from ..models import ModelProvider


CLI_COMMANDS: dict[str, str] = {
    ModelProvider.CLAUDE.value: "claude",
    ModelProvider.GLM.value: "glm",
}

# Process status values reported with the exit event.
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"


@dataclass
class SpawnOptions:
    cwd: str
    model: ModelProvider
    prompt: str = ""
    system_prompt: str = ""
    max_turns: Optional[int] = None
    timeout: Optional[float] = None  # seconds
    env: Optional[dict[str, str]] = None
    dangerously_skip_permissions: bool = False
    session_id: Optional[str] = None


@dataclass
class ProcessHandle:
    id: str
    model: ModelProvider
    cwd: str
    session_id: Optional[str] = None
    cli_session_id: Optional[str] = None
    pid: Optional[int] = None
    status: str = "starting"
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    ended_at: Optional[str] = None


@dataclass
class ProcessListener:
    """Callbacks for one process: output(stream, data), exit(code, status), error(exc)."""

    on_output: Callable[[str, str, str], None]
    on_exit: Callable[[str, Optional[int], str], None]
    on_error: Callable[[str, BaseException], None]


class ProcessSpawner(Protocol):
    async def spawn(self, options: SpawnOptions) -> ProcessHandle:
        ...

    def subscribe(self, process_id: str, listener: ProcessListener) -> None:
        ...

    def unsubscribe(self, process_id: str) -> None:
        ...

    def kill(self, process_id: str) -> bool:
        ...

    def set_cli_session_id(self, process_id: str, cli_session_id: str) -> None:
        ...


def _generate_process_id() -> str:
    return f"cli-{uuid.uuid4().hex[:12]}"


def build_cli_args(options: SpawnOptions) -> list[str]:
    """Arguments for a non-interactive, NDJSON-streaming CLI run."""
    args = ["-p", "--output-format", "stream-json"]
    if options.max_turns is not None and options.max_turns > 0:
        args += ["--max-turns", str(options.max_turns)]
    if options.system_prompt:
        args += ["--system-prompt", options.system_prompt]
    if options.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")
    return args


def build_process_env(custom: Optional[dict[str, str]] = None) -> dict[str, str]:
    env = dict(os.environ)
    env["FORCE_COLOR"] = "0"
    env["NO_COLOR"] = "1"
    if custom:
        env.update(custom)
    return env


# ---------------------------------------------------------------------------
# Shared event plumbing
# ---------------------------------------------------------------------------

class _EventRelay:
    """Routes events to subscribed listeners, buffering early ones."""

    def __init__(self) -> None:
        self.handles: dict[str, ProcessHandle] = {}
        self._listeners: dict[str, ProcessListener] = {}
        self._backlog: dict[str, list[tuple[str, tuple]]] = {}
        self._background: set[asyncio.Task] = set()

    def _track(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def subscribe(self, process_id: str, listener: ProcessListener) -> None:
        self._listeners[process_id] = listener
        for kind, args in self._backlog.pop(process_id, []):
            self._deliver(listener, kind, process_id, args)

    def unsubscribe(self, process_id: str) -> None:
        self._listeners.pop(process_id, None)
        self._backlog.pop(process_id, None)
        handle = self.handles.get(process_id)
        if handle is not None and handle.ended_at is not None:
            self._forget(process_id)

    def _forget(self, process_id: str) -> None:
        """Drop bookkeeping for a process that has exited."""
        self.handles.pop(process_id, None)

    def set_cli_session_id(self, process_id: str, cli_session_id: str) -> None:
        handle = self.handles.get(process_id)
        if handle is not None:
            handle.cli_session_id = cli_session_id

    def emit(self, kind: str, process_id: str, *args: object) -> None:
        listener = self._listeners.get(process_id)
        if listener is None:
            self._backlog.setdefault(process_id, []).append((kind, args))
            return
        self._deliver(listener, kind, process_id, args)

    @staticmethod
    def _deliver(listener: ProcessListener, kind: str, process_id: str, args: tuple) -> None:
        callback = {"output": listener.on_output, "exit": listener.on_exit, "error": listener.on_error}[kind]
        try:
            callback(process_id, *args)
        except Exception:
            logger.exception("Process listener failed for {} ({})", process_id, kind)


# ---------------------------------------------------------------------------
# Real subprocess spawner
# ---------------------------------------------------------------------------

class SubprocessSpawner(_EventRelay):
    """Launches the model CLI as an asyncio subprocess."""

    def __init__(self, commands: Optional[dict[str, str]] = None) -> None:
        super().__init__()
        self._commands = dict(commands or CLI_COMMANDS)
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._timed_out: set[str] = set()

    def _forget(self, process_id: str) -> None:
        super()._forget(process_id)
        self._timed_out.discard(process_id)

    async def spawn(self, options: SpawnOptions) -> ProcessHandle:
        model = ModelProvider(options.model)
        command = self._commands.get(model.value)
        if not command:
            raise ProcessSpawnError(f"No CLI command configured for model: {model.value}")

        process_id = _generate_process_id()
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *build_cli_args(options),
                cwd=options.cwd,
                env=build_process_env(options.env),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start {command}: {exc}") from exc

        handle = ProcessHandle(
            id=process_id,
            model=model,
            cwd=options.cwd,
            session_id=options.session_id,
            pid=proc.pid,
        )
        self.handles[process_id] = handle
        self._processes[process_id] = proc
        logger.debug("Spawned {} (pid {}) for model {}", process_id, proc.pid, model.value)

        self._track(self._supervise(process_id, proc, options))
        return handle

    async def _supervise(
        self,
        process_id: str,
        proc: asyncio.subprocess.Process,
        options: SpawnOptions,
    ) -> None:
        handle = self.handles[process_id]
        try:
            if proc.stdin is not None:
                if options.prompt:
                    proc.stdin.write(options.prompt.encode("utf-8"))
                    await proc.stdin.drain()
                proc.stdin.close()

            readers = [
                self._pump(process_id, proc.stdout, "stdout"),
                self._pump(process_id, proc.stderr, "stderr"),
            ]
            waiter = asyncio.gather(*readers, proc.wait())
            if options.timeout and options.timeout > 0:
                try:
                    await asyncio.wait_for(asyncio.shield(waiter), timeout=options.timeout)
                except asyncio.TimeoutError:
                    logger.warning("Process {} timed out after {}s", process_id, options.timeout)
                    self._timed_out.add(process_id)
                    self.kill(process_id)
                    await waiter
            else:
                await waiter
        except OSError as exc:
            handle.status = STATUS_ERROR
            handle.ended_at = datetime.now(timezone.utc).isoformat()
            self._processes.pop(process_id, None)
            self.emit("error", process_id, exc)
            return

        code = proc.returncode
        if process_id in self._timed_out:
            status = STATUS_ERROR
        elif code == 0 or code == -signal.SIGTERM:
            status = STATUS_STOPPED
        else:
            status = STATUS_ERROR
        handle.status = status
        handle.ended_at = datetime.now(timezone.utc).isoformat()
        self._processes.pop(process_id, None)
        self.emit("exit", process_id, code, status)

    async def _pump(self, process_id: str, stream: Optional[asyncio.StreamReader], label: str) -> None:
        if stream is None:
            return
        # Multi-byte characters may straddle reads.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            handle = self.handles.get(process_id)
            if handle is not None and label == "stdout":
                handle.status = "running"
            text = decoder.decode(chunk)
            if text:
                self.emit("output", process_id, label, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self.emit("output", process_id, label, tail)

    def kill(self, process_id: str) -> bool:
        """Send SIGTERM, escalating to SIGKILL if the process lingers."""
        handle = self.handles.get(process_id)
        if handle is None:
            return False
        proc = self._processes.get(process_id)
        if proc is None or proc.returncode is not None:
            return True
        try:
            proc.terminate()
        except ProcessLookupError:
            return True
        asyncio.get_running_loop().call_later(FORCE_KILL_TIMEOUT_SECONDS, self._force_kill, process_id)
        return True

    def _force_kill(self, process_id: str) -> None:
        proc = self._processes.get(process_id)
        if proc is not None and proc.returncode is None:
            logger.warning("Force killing {}", process_id)
            try:
                proc.kill()
            except ProcessLookupError:
                pass


# ---------------------------------------------------------------------------
# Scripted spawner
# ---------------------------------------------------------------------------

@dataclass
class ScriptedRun:
    """Canned behaviour for one spawned process."""

    chunks: list[str] = field(default_factory=list)
    exit_code: Optional[int] = 0
    error: Optional[str] = None
    delay: float = 0.0
    hold: bool = False  # stay alive until killed


def default_script(options: SpawnOptions) -> ScriptedRun:
    """A successful run that reports a session id and token usage."""
    session = f"session-{uuid.uuid4().hex[:8]}"
    return ScriptedRun(
        chunks=[
            f'{{"type": "init", "session_id": "{session}"}}\n',
            '{"type": "result", "status": "success", '
            '"usage": {"input_tokens": 1000, "output_tokens": 200}}\n',
        ],
        exit_code=0,
    )


class ScriptedSpawner(_EventRelay):
    """In-process spawner that plays back :class:`ScriptedRun` scripts."""

    def __init__(self, script: Optional[Callable[[SpawnOptions], ScriptedRun]] = None) -> None:
        super().__init__()
        self._script = script or default_script
        self.spawned: list[SpawnOptions] = []
        self.killed: list[str] = []
        self._holds: dict[str, asyncio.Event] = {}

    def _forget(self, process_id: str) -> None:
        super()._forget(process_id)
        self._holds.pop(process_id, None)

    async def spawn(self, options: SpawnOptions) -> ProcessHandle:
        run = self._script(options)
        process_id = _generate_process_id()
        handle = ProcessHandle(
            id=process_id,
            model=ModelProvider(options.model),
            cwd=options.cwd,
            session_id=options.session_id,
        )
        self.handles[process_id] = handle
        self.spawned.append(options)
        self._holds[process_id] = asyncio.Event()
        self._track(self._play(process_id, run))
        return handle

    async def _play(self, process_id: str, run: ScriptedRun) -> None:
        handle = self.handles[process_id]
        stop = self._holds[process_id]
        await asyncio.sleep(run.delay)
        for chunk in run.chunks:
            if stop.is_set():
                break
            handle.status = "running"
            self.emit("output", process_id, "stdout", chunk)
            await asyncio.sleep(0)
        if run.hold:
            await stop.wait()
        handle.ended_at = datetime.now(timezone.utc).isoformat()
        if run.error and not stop.is_set():
            handle.status = STATUS_ERROR
            self.emit("error", process_id, RuntimeError(run.error))
            return
        if stop.is_set():
            handle.status = STATUS_STOPPED
            self.emit("exit", process_id, None, STATUS_STOPPED)
            return
        handle.status = STATUS_STOPPED if run.exit_code == 0 else STATUS_ERROR
        self.emit("exit", process_id, run.exit_code, handle.status)

    def kill(self, process_id: str) -> bool:
        stop = self._holds.get(process_id)
        if stop is None:
            return False
        self.killed.append(process_id)
        stop.set()
        return True
