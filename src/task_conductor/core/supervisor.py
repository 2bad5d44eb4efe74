"""Agent supervisor: spawns worker processes and follows them to their exit.

Each agent is an OS process with its own workspace directory. The process's
stdin and stdout carry the JSON-lines control channel (see ``core.channel``).
The supervisor owns the table of live processes; durable state lives in the
``agents`` and ``tasks`` tables.
"""

import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from task_conductor.core import channel, graph
from task_conductor.core.agents import (
    create_agent,
    delete_agent,
    get_agent,
    mark_running,
    new_agent_id,
    record_exit,
    record_heartbeat,
    set_agent_status,
)
from task_conductor.core.errors import (
    CapacityExceeded,
    ChannelError,
    DependenciesNotMet,
    InvalidTransition,
    SpawnError,
)
from task_conductor.core.events import ActivityType
from task_conductor.core.tasks import (
    block_task,
    complete_task,
    fail_task,
    get_task,
    require_task,
    start_task,
    update_progress,
)
from task_conductor.db.engine import get_db
from task_conductor.db.models import ACTIVE_AGENT_STATUSES, AgentStatus, AgentType

logger = logging.getLogger(__name__)

STOP_SHUTDOWN = "shutdown"


@dataclass
class AgentConfig:
    task_id: str
    agent_type: AgentType = AgentType.DEVELOPMENT
    description: str = ""
    files: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)


@dataclass
class _ActiveAgent:
    agent_id: str
    task_id: str
    process: subprocess.Popen
    workspace: Path
    stop_reason: str | None = None
    last_error: str | None = None
    timeout_timer: threading.Timer | None = None
    kill_timer: threading.Timer | None = None
    exiting: bool = False
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    exited: threading.Event = field(default_factory=threading.Event)


class AgentSupervisor:
    """Launches agents under a concurrency ceiling and tracks them until exit.

    Callbacks, set by the orchestrator:
      on_task_completed(task_id): the agent exited 0 and its task completed.
      on_agent_failure(agent_id, error): the agent failed or was stopped.
      on_timeout(task_id): the agent outlived ``agent_timeout``.
    """

    def __init__(
        self,
        db_path: Path,
        workspace_root: Path,
        max_concurrent: int = 5,
        memory_limit_mb: int = 1024,
        agent_timeout: float = 3600,
        heartbeat_interval: float = 10,
        stop_grace_period: float = 5,
        worker_command: list[str] | None = None,
        events=None,
    ):
        self.db_path = db_path
        self.workspace_root = Path(workspace_root)
        self.max_concurrent = max_concurrent
        self.memory_limit_mb = memory_limit_mb
        self.agent_timeout = agent_timeout
        self.heartbeat_interval = heartbeat_interval
        self.stop_grace_period = stop_grace_period
        self.worker_command = worker_command or [sys.executable, "-m", "task_conductor.worker"]
        self.events = events

        self.on_task_completed: Callable[[str], None] | None = None
        self.on_agent_failure: Callable[[str, str], None] | None = None
        self.on_timeout: Callable[[str], None] | None = None

        self._active: dict[str, _ActiveAgent] = {}
        self._reserved = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, events=None) -> "AgentSupervisor":
        return cls(
            db_path=config.db_path,
            workspace_root=config.workspace_dir,
            max_concurrent=config.max_concurrent_agents,
            memory_limit_mb=config.agent_memory_limit_mb,
            agent_timeout=config.agent_timeout,
            heartbeat_interval=config.heartbeat_interval,
            stop_grace_period=config.stop_grace_period,
            worker_command=config.worker_command,
            events=events,
        )

    # ── Capacity ────────────────────────────────────────────────────────────

    def can_spawn(self) -> bool:
        with self._lock:
            return len(self._active) + self._reserved < self.max_concurrent

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def active_agent_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def is_active(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._active

    def active_task_ids(self) -> set[str]:
        with self._lock:
            return {entry.task_id for entry in self._active.values()}

    def _reserve_slot(self):
        with self._lock:
            if len(self._active) + self._reserved >= self.max_concurrent:
                raise CapacityExceeded(self.max_concurrent)
            self._reserved += 1

    def _release_slot(self):
        with self._lock:
            self._reserved -= 1

    # ── Spawning ────────────────────────────────────────────────────────────

    def spawn(self, config: AgentConfig) -> str:
        """Launch an agent for a task and return its id.

        Raises CapacityExceeded when the ceiling is reached,
        DependenciesNotMet when the task may not run yet and SpawnError when
        the workspace or process cannot be created.
        """
        self._reserve_slot()
        try:
            return self._spawn(config)
        finally:
            self._release_slot()

    def _spawn(self, config: AgentConfig) -> str:
        agent_id = new_agent_id()
        with get_db(self.db_path, initialize=False) as db:
            task = require_task(db, config.task_id)
            incomplete = graph.incomplete_dependencies(db, task.id)
            if incomplete:
                block_task(db, task.id)
                raise DependenciesNotMet(task.id, incomplete)

            workspace = self.workspace_root / task.id
            create_agent(
                db, task.id, config.agent_type,
                workspace_path=str(workspace), agent_id=agent_id,
            )

            created_workspace = not workspace.exists()
            try:
                workspace.mkdir(parents=True, exist_ok=True)
                context = {
                    "agent_id": agent_id,
                    "task_id": task.id,
                    "type": AgentType(config.agent_type).value,
                    "title": task.title,
                    "description": config.description or task.description,
                    "files": config.files or task.files,
                    "acceptance_criteria": config.acceptance_criteria or task.acceptance_criteria,
                }
                (workspace / "task.json").write_text(json.dumps(context, indent=2))
                process = subprocess.Popen(
                    self.worker_command
                    + ["--agent-id", agent_id, "--task-id", task.id, "--workspace", str(workspace)],
                    cwd=workspace,
                    env=self._agent_env(agent_id, task.id, config.agent_type, workspace),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    bufsize=1,
                )
            except OSError as e:
                delete_agent(db, agent_id)
                if created_workspace:
                    shutil.rmtree(workspace, ignore_errors=True)
                raise SpawnError(f"Failed to spawn agent for task '{task.id}': {e}") from e

            entry = _ActiveAgent(
                agent_id=agent_id, task_id=task.id, process=process, workspace=workspace,
            )
            with self._lock:
                self._active[agent_id] = entry
            mark_running(db, agent_id, process.pid)
            try:
                task = start_task(db, task.id, agent_id=agent_id)
            except (InvalidTransition, DependenciesNotMet):
                self._start_readers(entry)
                self.stop(agent_id, "task-not-startable")
                raise
            agent = get_agent(db, agent_id)

        logger.info("Spawned agent %s (PID %s) for task '%s'", agent_id, process.pid, task.id)
        # Started events go out before the readers can report an exit.
        if self.events is not None:
            self.events.agent_update(agent, pid=process.pid)
            self.events.task_update(task, agent_id=agent_id)
            self.events.activity(
                ActivityType.TASK_STARTED,
                f"Task {task.title} started",
                task_id=task.id,
                agent_id=agent_id,
                spec_id=task.spec_id,
            )
            self.events.activity(
                ActivityType.AGENT_STARTED,
                f"Agent {agent_id} started for task {task.title}",
                task_id=task.id,
                agent_id=agent_id,
                spec_id=task.spec_id,
            )

        if self.agent_timeout:
            entry.timeout_timer = threading.Timer(self.agent_timeout, self._timed_out, args=(entry,))
            entry.timeout_timer.daemon = True
            entry.timeout_timer.start()
        self._start_readers(entry)
        return agent_id

    def _start_readers(self, entry: _ActiveAgent):
        threading.Thread(
            target=self._read_stdout, args=(entry,), name=f"{entry.agent_id}-stdout", daemon=True
        ).start()
        threading.Thread(
            target=self._read_stderr, args=(entry,), name=f"{entry.agent_id}-stderr", daemon=True
        ).start()

    def _agent_env(self, agent_id: str, task_id: str, agent_type, workspace: Path) -> dict:
        env = dict(os.environ)
        env.update(
            {
                "TC_AGENT_ID": agent_id,
                "TC_TASK_ID": task_id,
                "TC_AGENT_TYPE": AgentType(agent_type).value,
                "TC_WORKSPACE_PATH": str(workspace),
                "TC_MEMORY_LIMIT_MB": str(self.memory_limit_mb),
                "TC_HEARTBEAT_INTERVAL": str(self.heartbeat_interval),
                "PYTHONUNBUFFERED": "1",
            }
        )
        return env

    # ── Control channel ─────────────────────────────────────────────────────

    def _read_stdout(self, entry: _ActiveAgent):
        try:
            for line in entry.process.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = channel.decode_message(line)
                except ChannelError as e:
                    logger.warning("Agent %s: %s", entry.agent_id, e)
                    continue
                try:
                    self._handle_message(entry, message)
                except Exception:
                    logger.exception(
                        "Failed to handle %s message from agent %s",
                        message["type"], entry.agent_id,
                    )
        except (OSError, ValueError) as e:
            logger.warning("Control channel of agent %s broke: %s", entry.agent_id, e)
            self.stop(entry.agent_id, "control-channel-error")
        finally:
            code = entry.process.wait()
            self._handle_exit(entry, code)

    def _read_stderr(self, entry: _ActiveAgent):
        try:
            for line in entry.process.stderr:
                if line.strip():
                    logger.debug("[%s] %s", entry.agent_id, line.rstrip())
        except (OSError, ValueError):
            pass  # Stream closed with the process

    def _handle_message(self, entry: _ActiveAgent, message: dict):
        msg_type, data = message["type"], message["data"]

        if msg_type == channel.HEARTBEAT:
            with get_db(self.db_path, initialize=False) as db:
                record_heartbeat(db, entry.agent_id, cpu=data.get("cpu"), memory=data.get("memory"))

        elif msg_type == channel.PROGRESS:
            percent = data.get("percent")
            if percent is None:
                return
            with get_db(self.db_path, initialize=False) as db:
                task = update_progress(db, entry.task_id, percent)
            if task and self.events is not None:
                self.events.task_update(
                    task, agent_id=entry.agent_id,
                    phase=data.get("status"), message=data.get("message"),
                )

        elif msg_type == channel.LOG:
            level = logging.getLevelName(str(data.get("level", "info")).upper())
            if not isinstance(level, int):
                level = logging.INFO
            logger.log(level, "[%s] %s", entry.agent_id, data.get("message", ""))

        elif msg_type == channel.ERROR:
            entry.last_error = str(data.get("message") or "unknown error")
            logger.warning("Agent %s reported an error: %s", entry.agent_id, entry.last_error)
            if data.get("stack"):
                logger.debug("[%s] %s", entry.agent_id, data["stack"])

        else:
            logger.warning("Agent %s sent unknown message type %r", entry.agent_id, msg_type)

    def send(self, agent_id: str, msg_type: str, data: dict | None = None) -> bool:
        with self._lock:
            entry = self._active.get(agent_id)
        if entry is None:
            return False
        return self._send(entry, msg_type, data)

    def _send(self, entry: _ActiveAgent, msg_type: str, data: dict | None = None) -> bool:
        line = channel.encode_message(msg_type, data)
        with entry.write_lock:
            try:
                entry.process.stdin.write(line)
                entry.process.stdin.flush()
                return True
            except (OSError, ValueError) as e:
                logger.debug("Could not write to agent %s: %s", entry.agent_id, e)
                return False

    # ── Exit ────────────────────────────────────────────────────────────────

    def _handle_exit(self, entry: _ActiveAgent, code: int):
        with self._lock:
            entry.exiting = True
            stop_reason = entry.stop_reason
        for timer in (entry.timeout_timer, entry.kill_timer):
            if timer is not None:
                timer.cancel()

        success = code == 0 and stop_reason is None
        completed = False
        with get_db(self.db_path, initialize=False) as db:
            record_exit(db, entry.agent_id, code)
            if success:
                set_agent_status(db, entry.agent_id, AgentStatus.COMPLETED, expected=ACTIVE_AGENT_STATUSES)
                completed = complete_task(db, entry.task_id)
            else:
                set_agent_status(
                    db, entry.agent_id, AgentStatus.FAILED,
                    expected=ACTIVE_AGENT_STATUSES + (AgentStatus.STALLED,),
                )
            agent = get_agent(db, entry.agent_id)
            task = get_task(db, entry.task_id)
        # The slot is held until the record is terminal, so RUNNING records
        # never outnumber the ceiling.
        with self._lock:
            self._active.pop(entry.agent_id, None)
        entry.exited.set()

        if code < 0:
            try:
                how = f"signal {signal.Signals(-code).name}"
            except ValueError:
                how = f"signal {-code}"
        else:
            how = f"code {code}"
        logger.info(
            "Agent %s for task '%s' exited with %s%s",
            entry.agent_id, entry.task_id, how,
            f" after stop ({stop_reason})" if stop_reason else "",
        )

        if self.events is not None:
            self.events.agent_update(agent, exit_code=code, stop_reason=stop_reason)
            if task is not None:
                self.events.task_update(task, agent_id=entry.agent_id)
            self.events.activity(
                ActivityType.AGENT_COMPLETED if success else ActivityType.AGENT_FAILED,
                f"Agent {entry.agent_id} exited with {how}",
                task_id=entry.task_id,
                agent_id=entry.agent_id,
                spec_id=task.spec_id if task else None,
            )

        try:
            if success:
                if completed and self.on_task_completed is not None:
                    self.on_task_completed(entry.task_id)
            elif stop_reason == STOP_SHUTDOWN:
                # Left IN_PROGRESS; the recovery sweep re-queues it after restart.
                pass
            else:
                error = entry.last_error or f"Agent exited with {how}"
                if stop_reason:
                    error = f"Agent stopped ({stop_reason}): {error}"
                if self.on_agent_failure is not None:
                    self.on_agent_failure(entry.agent_id, error)
                else:
                    with get_db(self.db_path, initialize=False) as db:
                        fail_task(db, entry.task_id, error)
        except Exception:
            logger.exception("Exit handling failed for agent %s", entry.agent_id)

    # ── Stopping ────────────────────────────────────────────────────────────

    def stop(self, agent_id: str, reason: str = "manual", error: str | None = None) -> bool:
        """Ask an agent to shut down, killing it after the grace period.

        Returns False when the agent is not live or is already stopping. The
        final outcome, including the failure reported to ``on_agent_failure``
        (``error`` when given), is recorded by the exit path.
        """
        with self._lock:
            entry = self._active.get(agent_id)
            if entry is None or entry.stop_reason is not None or entry.exiting:
                return False
            entry.stop_reason = reason
            if error:
                entry.last_error = error

        self._send(entry, channel.SHUTDOWN, {"reason": reason})
        with get_db(self.db_path, initialize=False) as db:
            set_agent_status(
                db, agent_id, AgentStatus.FAILED,
                expected=ACTIVE_AGENT_STATUSES + (AgentStatus.STALLED,),
                stop_reason=reason,
            )
            agent = get_agent(db, agent_id)

        entry.kill_timer = threading.Timer(self.stop_grace_period, self._kill, args=(entry,))
        entry.kill_timer.daemon = True
        entry.kill_timer.start()

        logger.info("Stopping agent %s (%s)", agent_id, reason)
        if self.events is not None and agent is not None:
            self.events.agent_update(agent, stop_reason=reason)
        return True

    def stop_all(self, reason: str = STOP_SHUTDOWN, wait: bool = True) -> int:
        with self._lock:
            entries = list(self._active.values())
        for entry in entries:
            self.stop(entry.agent_id, reason)
        if wait:
            deadline = time.monotonic() + self.stop_grace_period + 1
            for entry in entries:
                entry.exited.wait(max(0.0, deadline - time.monotonic()))
        return len(entries)

    def _kill(self, entry: _ActiveAgent):
        if entry.process.poll() is None:
            logger.warning(
                "Agent %s did not exit within %ss, killing PID %s",
                entry.agent_id, self.stop_grace_period, entry.process.pid,
            )
            try:
                entry.process.kill()
            except OSError:
                pass  # Already gone

    def _timed_out(self, entry: _ActiveAgent):
        if entry.exited.is_set():
            return
        logger.warning(
            "Agent %s for task '%s' exceeded timeout of %ss",
            entry.agent_id, entry.task_id, self.agent_timeout,
        )
        try:
            if self.on_timeout is not None:
                self.on_timeout(entry.task_id)
            else:
                self.stop(entry.agent_id, "timeout")
        except Exception:
            logger.exception("Timeout handling failed for agent %s", entry.agent_id)

