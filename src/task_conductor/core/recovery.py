"""Error recovery: bounded retries of failed tasks and crash reconciliation."""

import logging
from pathlib import Path

from task_conductor.core.agents import (
    claim_failure,
    delete_failed_agents,
    get_agent,
    is_pid_alive,
    list_agents,
    set_agent_status,
)
from task_conductor.core.events import ActivityType
from task_conductor.core.periodic import PeriodicWorker
from task_conductor.core.queue import queue_for_task_type
from task_conductor.core.tasks import fail_task, get_task, list_tasks, reset_task
from task_conductor.db.engine import get_db, utcnow
from task_conductor.db.models import (
    ACTIVE_AGENT_STATUSES,
    AgentStatus,
    JobPriority,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

LIVE_AGENT_STATUSES = ACTIVE_AGENT_STATUSES + (AgentStatus.STALLED,)


class ErrorRecovery:
    """Accounts agent failures against a task's retry limit.

    A failed task is re-queued at HIGH priority after
    ``retry_delay * backoff_multiplier^(retry_count-1)`` seconds until it has
    failed ``max_retries`` times, then it stays FAILED and a critical alert
    goes out.
    """

    def __init__(
        self,
        db_path: Path,
        supervisor=None,
        queue=None,
        events=None,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        backoff_multiplier: float = 2.0,
    ):
        self.db_path = db_path
        self.supervisor = supervisor
        self.queue = queue
        self.events = events
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.backoff_multiplier = backoff_multiplier

    def retry_delay_for(self, retry_count: int) -> float:
        return self.retry_delay * self.backoff_multiplier ** max(retry_count - 1, 0)

    # ── Failures ────────────────────────────────────────────────────────────

    def on_agent_failure(self, agent_id: str, error: str, should_retry: bool = True) -> bool:
        """Handle a failed agent. Returns True when its task was re-queued.

        Each agent's failure is accounted once, however many paths report it.
        """
        with get_db(self.db_path, initialize=False) as db:
            agent = get_agent(db, agent_id)
            if agent is None:
                logger.warning("Failure reported for unknown agent %s", agent_id)
                return False
            if not claim_failure(db, agent_id):
                logger.debug("Failure of agent %s already handled", agent_id)
                return False
            set_agent_status(db, agent_id, AgentStatus.FAILED, expected=LIVE_AGENT_STATUSES)

            task = get_task(db, agent.task_id)
            if task is None or task.removed_at is not None or task.status in (
                TaskStatus.COMPLETED, TaskStatus.CANCELLED,
            ):
                logger.info("Agent %s failed but its task needs no recovery", agent_id)
                return False
            fail_task(db, task.id, error, count_retry=True)
            task = get_task(db, task.id)

        logger.warning(
            "Agent %s failed on task '%s' (failure %s/%s): %s",
            agent_id, task.id, task.retry_count, self.max_retries, error,
        )
        if self.events is not None:
            self.events.task_update(task, agent_id=agent_id, error=error)
            self.events.activity(
                ActivityType.AGENT_FAILED,
                f"Agent {agent_id} failed: {error}",
                task_id=task.id, agent_id=agent_id, spec_id=task.spec_id,
            )
            self.events.alert(
                "error",
                f"Agent {agent_id} failed on task {task.title}: {error}",
                {"agent_id": agent_id, "task_id": task.id, "retry_count": task.retry_count},
            )

        if should_retry and task.retry_count < self.max_retries:
            self._requeue(task, self.retry_delay_for(task.retry_count))
            return True

        logger.error("Task '%s' failed permanently after %s attempts", task.id, task.retry_count)
        if self.events is not None:
            self.events.activity(
                ActivityType.TASK_FAILED,
                f"Task {task.title} failed after {task.retry_count} attempts",
                task_id=task.id, spec_id=task.spec_id,
            )
            self.events.alert(
                "critical",
                f"Task {task.title} failed after {task.retry_count} attempts: {error}",
                {"task_id": task.id, "retry_count": task.retry_count},
            )
        return False

    def on_task_timeout(self, task_id: str) -> list[str]:
        """Stop every live agent of a timed-out task and account the failure.

        An agent whose process this supervisor owns is accounted when the
        process exits, so the task is not re-queued while the old process is
        still in its grace period. Agents without a process here are
        accounted at once.
        """
        with get_db(self.db_path, initialize=False) as db:
            agents = list_agents(db, status=LIVE_AGENT_STATUSES, task_id=task_id)
        timeout = getattr(self.supervisor, "agent_timeout", None)
        error = f"Task timed out after {timeout}s" if timeout else "Task timed out"
        stopped = []
        for agent in agents:
            if self.supervisor is not None and self.supervisor.is_active(agent.id):
                self.supervisor.stop(agent.id, "timeout", error=error)
            else:
                self.on_agent_failure(agent.id, error)
            stopped.append(agent.id)
        return stopped

    def _requeue(self, task: Task, delay: float = 0.0):
        with get_db(self.db_path, initialize=False) as db:
            reset_task(db, task.id)
            task = get_task(db, task.id)
        if self.queue is not None:
            self.queue.enqueue(
                queue_for_task_type(task.type),
                task.id,
                task_id=task.id,
                priority=JobPriority.HIGH,
                delay=delay,
            )
        logger.info("Task '%s' re-queued in %.1fs", task.id, delay)
        if self.events is not None:
            self.events.task_update(task, retry_count=task.retry_count, retry_in=delay)

    # ── Sweeps ──────────────────────────────────────────────────────────────

    def recover_stalled_tasks(self) -> list[str]:
        """Re-queue IN_PROGRESS tasks that no live agent is working on."""
        live_tasks = self.supervisor.active_task_ids() if self.supervisor is not None else set()
        with get_db(self.db_path, initialize=False) as db:
            orphaned = [
                t for t in list_tasks(db, status=TaskStatus.IN_PROGRESS)
                if t.id not in live_tasks
                and not list_agents(db, status=LIVE_AGENT_STATUSES, task_id=t.id)
            ]
        recovered = []
        for task in orphaned:
            logger.warning("Recovering task '%s' left IN_PROGRESS without an agent", task.id)
            self._requeue(task)
            recovered.append(task.id)
            if self.events is not None:
                self.events.alert(
                    "warning",
                    f"Recovered stalled task {task.title}",
                    {"task_id": task.id},
                )
        return recovered

    def reconcile_orphaned_agents(self) -> list[str]:
        """Mark live agent records whose process is gone as FAILED.

        Their tasks are left to ``recover_stalled_tasks``.
        """
        with get_db(self.db_path, initialize=False) as db:
            agents = list_agents(db, status=LIVE_AGENT_STATUSES)
            orphaned = []
            for agent in agents:
                if self.supervisor is not None and self.supervisor.is_active(agent.id):
                    continue
                if is_pid_alive(agent.pid):
                    continue
                if set_agent_status(
                    db, agent.id, AgentStatus.FAILED,
                    expected=LIVE_AGENT_STATUSES, stop_reason="orphaned",
                ):
                    claim_failure(db, agent.id)
                    orphaned.append(agent.id)
        for agent_id in orphaned:
            logger.warning("Agent %s had no live process and was marked FAILED", agent_id)
        return orphaned

    def cleanup(self, older_than_days: float = 7) -> int:
        """Delete FAILED agent records older than the window."""
        with get_db(self.db_path, initialize=False) as db:
            deleted = delete_failed_agents(db, utcnow(-older_than_days * 86400))
        if deleted:
            logger.info("Deleted %d failed agent records", deleted)
        return deleted

    def fail_without_retry(self, task_id: str, error: str):
        """Terminal failure that does not go through an agent, e.g. a task
        whose dispatch job ran out of attempts."""
        with get_db(self.db_path, initialize=False) as db:
            changed = fail_task(db, task_id, error)
            task = get_task(db, task_id)
        if changed and self.events is not None and task is not None:
            self.events.task_update(task, error=error)
            self.events.alert(
                "critical",
                f"Task {task.title} could not be dispatched: {error}",
                {"task_id": task_id},
            )

    def get_recovery_stats(self) -> dict:
        with get_db(self.db_path, initialize=False) as db:
            failed_tasks = db.execute(
                "SELECT COUNT(*) FROM tasks WHERE status = 'FAILED' AND removed_at IS NULL"
            ).fetchone()[0]
            failed_agents = db.execute(
                "SELECT COUNT(*) FROM agents WHERE status = 'FAILED'"
            ).fetchone()[0]
            retried_tasks = db.execute(
                "SELECT COUNT(*) FROM tasks WHERE retry_count > 0 AND removed_at IS NULL"
            ).fetchone()[0]
        return {
            "failed_tasks": failed_tasks,
            "failed_agents": failed_agents,
            "retried_tasks": retried_tasks,
            "max_retries": self.max_retries,
        }


class RecoverySweep(PeriodicWorker):
    """Runs ``recover_stalled_tasks`` on an interval."""

    name = "recovery-sweep"

    def __init__(self, recovery: ErrorRecovery, interval: float = 300):
        super().__init__(interval)
        self.recovery = recovery

    def run_once(self):
        self.recovery.recover_stalled_tasks()
