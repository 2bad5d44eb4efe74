"""Orchestrator: owns the engine's components and wires them together."""

import logging

from task_conductor.config import Config, get_config
from task_conductor.core import graph
from task_conductor.core.agents import find_active_agent, list_agents
from task_conductor.core.errors import (
    CapacityExceeded,
    DependenciesNotMet,
    InvalidTransition,
    TaskNotFound,
    WorkerStopping,
)
from task_conductor.core.events import ActivityType, EventPublisher, LoggingEventBus
from task_conductor.core.monitor import HealthMonitor
from task_conductor.core.queue import JobQueue, WorkerPool, queue_for_task_type
from task_conductor.core.recovery import LIVE_AGENT_STATUSES, ErrorRecovery, RecoverySweep
from task_conductor.core.resolver import block_if_not_ready, unblock_dependents
from task_conductor.core.supervisor import AgentConfig, AgentSupervisor
from task_conductor.core import tasks as task_store
from task_conductor.db.engine import get_db
from task_conductor.db.models import (
    AgentType,
    Job,
    JobPriority,
    QueueClass,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# Dispatch jobs for tasks in these states are dropped.
SKIP_DISPATCH_STATUSES = (
    TaskStatus.IN_PROGRESS,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
)
EXECUTABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.BLOCKED)


class Orchestrator:
    """Service container for one orchestrator process.

    ``start`` reconciles state left by a previous process and starts the
    queue workers and periodic sweeps; ``stop`` shuts them down and asks
    every live agent to exit.
    """

    def __init__(self, config: Config, events: EventPublisher | None = None):
        self.config = config
        self.db_path = config.db_path
        self.events = events or EventPublisher([LoggingEventBus()])

        self.supervisor = AgentSupervisor.from_config(config, self.events)
        self.queue = JobQueue(
            config.db_path,
            default_attempts=config.queue_attempts,
            backoff_delay=config.queue_backoff_delay,
        )
        self.recovery = ErrorRecovery(
            config.db_path,
            supervisor=self.supervisor,
            queue=self.queue,
            events=self.events,
            max_retries=config.retry_max,
            retry_delay=config.retry_delay,
            backoff_multiplier=config.retry_backoff,
        )
        self.monitor = HealthMonitor(
            config.db_path,
            supervisor=self.supervisor,
            events=self.events,
            interval=config.health_check_interval,
            stall_threshold=config.stall_threshold,
            memory_limit_mb=config.agent_memory_limit_mb,
        )
        self.sweep = RecoverySweep(self.recovery, interval=config.recovery_interval)
        self.pool = WorkerPool(
            self.queue,
            handlers={
                QueueClass.AGENT_EXECUTION: self._dispatch,
                QueueClass.TEST_EXECUTION: self._dispatch,
                QueueClass.SPEC_PROCESSING: self._process_spec,
            },
            concurrency={
                QueueClass.AGENT_EXECUTION: config.agent_concurrency,
                QueueClass.TEST_EXECUTION: config.test_concurrency,
                QueueClass.SPEC_PROCESSING: config.spec_concurrency,
            },
            poll_interval=config.queue_poll_interval,
        )

        self.supervisor.on_task_completed = self._on_task_completed
        self.supervisor.on_agent_failure = self.recovery.on_agent_failure
        self.supervisor.on_timeout = self.recovery.on_task_timeout
        self.queue.add_listener(self._on_job_event)

    @classmethod
    def from_config(cls, config: Config | None = None) -> "Orchestrator":
        """Build an orchestrator, posting alerts to Slack when configured."""
        config = config or get_config()
        buses = [LoggingEventBus()]
        if config.slack_bot_token and config.alert_channel:
            from task_conductor.integrations.slack import SlackAlertBus

            buses.append(SlackAlertBus(config.slack_bot_token, config.alert_channel))
        return cls(config, EventPublisher(buses))

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self):
        with get_db(self.db_path):
            pass
        self.recovery.reconcile_orphaned_agents()
        self.queue.recover_interrupted()
        self.recovery.recover_stalled_tasks()
        self.pool.start()
        self.monitor.start()
        self.sweep.start()
        logger.info("Orchestrator started (db=%s)", self.db_path)

    def stop(self):
        self.pool.stop()
        self.monitor.stop()
        self.sweep.stop()
        stopped = self.supervisor.stop_all("shutdown")
        logger.info("Orchestrator stopped (%d agents asked to exit)", stopped)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    # ── Operations ──────────────────────────────────────────────────────────

    def execute_task(self, task_id: str, priority: int = JobPriority.NORMAL) -> Job:
        """Queue a task for execution.

        Raises DependenciesNotMet (and leaves the task BLOCKED) when a
        prerequisite is not COMPLETED.
        """
        with get_db(self.db_path, initialize=False) as db:
            task = task_store.require_task(db, task_id)
            if task.removed_at is not None or task.status not in EXECUTABLE_STATUSES:
                raise InvalidTransition(
                    f"Task '{task_id}' cannot be executed from status {task.status.value}"
                )
            incomplete = block_if_not_ready(db, task_id, self.events)
            if incomplete:
                raise DependenciesNotMet(task_id, incomplete)
            task_store.update_task_status(
                db, task_id, TaskStatus.PENDING, expected=(TaskStatus.BLOCKED,)
            )
            task = task_store.get_task(db, task_id)

        job = self.queue.enqueue(
            queue_for_task_type(task.type), task.id, task_id=task.id, priority=priority,
        )
        self.events.task_update(task, job_id=job.id)
        return job

    def complete_task(self, task_id: str) -> Task:
        """Mark a task COMPLETED by hand and release its dependents."""
        with get_db(self.db_path, initialize=False) as db:
            task = task_store.require_task(db, task_id)
            if not task_store.complete_task(db, task_id):
                raise InvalidTransition(
                    f"Task '{task_id}' cannot be completed from status {task.status.value}"
                )
            agent = find_active_agent(db, task_id)
        if agent is not None:
            self.supervisor.stop(agent.id, "completed")
        self._on_task_completed(task_id)
        with get_db(self.db_path, initialize=False) as db:
            return task_store.get_task(db, task_id)

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a task, drop its waiting job and stop its agent.

        Dependents are left as they are.
        """
        with get_db(self.db_path, initialize=False) as db:
            task = task_store.require_task(db, task_id)
            if not task_store.cancel_task(db, task_id):
                raise InvalidTransition(
                    f"Task '{task_id}' cannot be cancelled from status {task.status.value}"
                )
            agents = list_agents(db, status=LIVE_AGENT_STATUSES, task_id=task_id)
            task = task_store.get_task(db, task_id)
        self.queue.remove(queue_for_task_type(task.type), task_id)
        for agent in agents:
            self.supervisor.stop(agent.id, "cancelled")
        self.events.task_update(task)
        return task

    def submit_spec(
        self,
        spec_id: str,
        tasks: list[dict],
        project_id: str | None = None,
        priority: int = JobPriority.NORMAL,
    ) -> Job:
        """Queue a generated task list for persistence and dispatch."""
        graph.validate_dependency_indexes(tasks)
        job = self.queue.enqueue(
            QueueClass.SPEC_PROCESSING,
            f"spec-{spec_id}",
            payload={"spec_id": spec_id, "project_id": project_id, "tasks": tasks},
            priority=priority,
        )
        self.events.spec_update(spec_id, "QUEUED", job_id=job.id)
        return job

    # ── Job handlers ────────────────────────────────────────────────────────

    def _dispatch(self, job: Job) -> dict:
        task_id = job.task_id or job.job_key
        with get_db(self.db_path, initialize=False) as db:
            task = task_store.get_task(db, task_id)
            if task is None:
                raise TaskNotFound(task_id)
            if task.removed_at is not None or task.status in SKIP_DISPATCH_STATUSES:
                logger.info("Skipping dispatch of task '%s' (%s)", task_id, task.status.value)
                return {"skipped": task.status.value}
            if find_active_agent(db, task_id):
                logger.info("Skipping dispatch of task '%s': agent already active", task_id)
                return {"skipped": "active-agent"}

            # The job fails without retry; the resolver re-queues the task once
            # its prerequisites complete.
            incomplete = block_if_not_ready(db, task_id, self.events)
            if incomplete:
                raise DependenciesNotMet(task_id, incomplete)

            task_store.assign_task(db, task_id)
            task = task_store.get_task(db, task_id)
        self.events.task_update(task, job_id=job.id)

        agent_config = AgentConfig(
            task_id=task.id,
            agent_type=AgentType(task.type.value),
            description=task.description,
            files=task.files,
            acceptance_criteria=task.acceptance_criteria,
        )
        delay = 0.5
        while True:
            if self.pool.stop_event.is_set():
                raise WorkerStopping(f"Shutting down before task '{task_id}' was spawned")
            # A process from an earlier attempt may still be inside its grace period.
            if self.supervisor.can_spawn() and task_id not in self.supervisor.active_task_ids():
                try:
                    agent_id = self.supervisor.spawn(agent_config)
                    return {"agent_id": agent_id}
                except CapacityExceeded:
                    pass
            self.pool.stop_event.wait(delay)
            delay = min(delay * 2, self.config.slot_poll_interval)

    def _process_spec(self, job: Job) -> dict:
        payload = job.payload
        spec_id = payload["spec_id"]
        with get_db(self.db_path, initialize=False) as db:
            created = task_store.create_task_batch(
                db, payload.get("tasks", []),
                spec_id=spec_id, project_id=payload.get("project_id"),
            )

        self.events.spec_update(spec_id, "TASKS_CREATED", task_count=len(created))
        self.events.activity(
            ActivityType.SPEC_UPDATED,
            f"Created {len(created)} tasks for spec {spec_id}",
            spec_id=spec_id,
        )
        for task in created:
            self.events.activity(
                ActivityType.TASK_CREATED, f"Task {task.title} created",
                task_id=task.id, spec_id=spec_id,
            )
            self.queue.enqueue(queue_for_task_type(task.type), task.id, task_id=task.id)
        return {"task_ids": [t.id for t in created]}

    # ── Callbacks ───────────────────────────────────────────────────────────

    def _on_task_completed(self, task_id: str):
        with get_db(self.db_path, initialize=False) as db:
            task = task_store.get_task(db, task_id)
            unblocked = unblock_dependents(db, task_id, self.events)
        if task is not None:
            self.events.activity(
                ActivityType.TASK_COMPLETED, f"Task {task.title} completed",
                task_id=task_id, spec_id=task.spec_id,
            )
        for dependent in unblocked:
            self.queue.enqueue(
                queue_for_task_type(dependent.type), dependent.id, task_id=dependent.id,
            )

    def _on_job_event(self, event: str, job: Job):
        if event != "failed" or job.queue == QueueClass.SPEC_PROCESSING or not job.task_id:
            return
        # The task was re-queued after this job gave up, e.g. by an unblock.
        if self.queue.find_open_job(job.queue, job.job_key) is not None:
            return
        with get_db(self.db_path, initialize=False) as db:
            task = task_store.get_task(db, job.task_id)
        # Blocked tasks come back through the resolver.
        if task is not None and task.status in (TaskStatus.PENDING, TaskStatus.ASSIGNED):
            self.recovery.fail_without_retry(task.id, job.last_error or "dispatch failed")
