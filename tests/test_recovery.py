"""Tests for error recovery: retries, timeouts and crash reconciliation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from task_conductor.core import agents as agents_mod
from task_conductor.core import tasks as tasks_mod
from task_conductor.core.events import EventPublisher, MemoryEventBus, Topic
from task_conductor.core.queue import JobQueue
from task_conductor.core.recovery import ErrorRecovery, RecoverySweep
from task_conductor.db.engine import get_db, init_db, utcnow
from task_conductor.db.models import AgentStatus, JobPriority, QueueClass, TaskStatus


@pytest.fixture
def db_path(tmp_path):
    db_path = tmp_path / "test.db"
    conn = init_db(db_path)
    tasks_mod.create_task(conn, "Build API", spec_id="spec-1")
    tasks_mod.create_task(conn, "Run tests", task_type="TEST")
    conn.close()
    return db_path


@pytest.fixture
def bus():
    return MemoryEventBus()


@pytest.fixture
def supervisor():
    supervisor = MagicMock()
    supervisor.active_task_ids.return_value = set()
    supervisor.is_active.return_value = False
    supervisor.agent_timeout = 60
    return supervisor


@pytest.fixture
def recovery(db_path, supervisor, bus):
    return ErrorRecovery(
        db_path,
        supervisor=supervisor,
        queue=JobQueue(db_path),
        events=EventPublisher([bus]),
        max_retries=3,
        retry_delay=5.0,
        backoff_multiplier=2.0,
    )


def _start_agent(db_path, task_id="build-api", pid=4242):
    with get_db(db_path) as db:
        agent = agents_mod.create_agent(db, task_id)
        agents_mod.mark_running(db, agent.id, pid)
        tasks_mod.start_task(db, task_id, agent_id=agent.id)
        return agent.id


def _task(db_path, task_id="build-api"):
    with get_db(db_path) as db:
        return tasks_mod.get_task(db, task_id)


def _agent(db_path, agent_id):
    with get_db(db_path) as db:
        return agents_mod.get_agent(db, agent_id)


class TestRetryPolicy:
    def test_backoff_delays(self, recovery):
        assert [recovery.retry_delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    def test_failure_requeues_task(self, db_path, recovery, bus):
        agent_id = _start_agent(db_path)
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        assert recovery.on_agent_failure(agent_id, "boom") is True

        task = _task(db_path)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1
        assert task.last_error == "boom"
        assert _agent(db_path, agent_id).status == AgentStatus.FAILED

        job = recovery.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build-api")
        assert job.priority == JobPriority.HIGH
        assert job.task_id == "build-api"
        assert job.run_after >= before + timedelta(seconds=4.9)

        [alert] = bus.messages(Topic.SYSTEM_ALERT)
        assert alert["level"] == "error"

    def test_test_tasks_requeue_on_test_queue(self, db_path, recovery):
        agent_id = _start_agent(db_path, "run-tests")
        recovery.on_agent_failure(agent_id, "boom")
        assert recovery.queue.find_open_job(QueueClass.TEST_EXECUTION, "run-tests") is not None

    def test_failure_accounted_once(self, db_path, recovery):
        agent_id = _start_agent(db_path)
        recovery.on_agent_failure(agent_id, "boom")
        assert recovery.on_agent_failure(agent_id, "boom again") is False
        assert _task(db_path).retry_count == 1

    def test_retries_exhausted(self, db_path, recovery, bus):
        for attempt in range(3):
            with get_db(db_path) as db:
                tasks_mod.reset_task(db, "build-api")
            agent_id = _start_agent(db_path)
            requeued = recovery.on_agent_failure(agent_id, f"boom {attempt}")
        assert requeued is False

        task = _task(db_path)
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 3
        assert task.last_error == "boom 2"
        assert [a["level"] for a in bus.messages(Topic.SYSTEM_ALERT)][-1] == "critical"
        assert bus.messages(Topic.ACTIVITY_LOG)[-1]["event_type"] == "TASK_FAILED"

    def test_no_retry_when_asked(self, db_path, recovery):
        agent_id = _start_agent(db_path)
        assert recovery.on_agent_failure(agent_id, "fatal", should_retry=False) is False
        assert _task(db_path).status == TaskStatus.FAILED
        assert recovery.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build-api") is None

    @pytest.mark.parametrize("final_status", [TaskStatus.COMPLETED, TaskStatus.CANCELLED])
    def test_finished_task_not_retried(self, db_path, recovery, final_status):
        agent_id = _start_agent(db_path)
        with get_db(db_path) as db:
            tasks_mod.update_task_status(db, "build-api", final_status)
        assert recovery.on_agent_failure(agent_id, "late failure") is False
        task = _task(db_path)
        assert task.status == final_status
        assert task.retry_count == 0
        assert _agent(db_path, agent_id).status == AgentStatus.FAILED

    def test_unknown_agent(self, recovery):
        assert recovery.on_agent_failure("agent-ghost", "boom") is False


class TestTimeout:
    def test_timeout_without_owned_process_counts_failure(self, db_path, recovery, supervisor):
        agent_id = _start_agent(db_path)
        assert recovery.on_task_timeout("build-api") == [agent_id]
        supervisor.stop.assert_not_called()
        task = _task(db_path)
        assert task.retry_count == 1
        assert task.last_error == "Task timed out after 60s"

    def test_timeout_of_owned_process_is_accounted_on_exit(self, db_path, recovery, supervisor):
        supervisor.is_active.return_value = True
        agent_id = _start_agent(db_path)

        assert recovery.on_task_timeout("build-api") == [agent_id]

        supervisor.stop.assert_called_once_with(agent_id, "timeout", error="Task timed out after 60s")
        task = _task(db_path)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.retry_count == 0
        assert recovery.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build-api") is None


class TestSweeps:
    def test_recover_stalled_task(self, db_path, recovery, bus):
        with get_db(db_path) as db:
            tasks_mod.start_task(db, "build-api")
        assert recovery.recover_stalled_tasks() == ["build-api"]
        assert _task(db_path).status == TaskStatus.PENDING
        assert recovery.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build-api") is not None
        assert bus.messages(Topic.SYSTEM_ALERT)[0]["level"] == "warning"

    def test_task_with_live_agent_not_recovered(self, db_path, recovery):
        _start_agent(db_path)
        assert recovery.recover_stalled_tasks() == []
        assert _task(db_path).status == TaskStatus.IN_PROGRESS

    def test_task_owned_by_supervisor_not_recovered(self, db_path, recovery, supervisor):
        with get_db(db_path) as db:
            tasks_mod.start_task(db, "build-api")
        supervisor.active_task_ids.return_value = {"build-api"}
        assert recovery.recover_stalled_tasks() == []

    def test_sweep_runs_recovery(self, recovery):
        recovery.recover_stalled_tasks = MagicMock()
        RecoverySweep(recovery, interval=300).run_once()
        recovery.recover_stalled_tasks.assert_called_once_with()

    @patch("task_conductor.core.recovery.is_pid_alive", return_value=False)
    def test_reconcile_orphaned_agents(self, mock_alive, db_path, recovery):
        agent_id = _start_agent(db_path)
        assert recovery.reconcile_orphaned_agents() == [agent_id]
        agent = _agent(db_path, agent_id)
        assert agent.status == AgentStatus.FAILED
        assert agent.stop_reason == "orphaned"
        assert agent.failure_handled is True
        # The task itself is left to the stalled-task sweep.
        assert recovery.recover_stalled_tasks() == ["build-api"]

    @patch("task_conductor.core.recovery.is_pid_alive", return_value=True)
    def test_live_process_not_orphaned(self, mock_alive, db_path, recovery):
        _start_agent(db_path)
        assert recovery.reconcile_orphaned_agents() == []

    def test_cleanup_old_failed_agents(self, db_path, recovery):
        old_id = _start_agent(db_path)
        with get_db(db_path) as db:
            agents_mod.set_agent_status(db, old_id, AgentStatus.FAILED)
            db.execute("UPDATE agents SET terminated_at = ? WHERE id = ?", (utcnow(-8 * 86400), old_id))
            db.commit()
            recent = agents_mod.create_agent(db, "build-api")
            agents_mod.set_agent_status(db, recent.id, AgentStatus.FAILED)
        assert recovery.cleanup(older_than_days=7) == 1
        assert _agent(db_path, old_id) is None
        assert _agent(db_path, recent.id) is not None


class TestTerminalFailures:
    def test_fail_without_retry(self, db_path, recovery, bus):
        recovery.fail_without_retry("build-api", "dispatch failed")
        task = _task(db_path)
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 0
        assert bus.messages(Topic.SYSTEM_ALERT)[0]["level"] == "critical"

    def test_recovery_stats(self, db_path, recovery):
        agent_id = _start_agent(db_path)
        recovery.on_agent_failure(agent_id, "boom")
        recovery.fail_without_retry("run-tests", "dispatch failed")
        assert recovery.get_recovery_stats() == {
            "failed_tasks": 1,
            "failed_agents": 1,
            "retried_tasks": 1,
            "max_retries": 3,
        }
