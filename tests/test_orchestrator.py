"""End-to-end tests for the orchestrator, using small scripts as agents."""

import sys
import textwrap
import time

import pytest

from task_conductor.config import Config
from task_conductor.core import agents as agents_mod
from task_conductor.core import tasks as tasks_mod
from task_conductor.core.errors import DependenciesNotMet, DependencyCycleError, InvalidTransition
from task_conductor.core.events import EventPublisher, MemoryEventBus, Topic
from task_conductor.core.orchestrator import Orchestrator
from task_conductor.db.engine import get_db, init_db
from task_conductor.db.models import AgentStatus, JobStatus, QueueClass, TaskStatus

SUCCEED = """
import json
print(json.dumps({"type": "heartbeat", "data": {}}), flush=True)
print(json.dumps({"type": "progress", "data": {"percent": 100}}), flush=True)
"""

# Fails the first two runs, then succeeds. Counts runs in $COUNTER_FILE.
FLAKY = """
import json, os, pathlib, sys
counter = pathlib.Path(os.environ["COUNTER_FILE"])
runs = int(counter.read_text()) + 1 if counter.exists() else 1
counter.write_text(str(runs))
if runs <= 2:
    print(json.dumps({"type": "error", "data": {"message": f"run {runs} failed"}}), flush=True)
    sys.exit(1)
"""

ALWAYS_FAIL = """
import sys
sys.exit(3)
"""

OBEY = """
import json, sys
for line in sys.stdin:
    if json.loads(line)["type"] == "shutdown":
        sys.exit(0)
"""

SLOW = """
import json, time
print(json.dumps({"type": "heartbeat", "data": {}}), flush=True)
time.sleep(0.4)
"""

# The first run ignores the control channel until it is killed. A later run
# records whether that first process was still alive when it started.
STUBBORN_ONCE = """
import os, pathlib, time
state = pathlib.Path(os.environ["STATE_DIR"])
first = state / "first.pid"
if not first.exists():
    first.write_text(str(os.getpid()))
    time.sleep(60)
try:
    os.kill(int(first.read_text()), 0)
    (state / "overlap").write_text("alive")
except ProcessLookupError:
    (state / "overlap").write_text("gone")
"""

# Silent on its first run until told to shut down; later runs succeed.
SILENT_ONCE = """
import json, os, pathlib, sys
marker = pathlib.Path(os.environ["STATE_DIR"]) / "ran"
if not marker.exists():
    marker.write_text("1")
    for line in sys.stdin:
        if json.loads(line)["type"] == "shutdown":
            sys.exit(0)
print(json.dumps({"type": "heartbeat", "data": {}}), flush=True)
"""


def _wait_for(predicate, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def make_orchestrator(tmp_path):
    started = []

    def factory(script: str, **overrides) -> Orchestrator:
        path = tmp_path / f"agent_{len(started)}.py"
        path.write_text(textwrap.dedent(script))
        settings = dict(
            db_path=tmp_path / "test.db",
            workspace_dir=tmp_path / "workspaces",
            worker_command=[sys.executable, str(path)],
            agent_timeout=0,
            stop_grace_period=0.5,
            health_check_interval=60,
            recovery_interval=60,
            retry_delay=0.1,
            retry_backoff=1.0,
            queue_backoff_delay=0.1,
            queue_poll_interval=0.05,
            slot_poll_interval=0.2,
            agent_concurrency=2,
            test_concurrency=1,
            spec_concurrency=1,
        )
        settings.update(overrides)
        init_db(settings["db_path"]).close()
        orchestrator = Orchestrator(Config(**settings), EventPublisher([MemoryEventBus()]))
        started.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in started:
        orchestrator.stop()


def _task(orchestrator, task_id):
    with get_db(orchestrator.db_path) as db:
        return tasks_mod.get_task(db, task_id)


def _bus(orchestrator) -> MemoryEventBus:
    return orchestrator.events.buses[0]


class TestExecution:
    def test_execute_task(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        job = orch.execute_task("build-api")
        assert job.queue == QueueClass.AGENT_EXECUTION
        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.COMPLETED)
        assert _wait_for(lambda: orch.queue.get_job(job.id).status == JobStatus.COMPLETED)
        with get_db(orch.db_path) as db:
            [agent] = agents_mod.list_agents(db, task_id="build-api")
        assert agent.status == AgentStatus.COMPLETED

    def test_execute_with_unmet_dependencies(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "First")
            tasks_mod.create_task(db, "Second", depends_on=["first"])
        with pytest.raises(DependenciesNotMet):
            orch.execute_task("second")
        assert _task(orch, "second").status == TaskStatus.BLOCKED

    def test_execute_completed_task_rejected(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Done")
            tasks_mod.update_task_status(db, "done", TaskStatus.COMPLETED)
        with pytest.raises(InvalidTransition):
            orch.execute_task("done")

    def test_test_tasks_use_test_queue(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Run suite", task_type="TESTING")
        assert orch.execute_task("run-suite").queue == QueueClass.TEST_EXECUTION


class TestSpecProcessing:
    def test_dependency_chain_runs_in_order(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        orch.start()
        orch.submit_spec(
            "spec-1",
            [
                {"title": "Schema", "type": "DEVELOPMENT"},
                {"title": "API", "dependencies": [0]},
                {"title": "API tests", "type": "TEST", "dependencies": [1]},
            ],
        )
        assert _wait_for(lambda: (t := _task(orch, "api-tests")) is not None
                         and t.status == TaskStatus.COMPLETED)
        schema, api, api_tests = (_task(orch, i) for i in ("schema", "api", "api-tests"))
        assert schema.status == api.status == TaskStatus.COMPLETED
        assert api.started_at >= schema.completed_at
        assert api_tests.started_at >= api.completed_at

        spec_updates = [m["status"] for m in _bus(orch).messages(Topic.SPEC_UPDATE)]
        assert spec_updates[:2] == ["QUEUED", "TASKS_CREATED"]

    def test_invalid_spec_rejected_before_queueing(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with pytest.raises(DependencyCycleError):
            orch.submit_spec("spec-1", [{"title": "A", "dependencies": [0]}])
        assert orch.queue.list_jobs() == []


class TestRecovery:
    def test_flaky_agent_retried_until_success(self, make_orchestrator, tmp_path, monkeypatch):
        monkeypatch.setenv("COUNTER_FILE", str(tmp_path / "runs"))
        orch = make_orchestrator(FLAKY)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        orch.execute_task("build-api")

        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.COMPLETED)
        task = _task(orch, "build-api")
        assert task.retry_count == 2
        assert task.last_error == "run 2 failed"
        assert (tmp_path / "runs").read_text() == "3"

    def test_retries_exhausted(self, make_orchestrator):
        orch = make_orchestrator(ALWAYS_FAIL)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        orch.execute_task("build-api")

        assert _wait_for(lambda: _task(orch, "build-api").retry_count == 3)
        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.FAILED)
        time.sleep(0.3)
        assert _task(orch, "build-api").status == TaskStatus.FAILED
        assert orch.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build-api") is None
        alerts = [m["level"] for m in _bus(orch).messages(Topic.SYSTEM_ALERT)]
        assert alerts[-1] == "critical"

    def test_exhausted_dispatch_fails_task(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        job = orch.queue.enqueue(QueueClass.AGENT_EXECUTION, "build-api", task_id="build-api")
        orch.queue.claim_next(QueueClass.AGENT_EXECUTION, "worker-1")
        orch.queue.fail(job.id, "no capacity", retry=False)
        task = _task(orch, "build-api")
        assert task.status == TaskStatus.FAILED
        assert task.last_error == "no capacity"

    def test_failed_job_ignored_once_task_is_queued_again(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        job = orch.queue.enqueue(QueueClass.AGENT_EXECUTION, "build-api", task_id="build-api")
        job.last_error = "stale failure"
        orch._on_job_event("failed", job)
        assert _task(orch, "build-api").status == TaskStatus.PENDING

    def test_dispatch_of_unready_task_fails_job_and_blocks_task(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Design")
            tasks_mod.create_task(db, "Build", depends_on=["design"])
        job = orch.queue.enqueue(QueueClass.AGENT_EXECUTION, "build", task_id="build")
        orch.start()

        assert _wait_for(lambda: orch.queue.get_job(job.id).status == JobStatus.FAILED)
        job = orch.queue.get_job(job.id)
        assert job.attempts == 1
        assert "incomplete dependencies: design" in job.last_error
        assert _task(orch, "build").status == TaskStatus.BLOCKED
        with get_db(orch.db_path) as db:
            assert agents_mod.list_agents(db, task_id="build") == []

        orch.execute_task("design")
        assert _wait_for(lambda: _task(orch, "build").status == TaskStatus.COMPLETED)

    def test_timed_out_agent_is_replaced_after_it_exits(self, make_orchestrator, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        orch = make_orchestrator(STUBBORN_ONCE, agent_timeout=1.5, stop_grace_period=0.3)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        orch.execute_task("build-api")

        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.COMPLETED)
        task = _task(orch, "build-api")
        assert task.retry_count == 1
        assert "timed out" in task.last_error
        assert (tmp_path / "overlap").read_text() == "gone"
        with get_db(orch.db_path) as db:
            second, first = agents_mod.list_agents(db, task_id="build-api")
        assert first.stop_reason == "timeout"
        assert first.exit_code < 0
        assert second.status == AgentStatus.COMPLETED

    def test_silent_agent_is_stopped_and_retried(self, make_orchestrator, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        orch = make_orchestrator(SILENT_ONCE, stall_threshold=1.5, health_check_interval=0.3)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        orch.execute_task("build-api")

        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.COMPLETED)
        assert _task(orch, "build-api").retry_count == 1
        with get_db(orch.db_path) as db:
            second, first = agents_mod.list_agents(db, task_id="build-api")
        assert first.status == AgentStatus.FAILED
        assert first.stop_reason == "stalled"
        assert second.status == AgentStatus.COMPLETED
        alerts = [m["message"] for m in _bus(orch).messages(Topic.SYSTEM_ALERT)]
        assert any("stalled" in a for a in alerts)

    def test_restart_requeues_interrupted_task(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
            tasks_mod.start_task(db, "build-api")
        orch.start()
        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.COMPLETED)


class TestCapacity:
    def test_running_agents_never_exceed_ceiling(self, make_orchestrator):
        orch = make_orchestrator(
            SLOW, max_concurrent_agents=2, agent_concurrency=3, test_concurrency=2,
        )
        with get_db(orch.db_path) as db:
            for i in range(4):
                tasks_mod.create_task(db, f"Feature {i}")
            for i in range(2):
                tasks_mod.create_task(db, f"Suite {i}", task_type="TEST")
        task_ids = [f"feature-{i}" for i in range(4)] + [f"suite-{i}" for i in range(2)]
        orch.start()
        for task_id in task_ids:
            orch.execute_task(task_id)

        samples = []

        def all_completed():
            with get_db(orch.db_path) as db:
                running = agents_mod.list_agents(db, status=AgentStatus.RUNNING)
                statuses = [tasks_mod.get_task(db, t).status for t in task_ids]
            samples.append((len(running), orch.supervisor.active_count()))
            return all(s == TaskStatus.COMPLETED for s in statuses)

        assert _wait_for(all_completed, timeout=30)
        assert max(r for r, _ in samples) <= 2
        assert max(a for _, a in samples) == 2


class TestManualControl:
    def test_cancel_running_task(self, make_orchestrator):
        orch = make_orchestrator(OBEY)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        orch.execute_task("build-api")
        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.IN_PROGRESS)

        task = orch.cancel_task("build-api")

        assert task.status == TaskStatus.CANCELLED
        assert _wait_for(lambda: orch.supervisor.active_count() == 0)
        with get_db(orch.db_path) as db:
            [agent] = agents_mod.list_agents(db, task_id="build-api")
        assert agent.status == AgentStatus.FAILED
        assert agent.stop_reason == "cancelled"
        assert _task(orch, "build-api").retry_count == 0

    def test_cancel_removes_waiting_job(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        job = orch.execute_task("build-api")

        orch.cancel_task("build-api")

        assert orch.queue.get_job(job.id) is None
        assert orch.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build-api") is None

    def test_paused_queue_holds_jobs_until_resumed(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.queue.pause(QueueClass.AGENT_EXECUTION)
        orch.start()
        job = orch.execute_task("build-api")

        time.sleep(0.3)
        assert orch.queue.get_job(job.id).status == JobStatus.WAITING
        assert _task(orch, "build-api").status == TaskStatus.PENDING

        orch.queue.resume(QueueClass.AGENT_EXECUTION)
        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.COMPLETED)

    def test_complete_releases_dependents(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Design")
            tasks_mod.create_task(db, "Build", depends_on=["design"])
            tasks_mod.assign_task(db, "design")
            tasks_mod.block_task(db, "build")

        orch.complete_task("design")

        assert _task(orch, "build").status == TaskStatus.PENDING
        assert orch.queue.find_open_job(QueueClass.AGENT_EXECUTION, "build") is not None
        activity = [m["event_type"] for m in _bus(orch).messages(Topic.ACTIVITY_LOG)]
        assert "TASK_COMPLETED" in activity

    def test_complete_pending_task_rejected(self, make_orchestrator):
        orch = make_orchestrator(SUCCEED)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Design")
        with pytest.raises(InvalidTransition):
            orch.complete_task("design")

    def test_shutdown_leaves_task_for_recovery(self, make_orchestrator):
        orch = make_orchestrator(OBEY)
        with get_db(orch.db_path) as db:
            tasks_mod.create_task(db, "Build API")
        orch.start()
        orch.execute_task("build-api")
        assert _wait_for(lambda: _task(orch, "build-api").status == TaskStatus.IN_PROGRESS)
        orch.stop()
        task = _task(orch, "build-api")
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.retry_count == 0
