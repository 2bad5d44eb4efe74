"""Tests for the diagnostics API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from task_conductor.core import agents as agents_mod
from task_conductor.core import tasks as tasks_mod
from task_conductor.db.engine import init_db
from task_conductor.db.models import AgentStatus, TaskStatus
from task_conductor.web.app import create_app


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"TC_DB_PATH": str(db_path), "TC_WORKSPACE_DIR": tmp}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        tasks_mod.create_task(db, "Setup database", spec_id="spec-1", description="Create tables")
        tasks_mod.create_task(db, "Build API", spec_id="spec-1", depends_on=["setup-database"])
        tasks_mod.create_task(db, "Write tests", spec_id="spec-2", task_type="TEST")
        tasks_mod.update_task_status(db, "setup-database", TaskStatus.COMPLETED)
        agent = agents_mod.create_agent(db, "build-api")
        agents_mod.mark_running(db, agent.id, 4242)
        tasks_mod.start_task(db, "build-api", agent_id=agent.id)
        stalled = agents_mod.create_agent(db, "write-tests")
        agents_mod.set_agent_status(db, stalled.id, AgentStatus.STALLED)
        db.close()

        app = create_app()
        client = TestClient(app)
        yield client, agent.id, stalled.id

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestHealthAPI:
    def test_health_report(self, web_env):
        client, _, stalled_id = web_env
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_agents"] == 2
        assert data["by_status"]["RUNNING"] == 1
        assert data["stalled_agents"] == [stalled_id]

    def test_queue_stats(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/queues")
        assert resp.status_code == 200
        data = resp.json()
        assert set(data) == {"agent-execution", "test-execution", "spec-processing"}
        assert data["agent-execution"]["waiting"] == 0

    def test_recovery_stats(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/recovery")
        assert resp.status_code == 200
        data = resp.json()
        assert data["failed_tasks"] == 0
        assert data["max_retries"] == 3


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/tasks")
        assert resp.status_code == 200
        ids = {t["id"] for t in resp.json()}
        assert ids == {"setup-database", "build-api", "write-tests"}

    def test_filter_by_spec(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/tasks?spec=spec-1")
        ids = {t["id"] for t in resp.json()}
        assert ids == {"setup-database", "build-api"}

    def test_filter_by_status(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/tasks?spec=spec-1&status=COMPLETED")
        [task] = resp.json()
        assert task["id"] == "setup-database"
        assert task["completed_at"] is not None

    def test_get_task(self, web_env):
        client, agent_id, _ = web_env
        resp = client.get("/api/tasks/build-api")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "IN_PROGRESS"
        assert data["dependencies"] == ["setup-database"]
        assert data["agent_id"] == agent_id
        assert [a["id"] for a in data["agents"]] == [agent_id]
        assert data["events"][0]["event_type"] == "created"

    def test_get_task_not_found(self, web_env):
        client, _, _ = web_env
        resp = client.get("/api/tasks/nonexistent")
        assert resp.status_code == 404


class TestAgentsAPI:
    def test_list_agents(self, web_env):
        client, agent_id, stalled_id = web_env
        resp = client.get("/api/agents")
        assert resp.status_code == 200
        assert {a["id"] for a in resp.json()} == {agent_id, stalled_id}

    def test_filter_by_status(self, web_env):
        client, agent_id, _ = web_env
        resp = client.get("/api/agents?status=RUNNING")
        [agent] = resp.json()
        assert agent["id"] == agent_id
        assert agent["pid"] == 4242
