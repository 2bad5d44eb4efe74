"""MCP server exposing the task conductor's tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from task_conductor.config import Config, get_config
from task_conductor.core import agents as agents_mod
from task_conductor.core import resolver
from task_conductor.core import tasks as tasks_mod
from task_conductor.core.errors import OrchestratorError
from task_conductor.core.monitor import get_health_report
from task_conductor.core.orchestrator import Orchestrator
from task_conductor.db.engine import init_db
from task_conductor.db.models import JobPriority


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    orchestrator: Orchestrator


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start an orchestrator on startup, stop it on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    orchestrator = Orchestrator.from_config(config)
    orchestrator.start()
    try:
        yield AppContext(db=db, config=config, orchestrator=orchestrator)
    finally:
        orchestrator.stop()
        db.close()


mcp = FastMCP("task-conductor", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    task_type: str = "DEVELOPMENT",
    spec_id: str | None = None,
    depends_on: list[str] | None = None,
    acceptance_criteria: list[str] | None = None,
    files: list[str] | None = None,
    priority: int = 3,
) -> dict:
    """Create a new task. Types: DEVELOPMENT, TEST, TDD, TESTING, REVIEW,
    DOCUMENTATION, DEPLOYMENT. Priority: P0 (highest) to P6 (lowest)."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db, title, spec_id=spec_id, description=description,
            task_type=task_type.upper(), depends_on=depends_on,
            acceptance_criteria=acceptance_criteria, files=files, priority=priority,
        )
    except (OrchestratorError, ValueError) as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def list_tasks(ctx: Context, spec_id: str | None = None, status: str | None = None) -> list[dict]:
    """List tasks, optionally filtered by spec and status."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, spec_id=spec_id, status=status.upper() if status else None)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including its dependencies and history."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = _task_to_dict(task)
    result["events"] = [
        {"event_type": e.event_type, "old_value": e.old_value, "new_value": e.new_value,
         "created_at": e.created_at.isoformat() if e.created_at else None}
        for e in tasks_mod.get_task_events(app.db, task_id)
    ]
    return result


@mcp.tool()
def get_ready_tasks(ctx: Context, spec_id: str | None = None) -> list[dict]:
    """Get PENDING tasks whose dependencies are all COMPLETED."""
    app = _ctx(ctx)
    return [_task_to_dict(t) for t in resolver.ready_tasks(app.db, spec_id=spec_id)]


@mcp.tool()
def execute_task(ctx: Context, task_id: str, priority: str = "NORMAL") -> dict:
    """Queue a task for execution by an agent. Priority: CRITICAL, HIGH, NORMAL, LOW."""
    app = _ctx(ctx)
    try:
        job = app.orchestrator.execute_task(task_id, priority=JobPriority[priority.upper()])
    except KeyError:
        return {"error": f"Unknown priority: {priority}"}
    except OrchestratorError as e:
        return {"error": str(e)}
    return {"task_id": task_id, "job_id": job.id, "queue": job.queue.value, "status": job.status.value}


@mcp.tool()
def complete_task(ctx: Context, task_id: str) -> dict:
    """Mark a task COMPLETED and release the tasks that depend on it."""
    app = _ctx(ctx)
    try:
        return _task_to_dict(app.orchestrator.complete_task(task_id))
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
def cancel_task(ctx: Context, task_id: str) -> dict:
    """Cancel a task and stop its agent. Dependent tasks are not cancelled."""
    app = _ctx(ctx)
    try:
        return _task_to_dict(app.orchestrator.cancel_task(task_id))
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Make task_id depend on depends_on_id. Cycles are rejected."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.add_dependency(app.db, task_id, depends_on_id)
        if not task:
            return {"error": f"Task not found: {task_id}"}
        return _task_to_dict(task)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def submit_spec(
    ctx: Context,
    spec_id: str,
    tasks: list[dict],
    project_id: str | None = None,
) -> dict:
    """Submit a generated task list. Each task has title, description, type,
    acceptance_criteria, files and dependencies (indexes of earlier tasks)."""
    app = _ctx(ctx)
    try:
        job = app.orchestrator.submit_spec(spec_id, tasks, project_id=project_id)
    except OrchestratorError as e:
        return {"error": str(e)}
    return {"spec_id": spec_id, "job_id": job.id, "task_count": len(tasks)}


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def list_agents(ctx: Context, status: str | None = None, task_id: str | None = None) -> list[dict]:
    """List agents, optionally filtered by status (IDLE/RUNNING/COMPLETED/FAILED/STALLED)."""
    app = _ctx(ctx)
    agents = agents_mod.list_agents(app.db, status=status.upper() if status else None, task_id=task_id)
    return [_agent_to_dict(a) for a in agents]


@mcp.tool()
def stop_agent(ctx: Context, agent_id: str, reason: str = "manual") -> dict:
    """Ask a running agent to shut down; it is killed after the grace period."""
    app = _ctx(ctx)
    if not app.orchestrator.supervisor.stop(agent_id, reason):
        return {"error": f"Agent {agent_id} is not running in this orchestrator"}
    return {"agent_id": agent_id, "stopping": True, "reason": reason}


# ── Health & Recovery Tools ───────────────────────────────────────────────────


@mcp.tool()
def health_report(ctx: Context) -> dict:
    """Agent counts by status, average CPU and memory, and stalled agents."""
    return get_health_report(_ctx(ctx).db)


@mcp.tool()
def queue_stats(ctx: Context) -> dict:
    """Waiting, delayed, active, completed and failed jobs per queue."""
    return _ctx(ctx).orchestrator.queue.stats()


@mcp.tool()
def recover_stalled_tasks(ctx: Context) -> dict:
    """Re-queue IN_PROGRESS tasks that have no live agent."""
    recovered = _ctx(ctx).orchestrator.recovery.recover_stalled_tasks()
    return {"recovered": recovered}


@mcp.tool()
def recovery_stats(ctx: Context) -> dict:
    """Failed tasks, failed agents, retried tasks and the retry limit."""
    return _ctx(ctx).orchestrator.recovery.get_recovery_stats()


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "spec_id": task.spec_id,
        "type": task.type.value,
        "status": task.status.value,
        "priority": f"P{task.priority}",
        "progress": task.progress,
        "description": task.description,
        "dependencies": task.dependencies,
        "acceptance_criteria": task.acceptance_criteria,
        "files": task.files,
        "retry_count": task.retry_count,
        "last_error": task.last_error,
        "agent_id": task.agent_id,
    }


def _agent_to_dict(agent) -> dict:
    return {
        "id": agent.id,
        "task_id": agent.task_id,
        "type": agent.type.value,
        "status": agent.status.value,
        "pid": agent.pid,
        "workspace_path": agent.workspace_path,
        "last_heartbeat": agent.last_heartbeat.isoformat() if agent.last_heartbeat else None,
        "cpu_usage": agent.cpu_usage,
        "memory_usage": agent.memory_usage,
        "exit_code": agent.exit_code,
        "stop_reason": agent.stop_reason,
    }
