"""Read-only diagnostics API for the task conductor."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from task_conductor.config import get_config
from task_conductor.core import agents as agents_mod
from task_conductor.core import tasks as tasks_mod
from task_conductor.core.monitor import get_health_report
from task_conductor.core.queue import JobQueue
from task_conductor.core.recovery import ErrorRecovery
from task_conductor.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _iso(dt):
    return dt.isoformat() if dt else None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    db = _get_db()
    try:
        return JSONResponse(get_health_report(db))
    finally:
        db.close()


async def api_queues(request: Request):
    config = get_config()
    init_db(config.db_path).close()
    return JSONResponse(JobQueue(config.db_path).stats())


async def api_list_tasks(request: Request):
    spec_id = request.query_params.get("spec")
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(db, spec_id=spec_id, status=status_filter)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        td["agents"] = [_agent_dict(a) for a in agents_mod.list_agents(db, task_id=task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_list_agents(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        agents = agents_mod.list_agents(db, status=status_filter)
        return JSONResponse([_agent_dict(a) for a in agents])
    finally:
        db.close()


async def api_recovery(request: Request):
    config = get_config()
    init_db(config.db_path).close()
    recovery = ErrorRecovery(config.db_path, max_retries=config.retry_max)
    return JSONResponse(recovery.get_recovery_stats())


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "spec_id": t.spec_id,
        "project_id": t.project_id,
        "type": t.type.value,
        "status": t.status.value,
        "priority": t.priority,
        "progress": t.progress,
        "description": t.description,
        "dependencies": t.dependencies,
        "acceptance_criteria": t.acceptance_criteria,
        "files": t.files,
        "retry_count": t.retry_count,
        "last_error": t.last_error,
        "agent_id": t.agent_id,
        "created_at": _iso(t.created_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "updated_at": _iso(t.updated_at),
    }


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "task_id": a.task_id,
        "type": a.type.value,
        "status": a.status.value,
        "pid": a.pid,
        "workspace_path": a.workspace_path,
        "last_heartbeat": _iso(a.last_heartbeat),
        "cpu_usage": a.cpu_usage,
        "memory_usage": a.memory_usage,
        "exit_code": a.exit_code,
        "stop_reason": a.stop_reason,
        "started_at": _iso(a.started_at),
        "terminated_at": _iso(a.terminated_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/health", api_health),
        Route("/api/queues", api_queues),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/agents", api_list_agents),
        Route("/api/recovery", api_recovery),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
