"""CLI entry point for the task conductor."""

import json
import logging
import os
import signal
import sys
import threading

import click

from task_conductor.config import get_config
from task_conductor.core import agents as agents_mod
from task_conductor.core import tasks as tasks_mod
from task_conductor.core.errors import OrchestratorError
from task_conductor.core.monitor import get_health_report
from task_conductor.core.orchestrator import Orchestrator
from task_conductor.db.engine import get_db
from task_conductor.db.models import JobPriority, JobStatus, QueueClass, TaskStatus, TaskType


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _orchestrator() -> Orchestrator:
    """An orchestrator that is not started: operations only touch the
    database and the durable queue, which ``tc run`` drains."""
    config = get_config()
    with get_db(config.db_path):
        pass
    return Orchestrator.from_config(config)


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
def main():
    """tc - Task Conductor CLI"""
    pass


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--spec", "spec_id", default=None, help="Spec ID")
@click.option("--project", default=None, help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--type", "task_type", default="DEVELOPMENT",
              type=click.Choice([t.value for t in TaskType], case_sensitive=False))
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--file", "files", multiple=True, help="File the task touches (repeatable)")
@click.option("--criterion", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--priority", "-p", default=3, type=int, help="Priority P0 (highest) to P6 (lowest)")
def task_add(title, spec_id, project, description, task_type, depends_on, files, criteria, priority):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, title, spec_id=spec_id, project_id=project, description=description,
                task_type=task_type.upper(), depends_on=deps,
                acceptance_criteria=list(criteria), files=list(files), priority=priority,
            )
        except OrchestratorError as e:
            _fail(e)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Type: {task.type.value}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status.value}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("list")
@click.option("--spec", "spec_id", default=None, help="Filter by spec")
@click.option("--status", default=None, type=click.Choice([s.value for s in TaskStatus], case_sensitive=False))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(spec_id, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, spec_id=spec_id, status=status.upper() if status else None)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "PENDING": "○",
        "ASSIGNED": "◐",
        "IN_PROGRESS": "●",
        "COMPLETED": "✓",
        "FAILED": "✗",
        "BLOCKED": "⊘",
        "CANCELLED": "-",
    }
    for task in tasks:
        icon = status_icons.get(task.status.value, "?")
        deps = f" [depends: {', '.join(task.dependencies)}]" if task.dependencies else ""
        retries = f" [retries: {task.retry_count}]" if task.retry_count else ""
        click.echo(
            f"  {icon} P{task.priority} {task.id}: {task.title} "
            f"({task.status.value}, {task.progress}%){deps}{retries}"
        )


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Type: {task.type.value}")
        click.echo(f"  Status: {task.status.value} ({task.progress}%)")
        click.echo(f"  Priority: P{task.priority}")
        if task.spec_id:
            click.echo(f"  Spec: {task.spec_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")
        if task.agent_id:
            click.echo(f"  Agent: {task.agent_id}")
        if task.retry_count:
            click.echo(f"  Retries: {task.retry_count}")
        if task.last_error:
            click.echo(f"  Last error: {task.last_error}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("execute")
@click.argument("task_id")
@click.option("--priority", default="NORMAL", type=click.Choice([p.name for p in JobPriority], case_sensitive=False))
def task_execute(task_id, priority):
    """Queue a task for execution by `tc run`."""
    try:
        job = _orchestrator().execute_task(task_id, priority=JobPriority[priority.upper()])
    except OrchestratorError as e:
        _fail(e)
    click.echo(f"Queued task '{task_id}' on {job.queue.value} (job {job.id})")


@task_group.command("complete")
@click.argument("task_id")
def task_complete(task_id):
    """Mark a task COMPLETED and release its dependents."""
    try:
        task = _orchestrator().complete_task(task_id)
    except OrchestratorError as e:
        _fail(e)
    click.echo(f"Completed task: {task.id}")


@task_group.command("cancel")
@click.argument("task_id")
def task_cancel(task_id):
    """Cancel a task."""
    try:
        task = _orchestrator().cancel_task(task_id)
    except OrchestratorError as e:
        _fail(e)
    click.echo(f"Cancelled task: {task.id}")


@task_group.command("remove")
@click.argument("task_id")
def task_remove(task_id):
    """Hide a task from listings. Its history is kept."""
    with _get_db() as db:
        if not tasks_mod.remove_task(db, task_id):
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
    click.echo(f"Removed task: {task_id}")


@task_group.command("priority")
@click.argument("task_id")
@click.argument("priority", type=int)
def task_priority(task_id, priority):
    """Set a task's priority (P0 highest to P6 lowest)."""
    if not 0 <= priority <= 6:
        click.echo("Priority must be between 0 and 6.", err=True)
        sys.exit(1)
    with _get_db() as db:
        task = tasks_mod.update_task_priority(db, task_id, priority)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Updated {task_id} priority to P{task.priority}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            _fail(e)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.dependencies:
            click.echo(f"  Remaining deps: {', '.join(task.dependencies)}")
        else:
            click.echo("  No remaining dependencies")
        click.echo(f"  Status: {task.status.value}")


# ── Spec Commands ─────────────────────────────────────────────────────────────


@main.group("spec")
def spec_group():
    """Submit generated task lists."""
    pass


@spec_group.command("submit")
@click.argument("path", type=click.File("r"))
@click.option("--spec-id", default=None, help="Spec ID (defaults to the file's spec_id)")
@click.option("--project", default=None, help="Project ID")
def spec_submit(path, spec_id, project):
    """Queue a JSON task list: {"spec_id": ..., "tasks": [...]}."""
    try:
        data = json.load(path)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    if isinstance(data, list):
        data = {"tasks": data}
    spec_id = spec_id or data.get("spec_id")
    if not spec_id:
        _fail("No spec ID given")
    try:
        job = _orchestrator().submit_spec(
            spec_id, data.get("tasks", []), project_id=project or data.get("project_id"),
        )
    except OrchestratorError as e:
        _fail(e)
    click.echo(f"Queued spec '{spec_id}' with {len(data.get('tasks', []))} tasks (job {job.id})")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Inspect and stop agents."""
    pass


@agent_group.command("list")
@click.option("--status", default=None, help="Filter: IDLE, RUNNING, COMPLETED, FAILED, STALLED")
@click.option("--task", "task_id", default=None)
def agent_list(status, task_id):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, status=status.upper() if status else None, task_id=task_id)
    if not agents:
        click.echo("No agents found.")
        return
    for a in agents:
        click.echo(f"  [{a.status.value}] {a.id} task={a.task_id} pid={a.pid} type={a.type.value}")


@agent_group.command("status")
@click.argument("agent_id")
def agent_status_cmd(agent_id):
    """Show an agent's record."""
    with _get_db() as db:
        try:
            agent = agents_mod.require_agent(db, agent_id)
        except OrchestratorError as e:
            _fail(e)
    click.echo(f"Agent {agent.id} for task '{agent.task_id}'")
    click.echo(f"  Status: {agent.status.value}")
    click.echo(f"  PID: {agent.pid}")
    click.echo(f"  Workspace: {agent.workspace_path}")
    if agent.last_heartbeat:
        click.echo(f"  Last heartbeat: {agent.last_heartbeat}")
    click.echo(f"  CPU: {agent.cpu_usage}%  Memory: {agent.memory_usage / 1024 / 1024:.1f}MB")
    if agent.exit_code is not None:
        click.echo(f"  Exit code: {agent.exit_code}")
    if agent.stop_reason:
        click.echo(f"  Stop reason: {agent.stop_reason}")


@agent_group.command("stop")
@click.argument("agent_id")
def agent_stop(agent_id):
    """Terminate an agent's process. The orchestrator that owns it records the exit."""
    with _get_db() as db:
        try:
            agent = agents_mod.require_agent(db, agent_id)
        except OrchestratorError as e:
            _fail(e)
    if not agents_mod.is_pid_alive(agent.pid):
        _fail(f"Agent {agent_id} has no live process")
    try:
        os.kill(agent.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass  # Already exited
    click.echo(f"Sent SIGTERM to agent {agent_id} (PID {agent.pid})")


# ── Queue Commands ───────────────────────────────────────────────────────────


@main.group("queue")
def queue_group():
    """Inspect and control the job queues."""
    pass


@queue_group.command("stats")
def queue_stats():
    """Show job counts per queue."""
    queue = _orchestrator().queue
    for name, counts in queue.stats().items():
        parts = " ".join(f"{k}={v}" for k, v in counts.items())
        paused = " (paused)" if queue.is_paused(name) else ""
        click.echo(f"  {name}: {parts}{paused}")


@queue_group.command("list")
@click.option("--queue", "queue_name", default=None, type=click.Choice([q.value for q in QueueClass]))
@click.option("--status", default=None, type=click.Choice([s.value for s in JobStatus]))
@click.option("--limit", default=50, type=int)
def queue_list(queue_name, status, limit):
    """List recent jobs."""
    jobs = _orchestrator().queue.list_jobs(queue=queue_name, status=status, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return
    for j in jobs:
        error = f" error={j.last_error}" if j.last_error else ""
        click.echo(
            f"  #{j.id} [{j.status.value}] {j.queue.value}/{j.job_key} "
            f"p{j.priority} attempts={j.attempts}/{j.max_attempts}{error}"
        )


@queue_group.command("clean")
@click.option("--status", default="completed", type=click.Choice(["completed", "failed"]))
@click.option("--older-than", default=0.0, type=float, help="Age in seconds")
def queue_clean(status, older_than):
    """Delete finished jobs."""
    deleted = _orchestrator().queue.clean(older_than=older_than, status=status)
    click.echo(f"Deleted {deleted} {status} jobs")


@queue_group.command("pause")
@click.argument("queue_name", type=click.Choice([q.value for q in QueueClass]))
def queue_pause(queue_name):
    """Stop handing out jobs of a queue. Running jobs finish."""
    _orchestrator().queue.pause(queue_name)
    click.echo(f"Paused {queue_name}")


@queue_group.command("resume")
@click.argument("queue_name", type=click.Choice([q.value for q in QueueClass]))
def queue_resume(queue_name):
    """Resume a paused queue."""
    _orchestrator().queue.resume(queue_name)
    click.echo(f"Resumed {queue_name}")


@queue_group.command("remove")
@click.argument("queue_name", type=click.Choice([q.value for q in QueueClass]))
@click.argument("key")
def queue_remove(queue_name, key):
    """Remove the waiting job with KEY from a queue."""
    job = _orchestrator().queue.remove(queue_name, key)
    if job is None:
        _fail(f"No waiting job '{key}' in {queue_name}")
    click.echo(f"Removed job #{job.id} ({queue_name}/{key})")


# ── Health & Recovery ────────────────────────────────────────────────────────


@main.command("health")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def health(json_output):
    """Show the agent health report."""
    with _get_db() as db:
        report = get_health_report(db)
    if json_output:
        click.echo(json.dumps(report, indent=2))
        return
    by_status = report["by_status"]
    click.echo(f"Agents: {report['total_agents']} "
               f"(running {by_status['RUNNING']}, idle {by_status['IDLE']}, stalled {by_status['STALLED']})")
    click.echo(f"  Average CPU: {report['average_cpu']}%")
    click.echo(f"  Average memory: {report['average_memory_mb']}MB")
    if report["stalled_agents"]:
        click.echo(f"  Stalled: {', '.join(report['stalled_agents'])}")


@main.group("recover")
def recover_group():
    """Run recovery sweeps by hand."""
    pass


@recover_group.command("stalled")
def recover_stalled():
    """Re-queue IN_PROGRESS tasks without a live agent."""
    recovered = _orchestrator().recovery.recover_stalled_tasks()
    if not recovered:
        click.echo("No stalled tasks.")
        return
    for task_id in recovered:
        click.echo(f"  Re-queued: {task_id}")


@recover_group.command("orphans")
def recover_orphans():
    """Mark agent records whose process is gone as FAILED."""
    orphaned = _orchestrator().recovery.reconcile_orphaned_agents()
    if not orphaned:
        click.echo("No orphaned agents.")
        return
    for agent_id in orphaned:
        click.echo(f"  Failed: {agent_id}")


@recover_group.command("cleanup")
@click.option("--days", default=7.0, type=float, help="Age of FAILED agent records to delete")
def recover_cleanup(days):
    """Delete old FAILED agent records."""
    deleted = _orchestrator().recovery.cleanup(older_than_days=days)
    click.echo(f"Deleted {deleted} failed agent records")


@recover_group.command("stats")
def recover_stats():
    """Show recovery statistics."""
    stats = _orchestrator().recovery.get_recovery_stats()
    for key, value in stats.items():
        click.echo(f"  {key}: {value}")


# ── Orchestrator ─────────────────────────────────────────────────────────────


@main.command("run")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def run_command(log_level):
    """Run the orchestrator until interrupted."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    orchestrator = Orchestrator.from_config(get_config())
    done = threading.Event()

    def _handle_signal(signum, frame):
        done.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    orchestrator.start()
    click.echo("Orchestrator running. Press Ctrl+C to stop.")
    try:
        while not done.wait(1):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        click.echo("Stopping orchestrator...")
        orchestrator.stop()


# ── Diagnostics API ──────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the read-only diagnostics API."""
    from task_conductor.web.app import run_server

    click.echo(f"Serving diagnostics at http://{host}:{port}/api/health")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from task_conductor.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "type": task.type.value,
        "status": task.status.value,
        "priority": f"P{task.priority}",
        "progress": task.progress,
        "spec": task.spec_id,
        "description": task.description,
        "depends_on": task.dependencies,
        "retry_count": task.retry_count,
        "agent_id": task.agent_id,
    }


if __name__ == "__main__":
    main()
