"""Task record store and state transitions."""

import json
import re
import sqlite3

from task_conductor.core import graph
from task_conductor.core.errors import (
    DependenciesNotMet,
    DependencyCycleError,
    InvalidTransition,
    TaskNotFound,
)
from task_conductor.db.engine import parse_dt, utcnow
from task_conductor.db.models import Task, TaskEvent, TaskStatus, TaskType

# Statuses a task may be started from.
STARTABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.BLOCKED)


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute("SELECT id FROM tasks WHERE id = ?", (base_slug,)).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute("SELECT id FROM tasks WHERE id = ?", (candidate,)).fetchone()
        if not existing:
            return candidate
        i += 1


def _value(v):
    return getattr(v, "value", v)


def _insert_task(
    db: sqlite3.Connection,
    title: str,
    spec_id: str | None,
    project_id: str | None,
    description: str,
    task_type: TaskType | str,
    depends_on: list[str],
    acceptance_criteria: list[str] | None,
    files: list[str] | None,
    priority: int,
) -> str:
    task_id = _unique_id(db, slugify(title))
    priority = max(0, min(6, priority))
    db.execute(
        """INSERT INTO tasks (id, spec_id, project_id, title, description, type,
                              priority, acceptance_criteria, files)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id,
            spec_id,
            project_id,
            title,
            description,
            _value(TaskType(_value(task_type))),
            priority,
            json.dumps(acceptance_criteria or []),
            json.dumps(files or []),
        ),
    )
    for position, dep_id in enumerate(dict.fromkeys(depends_on)):
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id, position) VALUES (?, ?, ?)",
            (task_id, dep_id, position),
        )
    _log_event(db, task_id, "created", None, TaskStatus.PENDING.value)
    return task_id


def create_task(
    db: sqlite3.Connection,
    title: str,
    spec_id: str | None = None,
    project_id: str | None = None,
    description: str = "",
    task_type: TaskType | str = TaskType.DEVELOPMENT,
    depends_on: list[str] | None = None,
    acceptance_criteria: list[str] | None = None,
    files: list[str] | None = None,
    priority: int = 3,
) -> Task:
    """Create a new task. Every dependency must already exist."""
    for dep_id in depends_on or []:
        if get_task(db, dep_id) is None:
            raise TaskNotFound(dep_id)
    task_id = _insert_task(
        db, title, spec_id, project_id, description, task_type,
        depends_on or [], acceptance_criteria, files, priority,
    )
    db.commit()
    return get_task(db, task_id)


def create_task_batch(
    db: sqlite3.Connection,
    items: list[dict],
    spec_id: str | None = None,
    project_id: str | None = None,
) -> list[Task]:
    """Create generated tasks whose dependencies are indexes into ``items``.

    The whole batch is validated before anything is written and inserted in
    one transaction.
    """
    graph.validate_dependency_indexes(items)
    ids: list[str] = []
    try:
        for item in items:
            ids.append(
                _insert_task(
                    db,
                    title=item["title"],
                    spec_id=spec_id,
                    project_id=project_id,
                    description=item.get("description", ""),
                    task_type=item.get("type", TaskType.DEVELOPMENT),
                    depends_on=[ids[i] for i in item.get("dependencies") or []],
                    acceptance_criteria=item.get("acceptance_criteria"),
                    files=item.get("files"),
                    priority=item.get("priority", 3),
                )
            )
    except Exception:
        db.rollback()
        raise
    db.commit()
    return [get_task(db, task_id) for task_id in ids]


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.dependencies = graph.get_dependency_ids(db, task_id)
    return task


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if task is None:
        raise TaskNotFound(task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    spec_id: str | None = None,
    project_id: str | None = None,
    status: TaskStatus | str | None = None,
    task_type: TaskType | str | None = None,
    include_removed: bool = False,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if not include_removed:
        query += " AND removed_at IS NULL"
    if spec_id:
        query += " AND spec_id = ?"
        params.append(spec_id)
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if status:
        query += " AND status = ?"
        params.append(_value(status))
    if task_type:
        query += " AND type = ?"
        params.append(_value(task_type))

    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"
    tasks = []
    for row in db.execute(query, params).fetchall():
        task = _row_to_task(row)
        task.dependencies = graph.get_dependency_ids(db, task.id)
        tasks.append(task)
    return tasks


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    status: TaskStatus,
    expected: tuple | list | None = None,
    event_type: str = "status_changed",
    **fields,
) -> bool:
    """Move a task to ``status`` if it is currently in one of ``expected``.

    The check and the write are a single UPDATE, so concurrent writers cannot
    both win. Returns whether the row changed.
    """
    row = db.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        raise TaskNotFound(task_id)
    old_status = row["status"]

    set_parts = ["status = ?"] + [f"{k} = ?" for k in fields]
    set_parts.append("updated_at = datetime('now')")
    values = [status.value] + list(fields.values()) + [task_id]
    query = f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?"
    if expected is not None:
        query += f" AND status IN ({', '.join('?' for _ in expected)})"
        values += [_value(s) for s in expected]

    cur = db.execute(query, values)
    if cur.rowcount == 0:
        return False
    _log_event(db, task_id, event_type, old_status, status.value)
    return True


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: TaskStatus | str,
    expected: tuple | list | None = None,
) -> Task | None:
    """Update a task's status. Returns the updated task, or None when the
    task is missing or its current status is not in ``expected``."""
    if get_task(db, task_id) is None:
        return None
    status = TaskStatus(_value(status))
    fields = {}
    if status == TaskStatus.COMPLETED:
        fields = {"completed_at": utcnow(), "progress": 100}
    changed = transition_task(db, task_id, status, expected, **fields)
    db.commit()
    return get_task(db, task_id) if changed else None


def start_task(db: sqlite3.Connection, task_id: str, agent_id: str | None = None) -> Task:
    """Move a task to IN_PROGRESS, guarding on its dependencies.

    A task with an incomplete dependency is set to BLOCKED instead and
    ``DependenciesNotMet`` is raised.
    """
    task = require_task(db, task_id)
    incomplete = graph.incomplete_dependencies(db, task_id)
    if incomplete:
        block_task(db, task_id)
        raise DependenciesNotMet(task_id, incomplete)
    changed = transition_task(
        db,
        task_id,
        TaskStatus.IN_PROGRESS,
        expected=STARTABLE_STATUSES,
        started_at=utcnow(),
        agent_id=agent_id,
        progress=0,
    )
    db.commit()
    if not changed:
        raise InvalidTransition(
            f"Task '{task_id}' cannot start from status {task.status.value}"
        )
    return get_task(db, task_id)


def assign_task(db: sqlite3.Connection, task_id: str) -> bool:
    changed = transition_task(
        db, task_id, TaskStatus.ASSIGNED, expected=(TaskStatus.PENDING, TaskStatus.BLOCKED)
    )
    db.commit()
    return changed


def block_task(db: sqlite3.Connection, task_id: str) -> bool:
    changed = transition_task(
        db,
        task_id,
        TaskStatus.BLOCKED,
        expected=(TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
    )
    db.commit()
    return changed


def complete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Mark an assigned or running task COMPLETED."""
    changed = transition_task(
        db,
        task_id,
        TaskStatus.COMPLETED,
        expected=(TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
        completed_at=utcnow(),
        progress=100,
    )
    db.commit()
    return changed


def fail_task(
    db: sqlite3.Connection,
    task_id: str,
    error: str | None,
    count_retry: bool = False,
) -> bool:
    """Mark a task FAILED and record the error.

    With ``count_retry`` the task's ``retry_count`` is incremented in the
    same statement. Completed or cancelled tasks are left alone.
    """
    fields = {"last_error": error, "last_failed_at": utcnow()}
    changed = transition_task(
        db,
        task_id,
        TaskStatus.FAILED,
        expected=(
            TaskStatus.PENDING,
            TaskStatus.ASSIGNED,
            TaskStatus.IN_PROGRESS,
            TaskStatus.BLOCKED,
            TaskStatus.FAILED,
        ),
        **fields,
    )
    if changed and count_retry:
        db.execute(
            "UPDATE tasks SET retry_count = retry_count + 1 WHERE id = ?", (task_id,)
        )
    db.commit()
    return changed


def reset_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Return a failed or interrupted task to PENDING."""
    changed = transition_task(
        db,
        task_id,
        TaskStatus.PENDING,
        expected=(
            TaskStatus.FAILED,
            TaskStatus.IN_PROGRESS,
            TaskStatus.ASSIGNED,
            TaskStatus.BLOCKED,
        ),
        event_type="reset",
        progress=0,
    )
    db.commit()
    return changed


def cancel_task(db: sqlite3.Connection, task_id: str) -> bool:
    changed = transition_task(
        db,
        task_id,
        TaskStatus.CANCELLED,
        expected=(
            TaskStatus.PENDING,
            TaskStatus.ASSIGNED,
            TaskStatus.IN_PROGRESS,
            TaskStatus.BLOCKED,
            TaskStatus.FAILED,
        ),
    )
    db.commit()
    return changed


def remove_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Soft-remove a task. It stays in the table but is hidden from listings."""
    task = get_task(db, task_id)
    if not task or task.removed_at is not None:
        return False
    db.execute(
        "UPDATE tasks SET removed_at = ?, updated_at = datetime('now') WHERE id = ?",
        (utcnow(), task_id),
    )
    _log_event(db, task_id, "removed", task.status.value, None)
    db.commit()
    return True


def update_progress(db: sqlite3.Connection, task_id: str, progress: int) -> Task | None:
    task = get_task(db, task_id)
    if not task:
        return None
    progress = max(0, min(100, int(progress)))
    db.execute(
        "UPDATE tasks SET progress = ?, updated_at = datetime('now') WHERE id = ?",
        (progress, task_id),
    )
    db.commit()
    task.progress = progress
    return task


def update_task_priority(
    db: sqlite3.Connection,
    task_id: str,
    priority: int,
) -> Task | None:
    """Update a task's priority (P0-P6, 0=highest)."""
    task = get_task(db, task_id)
    if not task:
        return None
    priority = max(0, min(6, priority))
    old_priority = task.priority
    db.execute(
        "UPDATE tasks SET priority = ?, updated_at = datetime('now') WHERE id = ?",
        (priority, task_id),
    )
    _log_event(db, task_id, "priority_changed", str(old_priority), str(priority))
    db.commit()
    return get_task(db, task_id)


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Add a dependency to an existing task."""
    task = get_task(db, task_id)
    if not task:
        return None
    if get_task(db, depends_on_id) is None:
        raise TaskNotFound(depends_on_id)
    if depends_on_id in task.dependencies:
        return task
    if graph.would_create_cycle(db, task_id, depends_on_id):
        raise DependencyCycleError(
            f"Dependency {task_id} -> {depends_on_id} would create a cycle"
        )
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id, position) VALUES (?, ?, ?)",
        (task_id, depends_on_id, len(task.dependencies)),
    )
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Remove a dependency from a task.

    A BLOCKED task whose remaining dependencies are all COMPLETED moves to
    PENDING.
    """
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    if task.status == TaskStatus.BLOCKED and not graph.incomplete_dependencies(db, task_id):
        transition_task(
            db, task_id, TaskStatus.PENDING, expected=(TaskStatus.BLOCKED,), event_type="unblocked",
        )
    db.commit()
    return get_task(db, task_id)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        spec_id=row["spec_id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        type=TaskType(row["type"]),
        status=TaskStatus(row["status"]),
        priority=row["priority"] if row["priority"] is not None else 3,
        progress=row["progress"] or 0,
        acceptance_criteria=json.loads(row["acceptance_criteria"] or "[]"),
        files=json.loads(row["files"] or "[]"),
        retry_count=row["retry_count"] or 0,
        last_error=row["last_error"],
        last_failed_at=parse_dt(row["last_failed_at"]),
        agent_id=row["agent_id"],
        created_at=parse_dt(row["created_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        updated_at=parse_dt(row["updated_at"]),
        removed_at=parse_dt(row["removed_at"]),
    )
