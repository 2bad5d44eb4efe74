"""Readiness resolver: which tasks may run, and who is unblocked by a completion."""

import logging
import sqlite3

from task_conductor.core import graph
from task_conductor.core.tasks import block_task, get_task, list_tasks, transition_task
from task_conductor.db.models import Task, TaskStatus

logger = logging.getLogger(__name__)


def is_ready(db: sqlite3.Connection, task: Task) -> bool:
    """True iff the task has no dependencies or all of them are COMPLETED."""
    return not graph.incomplete_dependencies(db, task.id)


def ready_tasks(db: sqlite3.Connection, spec_id: str | None = None) -> list[Task]:
    """PENDING tasks whose dependencies are all met."""
    return [
        t for t in list_tasks(db, spec_id=spec_id, status=TaskStatus.PENDING)
        if is_ready(db, t)
    ]


def find_dependents(
    db: sqlite3.Connection,
    task_id: str,
    status: TaskStatus | None = None,
) -> list[Task]:
    dependents = []
    for dependent_id in graph.get_dependent_ids(db, task_id):
        task = get_task(db, dependent_id)
        if task is None or task.removed_at is not None:
            continue
        if status is None or task.status == status:
            dependents.append(task)
    return dependents


def unblock_dependents(db: sqlite3.Connection, task_id: str, events=None) -> list[Task]:
    """Move every BLOCKED dependent of ``task_id`` that is now ready to PENDING.

    Dependents still waiting on something else, including a CANCELLED
    dependency, stay BLOCKED.
    """
    unblocked = []
    for dependent in find_dependents(db, task_id, status=TaskStatus.BLOCKED):
        if not is_ready(db, dependent):
            continue
        if transition_task(
            db, dependent.id, TaskStatus.PENDING,
            expected=(TaskStatus.BLOCKED,), event_type="unblocked",
        ):
            db.commit()
            task = get_task(db, dependent.id)
            unblocked.append(task)
            logger.info("Task '%s' unblocked by '%s'", task.id, task_id)
            if events is not None:
                events.task_update(task, unblocked_by=task_id)
    return unblocked


def block_if_not_ready(db: sqlite3.Connection, task_id: str, events=None) -> list[str]:
    """Block a task whose dependencies are not all COMPLETED.

    Returns the incomplete dependency ids, empty when the task may run.
    Dependencies are read again after blocking, so a completion that landed
    in between does not leave the task BLOCKED.
    """
    incomplete = graph.incomplete_dependencies(db, task_id)
    if not incomplete:
        return []
    if block_task(db, task_id) and events is not None:
        events.task_update(get_task(db, task_id))
    incomplete = graph.incomplete_dependencies(db, task_id)
    if not incomplete and transition_task(
        db, task_id, TaskStatus.PENDING, expected=(TaskStatus.BLOCKED,), event_type="unblocked",
    ):
        db.commit()
        logger.info("Task '%s' became ready while being blocked", task_id)
    return incomplete
