"""Dependency graph structure: edge validation and dependency status queries.

Edges are the ordered ``task_dependencies`` rows; the graph is never stored
separately. The resolver built on top of this lives in ``core.resolver``.
"""

import sqlite3

from task_conductor.core.errors import DependencyCycleError
from task_conductor.db.models import TaskStatus


def validate_dependency_indexes(items: list[dict]) -> None:
    """Validate index-based dependencies of a generated task batch.

    Each item may carry ``dependencies``: a list of indexes into ``items``.
    An index must point at an earlier item; out of range, self and forward
    references are rejected, which keeps the batch acyclic.
    """
    for index, item in enumerate(items):
        for dep_index in item.get("dependencies") or []:
            if not isinstance(dep_index, int) or dep_index < 0 or dep_index >= len(items):
                raise DependencyCycleError(
                    f"Task {index} has invalid dependency index {dep_index}"
                )
            if dep_index >= index:
                raise DependencyCycleError(
                    f"Task {index} has circular or forward dependency on task {dep_index}"
                )


def get_dependency_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ? "
        "ORDER BY position, rowid",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def get_dependent_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    """Tasks whose dependency list contains ``task_id``."""
    rows = db.execute(
        "SELECT task_id FROM task_dependencies WHERE depends_on_task_id = ? ORDER BY rowid",
        (task_id,),
    ).fetchall()
    return [r["task_id"] for r in rows]


def incomplete_dependencies(db: sqlite3.Connection, task_id: str) -> list[str]:
    """Dependency ids that are not COMPLETED, in dependency order.

    A dependency row pointing at a missing task counts as incomplete.
    """
    rows = db.execute(
        """SELECT d.depends_on_task_id AS dep_id, t.status AS status
           FROM task_dependencies d
           LEFT JOIN tasks t ON t.id = d.depends_on_task_id
           WHERE d.task_id = ?
           ORDER BY d.position, d.rowid""",
        (task_id,),
    ).fetchall()
    return [r["dep_id"] for r in rows if r["status"] != TaskStatus.COMPLETED.value]


def would_create_cycle(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> bool:
    """True if adding ``task_id -> depends_on_id`` closes a cycle."""
    if task_id == depends_on_id:
        return True
    seen = set()
    stack = [depends_on_id]
    while stack:
        current = stack.pop()
        if current == task_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(get_dependency_ids(db, current))
    return False
