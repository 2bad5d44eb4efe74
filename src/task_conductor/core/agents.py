"""Agent record store.

Durable agent rows only; live process handles are owned by
``core.supervisor.AgentSupervisor``. Status changes go through status-gated
UPDATEs so the exit path, the health monitor and recovery never overwrite
each other's terminal decisions.
"""

import os
import sqlite3
import uuid

from task_conductor.core.errors import AgentNotFound
from task_conductor.db.engine import parse_dt, utcnow
from task_conductor.db.models import (
    ACTIVE_AGENT_STATUSES,
    Agent,
    AgentStatus,
    AgentType,
)


def new_agent_id() -> str:
    return f"agent-{uuid.uuid4().hex[:12]}"


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        task_id=row["task_id"],
        type=AgentType(row["type"]),
        status=AgentStatus(row["status"]),
        workspace_path=row["workspace_path"],
        pid=row["pid"],
        last_heartbeat=parse_dt(row["last_heartbeat"]),
        cpu_usage=row["cpu_usage"] or 0.0,
        memory_usage=row["memory_usage"] or 0,
        exit_code=row["exit_code"],
        stop_reason=row["stop_reason"],
        failure_handled=bool(row["failure_handled"]),
        created_at=parse_dt(row["created_at"]),
        started_at=parse_dt(row["started_at"]),
        terminated_at=parse_dt(row["terminated_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def _statuses(values) -> list[str]:
    return [getattr(v, "value", v) for v in values]


# ── Records ─────────────────────────────────────────────────────────────────


def create_agent(
    db: sqlite3.Connection,
    task_id: str,
    agent_type: AgentType | str = AgentType.DEVELOPMENT,
    workspace_path: str | None = None,
    agent_id: str | None = None,
) -> Agent:
    """Insert an IDLE agent record bound to a task."""
    agent_id = agent_id or new_agent_id()
    db.execute(
        """INSERT INTO agents (id, task_id, type, status, workspace_path)
           VALUES (?, ?, ?, 'IDLE', ?)""",
        (agent_id, task_id, AgentType(getattr(agent_type, "value", agent_type)).value, workspace_path),
    )
    db.commit()
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def require_agent(db: sqlite3.Connection, agent_id: str) -> Agent:
    agent = get_agent(db, agent_id)
    if agent is None:
        raise AgentNotFound(agent_id)
    return agent


def list_agents(
    db: sqlite3.Connection,
    status: AgentStatus | str | list | tuple | None = None,
    task_id: str | None = None,
) -> list[Agent]:
    """List agents, optionally filtered by one or more statuses and a task."""
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if status:
        values = _statuses(status if isinstance(status, (list, tuple)) else [status])
        query += f" AND status IN ({', '.join('?' for _ in values)})"
        params += values
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    query += " ORDER BY created_at DESC, rowid DESC"
    return [_row_to_agent(r) for r in db.execute(query, params).fetchall()]


def find_active_agent(db: sqlite3.Connection, task_id: str) -> Agent | None:
    """The IDLE or RUNNING agent bound to a task, if any."""
    active = list_agents(db, status=ACTIVE_AGENT_STATUSES, task_id=task_id)
    return active[0] if active else None


def mark_running(db: sqlite3.Connection, agent_id: str, pid: int) -> bool:
    cur = db.execute(
        """UPDATE agents
           SET status = 'RUNNING', pid = ?, started_at = ?, updated_at = datetime('now')
           WHERE id = ? AND status = 'IDLE'""",
        (pid, utcnow(), agent_id),
    )
    db.commit()
    return cur.rowcount > 0


def record_heartbeat(
    db: sqlite3.Connection,
    agent_id: str,
    cpu: float | None = None,
    memory: int | None = None,
) -> bool:
    """Record a heartbeat. Ignored once the agent has left RUNNING/IDLE."""
    cur = db.execute(
        """UPDATE agents
           SET last_heartbeat = ?,
               cpu_usage = COALESCE(?, cpu_usage),
               memory_usage = COALESCE(?, memory_usage),
               updated_at = datetime('now')
           WHERE id = ? AND status IN ('IDLE', 'RUNNING')""",
        (utcnow(), cpu, memory, agent_id),
    )
    db.commit()
    return cur.rowcount > 0


def set_agent_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: AgentStatus,
    expected: tuple | list | None = None,
    stop_reason: str | None = None,
) -> bool:
    """Set an agent's status, optionally only from one of ``expected``."""
    sets = ["status = ?", "updated_at = datetime('now')"]
    params: list = [status.value]
    if stop_reason is not None:
        sets.append("stop_reason = COALESCE(stop_reason, ?)")
        params.append(stop_reason)
    if status in (AgentStatus.COMPLETED, AgentStatus.FAILED):
        sets.append("terminated_at = COALESCE(terminated_at, ?)")
        params.append(utcnow())
    query = f"UPDATE agents SET {', '.join(sets)} WHERE id = ?"
    params.append(agent_id)
    if expected is not None:
        values = _statuses(expected)
        query += f" AND status IN ({', '.join('?' for _ in values)})"
        params += values
    cur = db.execute(query, params)
    db.commit()
    return cur.rowcount > 0


def record_exit(db: sqlite3.Connection, agent_id: str, exit_code: int | None) -> None:
    db.execute(
        """UPDATE agents
           SET exit_code = ?, terminated_at = COALESCE(terminated_at, ?),
               updated_at = datetime('now')
           WHERE id = ?""",
        (exit_code, utcnow(), agent_id),
    )
    db.commit()


def claim_failure(db: sqlite3.Connection, agent_id: str) -> bool:
    """Take ownership of accounting this agent's failure.

    Only the first caller gets True; later reports of the same failure are
    no-ops.
    """
    cur = db.execute(
        "UPDATE agents SET failure_handled = 1 WHERE id = ? AND failure_handled = 0",
        (agent_id,),
    )
    db.commit()
    return cur.rowcount > 0


def delete_agent(db: sqlite3.Connection, agent_id: str) -> bool:
    cur = db.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
    db.commit()
    return cur.rowcount > 0


def delete_failed_agents(db: sqlite3.Connection, older_than: str) -> int:
    """Delete FAILED agent records terminated before ``older_than``."""
    cur = db.execute(
        """DELETE FROM agents
           WHERE status = 'FAILED'
             AND COALESCE(terminated_at, updated_at, created_at) < ?""",
        (older_than,),
    )
    db.commit()
    return cur.rowcount


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it
