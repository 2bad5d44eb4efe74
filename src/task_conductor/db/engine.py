"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    spec_id TEXT,
    project_id TEXT,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    type TEXT NOT NULL DEFAULT 'DEVELOPMENT' CHECK (type IN (
        'DEVELOPMENT', 'TEST', 'TDD', 'TESTING', 'REVIEW', 'DOCUMENTATION', 'DEPLOYMENT'
    )),
    status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN (
        'PENDING', 'ASSIGNED', 'IN_PROGRESS', 'COMPLETED', 'FAILED', 'BLOCKED', 'CANCELLED'
    )),
    priority INTEGER DEFAULT 3,
    progress INTEGER DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    acceptance_criteria TEXT DEFAULT '[]',
    files TEXT DEFAULT '[]',
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_failed_at TEXT,
    agent_id TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT DEFAULT (datetime('now')),
    removed_at TEXT
);

CREATE INDEX IF NOT EXISTS tasks_status_type ON tasks(status, type);
CREATE INDEX IF NOT EXISTS tasks_spec ON tasks(spec_id);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id),
    depends_on_task_id TEXT NOT NULL REFERENCES tasks(id),
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (task_id, depends_on_task_id)
);

CREATE INDEX IF NOT EXISTS task_dependencies_reverse ON task_dependencies(depends_on_task_id);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    type TEXT NOT NULL DEFAULT 'DEVELOPMENT',
    status TEXT NOT NULL DEFAULT 'IDLE' CHECK (status IN (
        'IDLE', 'RUNNING', 'COMPLETED', 'FAILED', 'STALLED'
    )),
    workspace_path TEXT,
    pid INTEGER,
    last_heartbeat TEXT,
    cpu_usage REAL DEFAULT 0,
    memory_usage INTEGER DEFAULT 0,
    exit_code INTEGER,
    stop_reason TEXT,
    failure_handled INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    terminated_at TEXT,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS agents_task_status ON agents(task_id, status);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL CHECK (queue IN ('agent-execution', 'test-execution', 'spec-processing')),
    job_key TEXT NOT NULL,
    task_id TEXT,
    payload TEXT DEFAULT '{}',
    priority INTEGER DEFAULT 3,
    status TEXT NOT NULL DEFAULT 'waiting' CHECK (status IN ('waiting', 'active', 'completed', 'failed')),
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    backoff_delay REAL DEFAULT 2.0,
    run_after TEXT NOT NULL,
    rerun_requested INTEGER DEFAULT 0,
    last_error TEXT,
    result TEXT,
    worker_id TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS jobs_open_key ON jobs(queue, job_key)
    WHERE status IN ('waiting', 'active');
CREATE INDEX IF NOT EXISTS jobs_claim ON jobs(queue, status, priority, run_after);

CREATE TABLE IF NOT EXISTS queue_state (
    queue TEXT PRIMARY KEY,
    paused INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);
"""


def utcnow(offset_seconds: float = 0.0) -> str:
    """Current UTC time as a sortable text timestamp."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    if offset_seconds:
        now += timedelta(seconds=offset_seconds)
    return now.isoformat(sep=" ", timespec="microseconds")


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open a connection to an already initialized database."""
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = open_db(db_path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path, initialize: bool = True):
    """Context manager for database connections."""
    conn = init_db(db_path) if initialize else open_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
