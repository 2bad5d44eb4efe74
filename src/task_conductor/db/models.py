"""Data models for the task conductor."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskType(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    TEST = "TEST"
    TDD = "TDD"
    TESTING = "TESTING"
    REVIEW = "REVIEW"
    DOCUMENTATION = "DOCUMENTATION"
    DEPLOYMENT = "DEPLOYMENT"


# Agents mirror the type of the task they are bound to.
AgentType = TaskType


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


class AgentStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STALLED = "STALLED"


ACTIVE_AGENT_STATUSES = (AgentStatus.IDLE, AgentStatus.RUNNING)


class QueueClass(str, Enum):
    AGENT_EXECUTION = "agent-execution"
    TEST_EXECUTION = "test-execution"
    SPEC_PROCESSING = "spec-processing"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(int, Enum):
    """Lower number runs first."""

    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


@dataclass
class Task:
    id: str
    title: str
    spec_id: str | None = None
    project_id: str | None = None
    description: str = ""
    type: TaskType = TaskType.DEVELOPMENT
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 3
    progress: int = 0
    acceptance_criteria: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    retry_count: int = 0
    last_error: str | None = None
    last_failed_at: datetime | None = None
    agent_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    removed_at: datetime | None = None
    dependencies: list[str] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Agent:
    id: str
    task_id: str
    type: AgentType = AgentType.DEVELOPMENT
    status: AgentStatus = AgentStatus.IDLE
    workspace_path: str | None = None
    pid: int | None = None
    last_heartbeat: datetime | None = None
    cpu_usage: float = 0.0
    memory_usage: int = 0
    exit_code: int | None = None
    stop_reason: str | None = None
    failure_handled: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    terminated_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Job:
    id: int
    queue: QueueClass
    job_key: str
    task_id: str | None = None
    payload: dict = field(default_factory=dict)
    priority: int = JobPriority.NORMAL
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    max_attempts: int = 3
    backoff_delay: float = 2.0
    run_after: datetime | None = None
    rerun_requested: bool = False
    last_error: str | None = None
    result: dict | None = None
    worker_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
