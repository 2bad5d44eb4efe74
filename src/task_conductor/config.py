"""Configuration loading from environment variables."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".task_conductor" / "tc.db")
    workspace_dir: Path = field(default_factory=lambda: Path.cwd() / "projects")
    slack_bot_token: str | None = None
    alert_channel: str | None = None

    # Agent supervision
    max_concurrent_agents: int = 5
    agent_memory_limit_mb: int = 1024
    agent_timeout: float = 3600.0
    heartbeat_interval: float = 10.0
    stop_grace_period: float = 5.0
    worker_command: list[str] | None = None

    # Health and recovery sweeps
    stall_threshold: float = 120.0
    health_check_interval: float = 30.0
    recovery_interval: float = 300.0

    # Retry policy for failed agents
    retry_max: int = 3
    retry_delay: float = 5.0
    retry_backoff: float = 2.0

    # Job queue
    queue_attempts: int = 3
    queue_backoff_delay: float = 2.0
    queue_poll_interval: float = 1.0
    slot_poll_interval: float = 5.0
    agent_concurrency: int = 5
    test_concurrency: int = 5
    spec_concurrency: int = 2

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TC_DB_PATH"):
            config.db_path = Path(db)

        if ws := os.environ.get("TC_WORKSPACE_DIR"):
            config.workspace_dir = Path(ws)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.alert_channel = os.environ.get("TC_ALERT_CHANNEL")

        if cmd := os.environ.get("TC_WORKER_COMMAND"):
            config.worker_command = shlex.split(cmd)

        for attr, var, cast in _NUMERIC_ENV:
            if raw := os.environ.get(var):
                setattr(config, attr, cast(raw))

        return config


_NUMERIC_ENV = [
    ("max_concurrent_agents", "TC_MAX_CONCURRENT_AGENTS", int),
    ("agent_memory_limit_mb", "TC_AGENT_MEMORY_LIMIT_MB", int),
    ("agent_timeout", "TC_AGENT_TIMEOUT", float),
    ("heartbeat_interval", "TC_HEARTBEAT_INTERVAL", float),
    ("stop_grace_period", "TC_STOP_GRACE_PERIOD", float),
    ("stall_threshold", "TC_STALL_THRESHOLD", float),
    ("health_check_interval", "TC_HEALTH_CHECK_INTERVAL", float),
    ("recovery_interval", "TC_RECOVERY_INTERVAL", float),
    ("retry_max", "TC_RETRY_MAX", int),
    ("retry_delay", "TC_RETRY_DELAY", float),
    ("retry_backoff", "TC_RETRY_BACKOFF", float),
    ("queue_attempts", "TC_QUEUE_ATTEMPTS", int),
    ("queue_backoff_delay", "TC_QUEUE_BACKOFF_DELAY", float),
    ("queue_poll_interval", "TC_QUEUE_POLL_INTERVAL", float),
    ("slot_poll_interval", "TC_SLOT_POLL_INTERVAL", float),
    ("agent_concurrency", "TC_AGENT_CONCURRENCY", int),
    ("test_concurrency", "TC_TEST_CONCURRENCY", int),
    ("spec_concurrency", "TC_SPEC_CONCURRENCY", int),
]


def get_config() -> Config:
    return Config.from_env()
