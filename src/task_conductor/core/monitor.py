"""Health monitor: periodic liveness and resource checks over live agents."""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from task_conductor.core.agents import get_agent, list_agents, set_agent_status
from task_conductor.core.periodic import PeriodicWorker
from task_conductor.db.engine import get_db
from task_conductor.db.models import ACTIVE_AGENT_STATUSES, Agent, AgentStatus

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass
class HealthCheck:
    agent_id: str
    task_id: str
    status: AgentStatus
    seconds_since_heartbeat: float
    stalled: bool
    memory_mb: float
    memory_alert: bool
    cpu_usage: float

    @property
    def healthy(self) -> bool:
        return not (self.stalled or self.memory_alert)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def check_agent_health(
    agent: Agent,
    now: datetime | None = None,
    stall_threshold: float = 120,
    memory_limit_mb: int = 1024,
    memory_alert_ratio: float = 0.9,
) -> HealthCheck:
    """Evaluate one agent. Silence is measured from its last heartbeat, or
    from its start when it has not sent one yet."""
    now = now or _now()
    since = agent.last_heartbeat or agent.started_at or agent.created_at
    silent = (now - since).total_seconds() if since else float("inf")
    memory_mb = (agent.memory_usage or 0) / MB
    return HealthCheck(
        agent_id=agent.id,
        task_id=agent.task_id,
        status=agent.status,
        seconds_since_heartbeat=silent,
        stalled=silent > stall_threshold,
        memory_mb=memory_mb,
        memory_alert=memory_mb > memory_limit_mb * memory_alert_ratio,
        cpu_usage=agent.cpu_usage or 0.0,
    )


def get_health_report(db: sqlite3.Connection) -> dict:
    """Summary of non-terminal agents. Read-only."""
    agents = list_agents(db, status=ACTIVE_AGENT_STATUSES + (AgentStatus.STALLED,))
    by_status = {s.value: 0 for s in (AgentStatus.RUNNING, AgentStatus.IDLE, AgentStatus.STALLED)}
    for agent in agents:
        by_status[agent.status.value] += 1
    count = len(agents)
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_agents": count,
        "by_status": by_status,
        "average_cpu": round(sum(a.cpu_usage for a in agents) / count, 2) if count else 0.0,
        "average_memory_mb": (
            round(sum(a.memory_usage for a in agents) / count / MB, 2) if count else 0.0
        ),
        "stalled_agents": [a.id for a in agents if a.status == AgentStatus.STALLED],
    }


class HealthMonitor(PeriodicWorker):
    """Marks silent agents STALLED and has the supervisor stop them.

    A stalled agent the supervisor does not know about (left over from a
    previous process) is marked FAILED directly; its task is picked up by
    the recovery sweep.
    """

    name = "health-monitor"

    def __init__(
        self,
        db_path: Path,
        supervisor=None,
        events=None,
        interval: float = 30,
        stall_threshold: float = 120,
        memory_limit_mb: int = 1024,
        memory_alert_ratio: float = 0.9,
    ):
        super().__init__(interval)
        self.db_path = db_path
        self.supervisor = supervisor
        self.events = events
        self.stall_threshold = stall_threshold
        self.memory_limit_mb = memory_limit_mb
        self.memory_alert_ratio = memory_alert_ratio

    def run_once(self):
        self.check_once()

    def check_agent_health(self, agent: Agent, now: datetime | None = None) -> HealthCheck:
        return check_agent_health(
            agent, now,
            stall_threshold=self.stall_threshold,
            memory_limit_mb=self.memory_limit_mb,
            memory_alert_ratio=self.memory_alert_ratio,
        )

    def check_once(self, now: datetime | None = None) -> list[HealthCheck]:
        with get_db(self.db_path, initialize=False) as db:
            agents = list_agents(db, status=ACTIVE_AGENT_STATUSES)
        checks = []
        for agent in agents:
            check = self.check_agent_health(agent, now)
            checks.append(check)
            if check.stalled:
                self._handle_stall(agent, check)
            elif check.memory_alert:
                logger.warning(
                    "Agent %s memory at %.0fMB of %sMB", agent.id, check.memory_mb, self.memory_limit_mb,
                )
                if self.events is not None:
                    self.events.alert(
                        "warning",
                        f"Agent {agent.id} is using {check.memory_mb:.0f}MB of memory",
                        {"agent_id": agent.id, "task_id": agent.task_id,
                         "memory_mb": round(check.memory_mb, 1), "limit_mb": self.memory_limit_mb},
                    )
        return checks

    def _handle_stall(self, agent: Agent, check: HealthCheck):
        with get_db(self.db_path, initialize=False) as db:
            if not set_agent_status(db, agent.id, AgentStatus.STALLED, expected=ACTIVE_AGENT_STATUSES):
                return
            stalled = get_agent(db, agent.id)

        logger.warning(
            "Agent %s for task '%s' stalled: no heartbeat for %.0fs",
            agent.id, agent.task_id, check.seconds_since_heartbeat,
        )
        if self.events is not None:
            self.events.agent_update(stalled)
            self.events.alert(
                "warning",
                f"Agent {agent.id} stalled: no heartbeat for {check.seconds_since_heartbeat:.0f}s",
                {"agent_id": agent.id, "task_id": agent.task_id},
            )

        if self.supervisor is not None and self.supervisor.is_active(agent.id):
            self.supervisor.stop(agent.id, "stalled")
        else:
            with get_db(self.db_path, initialize=False) as db:
                set_agent_status(
                    db, agent.id, AgentStatus.FAILED,
                    expected=(AgentStatus.STALLED,), stop_reason="stalled",
                )

    def get_health_report(self) -> dict:
        with get_db(self.db_path, initialize=False) as db:
            return get_health_report(db)
