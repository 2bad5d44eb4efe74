"""Event publisher: fire-and-forget fan-out of state changes to observers."""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    SPEC_UPDATE = "SPEC_UPDATE"
    TASK_UPDATE = "TASK_UPDATE"
    AGENT_UPDATE = "AGENT_UPDATE"
    ACTIVITY_LOG = "ACTIVITY_LOG"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class ActivityType(str, Enum):
    TASK_CREATED = "TASK_CREATED"
    TASK_STARTED = "TASK_STARTED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    AGENT_STARTED = "AGENT_STARTED"
    AGENT_COMPLETED = "AGENT_COMPLETED"
    AGENT_FAILED = "AGENT_FAILED"
    SPEC_UPDATED = "SPEC_UPDATED"


ALERT_LEVELS = {"info": 0, "warning": 1, "error": 2, "critical": 3}


# ── Buses ───────────────────────────────────────────────────────────────────


class MemoryEventBus:
    """Keeps the most recent messages in a bounded ring."""

    def __init__(self, maxlen: int = 1000):
        self._messages: deque = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def deliver(self, topic: Topic, message: dict):
        with self._lock:
            self._messages.append((topic, message))

    def messages(self, topic: Topic | None = None) -> list[dict]:
        with self._lock:
            return [m for t, m in self._messages if topic is None or t == topic]

    def clear(self):
        with self._lock:
            self._messages.clear()


class LoggingEventBus:
    """Writes every message to the module logger."""

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def deliver(self, topic: Topic, message: dict):
        if topic == Topic.SYSTEM_ALERT:
            level = logging.WARNING if ALERT_LEVELS.get(message.get("level"), 0) else logging.INFO
        else:
            level = self.level
        logger.log(level, "%s %s", topic.value, message)


# ── Publisher ───────────────────────────────────────────────────────────────


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _value(v):
    return getattr(v, "value", v)


class EventPublisher:
    """Stamps messages and hands them to every bus.

    Publishing never raises: a failing bus is logged and skipped so state
    changes are never rolled back by an observer.
    """

    def __init__(self, buses: list | None = None):
        self.buses = list(buses or [])

    def subscribe(self, bus):
        self.buses.append(bus)

    def publish(self, topic: Topic, payload: dict) -> dict:
        message = dict(payload)
        message["type"] = topic.value
        message["timestamp"] = _timestamp()
        for bus in list(self.buses):
            try:
                bus.deliver(topic, message)
            except Exception:
                logger.exception("Event bus %r failed on %s", bus, topic.value)
        return message

    def task_update(self, task, **extra) -> dict:
        payload = {
            "task_id": task.id,
            "title": task.title,
            "spec_id": task.spec_id,
            "status": _value(task.status),
            "progress": task.progress,
        }
        payload.update(extra)
        return self.publish(Topic.TASK_UPDATE, payload)

    def agent_update(self, agent, **extra) -> dict:
        payload = {
            "agent_id": agent.id,
            "task_id": agent.task_id,
            "status": _value(agent.status),
        }
        payload.update(extra)
        return self.publish(Topic.AGENT_UPDATE, payload)

    def spec_update(self, spec_id: str, status: str, **extra) -> dict:
        payload = {"spec_id": spec_id, "status": status}
        payload.update(extra)
        return self.publish(Topic.SPEC_UPDATE, payload)

    def activity(
        self,
        event_type: ActivityType,
        message: str,
        task_id: str | None = None,
        agent_id: str | None = None,
        spec_id: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        return self.publish(
            Topic.ACTIVITY_LOG,
            {
                "event_type": _value(event_type),
                "message": message,
                "task_id": task_id,
                "agent_id": agent_id,
                "spec_id": spec_id,
                "metadata": metadata or {},
            },
        )

    def alert(self, level: str, message: str, metadata: dict | None = None) -> dict:
        if level not in ALERT_LEVELS:
            raise ValueError(f"Unknown alert level: {level}")
        return self.publish(
            Topic.SYSTEM_ALERT,
            {"level": level, "message": message, "metadata": metadata or {}},
        )
