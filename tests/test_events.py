"""Tests for the event publisher and the Slack alert bus."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from task_conductor.core.events import (
    ActivityType,
    EventPublisher,
    LoggingEventBus,
    MemoryEventBus,
    Topic,
)
from task_conductor.db.models import TaskStatus
from task_conductor.integrations import slack


@pytest.fixture
def bus():
    return MemoryEventBus()


@pytest.fixture
def events(bus):
    return EventPublisher([bus])


class TestEventPublisher:
    def test_task_update(self, events, bus):
        task = SimpleNamespace(id="t1", title="Build API", spec_id="s1", status=TaskStatus.IN_PROGRESS, progress=40)
        events.task_update(task, agent_id="agent-1")
        [message] = bus.messages(Topic.TASK_UPDATE)
        assert message["type"] == "TASK_UPDATE"
        assert message["task_id"] == "t1"
        assert message["status"] == "IN_PROGRESS"
        assert message["progress"] == 40
        assert message["agent_id"] == "agent-1"
        assert "timestamp" in message

    def test_activity(self, events, bus):
        events.activity(ActivityType.TASK_CREATED, "Task created", task_id="t1", spec_id="s1")
        [message] = bus.messages(Topic.ACTIVITY_LOG)
        assert message["event_type"] == "TASK_CREATED"
        assert message["metadata"] == {}

    def test_spec_update(self, events, bus):
        events.spec_update("s1", "TASKS_CREATED", task_count=3)
        [message] = bus.messages(Topic.SPEC_UPDATE)
        assert message["status"] == "TASKS_CREATED"
        assert message["task_count"] == 3

    def test_alert_levels(self, events, bus):
        events.alert("critical", "disk full", {"host": "a"})
        assert bus.messages(Topic.SYSTEM_ALERT)[0]["level"] == "critical"
        with pytest.raises(ValueError):
            events.alert("panic", "nope")

    def test_failing_bus_does_not_raise(self, bus):
        broken = MagicMock()
        broken.deliver.side_effect = RuntimeError("down")
        events = EventPublisher([broken, bus])
        events.spec_update("s1", "QUEUED")
        assert len(bus.messages()) == 1

    def test_subscribe(self, events):
        late = MemoryEventBus()
        events.subscribe(late)
        events.spec_update("s1", "QUEUED")
        assert len(late.messages()) == 1

    def test_memory_bus_is_bounded(self):
        bus = MemoryEventBus(maxlen=2)
        events = EventPublisher([bus])
        for i in range(5):
            events.spec_update(f"s{i}", "QUEUED")
        assert [m["spec_id"] for m in bus.messages()] == ["s3", "s4"]
        bus.clear()
        assert bus.messages() == []

    def test_logging_bus(self, caplog):
        events = EventPublisher([LoggingEventBus()])
        with caplog.at_level("INFO", logger="task_conductor.core.events"):
            events.alert("warning", "agent stalled")
        assert "agent stalled" in caplog.text


class TestSlackAlertBus:
    @patch("task_conductor.integrations.slack.send_message")
    def test_posts_alerts_at_min_level(self, mock_send):
        bus = slack.SlackAlertBus("xoxb-test", "#alerts", min_level="error")
        events = EventPublisher([bus])
        events.alert("warning", "ignored")
        events.alert("critical", "task failed", {"task_id": "t1"})
        events.spec_update("s1", "QUEUED")
        mock_send.assert_called_once()
        args, kwargs = mock_send.call_args
        assert args == ("xoxb-test", "#alerts", "task failed")
        assert "CRITICAL" in kwargs["blocks"][0]["text"]["text"]
        assert "task_id: `t1`" in kwargs["blocks"][1]["elements"][0]["text"]

    @patch("task_conductor.integrations.slack.send_message")
    def test_posts_finished_tasks(self, mock_send):
        events = EventPublisher([slack.SlackAlertBus("xoxb-test", "#alerts")])
        running = SimpleNamespace(id="t1", title="Build API", spec_id="s1",
                                  status=TaskStatus.IN_PROGRESS, progress=40)
        events.task_update(running)
        mock_send.assert_not_called()

        running.status = TaskStatus.COMPLETED
        events.task_update(running)
        args, kwargs = mock_send.call_args
        assert args == ("xoxb-test", "#alerts", "Task Build API COMPLETED")
        text = kwargs["blocks"][0]["text"]["text"]
        assert "`t1`" in text
        assert "Spec: s1" in text

    def test_unknown_min_level(self):
        with pytest.raises(ValueError):
            slack.SlackAlertBus("xoxb-test", "#alerts", min_level="loud")

    def test_send_message_without_token(self):
        with pytest.raises(slack.SlackError):
            slack.send_message(None, "#alerts", "hello")

    @patch("task_conductor.integrations.slack.get_client")
    def test_send_message(self, mock_get_client):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C123", "ts": "1.2"}
        mock_get_client.return_value = client
        msg = slack.send_message("xoxb-test", "#alerts", "hello")
        assert msg == slack.SlackMessage(channel="C123", ts="1.2", text="hello")
        client.chat_postMessage.assert_called_once_with(channel="#alerts", text="hello", blocks=None)

    def test_format_alert_without_metadata(self):
        blocks = slack.format_alert("info", "all good")
        assert len(blocks) == 1
        assert ":information_source:" in blocks[0]["text"]["text"]
