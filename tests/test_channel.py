"""Tests for control-channel framing."""

import json

import pytest

from task_conductor.core import channel
from task_conductor.core.errors import ChannelError


class TestEncode:
    def test_one_line_per_message(self):
        line = channel.encode_message(channel.HEARTBEAT, {"cpu": 1.5, "memory": 2048})
        assert line.endswith("\n")
        assert line.count("\n") == 1
        assert json.loads(line) == {"type": "heartbeat", "data": {"cpu": 1.5, "memory": 2048}}

    def test_missing_data_is_empty_object(self):
        assert json.loads(channel.encode_message(channel.SHUTDOWN)) == {"type": "shutdown", "data": {}}

    def test_unknown_type(self):
        with pytest.raises(ChannelError):
            channel.encode_message("gossip", {})


class TestDecode:
    def test_decode(self):
        message = channel.decode_message('{"type": "progress", "data": {"percent": 50}}')
        assert message["type"] == channel.PROGRESS
        assert message["data"]["percent"] == 50

    def test_null_data(self):
        assert channel.decode_message('{"type": "log", "data": null}')["data"] == {}

    @pytest.mark.parametrize(
        "line",
        ["not json", "[1, 2]", '{"data": {}}', '{"type": 3}', '{"type": "log", "data": [1]}'],
    )
    def test_malformed(self, line):
        with pytest.raises(ChannelError):
            channel.decode_message(line)

    def test_unknown_type_passes_through(self):
        # The reader decides what to do with types it does not handle.
        assert channel.decode_message('{"type": "custom"}')["type"] == "custom"
