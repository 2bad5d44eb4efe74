"""Agent process entry point: ``python -m task_conductor.worker``.

Talks to the supervisor over the JSON-lines control channel: messages go out
on stdout and come in on stdin. Everything else, including the output of the
task command, goes to stderr.
"""

import logging
import os
import resource
import shlex
import subprocess
import sys
import threading
import time
import traceback
from pathlib import Path

import click
import psutil

from task_conductor.core import channel
from task_conductor.core.errors import ChannelError

logger = logging.getLogger("task_conductor.worker")


def apply_memory_limit(limit_mb: int):
    """Cap the address space of this process and its children."""
    if limit_mb <= 0:
        return
    limit = limit_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as e:
        logger.warning("Could not apply memory limit of %sMB: %s", limit_mb, e)


class AgentRunner:
    def __init__(
        self,
        agent_id: str,
        task_id: str,
        workspace: Path,
        heartbeat_interval: float = 10.0,
        command: str | None = None,
    ):
        self.agent_id = agent_id
        self.task_id = task_id
        self.workspace = workspace
        self.heartbeat_interval = heartbeat_interval
        self.command = command
        self.shutdown = threading.Event()
        self.shutdown_reason: str | None = None
        self._write_lock = threading.Lock()
        self._process = psutil.Process()
        self._children: dict[int, psutil.Process] = {}

    # ── Channel ─────────────────────────────────────────────────────────────

    def send(self, msg_type: str, data: dict | None = None):
        line = channel.encode_message(msg_type, data)
        with self._write_lock:
            try:
                sys.stdout.write(line)
                sys.stdout.flush()
            except (BrokenPipeError, ValueError):
                self._request_shutdown("control-channel-closed")

    def _request_shutdown(self, reason: str):
        if not self.shutdown.is_set():
            self.shutdown_reason = reason
            self.shutdown.set()
            logger.info("Shutdown requested: %s", reason)

    def _listen(self):
        for line in sys.stdin:
            if not line.strip():
                continue
            try:
                message = channel.decode_message(line)
            except ChannelError as e:
                logger.warning("%s", e)
                continue
            if message["type"] == channel.SHUTDOWN:
                self._request_shutdown(message["data"].get("reason", "requested"))
                return
        self._request_shutdown("control-channel-closed")

    # ── Heartbeat ───────────────────────────────────────────────────────────

    def usage(self) -> dict:
        """Current CPU percent and resident memory (bytes) of this process
        and every descendant, such as the running task command.

        CPU is measured since the previous call, so the first sample is 0.
        """
        cpu = self._process.cpu_percent(interval=None)
        memory = self._process.memory_info().rss
        children = {}
        for child in self._process.children(recursive=True):
            # cpu_percent is measured against the previous sample of the same object.
            child = self._children.get(child.pid, child)
            try:
                cpu += child.cpu_percent(interval=None)
                memory += child.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            children[child.pid] = child
        self._children = children
        return {"cpu": round(cpu, 2), "memory": memory, "ts": time.time()}

    def _heartbeat(self):
        while not self.shutdown.wait(self.heartbeat_interval):
            self.send(channel.HEARTBEAT, self.usage())

    # ── Work ────────────────────────────────────────────────────────────────

    def run(self) -> int:
        self.send(channel.HEARTBEAT, self.usage())
        threading.Thread(target=self._listen, name="control-in", daemon=True).start()
        threading.Thread(target=self._heartbeat, name="heartbeat", daemon=True).start()

        self.send(channel.PROGRESS, {"status": "started", "percent": 0})
        try:
            self._execute()
        except Exception as e:
            logger.exception("Task %s failed", self.task_id)
            self.send(channel.ERROR, {"message": str(e), "stack": traceback.format_exc()})
            return 1
        if self.shutdown.is_set():
            self.send(channel.LOG, {"level": "info", "message": f"Stopped: {self.shutdown_reason}"})
            return 1
        self.send(channel.PROGRESS, {"status": "completed", "percent": 100})
        return 0

    def _execute(self):
        if not self.command:
            logger.info("No task command configured for %s", self.task_id)
            return
        self.send(channel.LOG, {"level": "info", "message": f"Running: {self.command}"})
        process = subprocess.Popen(
            shlex.split(self.command),
            cwd=self.workspace,
            stdin=subprocess.DEVNULL,
            stdout=sys.stderr,
            stderr=sys.stderr,
        )
        while process.poll() is None:
            if self.shutdown.wait(0.2):
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                return
        if process.returncode != 0:
            raise RuntimeError(f"Task command exited with code {process.returncode}")


@click.command()
@click.option("--agent-id", envvar="TC_AGENT_ID", required=True)
@click.option("--task-id", envvar="TC_TASK_ID", required=True)
@click.option("--workspace", envvar="TC_WORKSPACE_PATH", required=True,
              type=click.Path(file_okay=False, path_type=Path))
def main(agent_id: str, task_id: str, workspace: Path):
    """Run one task as a supervised agent."""
    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get("TC_LOG_LEVEL", "INFO").upper(),
        format=f"%(asctime)s {agent_id} %(levelname)s %(message)s",
    )
    apply_memory_limit(int(os.environ.get("TC_MEMORY_LIMIT_MB", "1024")))
    runner = AgentRunner(
        agent_id,
        task_id,
        workspace,
        heartbeat_interval=float(os.environ.get("TC_HEARTBEAT_INTERVAL", "10")),
        command=os.environ.get("TC_TASK_COMMAND"),
    )
    sys.exit(runner.run())


if __name__ == "__main__":
    main()
