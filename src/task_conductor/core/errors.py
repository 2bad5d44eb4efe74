"""Error taxonomy for the orchestration core."""


class OrchestratorError(Exception):
    """Base class for orchestration errors.

    ``retryable`` tells the job queue whether a failed job may be attempted
    again under its backoff policy.
    """

    retryable = True


class CapacityExceeded(OrchestratorError):
    """Raised when the agent concurrency ceiling is reached."""

    retryable = False

    def __init__(self, max_agents: int):
        super().__init__(
            f"Cannot spawn agent: max concurrent agents ({max_agents}) reached"
        )
        self.max_agents = max_agents


class DependenciesNotMet(OrchestratorError):
    """Raised when a task is attempted before its prerequisites complete."""

    retryable = False

    def __init__(self, task_id: str, incomplete: list[str]):
        super().__init__(
            f"Task '{task_id}' has {len(incomplete)} incomplete dependencies: "
            + ", ".join(incomplete)
        )
        self.task_id = task_id
        self.incomplete = incomplete


class DependencyCycleError(OrchestratorError, ValueError):
    """Raised when a dependency edge would be forward, self-referencing or cyclic."""

    retryable = False


class TaskNotFound(OrchestratorError, ValueError):
    retryable = False

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class AgentNotFound(OrchestratorError, ValueError):
    retryable = False

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class InvalidTransition(OrchestratorError, ValueError):
    retryable = False


class SpawnError(OrchestratorError):
    """Raised when a workspace or worker process cannot be created."""


class WorkerStopping(OrchestratorError):
    """Raised inside a job handler when its worker pool is shutting down."""


class ChannelError(OrchestratorError, ValueError):
    """Raised for malformed control-channel messages."""
