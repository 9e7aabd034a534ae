from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for orchestrator errors."""


class ConfigError(RelayError):
    """Raised when the configuration file cannot be used."""


class StateStoreError(RelayError):
    """Raised when persisted-state operations fail."""


class ConcurrentUpdateError(StateStoreError):
    """Raised when a collection changed between reading and committing it."""


class PipelineNotFoundError(RelayError):
    """Raised when an operation targets a task id with no pipeline."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Pipeline not found for task {task_id}")
        self.task_id = task_id


class StageNotReadyError(RelayError):
    """Raised when a stage is re-run before its prerequisites completed."""


class StageCriticalFailure(RelayError):
    """Raised by the stage runner when a critical stage fails.

    The failure has already been recorded on the pipeline when this is raised.
    """

    def __init__(self, stage: str, message: str, *, task_id: str | None = None) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.task_id = task_id
        self.reason = message


class StageNonCriticalFailure(RelayError):
    """Describes a tolerated stage failure. Returned, never raised by the runner."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.reason = message


class ReconciliationQueryError(RelayError):
    """Raised when an external query made during a poll tick fails."""


class PRDiscoveryTimeout(RelayError):
    """Describes a PR tracking entry that expired before a pull request appeared."""

    def __init__(self, task_id: str, elapsed_seconds: float, timeout_seconds: float) -> None:
        super().__init__(
            f"No pull request for task {task_id} after {elapsed_seconds:.0f}s "
            f"(timeout {timeout_seconds:.0f}s)"
        )
        self.task_id = task_id
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds


class TrackerError(RelayError):
    """Raised when the work-tracking service rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AgentExecutionError(RelayError):
    """Raised when an agent process or API call fails."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentExecutionError):
    """Raised when an agent exceeds its configured timeout."""


class AgentProcessError(AgentExecutionError):
    """Raised when an agent process cannot be launched or observed."""
