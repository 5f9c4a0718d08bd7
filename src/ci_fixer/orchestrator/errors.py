"""Error taxonomy shared by the orchestrator and stage handlers."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures."""


class ValidationError(OrchestratorError):
    """Malformed input; never retried."""


class SecurityError(OrchestratorError):
    """Untrusted input or authorization failure; never retried."""


class TransientError(OrchestratorError):
    """External dependency hiccup (LLM endpoint, Git host, compiler)."""


class HandlerTimeoutError(TransientError):
    """Handler did not return within the configured budget."""

    def __init__(self, *, task_type: str, timeout_seconds: float) -> None:
        super().__init__(f"{task_type} handler timed out after {timeout_seconds:g}s")
        self.task_type = task_type
        self.timeout_seconds = timeout_seconds


class PermanentHandlerError(OrchestratorError):
    """Handler decided that no further attempt can succeed."""


class RetryExhausted(OrchestratorError):
    """Retryable failure that consumed the whole attempt budget."""

    def __init__(self, *, attempt: int, max_attempts: int, last_error: str) -> None:
        super().__init__(f"Retries exhausted ({attempt}/{max_attempts}): {last_error}")
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.last_error = last_error


class PipelineConfigurationError(OrchestratorError):
    """Stage graph cannot route a task."""


class DuplicateBuildError(OrchestratorError):
    """A build with the same job and build number is already registered."""

    def __init__(self, *, job: str, build_number: int) -> None:
        super().__init__(f"Build already exists: job={job} build_number={build_number}")
        self.job = job
        self.build_number = build_number


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class BuildNotFoundError(OrchestratorError):
    def __init__(self, build_id: int) -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id


class InvalidTaskStateError(OrchestratorError):
    """Operator action is not allowed from the task's current status."""

    def __init__(self, *, task_id: int, current_status: str, expected: str) -> None:
        super().__init__(
            f"Task {task_id} is not in {expected} status (current status: {current_status})",
        )
        self.task_id = task_id
        self.current_status = current_status
        self.expected = expected
