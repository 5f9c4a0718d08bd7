"""Domain models for the build remediation task queue."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    """Known pipeline stages. Task types are stored as plain strings so new
    stages can be registered without touching this enum."""

    PLAN = "PLAN"
    REPO = "REPO"
    RETRIEVE = "RETRIEVE"
    PATCH = "PATCH"
    VALIDATE = "VALIDATE"
    PR = "PR"
    NOTIFY = "NOTIFY"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


CLAIMABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.RETRY)
TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)

# Payload key naming the task that replaced a failed one on a loop-back.
SUPERSEDED_BY_KEY = "supersededBy"


class BuildStatus(str, Enum):
    """Build aggregate outcome."""

    PROCESSING = "PROCESSING"
    FIXED = "FIXED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    """Kinds of NOTIFY tasks enqueued by the orchestrator."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    VALIDATION = "validation"
    SECURITY = "security"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    CONFIGURATION = "configuration"


def normalize_task_type(value: str | TaskType) -> str:
    """Canonical string tag for a task type."""

    raw = value.value if isinstance(value, TaskType) else str(value)
    normalized = raw.strip().upper()
    if not normalized:
        raise ValueError("Task type must be a non-empty string.")
    return normalized


def is_escalation_notice(task_type: str, payload: Mapping[str, Any]) -> bool:
    """True for NOTIFY tasks that report a failed build rather than a fix."""

    return normalize_task_type(task_type) == TaskType.NOTIFY.value and payload.get(
        "notificationType",
    ) in {NotificationType.MANUAL_INTERVENTION.value, NotificationType.FAILURE.value}


@dataclass(slots=True)
class TaskResult:
    """Outcome returned by a stage handler."""

    status: TaskStatus
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status not in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.RETRY}:
            raise ValueError(f"Unsupported handler result status: {self.status}")

    @classmethod
    def success(cls, message: str = "", metadata: dict[str, Any] | None = None) -> TaskResult:
        return cls(TaskStatus.COMPLETED, message, dict(metadata or {}))

    @classmethod
    def failure(cls, message: str, metadata: dict[str, Any] | None = None) -> TaskResult:
        return cls(TaskStatus.FAILED, message, dict(metadata or {}))

    @classmethod
    def retry(cls, message: str, metadata: dict[str, Any] | None = None) -> TaskResult:
        return cls(TaskStatus.RETRY, message, dict(metadata or {}))


@dataclass(slots=True)
class BuildCreate:
    """Input payload for registering a failed CI build."""

    job: str
    build_number: int
    branch: str
    repo_url: str
    commit_sha: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BuildView:
    """Readable build view."""

    build_id: int
    job: str
    build_number: int
    branch: str
    repo_url: str
    commit_sha: str
    status: BuildStatus
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.build_id,
            "job": self.job,
            "buildNumber": self.build_number,
            "branch": self.branch,
            "repoUrl": self.repo_url,
            "commitSha": self.commit_sha,
            "status": self.status.value,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    build_id: int
    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 3
    run_after: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for handlers, dispatcher and admin surfaces."""

    task_id: int
    build_id: int
    task_type: str
    status: TaskStatus
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    error_message: str | None
    run_after: datetime
    worker_id: str | None
    claimed_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.task_id,
            "buildId": self.build_id,
            "type": self.task_type,
            "status": self.status.value,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "payload": self.payload,
            "errorMessage": self.error_message,
            "runAfter": self.run_after.isoformat(),
            "workerId": self.worker_id,
            "claimedAt": self.claimed_at.isoformat() if self.claimed_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.event_id,
            "eventType": self.event_type,
            "statusFrom": self.status_from.value if self.status_from else None,
            "statusTo": self.status_to.value if self.status_to else None,
            "createdAt": self.created_at.isoformat(),
            "details": self.details,
        }


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class Page:
    """One page of a newest-first listing."""

    items: list[Any]
    page: int
    size: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size


@dataclass(slots=True)
class StageDuration:
    """Average completion duration for one task type."""

    task_type: str
    average_seconds: float
    task_count: int
