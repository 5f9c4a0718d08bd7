"""Operator inspection and recovery operations shared by the HTTP API and CLI."""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum

from ci_fixer.config import AdminSettings
from ci_fixer.orchestrator.errors import (
    BuildNotFoundError,
    InvalidTaskStateError,
    TaskNotFoundError,
    ValidationError,
)
from ci_fixer.orchestrator.models import SUPERSEDED_BY_KEY, BuildStatus, Page, TaskStatus
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.orchestrator.retry import RetryHandler
from ci_fixer.store.common import utc_now

logger = logging.getLogger(__name__)

STATS_WINDOW = timedelta(hours=24)


class HealthStatus(str, Enum):
    UP = "UP"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


class AdminService:
    """Read models and operator actions over the queue store."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        retry_handler: RetryHandler,
        settings: AdminSettings | None = None,
    ) -> None:
        self.repository = repository
        self.retry_handler = retry_handler
        self.settings = settings or AdminSettings()

    def system_status(self) -> dict[str, object]:
        task_counts = self.repository.count_tasks_by_status()
        build_counts = self.repository.count_builds_by_status()
        return {
            "tasks": {
                "pending": task_counts[TaskStatus.PENDING.value],
                "processing": task_counts[TaskStatus.IN_PROGRESS.value],
                "retry": task_counts[TaskStatus.RETRY.value],
                "completed": task_counts[TaskStatus.COMPLETED.value],
                "failed": task_counts[TaskStatus.FAILED.value],
            },
            "builds": {
                "total": sum(build_counts.values()),
                "processing": build_counts[BuildStatus.PROCESSING.value],
                "fixed": build_counts[BuildStatus.FIXED.value],
                "completed": build_counts[BuildStatus.COMPLETED.value],
                "failed": build_counts[BuildStatus.FAILED.value],
                "cancelled": build_counts[BuildStatus.CANCELLED.value],
            },
            "database": self.repository.pool_status(),
            "timestamp": utc_now().isoformat(),
        }

    def list_tasks(
        self,
        *,
        status: str | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> dict[str, object]:
        page_size = self._page_size(page, size)
        result = self.repository.list_tasks(
            status=_parse_enum(TaskStatus, status, "status"),
            page=page,
            size=page_size,
        )
        return _page_dict(result)

    def task_details(self, task_id: int) -> dict[str, object]:
        details = self.repository.get_task_details(task_id=task_id)
        if details is None:
            raise TaskNotFoundError(task_id)
        return {
            **details.task.to_dict(),
            "events": [event.to_dict() for event in details.events],
        }

    def retry_task(self, task_id: int) -> dict[str, object]:
        """Reset a FAILED task to PENDING.

        Raises:
            TaskNotFoundError: unknown task id.
            InvalidTaskStateError: the task is not FAILED, or a loop-back superseded it.
        """

        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.FAILED or not self.retry_handler.manual_retry(task_id):
            current = self.repository.get_task(task_id) or task
            superseded_by = current.payload.get(SUPERSEDED_BY_KEY)
            raise InvalidTaskStateError(
                task_id=task_id,
                current_status=current.status.value
                if superseded_by is None
                else f"{current.status.value} (superseded by task {superseded_by})",
                expected=TaskStatus.FAILED.value,
            )
        logger.info("Operator retry accepted for task %s", task_id)
        return {"taskId": task_id, "status": TaskStatus.PENDING.value}

    def list_builds(
        self,
        *,
        status: str | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> dict[str, object]:
        page_size = self._page_size(page, size)
        result = self.repository.list_builds(
            status=_parse_enum(BuildStatus, status, "status"),
            page=page,
            size=page_size,
        )
        return _page_dict(result)

    def build_details(self, build_id: int) -> dict[str, object]:
        build = self.repository.get_build(build_id)
        if build is None:
            raise BuildNotFoundError(build_id)
        return build.to_dict()

    def build_tasks(self, build_id: int) -> list[dict[str, object]]:
        if self.repository.get_build(build_id) is None:
            raise BuildNotFoundError(build_id)
        return [task.to_dict() for task in self.repository.list_build_tasks(build_id=build_id)]

    def retry_build(self, build_id: int) -> dict[str, object]:
        if self.repository.get_build(build_id) is None:
            raise BuildNotFoundError(build_id)
        count = self.retry_handler.retry_build(build_id)
        logger.info("Operator retry of build %s re-enqueued %s tasks", build_id, count)
        return {"buildId": build_id, "retriedTaskCount": count}

    def queue_stats(self) -> dict[str, object]:
        durations = self.repository.completion_durations(since=utc_now() - STATS_WINDOW)
        return {
            "tasksByType": self.repository.count_tasks_by_type_and_status(),
            "processingTimes": {
                item.task_type: {
                    "averageDurationSeconds": round(item.average_seconds, 3),
                    "taskCount": item.task_count,
                }
                for item in durations
            },
            "windowHours": int(STATS_WINDOW.total_seconds() // 3600),
        }

    def health(self) -> dict[str, object]:
        """UP, DEGRADED above the pending threshold, DOWN when the store is unreachable."""

        if not self.repository.ping():
            return {"status": HealthStatus.DOWN.value, "database": "unreachable"}
        pending = self.repository.count_tasks_by_status()[TaskStatus.PENDING.value]
        status = (
            HealthStatus.DEGRADED
            if pending > self.settings.pending_threshold
            else HealthStatus.UP
        )
        return {
            "status": status.value,
            "database": "reachable",
            "pendingTasks": pending,
            "pendingThreshold": self.settings.pending_threshold,
        }

    def _page_size(self, page: int, size: int | None) -> int:
        page_size = self.settings.default_page_size if size is None else size
        if page < 0:
            raise ValidationError("page must be >= 0")
        if not 1 <= page_size <= self.settings.max_page_size:
            raise ValidationError(f"size must be between 1 and {self.settings.max_page_size}")
        return page_size


def _parse_enum(enum_type: type[Enum], value: str | None, name: str):  # noqa: ANN202
    if value is None or not value.strip():
        return None
    try:
        return enum_type(value.strip().upper())
    except ValueError as error:
        allowed = ", ".join(item.value for item in enum_type)
        raise ValidationError(f"Invalid {name} {value!r}; expected one of {allowed}") from error


def _page_dict(page: Page) -> dict[str, object]:
    return {
        "content": [item.to_dict() for item in page.items],
        "page": page.page,
        "size": page.size,
        "totalElements": page.total,
        "totalPages": page.total_pages,
    }
