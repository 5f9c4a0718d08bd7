"""Task queue service: the only writer of task status and attempt counters."""

from __future__ import annotations

import logging
from datetime import timedelta

from ci_fixer.orchestrator.models import TaskCreate, TaskStatus, TaskView
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.store.common import utc_now

logger = logging.getLogger(__name__)


class TaskQueueService:
    """Enqueue, claim and transition tasks on top of the repository."""

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def enqueue(self, payload: TaskCreate) -> TaskView:
        task = self.repository.enqueue_task(payload)
        logger.info(
            "Enqueued task %s type=%s build=%s",
            task.task_id,
            task.task_type,
            task.build_id,
        )
        return task

    def dequeue(self, task_type: str, *, worker_id: str) -> TaskView | None:
        """Claim the oldest ready task of a type, or None when nothing is ready."""

        task = self.repository.claim_next_task(task_type=task_type, worker_id=worker_id)
        if task is not None:
            logger.debug(
                "Worker %s claimed task %s type=%s attempt=%s/%s",
                worker_id,
                task.task_id,
                task.task_type,
                task.attempt,
                task.max_attempts,
            )
        return task

    def update_status(
        self,
        task_id: int,
        status: TaskStatus,
        error_message: str | None = None,
    ) -> bool:
        """Persist a status; a missing task is logged and ignored."""

        updated = self.repository.update_task_status(
            task_id=task_id,
            status=status,
            error_message=error_message,
        )
        if not updated:
            logger.warning("Status update to %s ignored: task %s not found", status.value, task_id)
        return updated

    @staticmethod
    def should_retry(task: TaskView) -> bool:
        return task.attempt < task.max_attempts

    def requeue_for_retry(
        self,
        task_id: int,
        error_message: str,
        delay_seconds: float = 0,
        *,
        exhausted_message: str | None = None,
        claim_attempt: int | None = None,
    ) -> bool:
        """True when the task was set to RETRY; False when it was exhausted to
        FAILED or nothing changed."""

        outcome = self.schedule_retry(
            task_id,
            error_message,
            delay_seconds,
            exhausted_message=exhausted_message,
            claim_attempt=claim_attempt,
        )
        return outcome == TaskStatus.RETRY

    def schedule_retry(
        self,
        task_id: int,
        error_message: str,
        delay_seconds: float = 0,
        *,
        exhausted_message: str | None = None,
        claim_attempt: int | None = None,
        details: dict[str, object] | None = None,
    ) -> TaskStatus | None:
        """Schedule another attempt, or fail the task when the budget is spent.

        Returns the resulting status (RETRY or FAILED), or None when nothing
        changed (missing task, terminal task, or a claim no longer held).
        """

        outcome = self.repository.requeue_task(
            task_id=task_id,
            error_message=error_message,
            run_after=utc_now() + timedelta(seconds=max(0.0, delay_seconds)),
            exhausted_message=exhausted_message,
            claim_attempt=claim_attempt,
            details=details,
        )
        if outcome is None:
            logger.warning(
                "Requeue of task %s ignored: task missing or no longer claimable",
                task_id,
            )
        elif outcome == TaskStatus.RETRY:
            logger.info("Task %s scheduled for retry in %.1fs", task_id, delay_seconds)
        else:
            logger.info("Task %s exhausted its attempts and is now FAILED", task_id)
        return outcome

    def find_by_id(self, task_id: int) -> TaskView | None:
        return self.repository.get_task(task_id)
