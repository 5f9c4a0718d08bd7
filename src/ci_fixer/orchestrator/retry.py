"""Retry, backoff and escalation policy for failed stage executions."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from ci_fixer.config import RetrySettings
from ci_fixer.orchestrator.errors import (
    InvalidTaskStateError,
    RetryExhausted,
    TaskNotFoundError,
)
from ci_fixer.orchestrator.failure_classifier import (
    FailureClassification,
    classify_failure,
    describe_error,
    truncate_message,
)
from ci_fixer.orchestrator.models import (
    SUPERSEDED_BY_KEY,
    NotificationType,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)
from ci_fixer.orchestrator.queue import TaskQueueService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryDecision:
    """What the retry handler did with one failed attempt."""

    status: TaskStatus | None
    error_message: str
    classification: FailureClassification
    delay_seconds: float = 0.0
    escalation_task_id: int | None = None

    @property
    def retried(self) -> bool:
        return self.status == TaskStatus.RETRY

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED


class RetryHandler:
    """Decides between retry and terminal failure, and escalates builds."""

    def __init__(
        self,
        *,
        queue: TaskQueueService,
        settings: RetrySettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.queue = queue
        self.repository = queue.repository
        self.settings = settings or RetrySettings()
        self._random = rng or random.Random()  # noqa: S311

    def handle_task_failure(self, task: TaskView, error: BaseException) -> RetryDecision:
        """Apply retry policy to a failed attempt of a claimed task."""

        classification = classify_failure(error)
        description = describe_error(error)
        details = classification.to_event_details()

        if not classification.retryable:
            logger.warning(
                "Task %s (%s) failed with non-retryable %s: %s",
                task.task_id,
                task.task_type,
                classification.failure_class.value,
                description,
            )
            applied = self.repository.fail_task(
                task_id=task.task_id,
                error_message=description,
                claim_attempt=task.attempt,
                details=details,
            )
            decision = RetryDecision(
                status=TaskStatus.FAILED if applied else None,
                error_message=description,
                classification=classification,
            )
            if applied:
                decision.escalation_task_id = self.escalate(task, description)
            return decision

        delay = self.calculate_retry_delay(task.attempt)
        retry_message = truncate_message(f"{description} (retry in {delay:.0f}s)")
        exhausted_message = describe_error(
            RetryExhausted(
                attempt=task.attempt,
                max_attempts=task.max_attempts,
                last_error=description,
            ),
        )
        outcome = self.queue.schedule_retry(
            task.task_id,
            retry_message,
            delay,
            exhausted_message=exhausted_message,
            claim_attempt=task.attempt,
            details={**details, "delay_seconds": round(delay, 3)},
        )
        decision = RetryDecision(
            status=outcome,
            error_message=retry_message if outcome == TaskStatus.RETRY else exhausted_message,
            classification=classification,
            delay_seconds=delay if outcome == TaskStatus.RETRY else 0.0,
        )
        if outcome == TaskStatus.FAILED:
            logger.error(
                "Task %s (%s) exhausted %s attempts: %s",
                task.task_id,
                task.task_type,
                task.max_attempts,
                description,
            )
            decision.escalation_task_id = self.escalate(task, exhausted_message)
        return decision

    def calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff capped at the configured maximum."""

        cap = self.settings.max_delay_seconds
        delay = min(self.settings.base_delay_seconds * (2 ** max(attempt, 0)), cap)
        if self.settings.jitter_enabled and self.settings.jitter_factor > 0:
            delay = min(delay * (1 + self._random.uniform(0, self.settings.jitter_factor)), cap)
        return delay

    def escalate(self, task: TaskView, error_message: str) -> int | None:
        """Fail the owning build and enqueue a manual-intervention notification.

        A failing NOTIFY task only fails the build, so escalation never loops.
        """

        if task.task_type == TaskType.NOTIFY.value:
            self.repository.mark_build_failed(build_id=task.build_id)
            logger.error(
                "Notification task %s failed; build %s marked FAILED without escalation",
                task.task_id,
                task.build_id,
            )
            return None

        escalation = self.repository.mark_build_failed(
            build_id=task.build_id,
            escalation=TaskCreate(
                build_id=task.build_id,
                task_type=TaskType.NOTIFY.value,
                payload=escalation_payload(task, error_message),
                max_attempts=self.settings.max_attempts,
            ),
        )
        escalation_id = escalation.task_id if escalation is not None else None
        logger.error(
            "Build %s marked FAILED after task %s (%s); escalation task %s enqueued",
            task.build_id,
            task.task_id,
            task.task_type,
            escalation_id,
        )
        return escalation_id

    def manual_retry(self, task_id: int) -> bool:
        """Operator retry of a FAILED task. False when missing or not FAILED."""

        try:
            task = self.repository.reset_failed_task(task_id=task_id)
        except (TaskNotFoundError, InvalidTaskStateError) as error:
            logger.warning("Manual retry of task %s rejected: %s", task_id, error)
            return False
        logger.info("Task %s reset for manual retry (build %s)", task.task_id, task.build_id)
        return True

    def retry_build(self, build_id: int) -> int:
        """Manual retry of every FAILED task of one build; returns the count.

        Tasks superseded by a loop-back are skipped so the build resumes a
        single workflow.
        """

        failed = self.repository.list_build_tasks(build_id=build_id, status=TaskStatus.FAILED)
        return sum(
            1
            for task in failed
            if SUPERSEDED_BY_KEY not in task.payload and self.manual_retry(task.task_id)
        )


def escalation_payload(task: TaskView, error_message: str) -> dict[str, object]:
    return {
        **task.payload,
        "notificationType": NotificationType.MANUAL_INTERVENTION.value,
        "errorMessage": error_message,
        "failedTaskType": task.task_type,
        "failedTaskId": task.task_id,
    }
