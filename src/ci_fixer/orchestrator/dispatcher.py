"""Per-type stage dispatchers and the worker pool that runs them."""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import timedelta

from ci_fixer.orchestrator.errors import (
    HandlerTimeoutError,
    InvalidTaskStateError,
    PermanentHandlerError,
    PipelineConfigurationError,
    TransientError,
)
from ci_fixer.orchestrator.failure_classifier import truncate_message
from ci_fixer.orchestrator.handlers import HandlerRegistry, TaskHandler
from ci_fixer.orchestrator.models import TaskCreate, TaskResult, TaskStatus, TaskView
from ci_fixer.orchestrator.pipeline import DecisionKind, PipelinePolicy, StageDecision
from ci_fixer.orchestrator.queue import TaskQueueService
from ci_fixer.orchestrator.retry import RetryDecision, RetryHandler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    escalated: int = 0
    looped_back: int = 0
    timeouts: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add(self, other: DispatchSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


def default_worker_id(task_type: str) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{task_type.lower()}"


class StageDispatcher:
    """Claims tasks of one type, runs their handler and routes the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_type: str,
        queue: TaskQueueService,
        retry_handler: RetryHandler,
        registry: HandlerRegistry,
        policy: PipelinePolicy,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        handler_timeout_seconds: float = 900.0,
        stale_after_seconds: int = 1_800,
        processing_enabled: bool = True,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.task_type = task_type
        self.queue = queue
        self.repository = queue.repository
        self.retry_handler = retry_handler
        self.registry = registry
        self.policy = policy
        self.worker_id = worker_id or default_worker_id(task_type)
        self.poll_interval_seconds = poll_interval_seconds
        self.handler_timeout_seconds = handler_timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.processing_enabled = processing_enabled
        self.stop_event = stop_event or threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def run_once(self) -> DispatchSummary:
        """Process at most one task from the queue."""

        summary = DispatchSummary()
        if self.stop_requested or not self.processing_enabled:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_stale_claims()
        task = self.queue.dequeue(self.task_type, worker_id=self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            self._dispatch(task, summary)
        except Exception:
            # The claim stays IN_PROGRESS and is reconciled by the stale sweep.
            logger.exception(
                "Routing outcome of task %s (%s) failed",
                task.task_id,
                task.task_type,
                extra=_log_context(task),
            )
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
        install_signal_handlers: bool = True,
    ) -> DispatchSummary:
        """Poll until stopped, idle for too long, or max_tasks is reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = keep polling until stopped).
            install_signal_handlers: Stop on SIGINT/SIGTERM (main thread only).
        """

        aggregate = DispatchSummary()
        consecutive_idle = 0
        handlers = self._signal_handlers() if install_signal_handlers else _no_signals()
        with handlers:
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _dispatch(self, task: TaskView, summary: DispatchSummary) -> None:
        context = _log_context(task)
        handler = self.registry.get(task.task_type)
        if handler is None:
            message = f"No handler registered for task type {task.task_type}"
            logger.error(message, extra=context)
            self._fail_and_escalate(task, message, summary)
            return

        logger.info(
            "Running %s task %s (attempt %s/%s) for build %s",
            task.task_type,
            task.task_id,
            task.attempt,
            task.max_attempts,
            task.build_id,
            extra=context,
        )
        try:
            result = self._invoke(handler, task)
        except HandlerTimeoutError as error:
            summary.timeouts += 1
            self._apply_retry_decision(self.retry_handler.handle_task_failure(task, error), summary)
            return
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Handler for task %s raised %s",
                task.task_id,
                type(error).__name__,
                extra=context,
            )
            self._apply_retry_decision(self.retry_handler.handle_task_failure(task, error), summary)
            return

        if result.status == TaskStatus.RETRY:
            error = TransientError(result.message or f"{task.task_type} handler requested a retry")
            self._apply_retry_decision(self.retry_handler.handle_task_failure(task, error), summary)
            return

        try:
            decision = self.policy.decide(task.task_type, result, task.payload)
        except PipelineConfigurationError as error:
            self._apply_retry_decision(self.retry_handler.handle_task_failure(task, error), summary)
            return
        self._apply_stage_decision(task, result, decision, summary)

    def _invoke(self, handler: TaskHandler, task: TaskView) -> TaskResult:
        """Run the handler on a daemon thread bounded by the handler timeout.

        A timeout abandons the handler rather than stopping it: the thread keeps
        running until the handler returns, but never blocks interpreter exit.
        """

        outcome: dict[str, object] = {}

        def _target() -> None:
            try:
                outcome["result"] = handler.handle(task, dict(task.payload))
            except Exception as error:  # noqa: BLE001
                outcome["error"] = error

        thread = threading.Thread(
            target=_target,
            name=f"handler-{task.task_type.lower()}-{task.task_id}",
            daemon=True,
        )
        thread.start()
        thread.join(self.handler_timeout_seconds)
        if thread.is_alive():
            logger.warning(
                "Abandoning handler thread %s after %.1fs; it runs on until the handler returns",
                thread.name,
                self.handler_timeout_seconds,
                extra=_log_context(task),
            )
            raise HandlerTimeoutError(
                task_type=task.task_type,
                timeout_seconds=self.handler_timeout_seconds,
            )
        error = outcome.get("error")
        if isinstance(error, Exception):
            raise error
        result = outcome.get("result")
        if not isinstance(result, TaskResult):
            raise PermanentHandlerError(
                f"{task.task_type} handler returned {type(result).__name__}, expected TaskResult",
            )
        return result

    def _apply_stage_decision(
        self,
        task: TaskView,
        result: TaskResult,
        decision: StageDecision,
        summary: DispatchSummary,
    ) -> None:
        context = _log_context(task)
        if decision.kind in {DecisionKind.ADVANCE, DecisionKind.FINISH}:
            next_task = None
            if decision.kind == DecisionKind.ADVANCE and decision.next_type is not None:
                next_task = TaskCreate(
                    build_id=task.build_id,
                    task_type=decision.next_type,
                    payload=decision.payload,
                    max_attempts=self.retry_handler.settings.max_attempts,
                )
            try:
                follow_up = self.repository.complete_task(
                    task_id=task.task_id,
                    claim_attempt=task.attempt,
                    message=result.message,
                    next_task=next_task,
                    build_status=decision.build_status,
                )
            except InvalidTaskStateError as error:
                logger.warning(
                    "Completion of task %s dropped: %s",
                    task.task_id,
                    error,
                    extra=context,
                )
                return
            summary.succeeded += 1
            if follow_up is not None:
                logger.info(
                    "Task %s completed; advanced build %s to %s (task %s)",
                    task.task_id,
                    task.build_id,
                    follow_up.task_type,
                    follow_up.task_id,
                    extra=context,
                )
            elif decision.build_status is not None:
                logger.info(
                    "Task %s completed; build %s is %s",
                    task.task_id,
                    task.build_id,
                    decision.build_status.value,
                    extra=context,
                )
            return

        message = truncate_message(result.message or f"{task.task_type} handler reported failure")
        if decision.kind == DecisionKind.LOOP_BACK and decision.next_type is not None:
            applied = self.repository.fail_task(
                task_id=task.task_id,
                error_message=message,
                claim_attempt=task.attempt,
                follow_up=TaskCreate(
                    build_id=task.build_id,
                    task_type=decision.next_type,
                    payload=decision.payload,
                    max_attempts=self.retry_handler.settings.max_attempts,
                ),
                details={"loopback_to": decision.next_type},
            )
            if applied:
                summary.failed += 1
                summary.looped_back += 1
                logger.info(
                    "Task %s failed; looping build %s back to %s",
                    task.task_id,
                    task.build_id,
                    decision.next_type,
                    extra=context,
                )
            return

        self._fail_and_escalate(task, message, summary)

    def _fail_and_escalate(self, task: TaskView, message: str, summary: DispatchSummary) -> None:
        applied = self.repository.fail_task(
            task_id=task.task_id,
            error_message=message,
            claim_attempt=task.attempt,
        )
        if not applied:
            logger.warning("Task %s was no longer held by %s", task.task_id, self.worker_id)
            return
        summary.failed += 1
        self.retry_handler.escalate(task, message)
        summary.escalated += 1

    def _apply_retry_decision(self, decision: RetryDecision, summary: DispatchSummary) -> None:
        if decision.retried:
            summary.retried += 1
        elif decision.failed:
            summary.failed += 1
            if decision.escalation_task_id is not None:
                summary.escalated += 1

    def _recover_stale_claims(self) -> int:
        recovered = self.repository.recover_stale_tasks(
            stale_after=timedelta(seconds=self.stale_after_seconds),
            task_type=self.task_type,
        )
        for task in recovered:
            logger.warning(
                "Recovered stale claim of task %s -> %s",
                task.task_id,
                task.status.value,
                extra=_log_context(task),
            )
            if task.status == TaskStatus.FAILED:
                self.retry_handler.escalate(task, task.error_message or "Stale claim exhausted")
        return len(recovered)

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self.stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping %s dispatcher", name, self.task_type)
            self.stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class WorkerPool:
    """Runs one dispatcher thread per task type until stopped."""

    def __init__(self, dispatchers: Sequence[StageDispatcher]) -> None:
        self.dispatchers = list(dispatchers)
        self.stop_event = threading.Event()
        for dispatcher in self.dispatchers:
            dispatcher.stop_event = self.stop_event
        self._threads: list[threading.Thread] = []
        self._summaries: dict[str, DispatchSummary] = {}

    def start(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> None:
        for dispatcher in self.dispatchers:
            thread = threading.Thread(
                target=self._run_dispatcher,
                args=(dispatcher, max_tasks, max_idle_polls),
                name=f"dispatcher-{dispatcher.task_type.lower()}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info(
            "Worker pool started for %s",
            ", ".join(dispatcher.task_type for dispatcher in self.dispatchers),
        )

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> DispatchSummary:
        for thread in self._threads:
            thread.join(timeout)
        total = DispatchSummary()
        for summary in self._summaries.values():
            total.add(summary)
        return total

    def run_until_stopped(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> DispatchSummary:
        """Block the calling thread until every dispatcher exits or a stop arrives.

        SIGINT/SIGTERM request a stop when called from the main thread.
        """

        with _stop_on_signals(self.stop_event):
            self.start(max_tasks=max_tasks, max_idle_polls=max_idle_polls)
            while not self.stop_event.wait(0.2):
                if not any(thread.is_alive() for thread in self._threads):
                    break
        return self.join()

    def _run_dispatcher(
        self,
        dispatcher: StageDispatcher,
        max_tasks: int | None,
        max_idle_polls: int | None,
    ) -> None:
        try:
            self._summaries[dispatcher.task_type] = dispatcher.run_loop(
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                install_signal_handlers=False,
            )
        except Exception:
            logger.exception("Dispatcher for %s crashed", dispatcher.task_type)


@contextmanager
def _no_signals() -> Iterator[None]:
    yield


@contextmanager
def _stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        logger.info("Received signal %s; stopping worker pool", signum)
        stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _log_context(task: TaskView) -> dict[str, object]:
    return {
        "build_id": task.build_id,
        "task_id": task.task_id,
        "task_type": task.task_type,
        "attempt": task.attempt,
    }
