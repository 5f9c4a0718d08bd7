from __future__ import annotations

import threading
import time
from datetime import timedelta

import allure
import pytest

from conftest import create_build, enqueue

from ci_fixer.orchestrator.errors import BuildNotFoundError
from ci_fixer.orchestrator.models import TaskCreate, TaskStatus
from ci_fixer.orchestrator.queue import TaskQueueService
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.store.common import utc_now

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Claim Protocol"),
]


def test_enqueue_persists_pending_task(queue_service: TaskQueueService) -> None:
    build_id = create_build(queue_service.repository)

    task = queue_service.enqueue(
        TaskCreate(build_id=build_id, task_type="plan", payload={"branch": "main"}),
    )

    assert task.status == TaskStatus.PENDING
    assert task.task_type == "PLAN"
    assert task.attempt == 0
    assert task.max_attempts == 3
    assert task.payload == {"branch": "main"}
    stored = queue_service.find_by_id(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.PENDING


def test_enqueue_rejects_unknown_build(queue_service: TaskQueueService) -> None:
    with pytest.raises(BuildNotFoundError):
        queue_service.enqueue(TaskCreate(build_id=999, task_type="PLAN"))


def test_dequeue_returns_none_on_empty_queue(queue_service: TaskQueueService) -> None:
    assert queue_service.dequeue("PLAN", worker_id="w1") is None


def test_dequeue_claims_oldest_task_of_requested_type(
    queue_service: TaskQueueService,
) -> None:
    repository = queue_service.repository
    build_id = create_build(repository)
    first = enqueue(repository, build_id, "PLAN")
    enqueue(repository, build_id, "PATCH")
    second = enqueue(repository, build_id, "PLAN")

    claimed = queue_service.dequeue("PLAN", worker_id="w1")
    assert claimed is not None
    assert claimed.task_id == first.task_id
    assert claimed.status == TaskStatus.IN_PROGRESS
    assert claimed.attempt == 1
    assert claimed.worker_id == "w1"
    assert claimed.claimed_at is not None

    claimed_next = queue_service.dequeue("PLAN", worker_id="w1")
    assert claimed_next is not None
    assert claimed_next.task_id == second.task_id
    assert queue_service.dequeue("PLAN", worker_id="w1") is None


def test_dequeue_skips_retry_tasks_until_run_after(queue_service: TaskQueueService) -> None:
    repository = queue_service.repository
    build_id = create_build(repository)
    task = enqueue(repository, build_id, "PATCH")
    claimed = queue_service.dequeue("PATCH", worker_id="w1")
    assert claimed is not None

    assert queue_service.requeue_for_retry(task.task_id, "boom (retry in 60s)", 60) is True
    assert queue_service.dequeue("PATCH", worker_id="w1") is None

    repository.requeue_task(
        task_id=task.task_id,
        error_message="boom (retry in 0s)",
        run_after=utc_now() - timedelta(seconds=1),
    )
    reclaimed = queue_service.dequeue("PATCH", worker_id="w2")
    assert reclaimed is not None
    assert reclaimed.task_id == task.task_id
    assert reclaimed.attempt == 2
    assert reclaimed.worker_id == "w2"


def test_concurrent_dequeue_claims_each_task_once(repository: OrchestratorRepository) -> None:
    build_id = create_build(repository)
    task_ids = {enqueue(repository, build_id, "RETRIEVE").task_id for _ in range(20)}
    service = TaskQueueService(repository)

    claims: list[int] = []
    claims_lock = threading.Lock()
    errors: list[BaseException] = []
    start = threading.Event()

    def _worker(worker_id: str) -> None:
        start.wait(timeout=5)
        try:
            while True:
                task = service.dequeue("RETRIEVE", worker_id=worker_id)
                if task is None:
                    return
                with claims_lock:
                    claims.append(task.task_id)
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_worker, args=(f"w{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert sorted(claims) == sorted(task_ids)
    assert len(claims) == len(set(claims))
    for task_id in task_ids:
        task = repository.get_task(task_id)
        assert task is not None
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.attempt == 1


def test_update_status_is_idempotent_and_ignores_missing_task(
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(queue_service.repository)
    task = enqueue(queue_service.repository, build_id)

    assert queue_service.update_status(task.task_id, TaskStatus.FAILED, "first failure")
    assert queue_service.update_status(task.task_id, TaskStatus.FAILED, "first failure")
    stored = queue_service.find_by_id(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.error_message == "first failure"
    assert stored.finished_at is not None

    assert queue_service.update_status(12345, TaskStatus.COMPLETED) is False


def test_should_retry_compares_attempt_with_budget(queue_service: TaskQueueService) -> None:
    repository = queue_service.repository
    build_id = create_build(repository)
    enqueue(repository, build_id, "PLAN", max_attempts=1)
    claimed = queue_service.dequeue("PLAN", worker_id="w1")
    assert claimed is not None

    assert TaskQueueService.should_retry(claimed) is False
    assert queue_service.requeue_for_retry(claimed.task_id, "still broken", 0) is False
    stored = queue_service.find_by_id(claimed.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.error_message == "still broken"


def test_schedule_retry_reports_exhaustion_as_failed(queue_service: TaskQueueService) -> None:
    repository = queue_service.repository
    build_id = create_build(repository)
    enqueue(repository, build_id, "PR", max_attempts=2)

    first = queue_service.dequeue("PR", worker_id="w1")
    assert first is not None
    assert queue_service.schedule_retry(first.task_id, "push refused", 0) == TaskStatus.RETRY
    second = queue_service.dequeue("PR", worker_id="w1")
    assert second is not None
    assert queue_service.schedule_retry(second.task_id, "push refused", 0) == TaskStatus.FAILED


def test_attempt_never_decreases_and_stays_within_budget(
    queue_service: TaskQueueService,
) -> None:
    repository = queue_service.repository
    build_id = create_build(repository)
    task = enqueue(repository, build_id, "VALIDATE", max_attempts=3)

    observed: list[int] = []
    while True:
        claimed = queue_service.dequeue("VALIDATE", worker_id="w1")
        if claimed is None:
            break
        observed.append(claimed.attempt)
        queue_service.requeue_for_retry(claimed.task_id, "flaky compiler", 0)

    assert observed == [1, 2, 3]
    stored = queue_service.find_by_id(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.attempt == stored.max_attempts == 3


def test_requeue_ignores_terminal_and_missing_tasks(queue_service: TaskQueueService) -> None:
    build_id = create_build(queue_service.repository)
    task = enqueue(queue_service.repository, build_id)
    queue_service.update_status(task.task_id, TaskStatus.COMPLETED)

    assert queue_service.requeue_for_retry(task.task_id, "late failure", 0) is False
    stored = queue_service.find_by_id(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert queue_service.requeue_for_retry(98765, "nope", 0) is False
    assert queue_service.schedule_retry(98765, "nope", 0) is None


def test_stale_claims_return_to_retry(repository: OrchestratorRepository) -> None:
    build_id = create_build(repository)
    task = enqueue(repository, build_id, "PR")
    claimed = repository.claim_next_task(task_type="PR", worker_id="crashed-worker")
    assert claimed is not None
    time.sleep(0.05)

    recovered = repository.recover_stale_tasks(stale_after=timedelta(milliseconds=10))

    assert [item.task_id for item in recovered] == [task.task_id]
    assert recovered[0].status == TaskStatus.RETRY
    assert recovered[0].worker_id is None
    assert "crashed-worker" in (recovered[0].error_message or "")
    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "stale_recovered",
    ]


def test_fresh_claims_are_not_recovered(repository: OrchestratorRepository) -> None:
    build_id = create_build(repository)
    enqueue(repository, build_id, "PR")
    assert repository.claim_next_task(task_type="PR", worker_id="w1") is not None

    assert repository.recover_stale_tasks(stale_after=timedelta(minutes=30)) == []
