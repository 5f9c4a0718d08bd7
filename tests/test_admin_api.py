from __future__ import annotations

from collections.abc import Iterator

import allure
import pytest
from fastapi.testclient import TestClient

from conftest import create_build, enqueue

from ci_fixer.config import AdminSettings
from ci_fixer.orchestrator.admin import AdminService
from ci_fixer.orchestrator.models import TaskStatus
from ci_fixer.orchestrator.queue import TaskQueueService
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.orchestrator.retry import RetryHandler
from ci_fixer.web.admin_api import create_app

pytestmark = [
    allure.epic("Admin"),
    allure.feature("Admin API"),
]


@pytest.fixture()
def admin(repository: OrchestratorRepository, retry_handler: RetryHandler) -> AdminService:
    return AdminService(
        repository=repository,
        retry_handler=retry_handler,
        settings=AdminSettings(pending_threshold=3, default_page_size=2, max_page_size=5),
    )


@pytest.fixture()
def client(admin: AdminService) -> Iterator[TestClient]:
    with TestClient(create_app(admin)) as test_client:
        yield test_client


def _fail(queue_service: TaskQueueService, task_type: str, build_id: int) -> int:
    task = enqueue(queue_service.repository, build_id, task_type)
    claimed = queue_service.dequeue(task_type, worker_id="w1")
    assert claimed is not None
    queue_service.update_status(claimed.task_id, TaskStatus.FAILED, "patch does not apply")
    return task.task_id


def test_status_reports_task_and_build_counts(
    client: TestClient,
    repository: OrchestratorRepository,
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(repository)
    enqueue(repository, build_id, "PLAN")
    _fail(queue_service, "PATCH", build_id)

    response = client.get("/admin/status")

    assert response.status_code == 200
    body = response.json()
    assert body["tasks"]["pending"] == 1
    assert body["tasks"]["failed"] == 1
    assert body["tasks"]["processing"] == 0
    assert body["builds"]["total"] == 1
    assert body["builds"]["processing"] == 1
    assert "database" in body
    assert "timestamp" in body


def test_task_listing_is_paginated_newest_first(
    client: TestClient,
    repository: OrchestratorRepository,
) -> None:
    build_id = create_build(repository)
    ids = [enqueue(repository, build_id, "PLAN").task_id for _ in range(3)]

    first_page = client.get("/admin/tasks").json()
    second_page = client.get("/admin/tasks", params={"page": 1}).json()

    assert [item["id"] for item in first_page["content"]] == [ids[2], ids[1]]
    assert [item["id"] for item in second_page["content"]] == [ids[0]]
    assert first_page["totalElements"] == 3
    assert first_page["totalPages"] == 2
    assert first_page["size"] == 2


def test_task_listing_filters_by_status(
    client: TestClient,
    repository: OrchestratorRepository,
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(repository)
    enqueue(repository, build_id, "PLAN")
    failed_id = _fail(queue_service, "PATCH", build_id)

    body = client.get("/admin/tasks", params={"status": "failed"}).json()

    assert [item["id"] for item in body["content"]] == [failed_id]
    assert body["content"][0]["errorMessage"] == "patch does not apply"


@pytest.mark.parametrize(
    "params",
    [{"status": "SLEEPING"}, {"size": 6}, {"size": 0}, {"page": -1}],
)
def test_invalid_listing_parameters_are_rejected(
    client: TestClient,
    params: dict[str, object],
) -> None:
    response = client.get("/admin/tasks", params=params)

    assert response.status_code == 400
    assert "error" in response.json()


def test_task_details_include_event_history(
    client: TestClient,
    repository: OrchestratorRepository,
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(repository)
    task_id = _fail(queue_service, "PATCH", build_id)

    body = client.get(f"/admin/tasks/{task_id}").json()

    assert body["status"] == "FAILED"
    assert [event["eventType"] for event in body["events"]] == [
        "enqueued",
        "claimed",
        "status_updated",
    ]


def test_unknown_task_returns_404(client: TestClient) -> None:
    response = client.get("/admin/tasks/999")

    assert response.status_code == 404
    assert response.json()["taskId"] == 999


def test_retry_failed_task_resets_it(
    client: TestClient,
    repository: OrchestratorRepository,
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(repository)
    task_id = _fail(queue_service, "PATCH", build_id)

    response = client.post(f"/admin/tasks/{task_id}/retry")

    assert response.status_code == 200
    assert response.json() == {"taskId": task_id, "status": "PENDING"}
    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert task.attempt == 0


def test_retry_of_non_failed_task_reports_current_status(
    client: TestClient,
    repository: OrchestratorRepository,
) -> None:
    build_id = create_build(repository)
    task = enqueue(repository, build_id, "PLAN")

    response = client.post(f"/admin/tasks/{task.task_id}/retry")

    assert response.status_code == 400
    assert response.json()["currentStatus"] == "PENDING"


def test_retry_of_unknown_task_returns_404(client: TestClient) -> None:
    assert client.post("/admin/tasks/404/retry").status_code == 404


def test_build_endpoints(
    client: TestClient,
    repository: OrchestratorRepository,
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(repository)
    enqueue(repository, build_id, "PLAN")
    _fail(queue_service, "PATCH", build_id)
    _fail(queue_service, "VALIDATE", build_id)

    details = client.get(f"/admin/builds/{build_id}").json()
    tasks = client.get(f"/admin/builds/{build_id}/tasks").json()
    listing = client.get("/admin/builds", params={"status": "PROCESSING"}).json()
    retried = client.post(f"/admin/builds/{build_id}/retry").json()

    assert details["job"] == "acme-app"
    assert details["buildNumber"] == 42
    assert [task["type"] for task in tasks] == ["PLAN", "PATCH", "VALIDATE"]
    assert [item["id"] for item in listing["content"]] == [build_id]
    assert retried == {"buildId": build_id, "retriedTaskCount": 2}


def test_unknown_build_returns_404(client: TestClient) -> None:
    assert client.get("/admin/builds/77").status_code == 404
    assert client.get("/admin/builds/77/tasks").status_code == 404
    response = client.post("/admin/builds/77/retry")
    assert response.status_code == 404
    assert response.json()["buildId"] == 77


def test_queue_stats_group_by_type_and_status(
    client: TestClient,
    repository: OrchestratorRepository,
    queue_service: TaskQueueService,
) -> None:
    build_id = create_build(repository)
    enqueue(repository, build_id, "PLAN")
    enqueue(repository, build_id, "RETRIEVE")
    claimed = queue_service.dequeue("RETRIEVE", worker_id="w1")
    assert claimed is not None
    queue_service.update_status(claimed.task_id, TaskStatus.COMPLETED)

    body = client.get("/admin/queue/stats").json()

    assert body["tasksByType"]["PLAN"]["PENDING"] == 1
    assert body["tasksByType"]["RETRIEVE"]["COMPLETED"] == 1
    assert body["processingTimes"]["RETRIEVE"]["taskCount"] == 1
    assert body["processingTimes"]["RETRIEVE"]["averageDurationSeconds"] >= 0
    assert "PLAN" not in body["processingTimes"]
    assert body["windowHours"] == 24


def test_health_degrades_only_above_pending_threshold(
    client: TestClient,
    repository: OrchestratorRepository,
) -> None:
    build_id = create_build(repository)
    for _ in range(3):
        enqueue(repository, build_id, "PLAN")

    healthy = client.get("/admin/health")
    enqueue(repository, build_id, "PLAN")
    degraded = client.get("/admin/health")

    assert healthy.status_code == 200
    assert healthy.json()["status"] == "UP"
    assert degraded.status_code == 200
    assert degraded.json()["status"] == "DEGRADED"
    assert healthy.json()["pendingTasks"] == 3
    assert degraded.json()["pendingTasks"] == 4


def test_health_is_down_when_store_is_unreachable(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    repository: OrchestratorRepository,
) -> None:
    monkeypatch.setattr(repository, "ping", lambda: False)

    response = client.get("/admin/health")

    assert response.status_code == 503
    assert response.json()["status"] == "DOWN"
