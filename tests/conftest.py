"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import Iterator
from pathlib import Path

import pytest

from ci_fixer.config import RetrySettings
from ci_fixer.orchestrator.handlers import HandlerRegistry
from ci_fixer.orchestrator.models import BuildCreate, TaskCreate, TaskView
from ci_fixer.orchestrator.pipeline import PipelinePolicy
from ci_fixer.orchestrator.queue import TaskQueueService
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.orchestrator.retry import RetryHandler


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture()
def repository(database_url: str) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(database_url)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def queue_service(repository: OrchestratorRepository) -> TaskQueueService:
    return TaskQueueService(repository)


@pytest.fixture()
def retry_settings() -> RetrySettings:
    """Immediate retries so follow-up attempts are claimable without sleeping."""

    return RetrySettings(
        max_attempts=3,
        base_delay_seconds=0.0,
        max_delay_seconds=0.0,
        jitter_enabled=False,
    )


@pytest.fixture()
def retry_handler(queue_service: TaskQueueService, retry_settings: RetrySettings) -> RetryHandler:
    return RetryHandler(queue=queue_service, settings=retry_settings, rng=random.Random(7))


@pytest.fixture()
def policy() -> PipelinePolicy:
    return PipelinePolicy()


@pytest.fixture()
def registry() -> HandlerRegistry:
    return HandlerRegistry()


def create_build(
    repository: OrchestratorRepository,
    *,
    job: str = "acme-app",
    build_number: int = 42,
) -> int:
    build, _ = repository.create_build(
        BuildCreate(
            job=job,
            build_number=build_number,
            branch="main",
            repo_url="https://git.example.com/acme/app.git",
            commit_sha="0f3c2a9",
        ),
    )
    return build.build_id


def enqueue(
    repository: OrchestratorRepository,
    build_id: int,
    task_type: str = "PLAN",
    *,
    max_attempts: int = 3,
    payload: dict[str, object] | None = None,
) -> TaskView:
    return repository.enqueue_task(
        TaskCreate(
            build_id=build_id,
            task_type=task_type,
            payload=payload or {},
            max_attempts=max_attempts,
        ),
    )
