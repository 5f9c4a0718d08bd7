"""Controllers for ci-fixer CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ci_fixer.config import Settings
from ci_fixer.orchestrator.admin import AdminService
from ci_fixer.orchestrator.dispatcher import DispatchSummary, StageDispatcher, WorkerPool
from ci_fixer.orchestrator.errors import BuildNotFoundError, TaskNotFoundError
from ci_fixer.orchestrator.handlers import EchoHandler, HandlerRegistry
from ci_fixer.orchestrator.models import TaskType, normalize_task_type
from ci_fixer.orchestrator.pipeline import PipelinePolicy
from ci_fixer.orchestrator.queue import TaskQueueService
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.orchestrator.retry import RetryHandler
from ci_fixer.orchestrator.services import BuildIntakeService, BuildSubmission


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for dispatcher execution."""

    database_url: str | None
    task_types: tuple[str, ...]
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None
    echo: bool = False


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for registering a failed build."""

    database_url: str | None
    job: str
    build_number: int
    branch: str
    repo_url: str
    commit_sha: str
    logs_path: Path | None
    payload_json: str | None


@dataclass(slots=True)
class ListCommand:
    """CLI input for task/build listing."""

    database_url: str | None
    status: str | None
    page: int
    size: int | None


@dataclass(slots=True)
class ItemCommand:
    """CLI input for single task/build operations."""

    database_url: str | None
    item_id: int


@dataclass(slots=True)
class StoreCommand:
    """CLI input for commands that only need the store."""

    database_url: str | None


@dataclass(slots=True)
class Runtime:
    """Wired services over one repository."""

    settings: Settings
    repository: OrchestratorRepository
    queue: TaskQueueService
    retry_handler: RetryHandler
    policy: PipelinePolicy
    intake: BuildIntakeService
    admin: AdminService

    def dispatchers(
        self,
        registry: HandlerRegistry,
        task_types: tuple[str, ...] = (),
    ) -> list[StageDispatcher]:
        dispatcher_settings = self.settings.dispatcher
        return [
            StageDispatcher(
                task_type=task_type,
                queue=self.queue,
                retry_handler=self.retry_handler,
                registry=registry,
                policy=self.policy,
                poll_interval_seconds=dispatcher_settings.poll_interval_seconds,
                handler_timeout_seconds=dispatcher_settings.handler_timeout_seconds,
                stale_after_seconds=dispatcher_settings.stale_after_seconds,
                processing_enabled=dispatcher_settings.processing_enabled,
            )
            for task_type in task_types or self.task_types()
        ]

    def task_types(self) -> tuple[str, ...]:
        configured = self.settings.dispatcher.task_types
        if configured:
            return configured
        stages = self.policy.stages
        # Escalation notices are NOTIFY tasks even when NOTIFY is not a stage.
        if TaskType.NOTIFY.value not in stages:
            stages = (*stages, TaskType.NOTIFY.value)
        return stages


def build_runtime(settings: Settings, repository: OrchestratorRepository) -> Runtime:
    queue = TaskQueueService(repository)
    retry_handler = RetryHandler(queue=queue, settings=settings.retry)
    policy = PipelinePolicy.from_settings(settings.pipeline)
    return Runtime(
        settings=settings,
        repository=repository,
        queue=queue,
        retry_handler=retry_handler,
        policy=policy,
        intake=BuildIntakeService(
            repository=repository,
            policy=policy,
            max_attempts=settings.retry.max_attempts,
        ),
        admin=AdminService(
            repository=repository,
            retry_handler=retry_handler,
            settings=settings.admin,
        ),
    )


class OrchestratorCliController:
    """Coordinates worker, intake and inspection CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            task_types = tuple(normalize_task_type(item) for item in command.task_types)
            task_types = task_types or runtime.task_types()
            registry = HandlerRegistry()
            registry.load_specs(settings.dispatcher.handler_specs)
            if command.echo:
                for task_type in task_types:
                    if task_type not in registry:
                        registry.register(task_type, EchoHandler())

            lines = []
            missing = [task_type for task_type in task_types if task_type not in registry]
            if missing:
                lines.append(
                    "Warning: no handler registered for "
                    f"{', '.join(missing)}; their tasks will fail and escalate.",
                )
            if not settings.dispatcher.processing_enabled:
                lines.append("Processing is disabled (CI_FIXER_PROCESSING_ENABLED=false).")

            dispatchers = runtime.dispatchers(registry, task_types)
            if command.once:
                summary = DispatchSummary()
                for dispatcher in dispatchers:
                    summary.add(dispatcher.run_once())
            elif len(dispatchers) == 1:
                summary = dispatchers[0].run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                summary = WorkerPool(dispatchers).run_until_stopped(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )

        lines.append(
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"escalated={summary.escalated} looped_back={summary.looped_back} "
            f"timeouts={summary.timeouts} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls}",
        )
        return lines

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.database_url)
        payload: dict[str, object] = {}
        if command.payload_json:
            parsed = json.loads(command.payload_json)
            if not isinstance(parsed, dict):
                raise ValueError("--payload must be a JSON object.")
            payload = parsed
        build_logs = (
            command.logs_path.read_text("utf-8", errors="replace") if command.logs_path else ""
        )
        with _runtime(settings) as runtime:
            build = runtime.intake.submit_failure(
                BuildSubmission(
                    job=command.job,
                    build_number=command.build_number,
                    branch=command.branch,
                    repo_url=command.repo_url,
                    commit_sha=command.commit_sha,
                    build_logs=build_logs,
                    payload=payload,
                ),
            )
            tasks = runtime.repository.list_build_tasks(build_id=build.build_id)
        lines = [
            f"Build registered: build_id={build.build_id} job={build.job} "
            f"build_number={build.build_number} status={build.status.value}",
        ]
        for task in tasks:
            lines.append(
                f"  task_id={task.task_id} type={task.task_type} status={task.status.value}",
            )
        return lines

    def list_tasks(self, command: ListCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            page = runtime.admin.list_tasks(
                status=command.status,
                page=command.page,
                size=command.size,
            )
        lines = [_page_header("Tasks", page)]
        for task in page["content"]:  # type: ignore[union-attr]
            lines.append(
                f"  {task['id']} build={task['buildId']} type={task['type']} "
                f"status={task['status']} attempt={task['attempt']}/{task['maxAttempts']} "
                f"run_after={task['runAfter']}",
            )
        return lines

    def show_task(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            details = runtime.repository.get_task_details(task_id=command.item_id)
        if details is None:
            raise TaskNotFoundError(command.item_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Build: {task.build_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt}/{task.max_attempts}",
            f"Worker: {task.worker_id or '-'}",
            f"Run after: {task.run_after.isoformat()}",
            f"Error: {task.error_message or '-'}",
            f"Payload keys: {', '.join(sorted(task.payload)) or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            status_from = event.status_from.value if event.status_from else "-"
            status_to = event.status_to.value if event.status_to else "-"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {status_from}->{status_to}",
            )
        return lines

    def retry_task(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            runtime.admin.retry_task(command.item_id)
        return [f"Task re-queued: {command.item_id}"]

    def list_builds(self, command: ListCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            page = runtime.admin.list_builds(
                status=command.status,
                page=command.page,
                size=command.size,
            )
        lines = [_page_header("Builds", page)]
        for build in page["content"]:  # type: ignore[union-attr]
            lines.append(
                f"  {build['id']} job={build['job']} build_number={build['buildNumber']} "
                f"branch={build['branch']} status={build['status']}",
            )
        return lines

    def show_build(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            build = runtime.repository.get_build(command.item_id)
            tasks = (
                runtime.repository.list_build_tasks(build_id=command.item_id)
                if build is not None
                else []
            )
        if build is None:
            raise BuildNotFoundError(command.item_id)
        lines = [
            f"Build: {build.build_id}",
            f"Job: {build.job} #{build.build_number}",
            f"Branch: {build.branch}",
            f"Repository: {build.repo_url}",
            f"Commit: {build.commit_sha}",
            f"Status: {build.status.value}",
            f"Tasks: {len(tasks)}",
        ]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"attempt={task.attempt}/{task.max_attempts} error={task.error_message or '-'}",
            )
        return lines

    def retry_build(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            result = runtime.admin.retry_build(command.item_id)
        return [f"Build {command.item_id}: re-queued {result['retriedTaskCount']} failed tasks"]

    def queue_stats(self, command: StoreCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _runtime(settings) as runtime:
            status = runtime.admin.system_status()
            stats = runtime.admin.queue_stats()
            health = runtime.admin.health()

        tasks: dict[str, int] = status["tasks"]  # type: ignore[assignment]
        lines = [
            f"Health: {health['status']}",
            "Tasks: " + " ".join(f"{key}={value}" for key, value in tasks.items()),
            "By type:",
        ]
        by_type: dict[str, dict[str, int]] = stats["tasksByType"]  # type: ignore[assignment]
        for task_type in sorted(by_type):
            counts = " ".join(f"{key}={value}" for key, value in sorted(by_type[task_type].items()))
            lines.append(f"  {task_type}: {counts}")
        lines.append(f"Completion times (last {stats['windowHours']}h):")
        times: dict[str, dict[str, object]] = stats["processingTimes"]  # type: ignore[assignment]
        if not times:
            lines.append("  -")
        for task_type, item in times.items():
            lines.append(
                f"  {task_type}: avg={item['averageDurationSeconds']}s tasks={item['taskCount']}",
            )
        return lines

    def upgrade_db(self, command: StoreCommand) -> list[str]:
        settings = _settings(command.database_url)
        repository = _open_repository(settings)
        try:
            repository.init_schema()
        finally:
            repository.close()
        return [f"Schema is at head: {settings.store.database_url}"]

    def admin_app_runtime(self, command: StoreCommand) -> tuple[Settings, Runtime]:
        """Open a long-lived runtime for the admin HTTP server."""

        settings = _settings(command.database_url)
        repository = _open_repository(settings)
        repository.init_schema()
        return settings, build_runtime(settings, repository)


def _settings(database_url: str | None) -> Settings:
    settings = Settings.from_env(database_url=database_url)
    settings.validate()
    return settings


def _open_repository(settings: Settings) -> OrchestratorRepository:
    return OrchestratorRepository(
        settings.store.database_url,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        pool_size=settings.store.pool_size,
    )


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    repository = _open_repository(settings)
    repository.init_schema()
    try:
        yield build_runtime(settings, repository)
    finally:
        repository.close()


def _page_header(label: str, page: dict[str, object]) -> str:
    return (
        f"{label}: {page['totalElements']} total, page {page['page']} "
        f"of {page['totalPages']} (size {page['size']})"
    )
