"""Admin HTTP surface for queue inspection and operator recovery."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from ci_fixer import __version__
from ci_fixer.orchestrator.admin import AdminService, HealthStatus
from ci_fixer.orchestrator.errors import (
    BuildNotFoundError,
    InvalidTaskStateError,
    TaskNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def create_app(admin: AdminService) -> FastAPI:
    """App factory used by `ci-fixer admin serve` and tests."""

    app = FastAPI(title="ci-fixer admin", version=__version__)
    app.state.admin = admin

    @app.exception_handler(TaskNotFoundError)
    async def _task_not_found(_: Request, error: TaskNotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(error), "taskId": error.task_id}, status_code=404)

    @app.exception_handler(BuildNotFoundError)
    async def _build_not_found(_: Request, error: BuildNotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(error), "buildId": error.build_id}, status_code=404)

    @app.exception_handler(InvalidTaskStateError)
    async def _invalid_state(_: Request, error: InvalidTaskStateError) -> JSONResponse:
        return JSONResponse(
            {
                "error": str(error),
                "taskId": error.task_id,
                "currentStatus": error.current_status,
            },
            status_code=400,
        )

    @app.exception_handler(ValidationError)
    async def _bad_request(_: Request, error: ValidationError) -> JSONResponse:
        return JSONResponse({"error": str(error)}, status_code=400)

    @app.get("/admin/status")
    def system_status() -> dict[str, object]:
        return admin.system_status()

    @app.get("/admin/tasks")
    def list_tasks(
        status_filter: str | None = Query(None, alias="status"),
        page: int = 0,
        size: int | None = None,
    ) -> dict[str, object]:
        return admin.list_tasks(status=status_filter, page=page, size=size)

    @app.get("/admin/tasks/{task_id}")
    def task_details(task_id: int) -> dict[str, object]:
        return admin.task_details(task_id)

    @app.post("/admin/tasks/{task_id}/retry")
    def retry_task(task_id: int) -> dict[str, object]:
        return admin.retry_task(task_id)

    @app.get("/admin/builds")
    def list_builds(
        status_filter: str | None = Query(None, alias="status"),
        page: int = 0,
        size: int | None = None,
    ) -> dict[str, object]:
        return admin.list_builds(status=status_filter, page=page, size=size)

    @app.get("/admin/builds/{build_id}")
    def build_details(build_id: int) -> dict[str, object]:
        return admin.build_details(build_id)

    @app.get("/admin/builds/{build_id}/tasks")
    def build_tasks(build_id: int) -> list[dict[str, object]]:
        return admin.build_tasks(build_id)

    @app.post("/admin/builds/{build_id}/retry")
    def retry_build(build_id: int) -> dict[str, object]:
        return admin.retry_build(build_id)

    @app.get("/admin/queue/stats")
    def queue_stats() -> dict[str, object]:
        return admin.queue_stats()

    @app.get("/admin/health")
    def health() -> JSONResponse:
        report = admin.health()
        status_code = 503 if report["status"] == HealthStatus.DOWN.value else 200
        if status_code != 200:
            logger.warning("Health check reports %s", report["status"])
        return JSONResponse(report, status_code=status_code)

    return app
