"""CLI entrypoint for ci-fixer."""

import logging
from pathlib import Path

import rich_click as click
import uvicorn

from ci_fixer import __version__
from ci_fixer.orchestrator.controllers import (
    ItemCommand,
    ListCommand,
    OrchestratorCliController,
    StoreCommand,
    SubmitCommand,
    WorkerCommand,
)
from ci_fixer.orchestrator.errors import OrchestratorError
from ci_fixer.web.admin_api import create_app

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

database_url_option = click.option(
    "--database-url",
    default=None,
    help="SQLAlchemy URL of the queue store (default: CI_FIXER_DATABASE_URL).",
)


@click.group()
@click.version_option(version=__version__, prog_name="ci-fixer")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def ci_fixer(log_level: str) -> None:
    """CI failure remediation queue and stage orchestrator."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@ci_fixer.command("worker")
@database_url_option
@click.option(
    "--task-type",
    "task_types",
    multiple=True,
    help="Task type to dispatch. Can be repeated. Defaults to every pipeline stage.",
)
@click.option("--once", is_flag=True, help="Poll each dispatcher once and exit.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop each dispatcher after this many tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop a dispatcher after this many consecutive empty polls.",
)
@click.option("--echo", is_flag=True, help="Register the echo handler for unhandled types.")
def worker(  # noqa: PLR0913
    database_url: str | None,
    task_types: tuple[str, ...],
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    echo: bool,
) -> None:
    """Run stage dispatchers until stopped (SIGINT/SIGTERM) or idle."""

    _run(
        CONTROLLER.run_worker,
        WorkerCommand(
            database_url=database_url,
            task_types=task_types,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls,
            echo=echo,
        ),
    )


@ci_fixer.command("submit")
@database_url_option
@click.option("--job", required=True, help="CI job name.")
@click.option("--build-number", type=click.IntRange(min=1), required=True, help="Build number.")
@click.option("--branch", required=True, help="Branch that failed.")
@click.option("--repo-url", required=True, help="Repository URL.")
@click.option("--commit-sha", required=True, help="Failing commit SHA.")
@click.option(
    "--logs",
    "logs_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File with the failing build log.",
)
@click.option("--payload", "payload_json", default=None, help="Extra payload as a JSON object.")
def submit(  # noqa: PLR0913
    database_url: str | None,
    job: str,
    build_number: int,
    branch: str,
    repo_url: str,
    commit_sha: str,
    logs_path: Path | None,
    payload_json: str | None,
) -> None:
    """Register a failed build and enqueue its first stage."""

    _run(
        CONTROLLER.submit,
        SubmitCommand(
            database_url=database_url,
            job=job,
            build_number=build_number,
            branch=branch,
            repo_url=repo_url,
            commit_sha=commit_sha,
            logs_path=logs_path,
            payload_json=payload_json,
        ),
    )


@ci_fixer.group()
def tasks() -> None:
    """Task inspection and recovery."""


@tasks.command("list")
@database_url_option
@click.option("--status", default=None, help="Filter by status, for example FAILED.")
@click.option("--page", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--size", type=click.IntRange(min=1), default=None, help="Page size.")
def tasks_list(database_url: str | None, status: str | None, page: int, size: int | None) -> None:
    """List tasks, newest first."""

    _run(CONTROLLER.list_tasks, ListCommand(database_url, status, page, size))


@tasks.command("show")
@database_url_option
@click.argument("task_id", type=int)
def tasks_show(database_url: str | None, task_id: int) -> None:
    """Show one task with its event history."""

    _run(CONTROLLER.show_task, ItemCommand(database_url, task_id))


@tasks.command("retry")
@database_url_option
@click.argument("task_id", type=int)
def tasks_retry(database_url: str | None, task_id: int) -> None:
    """Reset a FAILED task to PENDING with a fresh attempt budget."""

    _run(CONTROLLER.retry_task, ItemCommand(database_url, task_id))


@ci_fixer.group()
def builds() -> None:
    """Build inspection and recovery."""


@builds.command("list")
@database_url_option
@click.option("--status", default=None, help="Filter by status, for example FAILED.")
@click.option("--page", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--size", type=click.IntRange(min=1), default=None, help="Page size.")
def builds_list(database_url: str | None, status: str | None, page: int, size: int | None) -> None:
    """List builds, newest first."""

    _run(CONTROLLER.list_builds, ListCommand(database_url, status, page, size))


@builds.command("show")
@database_url_option
@click.argument("build_id", type=int)
def builds_show(database_url: str | None, build_id: int) -> None:
    """Show one build with its tasks."""

    _run(CONTROLLER.show_build, ItemCommand(database_url, build_id))


@builds.command("retry")
@database_url_option
@click.argument("build_id", type=int)
def builds_retry(database_url: str | None, build_id: int) -> None:
    """Re-queue every FAILED task of a build."""

    _run(CONTROLLER.retry_build, ItemCommand(database_url, build_id))


@ci_fixer.group()
def queue() -> None:
    """Queue observability."""


@queue.command("stats")
@database_url_option
def queue_stats(database_url: str | None) -> None:
    """Show task counts, per-type breakdown and completion times."""

    _run(CONTROLLER.queue_stats, StoreCommand(database_url))


@ci_fixer.group()
def admin() -> None:
    """Admin HTTP surface."""


@admin.command("serve")
@database_url_option
@click.option("--host", default=None, help="Bind host (default: CI_FIXER_ADMIN_HOST).")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
def admin_serve(database_url: str | None, host: str | None, port: int | None) -> None:
    """Serve the admin API with uvicorn."""

    settings, runtime = CONTROLLER.admin_app_runtime(StoreCommand(database_url))
    try:
        uvicorn.run(
            create_app(runtime.admin),
            host=host or settings.admin.host,
            port=port or settings.admin.port,
        )
    finally:
        runtime.repository.close()


@ci_fixer.group()
def db() -> None:
    """Schema management."""


@db.command("upgrade")
@database_url_option
def db_upgrade(database_url: str | None) -> None:
    """Apply migrations up to head."""

    _run(CONTROLLER.upgrade_db, StoreCommand(database_url))


def _run(handler, command) -> None:  # noqa: ANN001
    try:
        lines = handler(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ci_fixer()
