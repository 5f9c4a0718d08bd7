"""Persistent queue repository for builds and pipeline tasks."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from ci_fixer.orchestrator.errors import (
    BuildNotFoundError,
    DuplicateBuildError,
    InvalidTaskStateError,
    TaskNotFoundError,
)
from ci_fixer.orchestrator.models import (
    CLAIMABLE_STATUSES,
    SUPERSEDED_BY_KEY,
    TERMINAL_TASK_STATUSES,
    BuildCreate,
    BuildStatus,
    BuildView,
    Page,
    StageDuration,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    is_escalation_notice,
    normalize_task_type,
)
from ci_fixer.store.alembic_runner import upgrade_head
from ci_fixer.store.common import (
    build_engine,
    pool_status,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ci_fixer.store.sqlmodel_models import Build, Task, TaskEvent

logger = logging.getLogger(__name__)

_CLAIMABLE_VALUES = tuple(status.value for status in CLAIMABLE_STATUSES)


class OrchestratorRepository:
    """Queue persistence facade backed by SQLModel.

    Every status/attempt/error mutation happens in one transaction together
    with its audit event.
    """

    def __init__(
        self,
        database_url: str,
        *,
        busy_timeout_ms: int = 5_000,
        pool_size: int = 5,
    ) -> None:
        self.database_url = database_url
        self.engine = build_engine(
            database_url=database_url,
            busy_timeout_ms=busy_timeout_ms,
            pool_size=pool_size,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.database_url)

    def ping(self) -> bool:
        """Return True when the store answers a trivial query."""

        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Store ping failed", exc_info=True)
            return False
        return True

    def pool_status(self) -> dict[str, object]:
        return pool_status(self.engine)

    # -- builds ---------------------------------------------------------------

    def create_build(
        self,
        payload: BuildCreate,
        *,
        first_task: TaskCreate | None = None,
    ) -> tuple[BuildView, TaskView | None]:
        """Register a build, optionally enqueuing its first task atomically."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            existing = session.exec(
                select(Build.id).where(
                    Build.job == payload.job,
                    Build.build_number == payload.build_number,
                ),
            ).first()
            if existing is not None:
                raise DuplicateBuildError(job=payload.job, build_number=payload.build_number)

            build = Build(
                job=payload.job,
                build_number=payload.build_number,
                branch=payload.branch,
                repo_url=payload.repo_url,
                commit_sha=payload.commit_sha,
                status=BuildStatus.PROCESSING.value,
                payload=dict(payload.payload),
                created_at=now,
                updated_at=now,
            )
            session.add(build)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateBuildError(
                    job=payload.job,
                    build_number=payload.build_number,
                ) from error

            task_row: Task | None = None
            if first_task is not None:
                first_task.build_id = _require_id(build.id)
                task_row = self._insert_task(session=session, payload=first_task, now=now)
            session.commit()
            session.refresh(build)
            if task_row is not None:
                session.refresh(task_row)
            return _to_build_view(build), _to_task_view(task_row) if task_row else None

    def get_build(self, build_id: int) -> BuildView | None:
        with Session(self.engine) as session:
            row = session.get(Build, build_id)
            return _to_build_view(row) if row is not None else None

    def find_build(self, *, job: str, build_number: int) -> BuildView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Build).where(Build.job == job, Build.build_number == build_number),
            ).one_or_none()
            return _to_build_view(row) if row is not None else None

    def list_builds(
        self,
        *,
        status: BuildStatus | None = None,
        page: int = 0,
        size: int = 20,
    ) -> Page:
        """Newest-first page of builds, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Build)
            count_statement = select(func.count()).select_from(Build)
            if status is not None:
                statement = statement.where(Build.status == status.value)
                count_statement = count_statement.where(Build.status == status.value)
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(Build.created_at).desc(), col(Build.id).desc())
                .offset(page * size)
                .limit(size),
            ).all()
        return Page(
            items=[_to_build_view(row) for row in rows],
            page=page,
            size=size,
            total=int(total),
        )

    def mark_build_failed(
        self,
        *,
        build_id: int,
        escalation: TaskCreate | None = None,
    ) -> TaskView | None:
        """Cascade a build to FAILED and enqueue its escalation task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Build)
                .where(col(Build.id) == build_id)
                .values(status=BuildStatus.FAILED.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise BuildNotFoundError(build_id)
            escalation_row: Task | None = None
            if escalation is not None:
                escalation_row = self._insert_task(session=session, payload=escalation, now=now)
            session.commit()
            if escalation_row is None:
                return None
            session.refresh(escalation_row)
            return _to_task_view(escalation_row)

    # -- tasks ----------------------------------------------------------------

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a PENDING task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if session.get(Build, payload.build_id) is None:
                raise BuildNotFoundError(payload.build_id)
            row = self._insert_task(session=session, payload=payload, now=now)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next_task(self, *, task_type: str, worker_id: str) -> TaskView | None:
        """Atomically claim the oldest claimable task of one type.

        The candidate row is locked with SKIP LOCKED where the backend supports
        it; the guarded UPDATE keeps the claim exclusive on backends without
        row locks, and a lost race simply moves on to the next candidate.
        """

        normalized_type = normalize_task_type(task_type)
        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Task)
                    .where(
                        Task.type == normalized_type,
                        col(Task.status).in_(_CLAIMABLE_VALUES),
                        col(Task.attempt) < col(Task.max_attempts),
                        Task.run_after <= now,
                    )
                    .order_by(col(Task.created_at).asc(), col(Task.id).asc())
                    .limit(1)
                    .with_for_update(skip_locked=True),
                ).one_or_none()
                if candidate is None:
                    return None

                previous = TaskStatus(candidate.status)
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.id) == candidate.id,
                        col(Task.status).in_(_CLAIMABLE_VALUES),
                        col(Task.attempt) < col(Task.max_attempts),
                    )
                    .values(
                        status=TaskStatus.IN_PROGRESS.value,
                        attempt=col(Task.attempt) + 1,
                        worker_id=worker_id,
                        claimed_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.expire_all()
                claimed = session.exec(select(Task).where(Task.id == candidate.id)).one()
                self._add_event(
                    session=session,
                    task_id=_require_id(claimed.id),
                    event_type="claimed",
                    status_from=previous,
                    status_to=TaskStatus.IN_PROGRESS,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                session.refresh(claimed)
                return _to_task_view(claimed)

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def update_task_status(
        self,
        *,
        task_id: int,
        status: TaskStatus,
        error_message: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Persist a status (and optional error); False when the task is gone."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            previous = TaskStatus(row.status)
            row.status = status.value
            if error_message is not None:
                row.error_message = error_message
            if status in TERMINAL_TASK_STATUSES:
                row.finished_at = now
            row.updated_at = now
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="status_updated",
                status_from=previous,
                status_to=status,
                details={"error_message": error_message, **(details or {})},
            )
            session.commit()
            return True

    def complete_task(
        self,
        *,
        task_id: int,
        claim_attempt: int,
        message: str,
        next_task: TaskCreate | None = None,
        build_status: BuildStatus | None = None,
    ) -> TaskView | None:
        """Finish a running claim and advance the pipeline in one transaction.

        Returns the follow-up task (if any). Raises InvalidTaskStateError when
        the claim is no longer held, so a reconciled claim never advances twice.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._held_claim(session=session, task_id=task_id, claim_attempt=claim_attempt)
            row.status = TaskStatus.COMPLETED.value
            row.finished_at = now
            row.updated_at = now
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.COMPLETED,
                details={
                    "message": message,
                    "next_task_type": next_task.task_type if next_task else None,
                },
            )
            next_row: Task | None = None
            if next_task is not None:
                next_row = self._insert_task(session=session, payload=next_task, now=now)
            if build_status is not None:
                session.exec(
                    sa_update(Build)
                    .where(col(Build.id) == row.build_id)
                    .values(status=build_status.value, updated_at=now),
                )
            session.commit()
            if next_row is None:
                return None
            session.refresh(next_row)
            return _to_task_view(next_row)

    def fail_task(
        self,
        *,
        task_id: int,
        error_message: str,
        claim_attempt: int | None = None,
        follow_up: TaskCreate | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a task FAILED, optionally enqueuing a follow-up task atomically.

        A follow-up replaces the failed task in the build's workflow, so the
        failed row records it under SUPERSEDED_BY_KEY and is never reset by a
        manual retry. With `claim_attempt` the write only applies while the
        caller still holds that claim. Re-failing a FAILED task without a
        claim guard is a harmless no-op that reports success.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            previous = TaskStatus(row.status)
            if previous == TaskStatus.COMPLETED:
                return False
            if claim_attempt is not None and (
                previous != TaskStatus.IN_PROGRESS or row.attempt != claim_attempt
            ):
                return False
            if previous == TaskStatus.FAILED:
                return True
            row.status = TaskStatus.FAILED.value
            row.error_message = error_message
            row.finished_at = now
            row.updated_at = now
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=previous,
                status_to=TaskStatus.FAILED,
                details={
                    "error_message": error_message,
                    "follow_up_type": follow_up.task_type if follow_up else None,
                    **(details or {}),
                },
            )
            if follow_up is not None:
                follow_up_row = self._insert_task(session=session, payload=follow_up, now=now)
                row.payload = {**(row.payload or {}), SUPERSEDED_BY_KEY: follow_up_row.id}
                session.add(row)
            session.commit()
            return True

    def requeue_task(
        self,
        *,
        task_id: int,
        error_message: str,
        run_after: datetime,
        exhausted_message: str | None = None,
        claim_attempt: int | None = None,
        details: dict[str, object] | None = None,
    ) -> TaskStatus | None:
        """Move a task to RETRY, or FAILED once its attempt budget is spent.

        The retry-vs-fail decision is taken against the stored attempt counter
        inside the write transaction. Returns the new status, or None when
        nothing changed: a missing or terminal task, or a claim the caller no
        longer holds.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return None
            previous = TaskStatus(row.status)
            if previous in TERMINAL_TASK_STATUSES:
                return None
            if claim_attempt is not None and (
                previous != TaskStatus.IN_PROGRESS or row.attempt != claim_attempt
            ):
                return None

            if row.attempt < row.max_attempts:
                target = TaskStatus.RETRY
                row.error_message = error_message
                row.run_after = to_db_datetime(run_after)
                row.finished_at = None
            else:
                target = TaskStatus.FAILED
                row.error_message = exhausted_message or error_message
                row.finished_at = now
            row.status = target.value
            row.worker_id = None
            row.claimed_at = None
            row.updated_at = now
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled" if target == TaskStatus.RETRY else "failed",
                status_from=previous,
                status_to=target,
                details={
                    "attempt": row.attempt,
                    "max_attempts": row.max_attempts,
                    "run_after": to_utc_aware_datetime(row.run_after).isoformat(),
                    "error_message": row.error_message,
                    **(details or {}),
                },
            )
            session.commit()
            return target

    def reset_failed_task(self, *, task_id: int) -> TaskView:
        """Manual operator retry: FAILED -> PENDING with a fresh attempt budget.

        The owning build is reopened to PROCESSING unless the task is an
        escalation notice, which only reports a failure and leaves the build
        FAILED. Tasks superseded by a loop-back cannot be retried.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            if row.status != TaskStatus.FAILED.value:
                raise InvalidTaskStateError(
                    task_id=task_id,
                    current_status=row.status,
                    expected=TaskStatus.FAILED.value,
                )
            payload = dict(row.payload or {})
            if payload.get(SUPERSEDED_BY_KEY) is not None:
                raise InvalidTaskStateError(
                    task_id=task_id,
                    current_status=f"FAILED, superseded by task {payload[SUPERSEDED_BY_KEY]}",
                    expected=TaskStatus.FAILED.value,
                )
            reopens_build = not is_escalation_notice(row.type, payload)
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    attempt=0,
                    error_message=None,
                    run_after=now,
                    worker_id=None,
                    claimed_at=None,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTaskStateError(
                    task_id=task_id,
                    current_status="changed concurrently",
                    expected=TaskStatus.FAILED.value,
                )
            if reopens_build:
                session.exec(
                    sa_update(Build)
                    .where(col(Build.id) == row.build_id)
                    .values(status=BuildStatus.PROCESSING.value, updated_at=now),
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="manual_retry",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                details={"build_reopened": reopens_build},
            )
            session.commit()
            session.expire_all()
            refreshed = session.get(Task, task_id)
            return _to_task_view(refreshed)  # type: ignore[arg-type]

    def recover_stale_tasks(
        self,
        *,
        stale_after: timedelta,
        task_type: str | None = None,
    ) -> list[TaskView]:
        """Reconcile IN_PROGRESS claims older than the staleness threshold.

        Claims with attempts left go back to RETRY; exhausted ones become
        FAILED. Returns the rows that were changed, in their new state.
        """

        now = to_db_datetime(utc_now())
        cutoff = now - stale_after
        recovered_ids: list[int] = []
        with Session(self.engine) as session:
            statement = select(Task).where(
                Task.status == TaskStatus.IN_PROGRESS.value,
                col(Task.claimed_at).is_not(None),
                col(Task.claimed_at) < cutoff,
            )
            if task_type is not None:
                statement = statement.where(Task.type == normalize_task_type(task_type))
            for row in session.exec(statement).all():
                exhausted = row.attempt >= row.max_attempts
                target = TaskStatus.FAILED if exhausted else TaskStatus.RETRY
                message = (
                    f"Stale claim recovered: worker {row.worker_id or 'unknown'} held task "
                    f"for more than {int(stale_after.total_seconds())}s "
                    f"(attempt {row.attempt}/{row.max_attempts})"
                )
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.id) == row.id,
                        col(Task.status) == TaskStatus.IN_PROGRESS.value,
                        col(Task.attempt) == row.attempt,
                    )
                    .values(
                        status=target.value,
                        error_message=message,
                        run_after=now,
                        worker_id=None,
                        claimed_at=None,
                        finished_at=now if exhausted else None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=_require_id(row.id),
                    event_type="stale_recovered",
                    status_from=TaskStatus.IN_PROGRESS,
                    status_to=target,
                    details={"worker_id": row.worker_id, "attempt": row.attempt},
                )
                recovered_ids.append(_require_id(row.id))
            session.commit()
            if not recovered_ids:
                return []
            rows = session.exec(select(Task).where(col(Task.id).in_(recovered_ids))).all()
            return [_to_task_view(row) for row in rows]

    # -- inspection -----------------------------------------------------------

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        page: int = 0,
        size: int = 20,
    ) -> Page:
        """Newest-first page of tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task)
            count_statement = select(func.count()).select_from(Task)
            if status is not None:
                statement = statement.where(Task.status == status.value)
                count_statement = count_statement.where(Task.status == status.value)
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(Task.created_at).desc(), col(Task.id).desc())
                .offset(page * size)
                .limit(size),
            ).all()
        return Page(
            items=[_to_task_view(row) for row in rows],
            page=page,
            size=size,
            total=int(total),
        )

    def list_build_tasks(
        self,
        *,
        build_id: int,
        status: TaskStatus | None = None,
    ) -> list[TaskView]:
        """Tasks of one build in creation order."""

        with Session(self.engine) as session:
            statement = select(Task).where(Task.build_id == build_id)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(
                statement.order_by(col(Task.created_at).asc(), col(Task.id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: int) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            task_view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task_view, events=events)

    def count_tasks_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.status, func.count()).group_by(Task.status),
            ).all()
        counts = {status.value: 0 for status in TaskStatus}
        counts.update({str(status): int(count) for status, count in rows})
        return counts

    def count_builds_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Build.status, func.count()).group_by(Build.status),
            ).all()
        counts = {status.value: 0 for status in BuildStatus}
        counts.update({str(status): int(count) for status, count in rows})
        return counts

    def count_tasks_by_type_and_status(self) -> dict[str, dict[str, int]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.type, Task.status, func.count()).group_by(Task.type, Task.status),
            ).all()
        grouped: dict[str, dict[str, int]] = {}
        for task_type, status, count in rows:
            grouped.setdefault(str(task_type), {})[str(status)] = int(count)
        return grouped

    def completion_durations(self, *, since: datetime) -> list[StageDuration]:
        """Average creation-to-completion time per task type since a cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.type, Task.created_at, Task.finished_at).where(
                    Task.status == TaskStatus.COMPLETED.value,
                    col(Task.finished_at).is_not(None),
                    col(Task.finished_at) >= to_db_datetime(since),
                ),
            ).all()
        totals: dict[str, list[float]] = {}
        for task_type, created_at, finished_at in rows:
            elapsed = (
                to_utc_aware_datetime(finished_at) - to_utc_aware_datetime(created_at)
            ).total_seconds()
            totals.setdefault(str(task_type), []).append(max(0.0, elapsed))
        return [
            StageDuration(
                task_type=task_type,
                average_seconds=sum(values) / len(values),
                task_count=len(values),
            )
            for task_type, values in sorted(totals.items())
        ]

    # -- internals ------------------------------------------------------------

    def _insert_task(self, *, session: Session, payload: TaskCreate, now: datetime) -> Task:
        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")
        row = Task(
            build_id=payload.build_id,
            type=normalize_task_type(payload.task_type),
            status=TaskStatus.PENDING.value,
            attempt=0,
            max_attempts=payload.max_attempts,
            payload=dict(payload.payload),
            error_message=None,
            run_after=to_db_datetime(payload.run_after) if payload.run_after else now,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            task_id=_require_id(row.id),
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={
                "build_id": payload.build_id,
                "task_type": row.type,
                "max_attempts": payload.max_attempts,
            },
        )
        return row

    def _held_claim(self, *, session: Session, task_id: int, claim_attempt: int) -> Task:
        row = session.get(Task, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        if row.status != TaskStatus.IN_PROGRESS.value or row.attempt != claim_attempt:
            raise InvalidTaskStateError(
                task_id=task_id,
                current_status=f"{row.status} (attempt {row.attempt})",
                expected=f"{TaskStatus.IN_PROGRESS.value} (attempt {claim_attempt})",
            )
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _require_id(value: int | None) -> int:
    if value is None:
        raise RuntimeError("Row has no primary key after flush.")
    return value


def _to_build_view(row: Build) -> BuildView:
    return BuildView(
        build_id=_require_id(row.id),
        job=row.job,
        build_number=row.build_number,
        branch=row.branch,
        repo_url=row.repo_url,
        commit_sha=row.commit_sha,
        status=BuildStatus(row.status),
        payload=dict(row.payload or {}),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=_require_id(row.id),
        build_id=row.build_id,
        task_type=row.type,
        status=TaskStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        payload=dict(row.payload or {}),
        error_message=row.error_message,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        claimed_at=to_utc_aware_datetime(row.claimed_at) if row.claimed_at else None,
        finished_at=to_utc_aware_datetime(row.finished_at) if row.finished_at else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
