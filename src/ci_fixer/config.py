"""Runtime configuration for the remediation queue and its workers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from ci_fixer.orchestrator.models import BuildStatus, normalize_task_type

DEFAULT_DATABASE_URL = "sqlite:///.ci_fixer.db"
DEFAULT_STAGE_SEQUENCE = ("PLAN", "RETRIEVE", "PATCH", "VALIDATE", "PR", "NOTIFY")


@dataclass(slots=True)
class StoreSettings:
    """Relational store settings."""

    database_url: str = DEFAULT_DATABASE_URL
    busy_timeout_ms: int = 5_000
    pool_size: int = 5


@dataclass(slots=True)
class RetrySettings:
    """Retry and backoff policy."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    jitter_enabled: bool = True
    jitter_factor: float = 0.1


@dataclass(slots=True)
class DispatcherSettings:
    """Stage dispatcher loop settings."""

    processing_enabled: bool = True
    poll_interval_seconds: float = 1.0
    handler_timeout_seconds: float = 900.0
    stale_after_seconds: int = 1_800
    task_types: tuple[str, ...] = ()
    handler_specs: tuple[str, ...] = ()


@dataclass(slots=True)
class PipelineSettings:
    """Stage sequence and loop-back policy."""

    stages: tuple[str, ...] = DEFAULT_STAGE_SEQUENCE
    loopbacks: dict[str, tuple[str, int]] = field(
        default_factory=lambda: {"VALIDATE": ("PATCH", 2)},
    )
    success_build_status: BuildStatus = BuildStatus.COMPLETED


@dataclass(slots=True)
class AdminSettings:
    """Admin HTTP surface settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    pending_threshold: int = 100
    default_page_size: int = 20
    max_page_size: int = 200


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    store: StoreSettings = field(default_factory=StoreSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    admin: AdminSettings = field(default_factory=AdminSettings)

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        stages = _split_csv(os.getenv("CI_FIXER_PIPELINE_STAGES", ""))
        return cls(
            store=StoreSettings(
                database_url=database_url
                or os.getenv("CI_FIXER_DATABASE_URL", DEFAULT_DATABASE_URL),
                busy_timeout_ms=int(os.getenv("CI_FIXER_DB_BUSY_TIMEOUT_MS", "5000")),
                pool_size=int(os.getenv("CI_FIXER_DB_POOL_SIZE", "5")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("CI_FIXER_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("CI_FIXER_RETRY_BASE_DELAY_SECONDS", "2")),
                max_delay_seconds=float(os.getenv("CI_FIXER_RETRY_MAX_DELAY_SECONDS", "300")),
                jitter_enabled=_env_bool("CI_FIXER_RETRY_JITTER_ENABLED", default=True),
                jitter_factor=float(os.getenv("CI_FIXER_RETRY_JITTER_FACTOR", "0.1")),
            ),
            dispatcher=DispatcherSettings(
                processing_enabled=_env_bool("CI_FIXER_PROCESSING_ENABLED", default=True),
                poll_interval_seconds=float(os.getenv("CI_FIXER_POLL_INTERVAL_SECONDS", "1")),
                handler_timeout_seconds=float(
                    os.getenv("CI_FIXER_HANDLER_TIMEOUT_SECONDS", "900"),
                ),
                stale_after_seconds=int(os.getenv("CI_FIXER_STALE_AFTER_SECONDS", "1800")),
                task_types=tuple(
                    normalize_task_type(item)
                    for item in _split_csv(os.getenv("CI_FIXER_TASK_TYPES", ""))
                ),
                handler_specs=_split_csv(os.getenv("CI_FIXER_HANDLERS", "")),
            ),
            pipeline=PipelineSettings(
                stages=tuple(normalize_task_type(item) for item in stages)
                or DEFAULT_STAGE_SEQUENCE,
                loopbacks=_parse_loopbacks(
                    os.getenv("CI_FIXER_PIPELINE_LOOPBACKS", "VALIDATE=PATCH:2"),
                ),
                success_build_status=BuildStatus(
                    os.getenv("CI_FIXER_SUCCESS_BUILD_STATUS", "COMPLETED").strip().upper(),
                ),
            ),
            admin=AdminSettings(
                host=os.getenv("CI_FIXER_ADMIN_HOST", "127.0.0.1"),
                port=int(os.getenv("CI_FIXER_ADMIN_PORT", "8080")),
                pending_threshold=int(os.getenv("CI_FIXER_HEALTH_PENDING_THRESHOLD", "100")),
                default_page_size=int(os.getenv("CI_FIXER_ADMIN_PAGE_SIZE", "20")),
                max_page_size=int(os.getenv("CI_FIXER_ADMIN_MAX_PAGE_SIZE", "200")),
            ),
        )

    def validate(self) -> None:
        """Raise ValueError naming the offending variable on invalid settings."""

        if not self.store.database_url.strip():
            raise ValueError("CI_FIXER_DATABASE_URL must not be empty.")
        if self.retry.max_attempts < 1:
            raise ValueError("CI_FIXER_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("CI_FIXER_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "CI_FIXER_RETRY_MAX_DELAY_SECONDS must be >= CI_FIXER_RETRY_BASE_DELAY_SECONDS.",
            )
        if self.retry.jitter_factor < 0:
            raise ValueError("CI_FIXER_RETRY_JITTER_FACTOR must be >= 0.")
        if self.dispatcher.poll_interval_seconds < 0:
            raise ValueError("CI_FIXER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.dispatcher.handler_timeout_seconds <= 0:
            raise ValueError("CI_FIXER_HANDLER_TIMEOUT_SECONDS must be > 0.")
        if self.dispatcher.stale_after_seconds <= 0:
            raise ValueError("CI_FIXER_STALE_AFTER_SECONDS must be > 0.")
        if not self.pipeline.stages:
            raise ValueError("CI_FIXER_PIPELINE_STAGES must list at least one stage.")
        if len(set(self.pipeline.stages)) != len(self.pipeline.stages):
            raise ValueError("CI_FIXER_PIPELINE_STAGES must not repeat a stage.")
        for source, (target, limit) in self.pipeline.loopbacks.items():
            if source not in self.pipeline.stages or target not in self.pipeline.stages:
                raise ValueError(
                    f"CI_FIXER_PIPELINE_LOOPBACKS references unknown stage: {source}={target}",
                )
            if limit < 0:
                raise ValueError("CI_FIXER_PIPELINE_LOOPBACKS limits must be >= 0.")
        if self.pipeline.success_build_status not in {BuildStatus.COMPLETED, BuildStatus.FIXED}:
            raise ValueError("CI_FIXER_SUCCESS_BUILD_STATUS must be COMPLETED or FIXED.")
        if self.admin.pending_threshold <= 0:
            raise ValueError("CI_FIXER_HEALTH_PENDING_THRESHOLD must be > 0.")
        if not 0 < self.admin.default_page_size <= self.admin.max_page_size:
            raise ValueError(
                "CI_FIXER_ADMIN_PAGE_SIZE must be > 0 and <= CI_FIXER_ADMIN_MAX_PAGE_SIZE.",
            )
        for spec in self.dispatcher.handler_specs:
            if "=" not in spec or ":" not in spec.split("=", 1)[1]:
                raise ValueError(
                    f"CI_FIXER_HANDLERS entries must look like TYPE=module:attr, got {spec!r}",
                )


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_loopbacks(raw: str) -> dict[str, tuple[str, int]]:
    """Parse `FROM=TO:LIMIT` comma-separated rules."""

    rules: dict[str, tuple[str, int]] = {}
    for item in _split_csv(raw):
        source, sep, rest = item.partition("=")
        target, colon, limit = rest.partition(":")
        if not sep or not colon or not source.strip() or not target.strip():
            raise ValueError(
                f"Invalid CI_FIXER_PIPELINE_LOOPBACKS entry {item!r}; expected FROM=TO:LIMIT.",
            )
        try:
            parsed_limit = int(limit)
        except ValueError as error:
            raise ValueError(
                f"Invalid loop-back limit in CI_FIXER_PIPELINE_LOOPBACKS entry {item!r}.",
            ) from error
        rules[normalize_task_type(source)] = (normalize_task_type(target), parsed_limit)
    return rules


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
