"""Producer-side intake of failed CI builds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ci_fixer.orchestrator.errors import ValidationError
from ci_fixer.orchestrator.models import BuildCreate, BuildView, TaskCreate
from ci_fixer.orchestrator.pipeline import PipelinePolicy
from ci_fixer.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BuildSubmission:
    """A failed build as reported by the CI webhook."""

    job: str
    build_number: int
    branch: str
    repo_url: str
    commit_sha: str
    build_logs: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


class BuildIntakeService:
    """Registers failed builds and starts their remediation pipeline."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        policy: PipelinePolicy,
        max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.policy = policy
        self.max_attempts = max_attempts

    def submit_failure(self, submission: BuildSubmission) -> BuildView:
        """Create the build and enqueue the first stage in one transaction.

        Raises:
            ValidationError: a required field is missing or malformed.
            DuplicateBuildError: the (job, build number) pair is already known.
        """

        _validate(submission)
        stage_payload = {
            **submission.payload,
            "repoUrl": submission.repo_url,
            "branch": submission.branch,
            "commitSha": submission.commit_sha,
            "buildLogs": submission.build_logs,
        }
        build, first_task = self.repository.create_build(
            BuildCreate(
                job=submission.job.strip(),
                build_number=submission.build_number,
                branch=submission.branch.strip(),
                repo_url=submission.repo_url.strip(),
                commit_sha=submission.commit_sha.strip(),
                payload=dict(submission.payload),
            ),
            first_task=TaskCreate(
                build_id=0,
                task_type=self.policy.first_stage,
                payload=stage_payload,
                max_attempts=self.max_attempts,
            ),
        )
        logger.info(
            "Registered build %s (%s #%s); %s task %s enqueued",
            build.build_id,
            build.job,
            build.build_number,
            first_task.task_type if first_task else "no",
            first_task.task_id if first_task else "-",
        )
        return build


def _validate(submission: BuildSubmission) -> None:
    for name in ("job", "branch", "repo_url", "commit_sha"):
        value = getattr(submission, name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Build submission field '{name}' is required")
    if isinstance(submission.build_number, bool) or not isinstance(submission.build_number, int):
        raise ValidationError("Build submission field 'build_number' must be an integer")
    if submission.build_number <= 0:
        raise ValidationError("Build submission field 'build_number' must be positive")
