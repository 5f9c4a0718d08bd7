from __future__ import annotations

import allure
import pytest

from ci_fixer.orchestrator.errors import DuplicateBuildError, ValidationError
from ci_fixer.orchestrator.models import BuildStatus, TaskStatus
from ci_fixer.orchestrator.pipeline import PipelinePolicy
from ci_fixer.orchestrator.repository import OrchestratorRepository
from ci_fixer.orchestrator.services import BuildIntakeService, BuildSubmission

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Build Intake"),
]


def _submission(**overrides: object) -> BuildSubmission:
    values: dict[str, object] = {
        "job": "acme-app",
        "build_number": 42,
        "branch": "main",
        "repo_url": "https://git.example.com/acme/app.git",
        "commit_sha": "0f3c2a9",
        "build_logs": "FAILED: test_checkout",
    }
    values.update(overrides)
    return BuildSubmission(**values)  # type: ignore[arg-type]


def test_submit_creates_build_and_first_stage(
    repository: OrchestratorRepository,
    policy: PipelinePolicy,
) -> None:
    intake = BuildIntakeService(repository=repository, policy=policy, max_attempts=4)

    build = intake.submit_failure(_submission(payload={"requestedBy": "ci-webhook"}))

    assert build.status == BuildStatus.PROCESSING
    assert build.payload == {"requestedBy": "ci-webhook"}
    tasks = repository.list_build_tasks(build_id=build.build_id)
    assert len(tasks) == 1
    first = tasks[0]
    assert first.task_type == "PLAN"
    assert first.status == TaskStatus.PENDING
    assert first.attempt == 0
    assert first.max_attempts == 4
    assert first.payload == {
        "requestedBy": "ci-webhook",
        "repoUrl": "https://git.example.com/acme/app.git",
        "branch": "main",
        "commitSha": "0f3c2a9",
        "buildLogs": "FAILED: test_checkout",
    }


def test_duplicate_build_is_rejected_without_new_tasks(
    repository: OrchestratorRepository,
    policy: PipelinePolicy,
) -> None:
    intake = BuildIntakeService(repository=repository, policy=policy)
    build = intake.submit_failure(_submission())

    with pytest.raises(DuplicateBuildError, match="job=acme-app build_number=42"):
        intake.submit_failure(_submission(commit_sha="1234abc"))

    assert len(repository.list_build_tasks(build_id=build.build_id)) == 1
    assert repository.count_builds_by_status()[BuildStatus.PROCESSING.value] == 1


def test_same_job_with_new_build_number_is_accepted(
    repository: OrchestratorRepository,
    policy: PipelinePolicy,
) -> None:
    intake = BuildIntakeService(repository=repository, policy=policy)
    intake.submit_failure(_submission())

    second = intake.submit_failure(_submission(build_number=43))

    found = repository.find_build(job="acme-app", build_number=43)
    assert found is not None
    assert found.build_id == second.build_id


@pytest.mark.parametrize(
    ("overrides", "field_name"),
    [
        ({"job": "  "}, "job"),
        ({"branch": ""}, "branch"),
        ({"repo_url": ""}, "repo_url"),
        ({"commit_sha": ""}, "commit_sha"),
        ({"build_number": 0}, "build_number"),
        ({"build_number": True}, "build_number"),
    ],
)
def test_invalid_submission_is_rejected(
    repository: OrchestratorRepository,
    policy: PipelinePolicy,
    overrides: dict[str, object],
    field_name: str,
) -> None:
    intake = BuildIntakeService(repository=repository, policy=policy)

    with pytest.raises(ValidationError, match=field_name):
        intake.submit_failure(_submission(**overrides))

    assert repository.count_builds_by_status()[BuildStatus.PROCESSING.value] == 0


def test_first_stage_follows_custom_pipeline(repository: OrchestratorRepository) -> None:
    policy = PipelinePolicy(stages=("RETRIEVE", "PATCH", "NOTIFY"), loopbacks={})
    intake = BuildIntakeService(repository=repository, policy=policy)

    build = intake.submit_failure(_submission())

    tasks = repository.list_build_tasks(build_id=build.build_id)
    assert [task.task_type for task in tasks] == ["RETRIEVE"]
