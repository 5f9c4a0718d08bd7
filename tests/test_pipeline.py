from __future__ import annotations

import allure
import pytest

from ci_fixer.orchestrator.errors import PipelineConfigurationError
from ci_fixer.orchestrator.models import BuildStatus, TaskResult
from ci_fixer.orchestrator.pipeline import DecisionKind, PipelinePolicy

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Pipeline Policy"),
]


def test_default_sequence_advances_stage_by_stage() -> None:
    policy = PipelinePolicy()
    chain = ["PLAN", "RETRIEVE", "PATCH", "VALIDATE", "PR", "NOTIFY"]

    for current, expected_next in zip(chain, chain[1:], strict=False):
        decision = policy.decide(current, TaskResult.success("ok"), {})
        assert decision.kind == DecisionKind.ADVANCE
        assert decision.next_type == expected_next
        assert decision.build_status is None


def test_final_stage_finishes_build_with_success_status() -> None:
    policy = PipelinePolicy(success_build_status=BuildStatus.FIXED)

    decision = policy.decide("NOTIFY", TaskResult.success("sent"), {"prUrl": "u"})

    assert decision.kind == DecisionKind.FINISH
    assert decision.build_status == BuildStatus.FIXED


def test_metadata_is_merged_into_next_payload() -> None:
    policy = PipelinePolicy()

    decision = policy.decide(
        "PLAN",
        TaskResult.success("planned", {"plan": ["fix import"], "branch": "fix/42"}),
        {"branch": "main", "repoUrl": "https://git.example.com/acme/app.git"},
    )

    assert decision.payload == {
        "branch": "fix/42",
        "repoUrl": "https://git.example.com/acme/app.git",
        "plan": ["fix import"],
    }


def test_advancing_to_notify_marks_success_notification() -> None:
    decision = PipelinePolicy().decide("PR", TaskResult.success("opened"), {})

    assert decision.next_type == "NOTIFY"
    assert decision.payload["notificationType"] == "SUCCESS"


def test_validate_failure_loops_back_to_patch_until_budget_is_spent() -> None:
    policy = PipelinePolicy()
    payload: dict[str, object] = {}

    for expected_count in (1, 2):
        decision = policy.decide("VALIDATE", TaskResult.failure("tests still red"), payload)
        assert decision.kind == DecisionKind.LOOP_BACK
        assert decision.next_type == "PATCH"
        assert decision.payload["loopbackCount"] == expected_count
        assert decision.payload["lastFailureMessage"] == "tests still red"
        payload = decision.payload

    final = policy.decide("VALIDATE", TaskResult.failure("tests still red"), payload)
    assert final.kind == DecisionKind.ESCALATE


def test_failure_without_loopback_rule_escalates() -> None:
    decision = PipelinePolicy().decide("PATCH", TaskResult.failure("no diff"), {})

    assert decision.kind == DecisionKind.ESCALATE


def test_escalation_notice_finishes_without_build_status() -> None:
    decision = PipelinePolicy(stages=("PLAN", "PATCH"), loopbacks={}).decide(
        "NOTIFY",
        TaskResult.success("paged on-call"),
        {"notificationType": "MANUAL_INTERVENTION"},
    )

    assert decision.kind == DecisionKind.FINISH
    assert decision.build_status is None


def test_unknown_stage_raises_configuration_error() -> None:
    with pytest.raises(PipelineConfigurationError):
        PipelinePolicy().decide("DEPLOY", TaskResult.success(), {})


def test_retry_results_are_not_routed() -> None:
    with pytest.raises(ValueError, match="RETRY"):
        PipelinePolicy().decide("PLAN", TaskResult.retry("later"), {})


@pytest.mark.parametrize(
    ("stages", "loopbacks"),
    [
        ((), None),
        (("PLAN", "PLAN"), None),
        (("PLAN", "PATCH"), {"VALIDATE": ("PATCH", 1)}),
    ],
)
def test_invalid_pipeline_definitions_are_rejected(stages, loopbacks) -> None:
    with pytest.raises(PipelineConfigurationError):
        PipelinePolicy(stages, loopbacks)
