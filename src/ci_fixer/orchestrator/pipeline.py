"""Next-stage policy for the remediation pipeline."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ci_fixer.config import DEFAULT_STAGE_SEQUENCE, PipelineSettings
from ci_fixer.orchestrator.errors import PipelineConfigurationError
from ci_fixer.orchestrator.models import (
    BuildStatus,
    NotificationType,
    TaskResult,
    TaskStatus,
    TaskType,
    is_escalation_notice,
    normalize_task_type,
)

LOOPBACK_COUNT_KEY = "loopbackCount"


class DecisionKind(str, Enum):
    ADVANCE = "ADVANCE"
    FINISH = "FINISH"
    LOOP_BACK = "LOOP_BACK"
    ESCALATE = "ESCALATE"


@dataclass(slots=True)
class StageDecision:
    """What should happen after a stage reported COMPLETED or FAILED."""

    kind: DecisionKind
    next_type: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    build_status: BuildStatus | None = None


class PipelinePolicy:
    """Ordered stage sequence plus bounded loop-back rules."""

    def __init__(
        self,
        stages: Sequence[str] = DEFAULT_STAGE_SEQUENCE,
        loopbacks: Mapping[str, tuple[str, int]] | None = None,
        *,
        success_build_status: BuildStatus = BuildStatus.COMPLETED,
    ) -> None:
        self.stages = tuple(normalize_task_type(stage) for stage in stages)
        if not self.stages:
            raise PipelineConfigurationError("Pipeline needs at least one stage")
        if len(set(self.stages)) != len(self.stages):
            raise PipelineConfigurationError(f"Pipeline stages repeat: {self.stages}")
        rules = {"VALIDATE": ("PATCH", 2)} if loopbacks is None else loopbacks
        self.loopbacks = {
            normalize_task_type(source): (normalize_task_type(target), limit)
            for source, (target, limit) in rules.items()
        }
        for source, (target, _) in self.loopbacks.items():
            if source not in self.stages or target not in self.stages:
                raise PipelineConfigurationError(
                    f"Loop-back {source}->{target} references a stage outside the pipeline",
                )
        self.success_build_status = success_build_status

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> PipelinePolicy:
        return cls(
            settings.stages,
            settings.loopbacks,
            success_build_status=settings.success_build_status,
        )

    @property
    def first_stage(self) -> str:
        return self.stages[0]

    def decide(
        self,
        task_type: str,
        result: TaskResult,
        payload: Mapping[str, Any],
    ) -> StageDecision:
        """Route a COMPLETED or FAILED stage result."""

        normalized = normalize_task_type(task_type)
        merged = {**payload, **result.metadata}
        if is_escalation_notice(normalized, payload):
            # Escalation notices sit outside the stage sequence; the build stays FAILED.
            kind = (
                DecisionKind.FINISH
                if result.status == TaskStatus.COMPLETED
                else DecisionKind.ESCALATE
            )
            return StageDecision(kind=kind, payload=merged)
        if normalized not in self.stages:
            raise PipelineConfigurationError(f"Task type {normalized} is not a pipeline stage")

        if result.status == TaskStatus.COMPLETED:
            position = self.stages.index(normalized)
            if position == len(self.stages) - 1:
                return StageDecision(
                    kind=DecisionKind.FINISH,
                    payload=merged,
                    build_status=self.success_build_status,
                )
            next_type = self.stages[position + 1]
            if next_type == TaskType.NOTIFY.value:
                merged.setdefault("notificationType", NotificationType.SUCCESS.value)
            return StageDecision(kind=DecisionKind.ADVANCE, next_type=next_type, payload=merged)

        if result.status == TaskStatus.FAILED:
            rule = self.loopbacks.get(normalized)
            if rule is not None:
                target, limit = rule
                used = int(payload.get(LOOPBACK_COUNT_KEY, 0) or 0)
                if used < limit:
                    merged[LOOPBACK_COUNT_KEY] = used + 1
                    merged["lastFailureStage"] = normalized
                    merged["lastFailureMessage"] = result.message
                    return StageDecision(
                        kind=DecisionKind.LOOP_BACK,
                        next_type=target,
                        payload=merged,
                    )
            return StageDecision(kind=DecisionKind.ESCALATE, payload=merged)

        raise ValueError(f"Pipeline policy does not route {result.status.value} results")
