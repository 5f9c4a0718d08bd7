"""Deterministic handler failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from ci_fixer.orchestrator.errors import (
    HandlerTimeoutError,
    PermanentHandlerError,
    PipelineConfigurationError,
    SecurityError,
    TransientError,
    ValidationError,
)
from ci_fixer.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1
ERROR_MESSAGE_MAX_CHARS = 2_000
_CAUSE_MAX_CHARS = 300

_SECURITY_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "dangerous operation",
    "permission denied",
    "unauthorized",
    "forbidden",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "invalid file path",
    "path traversal",
    "invalid payload",
)
_NON_RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.VALIDATION,
        FailureClass.SECURITY,
        FailureClass.PERMANENT,
        FailureClass.CONFIGURATION,
    },
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class not in _NON_RETRYABLE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify a handler failure into a deterministic retry class.

    Exception type wins over message content; message patterns only
    escalate an otherwise retryable error to a non-retryable class.
    """

    error_name = type(error).__name__
    if isinstance(error, (SecurityError, PermissionError)):
        return _classified(FailureClass.SECURITY, error_name, "security_exception")
    if isinstance(error, (ValidationError, ValueError)):
        return _classified(FailureClass.VALIDATION, error_name, "validation_exception")
    if isinstance(error, PipelineConfigurationError):
        return _classified(FailureClass.CONFIGURATION, error_name, "pipeline_configuration")
    if isinstance(error, PermanentHandlerError):
        return _classified(FailureClass.PERMANENT, error_name, "permanent_handler_error")

    haystack = _normalize_text(error)
    pattern = _first_match(haystack, _SECURITY_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.SECURITY, error_name, "security_message", pattern)
    pattern = _first_match(haystack, _VALIDATION_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.VALIDATION, error_name, "validation_message", pattern)

    if isinstance(error, (HandlerTimeoutError, TimeoutError)):
        return _classified(FailureClass.TIMEOUT, error_name, "timeout")
    if isinstance(error, TransientError):
        return _classified(FailureClass.TRANSIENT, error_name, "transient_exception")
    return _classified(FailureClass.TRANSIENT, error_name, "fallback_transient")


def describe_error(error: BaseException, *, max_chars: int = ERROR_MESSAGE_MAX_CHARS) -> str:
    """Render `<Type>: <message> (caused by: <root cause>)`, truncated."""

    text = type(error).__name__
    message = str(error).strip()
    if message:
        text = f"{text}: {message}"

    root = _root_cause(error)
    if root is not None:
        root_message = str(root).strip() or type(root).__name__
        if len(root_message) > _CAUSE_MAX_CHARS:
            root_message = root_message[: _CAUSE_MAX_CHARS - 3].rstrip() + "..."
        text = f"{text} (caused by: {type(root).__name__}: {root_message})"
    return truncate_message(text, max_chars=max_chars)


def truncate_message(value: str, *, max_chars: int = ERROR_MESSAGE_MAX_CHARS) -> str:
    if len(value) <= max_chars:
        return value
    return value[: max(0, max_chars - 3)].rstrip() + "..."


def _root_cause(error: BaseException) -> BaseException | None:
    seen: set[int] = {id(error)}
    current = error
    root: BaseException | None = None
    while True:
        cause = current.__cause__ or current.__context__
        if cause is None or id(cause) in seen:
            return root
        seen.add(id(cause))
        root = cause
        current = cause


def _classified(
    failure_class: FailureClass,
    error_name: str,
    rule: str,
    pattern: str | None = None,
) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"{error_name}_{failure_class.value}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _normalize_text(error: BaseException) -> str:
    parts = [str(error)]
    root = _root_cause(error)
    if root is not None:
        parts.append(str(root))
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
