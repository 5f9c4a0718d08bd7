"""Stage handler contract, registry and the built-in echo handler."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from ci_fixer.orchestrator.errors import PipelineConfigurationError
from ci_fixer.orchestrator.models import TaskResult, TaskView, normalize_task_type

logger = logging.getLogger(__name__)


class TaskHandler(Protocol):
    """Protocol implemented by stage handlers."""

    def handle(self, task: TaskView, payload: dict[str, Any]) -> TaskResult:
        """Run one stage for the claimed task and report the outcome."""


@dataclass(slots=True)
class FunctionHandler:
    """Adapter so a plain function can serve as a stage handler."""

    func: Callable[[TaskView, dict[str, Any]], TaskResult]

    def handle(self, task: TaskView, payload: dict[str, Any]) -> TaskResult:
        return self.func(task, payload)


class EchoHandler:
    """Deterministic handler that completes every stage it receives.

    Useful for smoke runs of the whole pipeline without external services.
    """

    def handle(self, task: TaskView, payload: dict[str, Any]) -> TaskResult:
        completed = list(payload.get("stagesCompleted", []))
        completed.append(task.task_type)
        return TaskResult.success(
            f"{task.task_type} echoed",
            {"stagesCompleted": completed, "lastWorker": task.worker_id},
        )


class HandlerRegistry:
    """Maps each task type to exactly one handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_type: str, handler: TaskHandler) -> None:
        normalized = normalize_task_type(task_type)
        if normalized in self._handlers:
            raise PipelineConfigurationError(f"Handler already registered for {normalized}")
        if not callable(getattr(handler, "handle", None)):
            raise PipelineConfigurationError(
                f"Handler for {normalized} must define handle(task, payload)",
            )
        self._handlers[normalized] = handler
        logger.debug("Registered %s handler for %s", type(handler).__name__, normalized)

    def get(self, task_type: str) -> TaskHandler | None:
        return self._handlers.get(normalize_task_type(task_type))

    def types(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def __contains__(self, task_type: object) -> bool:
        return isinstance(task_type, str) and normalize_task_type(task_type) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @classmethod
    def with_echo(cls, task_types: Iterable[str]) -> HandlerRegistry:
        registry = cls()
        for task_type in task_types:
            registry.register(task_type, EchoHandler())
        return registry

    def load_specs(self, specs: Iterable[str]) -> None:
        """Register handlers from `TYPE=package.module:attribute` entries.

        The attribute may be a handler instance, a zero-argument handler class,
        or a plain `(task, payload) -> TaskResult` function.
        """

        for spec in specs:
            task_type, handler = _load_handler_spec(spec)
            self.register(task_type, handler)


def _load_handler_spec(spec: str) -> tuple[str, TaskHandler]:
    task_type, sep, target = spec.partition("=")
    module_name, colon, attribute = target.strip().partition(":")
    if not sep or not colon or not module_name or not attribute:
        raise PipelineConfigurationError(
            f"Invalid handler spec {spec!r}; expected TYPE=package.module:attribute",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise PipelineConfigurationError(
            f"Cannot import handler module {module_name!r}: {error}",
        ) from error
    try:
        obj = getattr(module, attribute)
    except AttributeError as error:
        raise PipelineConfigurationError(
            f"Handler attribute {attribute!r} not found in {module_name!r}",
        ) from error

    if isinstance(obj, type):
        obj = obj()
    if callable(getattr(obj, "handle", None)):
        return task_type, obj
    if callable(obj):
        return task_type, FunctionHandler(obj)
    raise PipelineConfigurationError(f"{target} is not a stage handler")
