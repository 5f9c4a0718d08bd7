from __future__ import annotations

import os

import allure
import pytest

from ci_fixer.config import DEFAULT_DATABASE_URL, DEFAULT_STAGE_SEQUENCE, Settings
from ci_fixer.orchestrator.models import BuildStatus

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("CI_FIXER_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.store.database_url == DEFAULT_DATABASE_URL
    assert settings.retry.max_attempts == 3
    assert settings.retry.base_delay_seconds == 2.0
    assert settings.retry.max_delay_seconds == 300.0
    assert settings.retry.jitter_enabled is True
    assert settings.dispatcher.processing_enabled is True
    assert settings.dispatcher.handler_timeout_seconds == 900.0
    assert settings.dispatcher.task_types == ()
    assert settings.pipeline.stages == DEFAULT_STAGE_SEQUENCE
    assert settings.pipeline.loopbacks == {"VALIDATE": ("PATCH", 2)}
    assert settings.pipeline.success_build_status == BuildStatus.COMPLETED
    assert settings.admin.pending_threshold == 100


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CI_FIXER_DATABASE_URL", "sqlite:///from-env.db")
    monkeypatch.setenv("CI_FIXER_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CI_FIXER_RETRY_JITTER_ENABLED", "off")
    monkeypatch.setenv("CI_FIXER_PROCESSING_ENABLED", "false")
    monkeypatch.setenv("CI_FIXER_TASK_TYPES", "plan, patch")
    monkeypatch.setenv("CI_FIXER_PIPELINE_STAGES", "plan,patch,validate,notify")
    monkeypatch.setenv("CI_FIXER_PIPELINE_LOOPBACKS", "validate=patch:1")
    monkeypatch.setenv("CI_FIXER_SUCCESS_BUILD_STATUS", "fixed")
    monkeypatch.setenv("CI_FIXER_HANDLERS", "PATCH=acme.handlers:PatchHandler")

    settings = Settings.from_env()
    settings.validate()

    assert settings.store.database_url == "sqlite:///from-env.db"
    assert settings.retry.max_attempts == 5
    assert settings.retry.jitter_enabled is False
    assert settings.dispatcher.processing_enabled is False
    assert settings.dispatcher.task_types == ("PLAN", "PATCH")
    assert settings.dispatcher.handler_specs == ("PATCH=acme.handlers:PatchHandler",)
    assert settings.pipeline.stages == ("PLAN", "PATCH", "VALIDATE", "NOTIFY")
    assert settings.pipeline.loopbacks == {"VALIDATE": ("PATCH", 1)}
    assert settings.pipeline.success_build_status == BuildStatus.FIXED


def test_explicit_database_url_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CI_FIXER_DATABASE_URL", "sqlite:///from-env.db")

    settings = Settings.from_env(database_url="sqlite:///explicit.db")

    assert settings.store.database_url == "sqlite:///explicit.db"


def test_empty_loopbacks_disable_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CI_FIXER_PIPELINE_LOOPBACKS", "")

    assert Settings.from_env().pipeline.loopbacks == {}


@pytest.mark.parametrize(
    ("name", "value", "match"),
    [
        ("CI_FIXER_RETRY_JITTER_ENABLED", "maybe", "CI_FIXER_RETRY_JITTER_ENABLED"),
        ("CI_FIXER_PIPELINE_LOOPBACKS", "VALIDATE-PATCH", "FROM=TO:LIMIT"),
        ("CI_FIXER_PIPELINE_LOOPBACKS", "VALIDATE=PATCH:two", "loop-back limit"),
    ],
)
def test_malformed_values_fail_on_load(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    match: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=match):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CI_FIXER_MAX_ATTEMPTS", "0"),
        ("CI_FIXER_RETRY_BASE_DELAY_SECONDS", "-1"),
        ("CI_FIXER_RETRY_MAX_DELAY_SECONDS", "1"),
        ("CI_FIXER_HANDLER_TIMEOUT_SECONDS", "0"),
        ("CI_FIXER_STALE_AFTER_SECONDS", "0"),
        ("CI_FIXER_PIPELINE_STAGES", "PLAN,PLAN"),
        ("CI_FIXER_PIPELINE_LOOPBACKS", "PR=DEPLOY:1"),
        ("CI_FIXER_SUCCESS_BUILD_STATUS", "FAILED"),
        ("CI_FIXER_HEALTH_PENDING_THRESHOLD", "0"),
        ("CI_FIXER_ADMIN_PAGE_SIZE", "500"),
        ("CI_FIXER_HANDLERS", "PATCH"),
    ],
)
def test_validate_names_the_offending_variable(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match=name):
        settings.validate()
