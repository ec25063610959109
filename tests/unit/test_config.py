"""Tests for settings and logging setup."""

from __future__ import annotations

import pytest
import structlog

from ensemble.config import (
    DiscussionSettings,
    WorkflowEngineSettings,
    get_workflow_settings,
)
from ensemble.logger import configure_logging


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self) -> None:
        settings = WorkflowEngineSettings()

        assert settings.max_concurrent_workflows == 10
        assert settings.default_max_retries == 3
        assert settings.default_backoff_multiplier == 2.0

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WORKFLOW_MAX_PARALLEL_STEPS", "2")
        monkeypatch.setenv("DISCUSSION_DEFAULT_MAX_ROUNDS", "7")

        assert WorkflowEngineSettings().max_parallel_steps == 2
        assert DiscussionSettings().default_max_rounds == 7

    def test_cached_getter(self) -> None:
        assert get_workflow_settings() is get_workflow_settings()


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(level="INFO", json_logs=True)
        try:
            structlog.get_logger().info("engine_ready", workers=2)
        finally:
            structlog.reset_defaults()

        err = capsys.readouterr().err
        assert '"event": "engine_ready"' in err
        assert '"workers": 2' in err

    def test_level_filtering(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(level="WARNING", json_logs=True)
        try:
            structlog.get_logger().info("hidden")
        finally:
            structlog.reset_defaults()

        assert "hidden" not in capsys.readouterr().err
