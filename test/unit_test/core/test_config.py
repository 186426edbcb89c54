"""Unit tests for configuration settings."""

import pytest
from pydantic import ValidationError

from agentloop_ai.core.config import LoopConfig, Settings


class TestSettingsFromEnvironment:
    """Test binding of settings from environment variables."""

    def test_defaults(self, monkeypatch):
        for name in ("AGENTLOOP_MAX_ITERATIONS", "OM_ENABLED", "AGENTLOOP_SCORER_STRATEGY"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)

        assert settings.loop.max_iterations == 50
        assert settings.loop.tool_concurrency == 4
        assert settings.memory.enabled is True
        assert settings.memory.message_tokens == 30_000
        assert settings.scoring.strategy == "all"
        assert settings.scoring.timeout is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AGENTLOOP_MAX_ITERATIONS", "7")
        monkeypatch.setenv("AGENTLOOP_TOOL_CONCURRENCY", "2")
        monkeypatch.setenv("OM_BUFFER_TOKENS", "0")
        monkeypatch.setenv("AGENTLOOP_SCORER_STRATEGY", "any")
        monkeypatch.setenv("AGENTLOOP_SCORER_TIMEOUT", "1.5")
        settings = Settings(_env_file=None)

        assert settings.loop.max_iterations == 7
        assert settings.loop.tool_concurrency == 2
        assert settings.memory.buffer_tokens == 0
        assert settings.scoring.strategy == "any"
        assert settings.scoring.timeout == 1.5

    def test_invalid_values_are_rejected(self, monkeypatch):
        monkeypatch.setenv("AGENTLOOP_MAX_ITERATIONS", "0")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)


class TestGroupedConfig:
    """Test the grouped configuration models."""

    def test_loop_config_by_field_name(self):
        loop = LoopConfig(max_iterations=3, tool_concurrency=1)

        assert loop.max_iterations == 3
        assert loop.model_max_retries == 3

    def test_loop_config_rejects_zero_concurrency(self):
        with pytest.raises(ValidationError):
            LoopConfig(tool_concurrency=0)
