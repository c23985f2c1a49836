"""Tests for Settings defaults, env overrides and validation."""

import pytest
from pydantic import ValidationError

from opencrabs.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.max_tool_iterations == 0
    assert settings.auto_approve_tools is False
    assert settings.streaming_enabled is True
    assert settings.db_url.startswith("sqlite+aiosqlite://")


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("OPENCRABS_MAX_TOOL_ITERATIONS", "5")
    monkeypatch.setenv("OPENCRABS_AUTO_APPROVE_TOOLS", "true")

    settings = Settings(_env_file=None)

    assert settings.max_tool_iterations == 5
    assert settings.auto_approve_tools is True


def test_credentials_use_unprefixed_env(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-api-xyz")
    assert Settings(_env_file=None).anthropic_api_key == "sk-ant-api-xyz"


class TestIterationCap:
    def test_explicit_cap(self):
        assert Settings(_env_file=None, max_tool_iterations=7).effective_iteration_cap == 7

    def test_zero_falls_back_to_ceiling(self):
        settings = Settings(_env_file=None, max_tool_iterations=0, tool_iteration_ceiling=50)
        assert settings.effective_iteration_cap == 50

    def test_negative_rejected(self):
        with pytest.raises(ValidationError, match="max_tool_iterations"):
            Settings(_env_file=None, max_tool_iterations=-1)

    def test_zero_ceiling_rejected(self):
        with pytest.raises(ValidationError, match="tool_iteration_ceiling"):
            Settings(_env_file=None, tool_iteration_ceiling=0)


@pytest.mark.parametrize("threshold", [0.0, 1.5])
def test_compaction_threshold_bounds(threshold):
    with pytest.raises(ValidationError, match="compaction_threshold"):
        Settings(_env_file=None, compaction_threshold=threshold)
