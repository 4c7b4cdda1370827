"""Tests for configuration loading and the error taxonomy."""

import json

import pytest

from epic_orchestrator.config import OrchestratorConfig, load_config
from epic_orchestrator.errors import (
    ConfigError, ErrorCategory, GatewayError, SessionConflictError, ValidationError, classify_error,
)
from epic_orchestrator.models import MergeMethod


class TestOrchestratorConfig:
    """Tests for OrchestratorConfig defaults."""

    def test_defaults(self):
        """Timers should be staggered at 30/10/12 seconds."""
        config = OrchestratorConfig()
        assert config.epic_poll_interval_seconds == 30
        assert config.session_poll_interval_seconds == 10
        assert config.agent_poll_interval_seconds == 12
        assert config.max_consecutive_sync_failures is None
        assert config.default_merge_method == MergeMethod.SQUASH
        assert config.working_labels == ["staging"]

    def test_session_name_for_issue(self):
        assert OrchestratorConfig().session_name_for_issue(42) == "epicorch-agent-42"

    def test_state_path_relative_to_project(self, tmp_path):
        assert OrchestratorConfig().state_path(tmp_path) == tmp_path / ".epicorch"

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(epic_poll_interval_seconds=0)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path) == OrchestratorConfig()

    def test_file_values_and_overrides(self, tmp_path):
        """Overrides win over the file; None overrides are ignored."""
        (tmp_path / ".epicorch").mkdir()
        (tmp_path / ".epicorch" / "config.json").write_text(json.dumps({
            "epic_poll_interval_seconds": 60,
            "auto_notify": False,
        }))

        config = load_config(tmp_path, {"epic_poll_interval_seconds": 5, "max_consecutive_sync_failures": None})

        assert config.epic_poll_interval_seconds == 5
        assert config.auto_notify is False
        assert config.max_consecutive_sync_failures is None

    def test_invalid_json(self, tmp_path):
        (tmp_path / ".epicorch").mkdir()
        (tmp_path / ".epicorch" / "config.json").write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_invalid_value(self, tmp_path):
        (tmp_path / ".epicorch").mkdir()
        (tmp_path / ".epicorch" / "config.json").write_text(json.dumps({"default_merge_method": "octopus"}))
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)
        assert exc_info.value.category == ErrorCategory.VALIDATION


class TestErrors:
    """Tests for error classification."""

    @pytest.mark.parametrize("text,expected", [
        ("GraphQL: Could not resolve to an Issue with the number of 99", ErrorCategory.NOT_FOUND),
        ("can't find session: epicorch-agent-4", ErrorCategory.NOT_FOUND),
        ("duplicate session: epicorch-agent-4", ErrorCategory.STATE_CONFLICT),
        ("Pull request is not mergeable: merge conflict", ErrorCategory.STATE_CONFLICT),
        ("connection reset by peer", ErrorCategory.TRANSIENT),
        ("", ErrorCategory.TRANSIENT),
    ])
    def test_classify_error(self, text, expected):
        assert classify_error(text) == expected

    def test_gateway_error_classifies_stderr(self):
        """GatewayError takes its category from the failed call's output."""
        error = GatewayError("gh issue view failed", stderr="HTTP 404: Not Found")
        assert error.category == ErrorCategory.NOT_FOUND
        assert GatewayError("timeout").category == ErrorCategory.TRANSIENT

    def test_fixed_categories(self):
        assert ValidationError("x").category == ErrorCategory.VALIDATION
        assert SessionConflictError("x").category == ErrorCategory.STATE_CONFLICT
