"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest

from taskloop.config import (
    COMPLETION_MARKER,
    ConfigError,
    TaskloopConfig,
    get_config,
    load_config,
    load_config_or_default,
    parse_config,
)


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "taskloop.yaml"
    path.write_text(text)
    return path


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self):
        config = TaskloopConfig()
        assert config.agent.command[0] == "claude"
        assert "stream-json" in config.agent.command
        assert config.agent.timeout_seconds == 1800
        assert config.agent.stuck_threshold_seconds == 300
        assert config.agent.max_retries == 3
        assert config.agent.completion_marker == COMPLETION_MARKER
        assert config.iterations.iterations == 10
        assert config.iterations.delay_ms == 2000
        assert not config.iterations.full_mode
        assert not config.verification.enabled
        assert config.parallel.max_concurrent_tasks == 1
        assert config.learning.max_decompositions_per_task == 2

    def test_paths_are_under_data_dir(self, tmp_path):
        config = TaskloopConfig(repo_root=str(tmp_path), data_dir=".loop")
        assert config.data_path == tmp_path / ".loop"
        assert config.prd_path == tmp_path / ".loop" / "prd.json"
        assert config.session_path.name == "session.json"
        assert config.failure_history_path.name == "failure-history.json"
        assert config.guardrails_path.name == "guardrails.json"
        assert config.session_memory_path.name == "session-memory.json"
        assert config.progress_path.name == "progress.txt"
        assert config.logs_path == tmp_path / ".loop" / "logs"

    def test_repo_root_made_absolute(self):
        assert Path(TaskloopConfig(repo_root=".").repo_root).is_absolute()


class TestParseConfig:
    """Tests for parse_config."""

    def test_sections(self, tmp_path):
        config = parse_config({
            "repo_root": str(tmp_path),
            "agent": {"command": "my-agent --fast", "max_retries": 0, "retry_with_context": False},
            "iterations": {"iterations": 4, "delay_ms": 0, "full_mode": True},
            "verification": {"enabled": True, "test_command": "pytest -q", "custom_checks": ["make check"]},
            "parallel": {"enabled": True, "max_concurrent_tasks": 3},
            "learning": {"enabled": False, "max_decompositions_per_task": 1},
        })

        assert config.agent.command == ["my-agent", "--fast"]
        assert config.agent.max_retries == 0
        assert not config.agent.retry_with_context
        assert config.iterations.iterations == 4
        assert config.iterations.full_mode
        assert config.verification.test_command == "pytest -q"
        assert config.verification.custom_checks == ["make check"]
        assert config.parallel.max_concurrent_tasks == 3
        assert not config.learning.enabled

    def test_env_vars_are_resolved(self, monkeypatch):
        monkeypatch.setenv("AGENT_BIN", "/opt/agent")
        config = parse_config({"agent": {"command": ["${AGENT_BIN}", "-p"]}})
        assert config.agent.command == ["/opt/agent", "-p"]

    def test_missing_env_var(self, monkeypatch):
        monkeypatch.delenv("TASKLOOP_UNSET_VAR", raising=False)
        with pytest.raises(ConfigError, match="TASKLOOP_UNSET_VAR"):
            parse_config({"verification": {"test_command": "${TASKLOOP_UNSET_VAR}"}})

    @pytest.mark.parametrize("data,message", [
        ({"iterations": {"iterations": 0}}, "iterations.iterations"),
        ({"iterations": {"delay_ms": -1}}, "iterations.delay_ms"),
        ({"agent": {"max_retries": "3"}}, "agent.max_retries"),
        ({"agent": {"command": []}}, "agent.command"),
        ({"parallel": {"max_concurrent_tasks": 0}}, "parallel.max_concurrent_tasks"),
        ({"learning": {"max_decompositions_per_task": -2}}, "learning.max_decompositions_per_task"),
        ({"agent": "claude"}, "Section 'agent'"),
    ])
    def test_invalid_values(self, data, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(data)


class TestLoadConfig:
    """Tests for loading taskloop.yaml."""

    def test_load_file(self, tmp_path):
        path = write_config(tmp_path, "iterations:\n  iterations: 7\n")
        assert load_config(str(path)).iterations.iterations == 7

    def test_empty_file_gives_defaults(self, tmp_path):
        path = write_config(tmp_path, "")
        assert load_config(str(path)).iterations.iterations == 10

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "agent: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = write_config(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))

    def test_or_default_without_file(self, tmp_path):
        config = load_config_or_default(str(tmp_path / "absent.yaml"))
        assert config.iterations.iterations == 10

    def test_get_config_caches(self, tmp_path):
        path = write_config(tmp_path, "iterations:\n  iterations: 3\n")
        first = get_config(str(path))
        write_config(tmp_path, "iterations:\n  iterations: 9\n")

        assert get_config(str(path)) is first
        assert get_config(str(path), force_reload=True).iterations.iterations == 9
