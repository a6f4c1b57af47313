"""
Configuration loading and validation for taskloop.

This module handles:
- Loading taskloop.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Validation of field types and ranges
- Default values for optional fields
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

DEFAULT_CONFIG_FILE = "taskloop.yaml"
COMPLETION_MARKER = "<promise>COMPLETE</promise>"


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


def _default_agent_command() -> list[str]:
    return [
        "claude",
        "-p",
        "--output-format", "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
    ]


@dataclass
class AgentConfig:
    """Coding agent CLI configuration."""
    command: list[str] = field(default_factory=_default_agent_command)  # argv; prompt is appended
    timeout_seconds: int = 30 * 60             # Hard ceiling per agent run (0 disables)
    stuck_threshold_seconds: int = 5 * 60      # Kill after this long without output (0 disables)
    max_retries: int = 3                       # Retries for recoverable failures
    retry_delay_ms: int = 5000                 # Base delay, doubled per retry
    retry_with_context: bool = True            # Inject failure analysis into retry prompts
    completion_marker: str = COMPLETION_MARKER


@dataclass
class IterationConfig:
    """Iteration budget configuration."""
    iterations: int = 10                       # Iteration ceiling
    delay_ms: int = 2000                       # Pause between iterations
    max_runtime_ms: int = 0                    # Wall-clock ceiling (0 = none)
    full_mode: bool = False                    # Extend the ceiling while tasks are pending


@dataclass
class VerificationConfig:
    """Post-iteration verification checks."""
    enabled: bool = False
    build_command: Optional[str] = None
    lint_command: Optional[str] = None
    test_command: Optional[str] = None
    custom_checks: list[str] = field(default_factory=list)
    timeout_seconds: int = 600


@dataclass
class ParallelConfig:
    """Parallel task execution configuration."""
    enabled: bool = False
    max_concurrent_tasks: int = 1


@dataclass
class LearningConfig:
    """Failure learning and decomposition configuration."""
    enabled: bool = True                       # Record failures and mine patterns
    max_decompositions_per_task: int = 2


@dataclass
class TaskloopConfig:
    """
    Main configuration for taskloop.

    This is the top-level config loaded from taskloop.yaml.
    """
    # Paths
    repo_root: str = "."
    data_dir: str = ".taskloop"

    # Nested configurations
    agent: AgentConfig = field(default_factory=AgentConfig)
    iterations: IterationConfig = field(default_factory=IterationConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def data_path(self) -> Path:
        """Absolute path to the project data directory."""
        return Path(self.repo_root) / self.data_dir

    @property
    def prd_path(self) -> Path:
        return self.data_path / "prd.json"

    @property
    def session_path(self) -> Path:
        return self.data_path / "session.json"

    @property
    def failure_history_path(self) -> Path:
        return self.data_path / "failure-history.json"

    @property
    def guardrails_path(self) -> Path:
        return self.data_path / "guardrails.json"

    @property
    def session_memory_path(self) -> Path:
        return self.data_path / "session-memory.json"

    @property
    def progress_path(self) -> Path:
        return self.data_path / "progress.txt"

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.data_path / "logs"


# Module-level cache for the loaded configuration
_config_cache: Optional[TaskloopConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _require_non_negative(name: str, value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
    return value


def _parse_agent_config(data: dict[str, Any]) -> AgentConfig:
    """Parse agent configuration from dict."""
    command = data.get("command", _default_agent_command())
    if isinstance(command, str):
        command = command.split()
    if not command or not all(isinstance(part, str) for part in command):
        raise ConfigError("agent.command must be a non-empty list of strings")

    return AgentConfig(
        command=list(command),
        timeout_seconds=_require_non_negative(
            "agent.timeout_seconds", data.get("timeout_seconds", 30 * 60)
        ),
        stuck_threshold_seconds=_require_non_negative(
            "agent.stuck_threshold_seconds", data.get("stuck_threshold_seconds", 5 * 60)
        ),
        max_retries=_require_non_negative("agent.max_retries", data.get("max_retries", 3)),
        retry_delay_ms=_require_non_negative("agent.retry_delay_ms", data.get("retry_delay_ms", 5000)),
        retry_with_context=data.get("retry_with_context", True),
        completion_marker=data.get("completion_marker", COMPLETION_MARKER),
    )


def _parse_iteration_config(data: dict[str, Any]) -> IterationConfig:
    """Parse iteration configuration from dict."""
    iterations = data.get("iterations", 10)
    if not isinstance(iterations, int) or isinstance(iterations, bool) or iterations < 1:
        raise ConfigError(f"iterations.iterations must be a positive integer, got {iterations!r}")

    return IterationConfig(
        iterations=iterations,
        delay_ms=_require_non_negative("iterations.delay_ms", data.get("delay_ms", 2000)),
        max_runtime_ms=_require_non_negative(
            "iterations.max_runtime_ms", data.get("max_runtime_ms", 0)
        ),
        full_mode=data.get("full_mode", False),
    )


def _parse_verification_config(data: dict[str, Any]) -> VerificationConfig:
    """Parse verification configuration from dict."""
    return VerificationConfig(
        enabled=data.get("enabled", False),
        build_command=data.get("build_command"),
        lint_command=data.get("lint_command"),
        test_command=data.get("test_command"),
        custom_checks=list(data.get("custom_checks", [])),
        timeout_seconds=data.get("timeout_seconds", 600),
    )


def _parse_parallel_config(data: dict[str, Any]) -> ParallelConfig:
    """Parse parallel execution configuration from dict."""
    max_concurrent = data.get("max_concurrent_tasks", 1)
    if not isinstance(max_concurrent, int) or max_concurrent < 1:
        raise ConfigError(
            f"parallel.max_concurrent_tasks must be a positive integer, got {max_concurrent!r}"
        )
    return ParallelConfig(
        enabled=data.get("enabled", False),
        max_concurrent_tasks=max_concurrent,
    )


def _parse_learning_config(data: dict[str, Any]) -> LearningConfig:
    """Parse learning configuration from dict."""
    return LearningConfig(
        enabled=data.get("enabled", True),
        max_decompositions_per_task=_require_non_negative(
            "learning.max_decompositions_per_task",
            data.get("max_decompositions_per_task", 2),
        ),
    )


def parse_config(data: dict[str, Any]) -> TaskloopConfig:
    """
    Build a TaskloopConfig from an already-loaded mapping.

    Raises:
        ConfigError: If a section is malformed.
    """
    data = _resolve_env_vars(data)

    for section in ("agent", "iterations", "verification", "parallel", "learning"):
        if section in data and not isinstance(data[section], dict):
            raise ConfigError(f"Section '{section}' must be a mapping")

    return TaskloopConfig(
        repo_root=data.get("repo_root", "."),
        data_dir=data.get("data_dir", ".taskloop"),
        agent=_parse_agent_config(data.get("agent", {})),
        iterations=_parse_iteration_config(data.get("iterations", {})),
        verification=_parse_verification_config(data.get("verification", {})),
        parallel=_parse_parallel_config(data.get("parallel", {})),
        learning=_parse_learning_config(data.get("learning", {})),
    )


def load_config(config_path: Optional[str] = None) -> TaskloopConfig:
    """
    Load configuration from taskloop.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for taskloop.yaml in current directory.

    Returns:
        TaskloopConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    return parse_config(raw_data)


def load_config_or_default(config_path: Optional[str] = None) -> TaskloopConfig:
    """Load config, falling back to defaults when no config file exists."""
    path = Path(config_path or DEFAULT_CONFIG_FILE)
    if not path.exists():
        return TaskloopConfig()
    return load_config(str(path))


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> TaskloopConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        TaskloopConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
