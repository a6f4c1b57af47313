"""
Error classification for taskloop agent runs.

This module provides:
- AgentErrorType enum for categorizing agent process failures
- categorize_agent_error for deciding fatal vs recoverable failures
- Custom exception classes with error type information
- ErrorCode catalogue with user-facing suggestions
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class AgentErrorType(Enum):
    """
    Classification of agent process errors.

    Fatal types stop the session; the rest are retried.
    """

    NOT_FOUND = "not_found"                 # Agent binary missing (exit 127)
    NOT_EXECUTABLE = "not_executable"       # Agent binary not executable (exit 126)
    AUTH_FAILED = "auth_failed"             # Invalid API key / not logged in
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"                     # Hard timeout watchdog fired
    STUCK = "stuck"                         # No output for the stuck threshold
    UNKNOWN = "unknown"


FATAL_AGENT_ERRORS = frozenset({
    AgentErrorType.NOT_FOUND,
    AgentErrorType.NOT_EXECUTABLE,
    AgentErrorType.AUTH_FAILED,
    AgentErrorType.PERMISSION_DENIED,
})


class ErrorCode(Enum):
    """Stable user-facing error codes."""

    CONFIG_NOT_FOUND = "E001"
    CONFIG_INVALID = "E002"
    CONFIG_VALIDATION_FAILED = "E003"

    PRD_NOT_FOUND = "E010"
    PRD_INVALID_FORMAT = "E011"
    PRD_NO_TASKS = "E012"
    PRD_TASK_NOT_FOUND = "E013"
    PRD_INVALID_DEPENDENCIES = "E014"

    AGENT_NOT_FOUND = "E020"
    AGENT_NOT_EXECUTABLE = "E021"
    AGENT_TIMEOUT = "E022"
    AGENT_STUCK = "E023"
    AGENT_AUTH_FAILED = "E024"
    AGENT_PERMISSION_DENIED = "E025"
    AGENT_MAX_RETRIES = "E026"

    SESSION_NOT_FOUND = "E030"
    SESSION_CORRUPTED = "E031"
    SESSION_ALREADY_RUNNING = "E032"

    UNKNOWN = "E999"


ERROR_SUGGESTIONS: dict[ErrorCode, str] = {
    ErrorCode.CONFIG_NOT_FOUND:
        "Create a taskloop.yaml in the repository root, or run without one to use defaults.",
    ErrorCode.CONFIG_INVALID:
        "Check taskloop.yaml for YAML syntax errors.",
    ErrorCode.CONFIG_VALIDATION_FAILED:
        "Review the validation error above and fix the invalid field in taskloop.yaml.",
    ErrorCode.PRD_NOT_FOUND:
        "Create .taskloop/prd.json with a project name and a list of tasks.",
    ErrorCode.PRD_INVALID_FORMAT:
        "Check .taskloop/prd.json for syntax errors. It must be a JSON object with 'project' and 'tasks'.",
    ErrorCode.PRD_NO_TASKS:
        "Add tasks to the PRD. Each task needs a 'title' and optionally 'description' and 'steps'.",
    ErrorCode.PRD_TASK_NOT_FOUND:
        "Check the task identifier. Use 'taskloop tasks' to see available tasks.",
    ErrorCode.PRD_INVALID_DEPENDENCIES:
        "Fix the dependsOn entries listed above. Every dependency must name an existing task id.",
    ErrorCode.AGENT_NOT_FOUND:
        "Ensure the agent CLI is installed and on PATH, or set agent.command in taskloop.yaml.",
    ErrorCode.AGENT_NOT_EXECUTABLE:
        "Check file permissions for the agent executable. Try reinstalling the agent CLI.",
    ErrorCode.AGENT_TIMEOUT:
        "The agent took too long. Increase agent.timeout_seconds, or break the task into smaller pieces.",
    ErrorCode.AGENT_STUCK:
        "The agent stopped producing output. Increase agent.stuck_threshold_seconds or check "
        "whether the agent is waiting for input.",
    ErrorCode.AGENT_AUTH_FAILED:
        "Check your API key or authentication. Ensure you're logged in to the agent CLI.",
    ErrorCode.AGENT_PERMISSION_DENIED:
        "The agent lacks permissions. Check file/directory permissions or run with appropriate privileges.",
    ErrorCode.AGENT_MAX_RETRIES:
        "The agent failed repeatedly. Check the logs for the root cause, or increase agent.max_retries.",
    ErrorCode.SESSION_NOT_FOUND:
        "No active session found. Run 'taskloop run' to start a new session.",
    ErrorCode.SESSION_CORRUPTED:
        "The session file is corrupted. Delete .taskloop/session.json and start a new session.",
    ErrorCode.SESSION_ALREADY_RUNNING:
        "A session is already running. Stop it before starting another.",
    ErrorCode.UNKNOWN:
        "An unexpected error occurred. Check the logs for more details.",
}

_AGENT_ERROR_CODES: dict[AgentErrorType, ErrorCode] = {
    AgentErrorType.NOT_FOUND: ErrorCode.AGENT_NOT_FOUND,
    AgentErrorType.NOT_EXECUTABLE: ErrorCode.AGENT_NOT_EXECUTABLE,
    AgentErrorType.AUTH_FAILED: ErrorCode.AGENT_AUTH_FAILED,
    AgentErrorType.PERMISSION_DENIED: ErrorCode.AGENT_PERMISSION_DENIED,
    AgentErrorType.TIMEOUT: ErrorCode.AGENT_TIMEOUT,
    AgentErrorType.STUCK: ErrorCode.AGENT_STUCK,
    AgentErrorType.UNKNOWN: ErrorCode.UNKNOWN,
}


class TaskloopError(Exception):
    """Base exception for taskloop errors."""
    pass


class AgentError(TaskloopError):
    """
    Raised when the agent process fails.

    Includes the error type classification for handling decisions.
    """

    def __init__(
        self,
        message: str,
        error_type: AgentErrorType = AgentErrorType.UNKNOWN,
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.exit_code = exit_code

    @property
    def is_fatal(self) -> bool:
        """Fatal errors stop the session without further retries."""
        return self.error_type in FATAL_AGENT_ERRORS


class SchedulingError(TaskloopError):
    """Raised when the task list cannot be scheduled (invalid or unsatisfiable dependencies)."""
    pass


@dataclass
class AgentErrorClassification:
    """Result of classifying an agent failure."""
    error_type: AgentErrorType
    is_fatal: bool

    @property
    def code(self) -> ErrorCode:
        return _AGENT_ERROR_CODES[self.error_type]


_AUTH_PATTERN = re.compile(r"invalid api key|authentication failed|unauthorized", re.IGNORECASE)
_PERMISSION_PATTERN = re.compile(r"permission denied|access denied", re.IGNORECASE)
_TIMEOUT_PATTERN = re.compile(r"timeout|timed out", re.IGNORECASE)
_STUCK_PATTERN = re.compile(r"stuck|no output", re.IGNORECASE)


def categorize_agent_error(message: str, exit_code: Optional[int]) -> AgentErrorClassification:
    """
    Decide whether an agent failure is fatal or recoverable.

    Checks are ordered; the first match wins.

    Args:
        message: Error text (usually stderr or the runner's own message).
        exit_code: Process exit code, or None if the process never exited normally.

    Returns:
        AgentErrorClassification with the error type and fatal flag.
    """
    message = message or ""

    if re.search(r"command not found", message, re.IGNORECASE) or exit_code == 127:
        error_type = AgentErrorType.NOT_FOUND
    elif re.search(r"not executable", message, re.IGNORECASE) or exit_code == 126:
        error_type = AgentErrorType.NOT_EXECUTABLE
    elif _AUTH_PATTERN.search(message):
        error_type = AgentErrorType.AUTH_FAILED
    elif _PERMISSION_PATTERN.search(message):
        error_type = AgentErrorType.PERMISSION_DENIED
    elif _TIMEOUT_PATTERN.search(message):
        error_type = AgentErrorType.TIMEOUT
    elif _STUCK_PATTERN.search(message):
        error_type = AgentErrorType.STUCK
    else:
        error_type = AgentErrorType.UNKNOWN

    return AgentErrorClassification(
        error_type=error_type,
        is_fatal=error_type in FATAL_AGENT_ERRORS,
    )


@dataclass
class UserError:
    """A user-facing error with a code and optional suggestion."""
    code: ErrorCode
    message: str
    suggestion: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


def create_error(
    code: ErrorCode,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> UserError:
    """Build a UserError carrying the catalogue suggestion for the code."""
    return UserError(
        code=code,
        message=message,
        suggestion=ERROR_SUGGESTIONS.get(code),
        details=details or {},
    )


def format_error(error: UserError, verbose: bool = False) -> str:
    """
    Format an error for terminal output.

    Args:
        error: The error to format.
        verbose: Include the details mapping.

    Returns:
        Multi-line string with code, message and suggestion.
    """
    lines = [f"Error [{error.code.value}]: {error.message}"]

    if error.suggestion:
        lines.append("")
        lines.append(f"Suggestion: {error.suggestion}")

    if verbose and error.details:
        lines.append("")
        lines.append("Details:")
        for key, value in error.details.items():
            lines.append(f"  {key}: {json.dumps(value, default=str)}")

    return "\n".join(lines)


def format_error_compact(error: UserError) -> str:
    return f"[{error.code.value}] {error.message}"
