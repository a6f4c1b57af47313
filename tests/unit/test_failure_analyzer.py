"""Tests for failure classification, retry context and error categorization."""
import pytest

from taskloop.errors import (
    AgentError,
    AgentErrorType,
    ErrorCode,
    categorize_agent_error,
    create_error,
    format_error,
    format_error_compact,
)
from taskloop.failure_analyzer import analyze_failure, generate_retry_context
from taskloop.models import FailureCategory


class TestAnalyzeFailure:
    """Tests for analyze_failure."""

    @pytest.mark.parametrize("error,category,root_cause", [
        ("error TS2322: Type 'string' is not assignable", FailureCategory.BUILD_FAILURE,
         "TypeScript compilation error"),
        ("Build failed with 3 errors", FailureCategory.BUILD_FAILURE, "Build process failed"),
        ("1 test failed", FailureCategory.TEST_FAILURE, "Test assertion failed"),
        ("ESLint found problems", FailureCategory.LINT_ERROR, "Linting or formatting error"),
        ("EACCES: permission denied, open '/etc/x'", FailureCategory.PERMISSION_ERROR,
         "File or directory permission error"),
        ("Request timed out", FailureCategory.TIMEOUT, "Operation timed out"),
        ("agent became unresponsive", FailureCategory.STUCK, "Agent became unresponsive"),
        ("connect ECONNREFUSED 127.0.0.1:443", FailureCategory.NETWORK_ERROR, "Network connectivity issue"),
        ("SyntaxError: Unexpected token }", FailureCategory.SYNTAX_ERROR, "Code syntax error"),
        ("npm ERR! missing script", FailureCategory.DEPENDENCY_ERROR, "Missing or incompatible dependency"),
    ])
    def test_pattern_rules(self, error, category, root_cause):
        analysis = analyze_failure(error, "", None)
        assert analysis.category == category
        assert analysis.root_cause == root_cause
        assert analysis.should_retry is True

    def test_rules_see_output_too(self):
        analysis = analyze_failure("exit status 1", "Compilation failed in module x", 1)
        assert analysis.category == FailureCategory.BUILD_FAILURE

    def test_first_rule_wins(self):
        analysis = analyze_failure("build failed and test failed", "", None)
        assert analysis.category == FailureCategory.BUILD_FAILURE

    def test_patterns_beat_exit_code(self):
        analysis = analyze_failure("Operation timed out", "", 2)
        assert analysis.category == FailureCategory.TIMEOUT

    def test_exit_code_one(self):
        analysis = analyze_failure("something odd", "", 1)
        assert analysis.category == FailureCategory.UNKNOWN
        assert analysis.root_cause == "General error (exit code 1)"

    def test_exit_code_two(self):
        analysis = analyze_failure("something odd", "", 2)
        assert analysis.category == FailureCategory.SYNTAX_ERROR

    def test_signal_exit_code(self):
        analysis = analyze_failure("something odd", "", 137)
        assert analysis.category == FailureCategory.UNKNOWN
        assert analysis.root_cause == "Process terminated by signal 9"

    def test_fallback_uses_error_text(self):
        analysis = analyze_failure("weird failure", "", None)
        assert analysis.category == FailureCategory.UNKNOWN
        assert analysis.root_cause == "weird failure"

    def test_fallback_without_error(self):
        assert analyze_failure("", "", 0).root_cause == "Unknown error occurred"


class TestGenerateRetryContext:
    """Tests for generate_retry_context."""

    def test_contains_analysis(self):
        analysis = analyze_failure("1 test failed", "", 1)
        context = generate_retry_context(analysis, 1)
        assert context.startswith("## Retry Context (1st retry attempt)")
        assert "**Previous failure:** Test assertion failed" in context
        assert "**Category:** test failure" in context
        assert "**Recommended approach:** Run tests first and fix failing tests" in context
        assert "Do not repeat the same mistake." in context

    @pytest.mark.parametrize("attempt,label", [(1, "1st"), (2, "2nd"), (3, "3th"), (11, "11th")])
    def test_ordinals(self, attempt, label):
        context = generate_retry_context(analyze_failure("x", "", None), attempt)
        assert f"({label} retry attempt)" in context


class TestCategorizeAgentError:
    """Tests for fatal/recoverable classification."""

    @pytest.mark.parametrize("message,exit_code,error_type", [
        ("bash: claude: command not found", None, AgentErrorType.NOT_FOUND),
        ("", 127, AgentErrorType.NOT_FOUND),
        ("file is not executable", None, AgentErrorType.NOT_EXECUTABLE),
        ("", 126, AgentErrorType.NOT_EXECUTABLE),
        ("Invalid API key provided", 1, AgentErrorType.AUTH_FAILED),
        ("401 Unauthorized", 1, AgentErrorType.AUTH_FAILED),
        ("Permission denied: /root", 1, AgentErrorType.PERMISSION_DENIED),
    ])
    def test_fatal(self, message, exit_code, error_type):
        classification = categorize_agent_error(message, exit_code)
        assert classification.error_type == error_type
        assert classification.is_fatal

    @pytest.mark.parametrize("message,error_type", [
        ("Agent timed out after 30 minutes", AgentErrorType.TIMEOUT),
        ("Agent stuck (no output for 5 minutes)", AgentErrorType.STUCK),
        ("Agent exited with code 1", AgentErrorType.UNKNOWN),
        ("author field missing", AgentErrorType.UNKNOWN),
    ])
    def test_recoverable(self, message, error_type):
        classification = categorize_agent_error(message, 1)
        assert classification.error_type == error_type
        assert not classification.is_fatal

    def test_classification_code(self):
        assert categorize_agent_error("", 127).code == ErrorCode.AGENT_NOT_FOUND

    def test_agent_error_is_fatal(self):
        assert AgentError("x", AgentErrorType.AUTH_FAILED).is_fatal
        assert not AgentError("x", AgentErrorType.TIMEOUT).is_fatal


class TestUserErrors:
    """Tests for user-facing error formatting."""

    def test_format_with_suggestion_and_details(self):
        error = create_error(ErrorCode.PRD_NOT_FOUND, "No PRD", {"path": ".taskloop/prd.json"})
        text = format_error(error, verbose=True)
        assert text.startswith("Error [E010]: No PRD")
        assert "Suggestion:" in text
        assert '"path"' not in text
        assert 'path: ".taskloop/prd.json"' in text

    def test_compact(self):
        error = create_error(ErrorCode.AGENT_TIMEOUT, "Too slow")
        assert format_error_compact(error) == "[E022] Too slow"
