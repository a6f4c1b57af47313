"""
Failure classification and retry-context generation.

Classifies a failed agent run from its error text, captured output and exit
code, and renders the retry context injected into the next attempt's
prompt. Whether a failure is fatal is decided from process-level signals
(see taskloop.errors), not here: every category produced is retryable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from taskloop.models import FailureCategory


@dataclass
class FailureAnalysis:
    category: FailureCategory
    root_cause: str
    suggested_approach: str
    context_injection: str
    should_retry: bool = True


@dataclass(frozen=True)
class _FailureRule:
    pattern: re.Pattern
    category: FailureCategory
    root_cause: str
    suggested_approach: str
    context_injection: str

    def to_analysis(self) -> FailureAnalysis:
        return FailureAnalysis(
            category=self.category,
            root_cause=self.root_cause,
            suggested_approach=self.suggested_approach,
            context_injection=self.context_injection,
        )


# Ordered: the first matching rule wins, regardless of exit code
FAILURE_RULES: tuple[_FailureRule, ...] = (
    _FailureRule(
        re.compile(r"error:?\s*ts\d+|typescript\s*error|type\s*error|cannot find module", re.IGNORECASE),
        FailureCategory.BUILD_FAILURE,
        "TypeScript compilation error",
        "Fix type errors before proceeding",
        "The previous attempt failed due to TypeScript errors. Before making changes, run the "
        "TypeScript compiler to identify and fix all type errors. Pay close attention to type "
        "definitions and imports.",
    ),
    _FailureRule(
        re.compile(r"build\s*(failed|error)|compilation\s*(failed|error)|cannot\s*compile", re.IGNORECASE),
        FailureCategory.BUILD_FAILURE,
        "Build process failed",
        "Run build command first and fix any errors",
        "The previous attempt resulted in a build failure. Before making any new changes, run the "
        "build command to see the current errors and fix them first. Ensure the codebase compiles "
        "successfully before proceeding.",
    ),
    _FailureRule(
        re.compile(r"test\s*(failed|failure)|assertion\s*(failed|error)|expect.*to(be|equal|match)", re.IGNORECASE),
        FailureCategory.TEST_FAILURE,
        "Test assertion failed",
        "Run tests first and fix failing tests",
        "The previous attempt caused test failures. Before continuing, run the test suite to "
        "identify which tests are failing. Fix the failing tests or update the implementation to "
        "make them pass.",
    ),
    _FailureRule(
        re.compile(r"lint\s*(error|failed)|eslint|biome|prettier.*error", re.IGNORECASE),
        FailureCategory.LINT_ERROR,
        "Linting or formatting error",
        "Run linter and fix style issues",
        "The previous attempt had linting errors. Run the linter to see all issues and fix them. "
        "Follow the project's code style conventions.",
    ),
    _FailureRule(
        re.compile(r"permission\s*denied|eacces|access\s*denied|forbidden", re.IGNORECASE),
        FailureCategory.PERMISSION_ERROR,
        "File or directory permission error",
        "Check file permissions and ownership",
        "The previous attempt failed due to permission issues. Check if the files you're trying to "
        "modify have the correct permissions. You may need to use different files or directories.",
    ),
    _FailureRule(
        re.compile(r"timeout|timed\s*out|exceeded.*time", re.IGNORECASE),
        FailureCategory.TIMEOUT,
        "Operation timed out",
        "Break task into smaller pieces",
        "The previous attempt timed out. The task may be too large to complete in one iteration. "
        "Focus on completing a smaller, more focused portion of the task. Consider breaking it "
        "into multiple commits.",
    ),
    _FailureRule(
        re.compile(r"stuck|no\s*output|unresponsive", re.IGNORECASE),
        FailureCategory.STUCK,
        "Agent became unresponsive",
        "Simplify the approach",
        "The previous attempt got stuck without producing output. Try a simpler approach. Avoid "
        "complex operations that might cause the agent to hang. Work incrementally with frequent "
        "saves.",
    ),
    _FailureRule(
        re.compile(r"network\s*error|econnrefused|enotfound|socket\s*hang\s*up|fetch\s*failed", re.IGNORECASE),
        FailureCategory.NETWORK_ERROR,
        "Network connectivity issue",
        "Check network connectivity and retry",
        "The previous attempt failed due to network issues. This may be a transient error. If the "
        "task requires network access, ensure the required services are available.",
    ),
    _FailureRule(
        re.compile(r"syntax\s*error|unexpected\s*token|parsing\s*error|invalid\s*syntax", re.IGNORECASE),
        FailureCategory.SYNTAX_ERROR,
        "Code syntax error",
        "Fix syntax errors in the code",
        "The previous attempt introduced syntax errors. Carefully review the code for missing "
        "brackets, semicolons, or other syntax issues. Use the error message to locate the exact "
        "problem.",
    ),
    _FailureRule(
        re.compile(
            r"cannot\s*find\s*package|module\s*not\s*found|dependency.*not\s*found|npm\s*err|yarn\s*error|bun.*error",
            re.IGNORECASE,
        ),
        FailureCategory.DEPENDENCY_ERROR,
        "Missing or incompatible dependency",
        "Install missing dependencies",
        "The previous attempt failed due to missing dependencies. Check if all required packages "
        "are installed. Run the package manager install command if needed.",
    ),
)


def _analyze_exit_code(exit_code: Optional[int]) -> Optional[FailureAnalysis]:
    if exit_code is None:
        return None

    if exit_code == 1:
        return FailureAnalysis(
            category=FailureCategory.UNKNOWN,
            root_cause="General error (exit code 1)",
            suggested_approach="Check the output for specific error details",
            context_injection=(
                "The previous attempt failed with a general error. Carefully review any error "
                "messages and try to address the specific issue mentioned."
            ),
        )

    if exit_code == 2:
        return FailureAnalysis(
            category=FailureCategory.SYNTAX_ERROR,
            root_cause="Misuse of command or syntax error (exit code 2)",
            suggested_approach="Check command syntax and arguments",
            context_injection=(
                "The previous attempt failed due to incorrect command usage or syntax. Verify the "
                "commands being used are correct."
            ),
        )

    if exit_code >= 128:
        signal_number = exit_code - 128
        return FailureAnalysis(
            category=FailureCategory.UNKNOWN,
            root_cause=f"Process terminated by signal {signal_number}",
            suggested_approach="The process was forcefully terminated",
            context_injection=(
                f"The previous attempt was terminated by signal {signal_number}. This may indicate "
                "a timeout, memory issue, or external interruption. Try a simpler approach."
            ),
        )

    return None


def analyze_failure(error: str, output: str, exit_code: Optional[int]) -> FailureAnalysis:
    """
    Classify a failed agent run.

    Precedence: pattern rules over the combined error and output text,
    then exit-code heuristics, then a generic unknown whose root cause is
    the error text itself.

    Args:
        error: Error text (stderr or the runner's message).
        output: Captured agent output.
        exit_code: Process exit code, None if unavailable.

    Returns:
        FailureAnalysis describing the failure.
    """
    combined = f"{error or ''}\n{output or ''}".lower()

    for rule in FAILURE_RULES:
        if rule.pattern.search(combined):
            return rule.to_analysis()

    by_exit_code = _analyze_exit_code(exit_code)
    if by_exit_code is not None:
        return by_exit_code

    return FailureAnalysis(
        category=FailureCategory.UNKNOWN,
        root_cause=error or "Unknown error occurred",
        suggested_approach="Review the error message and try a different approach",
        context_injection=(
            "The previous attempt failed. Review what went wrong and try a different approach. "
            "Check the error message for clues about the root cause."
        ),
    )


def _attempt_label(attempt_number: int) -> str:
    # Simple suffix rule: 1st, 2nd, then Nth for everything else (3th, 4th, ...)
    if attempt_number == 1:
        return "1st"
    if attempt_number == 2:
        return "2nd"
    return f"{attempt_number}th"


def generate_retry_context(analysis: FailureAnalysis, attempt_number: int) -> str:
    """Render the retry section appended to the next attempt's prompt."""
    return "\n".join([
        f"## Retry Context ({_attempt_label(attempt_number)} retry attempt)",
        "",
        f"**Previous failure:** {analysis.root_cause}",
        f"**Category:** {analysis.category.label}",
        f"**Recommended approach:** {analysis.suggested_approach}",
        "",
        analysis.context_injection,
        "",
        "IMPORTANT: Address the issue described above before proceeding with the task. "
        "Do not repeat the same mistake.",
    ])
