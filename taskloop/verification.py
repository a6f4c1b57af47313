"""
Post-iteration verification checks.

Runs the configured build, lint, test and custom shell commands in that
order after a successful agent run. A failed check turns the iteration into
a failure and its output becomes retry context for the next attempt.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional

from taskloop.config import VerificationConfig

OUTPUT_MAX_LENGTH = 2000
CONTEXT_MAX_LENGTH = 1000


@dataclass
class CheckResult:
    name: str
    passed: bool
    output: str
    duration_ms: int


@dataclass
class VerificationResult:
    passed: bool
    checks: list[CheckResult] = field(default_factory=list)
    failed_checks: list[str] = field(default_factory=list)
    total_duration_ms: int = 0


def run_check(
    name: str,
    command: str,
    cwd: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> CheckResult:
    """
    Run one shell command and capture its result.

    Output is stdout followed by stderr, trimmed to its last
    OUTPUT_MAX_LENGTH characters.
    """
    start = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    if not command.strip():
        return CheckResult(name, False, "Invalid command: empty command string", elapsed_ms())

    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            timeout=timeout_seconds,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired as e:
        return CheckResult(name, False, f"Command timed out after {e.timeout} seconds", elapsed_ms())
    except OSError as e:
        return CheckResult(name, False, f"Failed to execute command: {e}", elapsed_ms())

    output = result.stdout + (f"\n{result.stderr}" if result.stderr else "")
    return CheckResult(
        name=name,
        passed=result.returncode == 0,
        output=output.strip()[-OUTPUT_MAX_LENGTH:],
        duration_ms=elapsed_ms(),
    )


def run_verification(config: VerificationConfig, cwd: Optional[str] = None) -> VerificationResult:
    """Run every configured check. Disabled verification always passes."""
    if not config.enabled:
        return VerificationResult(passed=True)

    start = time.monotonic()
    commands: list[tuple[str, str]] = []
    if config.build_command:
        commands.append(("build", config.build_command))
    if config.lint_command:
        commands.append(("lint", config.lint_command))
    if config.test_command:
        commands.append(("test", config.test_command))
    for index, command in enumerate(config.custom_checks, start=1):
        commands.append((f"custom-{index}", command))

    checks = []
    failed = []
    for name, command in commands:
        check = run_check(name, command, cwd=cwd, timeout_seconds=config.timeout_seconds)
        checks.append(check)
        if not check.passed:
            failed.append(name)

    return VerificationResult(
        passed=not failed,
        checks=checks,
        failed_checks=failed,
        total_duration_ms=int((time.monotonic() - start) * 1000),
    )


def format_verification_result(result: VerificationResult) -> str:
    lines = ["=== Verification Results ==="]
    if not result.checks:
        lines.append("No verification checks configured")
        return "\n".join(lines)

    for check in result.checks:
        status = "PASS" if check.passed else "FAIL"
        lines.append(f"  {status}: {check.name} ({check.duration_ms}ms)")
        if not check.passed and check.output:
            output_lines = check.output.split("\n")
            lines.extend(f"    {line}" for line in output_lines[:5])
            if len(output_lines) > 5:
                lines.append("    ...(truncated)")

    lines.append("")
    lines.append(f"Total: {len(result.checks)} checks, {len(result.failed_checks)} failed")
    lines.append(f"Duration: {result.total_duration_ms}ms")
    lines.append(f"Status: {'PASSED' if result.passed else 'FAILED'}")
    return "\n".join(lines)


def generate_verification_retry_context(result: VerificationResult) -> str:
    """Retry context listing each failed check and its output, or "" if all passed."""
    if result.passed or not result.failed_checks:
        return ""

    lines = [
        "## Verification Failed",
        "",
        "The previous iteration completed but verification checks failed:",
        "",
    ]
    for check in result.checks:
        if check.passed:
            continue
        lines.append(f"### {check.name} check failed")
        lines.append("")
        if check.output:
            lines.append("```")
            lines.append(check.output[:CONTEXT_MAX_LENGTH])
            lines.append("```")
            lines.append("")

    lines.append("Please fix the issues identified by the verification checks before proceeding.")
    return "\n".join(lines)
