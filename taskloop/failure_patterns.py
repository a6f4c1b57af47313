"""
Persistent failure history and recurring-pattern mining.

Every failed iteration is classified and appended to failure-history.json
(capped at MAX_FAILURE_HISTORY_ENTRIES, oldest evicted). Similar failures
are clustered into patterns; patterns that recur PATTERN_THRESHOLD times
produce disabled-by-default guardrail suggestions.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from taskloop.failure_analyzer import analyze_failure
from taskloop.guardrails import generate_guardrail_id, utc_now_iso
from taskloop.models import (
    FailureCategory,
    FailureHistoryDocument,
    FailureHistoryEntry,
    FailurePattern,
    Guardrail,
    GuardrailCategory,
    GuardrailTrigger,
)
from taskloop.state_store import FailureHistoryStore

logger = logging.getLogger(__name__)

MAX_FAILURE_HISTORY_ENTRIES = 100
PATTERN_THRESHOLD = 3
SIMILARITY_THRESHOLD = 0.7
MAX_SIGNATURE_LENGTH = 200

CATEGORY_GUARDRAILS: dict[FailureCategory, str] = {
    FailureCategory.BUILD_FAILURE: "Always run the build command and fix any errors before committing changes",
    FailureCategory.TEST_FAILURE: "Run the test suite after making changes and ensure all tests pass",
    FailureCategory.LINT_ERROR: "Run the linter before committing and fix all style issues",
    FailureCategory.PERMISSION_ERROR: "Verify file permissions before attempting to modify files",
    FailureCategory.TIMEOUT: "Break large tasks into smaller, more focused subtasks",
    FailureCategory.STUCK: "Use incremental changes with frequent saves to avoid getting stuck",
    FailureCategory.NETWORK_ERROR: "Check network connectivity before operations that require external services",
    FailureCategory.SYNTAX_ERROR: "Validate syntax by running the compiler/interpreter after each change",
    FailureCategory.DEPENDENCY_ERROR: "Verify all dependencies are installed before running the project",
    FailureCategory.UNKNOWN: "Review error messages carefully and address the root cause before proceeding",
}

_DIGITS = re.compile(r"\d+")
_QUOTED = re.compile(r"['\"`].*?['\"`]")
_WHITESPACE = re.compile(r"\s+")


def normalize_error(error: str) -> str:
    """
    Reduce an error message to a comparable signature.

    Lowercases, replaces digit runs with N and quoted substrings with a
    placeholder, collapses whitespace and truncates.
    """
    signature = error.lower()
    signature = _DIGITS.sub("N", signature)
    signature = _QUOTED.sub('"..."', signature)
    signature = _WHITESPACE.sub(" ", signature).strip()
    return signature[:MAX_SIGNATURE_LENGTH]


def signature_similarity(a: str, b: str) -> float:
    """Jaccard overlap of the space-separated word sets."""
    words_a = set(a.split(" "))
    words_b = set(b.split(" "))
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def group_entries(entries: list[FailureHistoryEntry]) -> dict[str, list[FailureHistoryEntry]]:
    """
    Cluster entries by category and signature similarity.

    Each unclaimed entry seeds a group keyed ``{category}:{signature}`` and
    claims every later entry of the same category whose signature overlaps
    by more than SIMILARITY_THRESHOLD.
    """
    groups: dict[str, list[FailureHistoryEntry]] = {}
    claimed: set[int] = set()
    signatures = [normalize_error(entry.error) for entry in entries]

    for index, entry in enumerate(entries):
        if index in claimed:
            continue
        claimed.add(index)
        group = [entry]

        for other_index in range(index + 1, len(entries)):
            if other_index in claimed:
                continue
            other = entries[other_index]
            if other.category != entry.category:
                continue
            if signature_similarity(signatures[index], signatures[other_index]) > SIMILARITY_THRESHOLD:
                group.append(other)
                claimed.add(other_index)

        key = f"{entry.category.value}:{signatures[index]}"
        groups.setdefault(key, []).extend(group)

    return groups


def suggest_guardrail_text(category: FailureCategory, entries: list[FailureHistoryEntry]) -> str:
    suggestion = CATEGORY_GUARDRAILS.get(category)
    if suggestion:
        return suggestion
    root_cause = entries[0].root_cause if entries else "unknown error"
    return f"Address common issue: {root_cause}"


@dataclass
class TaskFailureRate:
    task: str
    failures: int


@dataclass
class CategoryBreakdown:
    category: FailureCategory
    count: int
    percentage: int


@dataclass
class PatternReport:
    total_failures: int
    unique_patterns: int
    top_patterns: list[FailurePattern] = field(default_factory=list)
    task_failure_rates: list[TaskFailureRate] = field(default_factory=list)
    category_breakdown: list[CategoryBreakdown] = field(default_factory=list)
    suggested_guardrails: list[Guardrail] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    last_analyzed_at: Optional[str] = None


class FailureHistory:
    """Failure log and pattern analysis backed by a FailureHistoryStore."""

    def __init__(self, store: FailureHistoryStore) -> None:
        self._store = store

    def load(self) -> FailureHistoryDocument:
        """Load the history; an unreadable file yields an empty history."""
        result = self._store.reload()
        if result.error:
            logger.warning("Ignoring unreadable failure history: %s", result.error)
        return result.value if result.value is not None else FailureHistoryDocument()

    def save(self, history: FailureHistoryDocument) -> None:
        self._store.save(history)

    def record_failure(
        self,
        error: str,
        output: str,
        task_title: str,
        exit_code: Optional[int],
        iteration: int,
    ) -> FailureHistoryEntry:
        """Classify a failure and append it to the history."""
        history = self.load()
        analysis = analyze_failure(error, output, exit_code)

        entry = FailureHistoryEntry(
            timestamp=utc_now_iso(),
            error=error,
            task_title=task_title,
            category=analysis.category,
            root_cause=analysis.root_cause,
            exit_code=exit_code,
            iteration=iteration,
        )
        history.entries.append(entry)
        if len(history.entries) > MAX_FAILURE_HISTORY_ENTRIES:
            history.entries = history.entries[-MAX_FAILURE_HISTORY_ENTRIES:]

        self.save(history)
        return entry

    def analyze_patterns(self) -> list[FailurePattern]:
        """Recompute patterns from the entries and persist them, most frequent first."""
        history = self.load()
        patterns = []

        for entries in group_entries(history.entries).values():
            if len(entries) < 2:
                continue
            first, last = entries[0], entries[-1]
            occurrences = len(entries)
            patterns.append(FailurePattern(
                pattern=normalize_error(first.error),
                category=first.category,
                occurrences=occurrences,
                first_seen=first.timestamp,
                last_seen=last.timestamp,
                affected_tasks=list(dict.fromkeys(entry.task_title for entry in entries)),
                suggested_guardrail=(
                    suggest_guardrail_text(first.category, entries)
                    if occurrences >= PATTERN_THRESHOLD else None
                ),
            ))

        patterns.sort(key=lambda pattern: pattern.occurrences, reverse=True)

        history.patterns = patterns
        history.last_analyzed_at = utc_now_iso()
        self.save(history)
        return patterns

    def get_suggested_guardrails(
        self,
        patterns: Optional[list[FailurePattern]] = None,
    ) -> list[Guardrail]:
        """Disabled guardrails for every pattern at or over the threshold."""
        if patterns is None:
            patterns = self.analyze_patterns()

        suggestions = []
        for pattern in patterns:
            if pattern.occurrences < PATTERN_THRESHOLD or not pattern.suggested_guardrail:
                continue
            suggestions.append(Guardrail(
                id=generate_guardrail_id("suggested"),
                instruction=pattern.suggested_guardrail,
                trigger=GuardrailTrigger.ALWAYS,
                category=GuardrailCategory.QUALITY,
                enabled=False,
                added_at=utc_now_iso(),
                added_after_failure=(
                    f"Pattern detected: {pattern.pattern[:50]}... "
                    f"({pattern.occurrences} occurrences)"
                ),
            ))
        return suggestions

    def generate_pattern_report(self) -> PatternReport:
        patterns = self.analyze_patterns()
        history = self.load()
        suggested = self.get_suggested_guardrails(patterns)

        task_counts = Counter(entry.task_title for entry in history.entries)
        category_counts = Counter(entry.category for entry in history.entries)
        total = len(history.entries)

        task_rates = sorted(
            (TaskFailureRate(task, count) for task, count in task_counts.items()),
            key=lambda rate: rate.failures,
            reverse=True,
        )[:10]
        breakdown = sorted(
            (
                CategoryBreakdown(
                    category=category,
                    count=count,
                    percentage=round(count / total * 100) if total else 0,
                )
                for category, count in category_counts.items()
            ),
            key=lambda item: item.count,
            reverse=True,
        )

        recommendations = []
        if breakdown and breakdown[0].percentage > 40:
            top = breakdown[0]
            recommendations.append(
                f"{top.category.label} accounts for {top.percentage}% of failures. "
                "Consider adding specific guardrails for this issue."
            )
        if task_rates and task_rates[0].failures >= 5:
            top_task = task_rates[0]
            recommendations.append(
                f'Task "{top_task.task}" has {top_task.failures} failures. '
                "Consider breaking it into smaller subtasks."
            )
        if suggested:
            recommendations.append(
                f"{len(suggested)} guardrail(s) suggested based on recurring patterns. "
                "Run 'taskloop guardrails suggest --apply' to add them."
            )
        if not any(pattern.occurrences >= PATTERN_THRESHOLD for pattern in patterns):
            recommendations.append(
                "No significant recurring patterns detected. Keep monitoring for trends."
            )

        return PatternReport(
            total_failures=total,
            unique_patterns=len(patterns),
            top_patterns=patterns[:10],
            task_failure_rates=task_rates,
            category_breakdown=breakdown,
            suggested_guardrails=suggested,
            recommendations=recommendations,
            last_analyzed_at=history.last_analyzed_at,
        )

    def clear(self) -> None:
        self.save(FailureHistoryDocument())

    def get_stats(self) -> dict[str, Any]:
        history = self.load()
        entries = history.entries
        return {
            "total_entries": len(entries),
            "oldest_entry": entries[0].timestamp if entries else None,
            "newest_entry": entries[-1].timestamp if entries else None,
        }


def format_pattern_report(report: PatternReport) -> str:
    """Plain-text rendering of a PatternReport."""
    lines = [
        "╭─────────────────────────────────────────────────────────────╮",
        "│                   Failure Pattern Analysis                  │",
        "╰─────────────────────────────────────────────────────────────╯",
        "",
        f"Total Failures: {report.total_failures}",
        f"Unique Patterns: {report.unique_patterns}",
        f"Last Analyzed: {report.last_analyzed_at or 'Never'}",
        "",
    ]

    if report.category_breakdown:
        lines.append("─── Category Breakdown ───")
        for item in report.category_breakdown:
            bar = "█" * math.ceil(item.percentage / 5)
            lines.append(f"  {item.category.value:<18} {bar} {item.percentage}% ({item.count})")
        lines.append("")

    if report.top_patterns:
        lines.append("─── Top Failure Patterns ───")
        for index, pattern in enumerate(report.top_patterns[:5], start=1):
            ellipsis = "..." if len(pattern.pattern) > 60 else ""
            tasks_more = "..." if len(pattern.affected_tasks) > 3 else ""
            lines.append(f"  {index}. [{pattern.category.value}] {pattern.occurrences} occurrences")
            lines.append(f"     Pattern: {pattern.pattern[:60]}{ellipsis}")
            lines.append(f"     Tasks: {', '.join(pattern.affected_tasks[:3])}{tasks_more}")
            if pattern.suggested_guardrail:
                lines.append(f"     Suggested: {pattern.suggested_guardrail}")
            lines.append("")

    if report.task_failure_rates:
        lines.append("─── Tasks with Most Failures ───")
        for rate in report.task_failure_rates[:5]:
            lines.append(f"  • {rate.task}: {rate.failures} failures")
        lines.append("")

    if report.recommendations:
        lines.append("─── Recommendations ───")
        for recommendation in report.recommendations:
            lines.append(f"  → {recommendation}")
        lines.append("")

    return "\n".join(lines)
