"""Tests for failure history and pattern mining."""
import json

import pytest

from taskloop.failure_patterns import (
    MAX_FAILURE_HISTORY_ENTRIES,
    FailureHistory,
    format_pattern_report,
    normalize_error,
    signature_similarity,
)
from taskloop.models import FailureCategory
from taskloop.state_store import FailureHistoryStore


@pytest.fixture
def history(config) -> FailureHistory:
    return FailureHistory(FailureHistoryStore(config.failure_history_path))


def record(history: FailureHistory, error: str, task: str = "Task A", exit_code=1, iteration=1):
    return history.record_failure(error, "", task, exit_code, iteration)


class TestNormalization:
    """Tests for error signatures."""

    def test_digits_and_quotes_are_masked(self):
        assert normalize_error("Error  at line 42: 'foo' missing") == 'error at line N: "..." missing'

    def test_similar_messages_share_signature(self):
        a = normalize_error("Build failed after 12 seconds in 'src/a.ts'")
        b = normalize_error("Build failed after 95 seconds in 'src/b.ts'")
        assert a == b

    def test_signature_is_truncated(self):
        assert len(normalize_error("x" * 500)) == 200

    def test_similarity(self):
        assert signature_similarity("a b c", "a b c") == 1.0
        assert signature_similarity("a b", "c d") == 0.0


class TestRecordFailure:
    """Tests for record_failure."""

    def test_entry_is_classified_and_persisted(self, history, config):
        entry = record(history, "Build failed: 3 errors", task="Setup", iteration=4)
        assert entry.category == FailureCategory.BUILD_FAILURE
        assert entry.root_cause == "Build process failed"

        data = json.loads(config.failure_history_path.read_text())
        assert data["entries"][0]["taskTitle"] == "Setup"
        assert data["entries"][0]["iteration"] == 4

    def test_history_is_capped(self, history):
        for index in range(MAX_FAILURE_HISTORY_ENTRIES + 5):
            record(history, f"failure number {index}", iteration=index)

        entries = history.load().entries
        assert len(entries) == MAX_FAILURE_HISTORY_ENTRIES
        assert entries[0].iteration == 5

    def test_corrupt_history_starts_fresh(self, history, config):
        config.failure_history_path.write_text("garbage")
        record(history, "Build failed")
        assert len(history.load().entries) == 1


class TestPatterns:
    """Tests for analyze_patterns and suggestions."""

    def test_single_failures_are_not_patterns(self, history):
        record(history, "Build failed")
        record(history, "1 test failed")
        assert history.analyze_patterns() == []

    def test_pair_is_pattern_without_suggestion(self, history):
        record(history, "Build failed in step 1")
        record(history, "Build failed in step 2", task="Task B")

        patterns = history.analyze_patterns()

        assert len(patterns) == 1
        assert patterns[0].occurrences == 2
        assert patterns[0].affected_tasks == ["Task A", "Task B"]
        assert patterns[0].suggested_guardrail is None
        assert history.get_suggested_guardrails(patterns) == []

    def test_three_similar_failures_suggest_a_disabled_guardrail(self, history):
        for step in range(3):
            record(history, f"Build failed in step {step}")

        suggestions = history.get_suggested_guardrails()

        assert len(suggestions) == 1
        assert suggestions[0].enabled is False
        assert suggestions[0].id.startswith("suggested-")
        assert suggestions[0].instruction == (
            "Always run the build command and fix any errors before committing changes"
        )
        assert "(3 occurrences)" in suggestions[0].added_after_failure

    def test_different_categories_do_not_merge(self, history):
        record(history, "Build failed now")
        record(history, "Build failed now", exit_code=None)
        record(history, "Request timed out now")
        patterns = history.analyze_patterns()
        assert [p.category for p in patterns] == [FailureCategory.BUILD_FAILURE]

    def test_patterns_sorted_by_occurrences(self, history):
        for _ in range(2):
            record(history, "Request timed out")
        for _ in range(4):
            record(history, "Build failed")
        patterns = history.analyze_patterns()
        assert [p.occurrences for p in patterns] == [4, 2]

    def test_analysis_is_persisted(self, history):
        for _ in range(2):
            record(history, "Build failed")
        history.analyze_patterns()
        document = history.load()
        assert len(document.patterns) == 1
        assert document.last_analyzed_at is not None


class TestReport:
    """Tests for generate_pattern_report."""

    def test_report_recommendations(self, history):
        for _ in range(5):
            record(history, "Build failed", task="Compile everything")

        report = history.generate_pattern_report()

        assert report.total_failures == 5
        assert report.unique_patterns == 1
        assert report.category_breakdown[0].percentage == 100
        assert report.task_failure_rates[0].failures == 5
        assert any("build failure accounts for 100%" in r for r in report.recommendations)
        assert any('"Compile everything" has 5 failures' in r for r in report.recommendations)
        assert any("taskloop guardrails suggest --apply" in r for r in report.recommendations)

    def test_quiet_report(self, history):
        record(history, "Build failed")
        report = history.generate_pattern_report()
        assert any("No significant recurring patterns" in r for r in report.recommendations)

    def test_format_pattern_report(self, history):
        for _ in range(3):
            record(history, "1 test failed")
        text = format_pattern_report(history.generate_pattern_report())
        assert "Total Failures: 3" in text
        assert "Category Breakdown" in text
        assert "[test_failure] 3 occurrences" in text
        assert "Suggested: Run the test suite" in text

    def test_clear_and_stats(self, history):
        record(history, "Build failed")
        assert history.get_stats()["total_entries"] == 1
        history.clear()
        stats = history.get_stats()
        assert stats["total_entries"] == 0
        assert stats["oldest_entry"] is None
