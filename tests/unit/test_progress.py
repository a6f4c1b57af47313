"""Tests for the progress journal."""
import json
import re

from taskloop.progress import ProgressLog


class TestProgressLog:
    """Tests for ProgressLog."""

    def test_initialize_writes_header_once(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        assert log.initialize("demo") is True
        assert log.initialize("other") is False

        text = log.read()
        assert text.startswith("=== PROGRESS LOG ===\nProject: demo\n")
        assert "other" not in text

    def test_read_missing_file(self, tmp_path):
        assert ProgressLog(tmp_path / "nope.txt").read() == ""

    def test_entry_format(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        log.entry("iteration_start", "Working on: Setup", iteration=2, total=5, context={"retry": 1})

        line = log.read().strip()
        match = re.match(r"^(\S+Z) \[ITERATION START\] \[Iteration 2/5\] Working on: Setup \| (.*)$", line)
        assert match
        assert json.loads(match.group(2)) == {"retry": 1}

    def test_entry_without_iteration_or_context(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        log.log_error("Something broke")
        line = log.read().strip()
        assert line.endswith("[ERROR] Something broke")

    def test_appends_never_truncate(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        log.initialize("demo")
        log.log_iteration_start(1, 3, "A")
        log.log_iteration_complete(1, 3, success=False, duration_ms=1200)
        log.section("=== Block ===\nline")

        text = log.read()
        assert text.index("=== PROGRESS LOG ===") < text.index("Working on: A")
        assert "Iteration failed" in text
        assert '"durationMs": 1200' in text
        assert text.endswith("=== Block ===\nline\n\n")

    def test_rotation(self, tmp_path):
        path = tmp_path / "progress.txt"
        log = ProgressLog(path, max_bytes=100, max_backups=2)

        for index in range(30):
            log.entry("note", f"entry number {index}")

        assert path.exists()
        assert (tmp_path / "progress.txt.1").exists()
        assert (tmp_path / "progress.txt.2").exists()
        assert not (tmp_path / "progress.txt.3").exists()
        assert "entry number 29" in log.read()

    def test_session_complete(self, tmp_path):
        log = ProgressLog(tmp_path / "progress.txt")
        log.log_session_complete("all_complete", 4)
        text = log.read()
        assert "[SESSION COMPLETE] Session finished: all_complete" in text
        assert '"iterationsRun": 4' in text
