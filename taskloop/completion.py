"""
Streaming completion-marker detection.

The agent signals that it finished its task by printing a fixed marker
(``<promise>COMPLETE</promise>`` by default). Output arrives in arbitrary
chunks, so the marker may be split across any number of reads.
"""

from __future__ import annotations

import threading

from taskloop.config import COMPLETION_MARKER


class CompletionDetector:
    """
    Detects a marker string in a stream of text chunks.

    Keeps the last ``len(marker) - 1`` characters between feeds so a marker
    split across chunk boundaries is still found. Once the marker has been
    seen the detector latches and ignores further input until reset().
    """

    def __init__(self, marker: str = COMPLETION_MARKER) -> None:
        if not marker:
            raise ValueError("Completion marker must be a non-empty string")
        self.marker = marker
        self._carry_len = len(marker) - 1
        self._tail = ""
        self._found = False
        self._lock = threading.Lock()

    def feed(self, chunk: str) -> None:
        """Consume a text fragment."""
        if not chunk:
            return

        with self._lock:
            if self._found:
                return

            window = self._tail + chunk
            if self.marker in window:
                self._found = True
                self._tail = ""
                return

            if self._carry_len:
                self._tail = window[-self._carry_len:]

    def is_complete(self) -> bool:
        with self._lock:
            return self._found

    def reset(self) -> None:
        with self._lock:
            self._tail = ""
            self._found = False
