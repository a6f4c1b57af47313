"""Runs post-iteration verification and tracks its state."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional

from taskloop.config import VerificationConfig
from taskloop.verification import VerificationResult, format_verification_result, run_verification

if TYPE_CHECKING:
    from taskloop.progress import ProgressLog

VerificationStateCallback = Callable[[bool, Optional[VerificationResult]], None]


class VerificationHandler:
    def __init__(
        self,
        progress: Optional[ProgressLog] = None,
        on_state_change: Optional[VerificationStateCallback] = None,
        runner: Callable[..., VerificationResult] = run_verification,
    ) -> None:
        self._progress = progress
        self._on_state_change = on_state_change
        self._runner = runner
        self.last_result: Optional[VerificationResult] = None
        self.is_running = False

    def reset(self) -> None:
        self.last_result = None
        self.is_running = False

    def _notify(self, result: Optional[VerificationResult]) -> None:
        if self._on_state_change:
            self._on_state_change(self.is_running, result)

    def run(self, config: VerificationConfig, cwd: Optional[str] = None) -> VerificationResult:
        self.is_running = True
        self._notify(None)
        try:
            result = self._runner(config, cwd=cwd)
        finally:
            self.is_running = False

        self.last_result = result
        self._notify(result)
        if self._progress:
            self._progress.section(format_verification_result(result))
        return result
