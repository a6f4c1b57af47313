"""
Agent process runner.

This module provides:
- AgentRunner, which builds the prompt, spawns the agent CLI and streams
  its output through a CompletionDetector
- Timeout and stuck-output watchdogs with graceful termination
- Local retries with exponential backoff and injected retry context
- Publication of agent.complete / agent.error on the event bus
"""

from __future__ import annotations

import json
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any, Callable, Optional

from taskloop.completion import CompletionDetector
from taskloop.decomposition import parse_decomposition_request
from taskloop.errors import AgentErrorType, categorize_agent_error
from taskloop.failure_analyzer import analyze_failure, generate_retry_context
from taskloop.models import DecompositionRequest, RetryContext, Task
from taskloop.process_manager import DEFAULT_PROCESS_ID, AgentProcessManager
from taskloop.prompt import build_prompt

if TYPE_CHECKING:
    from taskloop.config import TaskloopConfig
    from taskloop.events.bus import EventBus
    from taskloop.logger import TaskloopLogger
    from taskloop.progress import ProgressLog

WATCHDOG_INTERVAL_SECONDS = 0.5


def parse_stream_json_line(line: str) -> Optional[str]:
    """
    Extract the human-readable text from one stream-json line.

    Assistant messages yield their first text block and successful result
    messages yield the result. Lines that are not JSON objects are returned
    as-is; other JSON messages yield None.
    """
    if not line.strip():
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return line
    if not isinstance(parsed, dict) or not isinstance(parsed.get("type"), str):
        return line

    if parsed["type"] == "assistant":
        message = parsed.get("message") or {}
        for content in message.get("content") or []:
            if isinstance(content, dict) and content.get("type") == "text" and content.get("text"):
                return content["text"]
    if parsed["type"] == "result" and parsed.get("subtype") == "success" and parsed.get("result"):
        return parsed["result"]
    return None


def calculate_retry_delay_ms(base_delay_ms: int, retry_count: int) -> int:
    """Exponential backoff: base * 2**(retry_count - 1) for retry_count >= 1."""
    return base_delay_ms * 2 ** max(retry_count - 1, 0)


@dataclass
class AgentRunResult:
    """Outcome of one agent run, after retries."""
    success: bool
    exit_code: Optional[int]
    output: str
    is_complete: bool
    error: Optional[str] = None
    retry_count: int = 0
    is_fatal: bool = False
    error_type: Optional[AgentErrorType] = None
    decomposition_request: Optional[DecompositionRequest] = None
    retry_contexts: list[RetryContext] = field(default_factory=list)


class _OutputCollector:
    """Drains one agent process's pipes on reader threads."""

    def __init__(self, detector: CompletionDetector, on_output: Optional[Callable[[str], None]]) -> None:
        self._detector = detector
        self._on_output = on_output
        self._lock = threading.Lock()
        self._parsed: list[str] = []
        self._stderr: list[str] = []
        self._last_parsed: Optional[str] = None
        self.last_activity = time.monotonic()

    def _touch(self) -> None:
        with self._lock:
            self.last_activity = time.monotonic()

    def read_stdout(self, stream: IO[str]) -> None:
        for line in iter(stream.readline, ""):
            self._touch()
            self._detector.feed(line)
            text = parse_stream_json_line(line.rstrip("\n"))
            if text and text != self._last_parsed:
                self._last_parsed = text
                with self._lock:
                    self._parsed.append(text)
                if self._on_output:
                    self._on_output(text)
        stream.close()

    def read_stderr(self, stream: IO[str]) -> None:
        for line in iter(stream.readline, ""):
            self._touch()
            with self._lock:
                self._stderr.append(line)
        stream.close()

    def idle_seconds(self) -> float:
        with self._lock:
            return time.monotonic() - self.last_activity

    @property
    def output(self) -> str:
        with self._lock:
            return "\n".join(self._parsed)

    @property
    def stderr(self) -> str:
        with self._lock:
            return "".join(self._stderr)


class AgentRunner:
    """
    Runs the agent CLI for one task slot.

    The process handle is registered in the shared AgentProcessManager under
    process_id, so kill_all() from the orchestrator reaches it.
    """

    def __init__(
        self,
        config: TaskloopConfig,
        process_manager: AgentProcessManager,
        bus: Optional[EventBus] = None,
        logger: Optional[TaskloopLogger] = None,
        progress: Optional[ProgressLog] = None,
        process_id: str = DEFAULT_PROCESS_ID,
        on_output: Optional[Callable[[str], None]] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        watchdog_interval: float = WATCHDOG_INTERVAL_SECONDS,
        allow_decomposition: Optional[bool] = None,
    ) -> None:
        """
        Initialize the runner.

        Args:
            config: Loaded configuration.
            process_manager: Registry shared with the orchestrator.
            bus: Event bus for agent.complete / agent.error.
            logger: Optional structured logger.
            progress: Optional progress journal for retry sections.
            process_id: Registry key for this runner's process.
            on_output: Called with each new line of parsed agent text.
            popen: Process factory following the subprocess.Popen signature.
            watchdog_interval: Seconds between watchdog checks.
            allow_decomposition: Offer the decomposition protocol in the
                prompt. Defaults to config.learning.enabled.
        """
        self.config = config
        self.process_manager = process_manager
        self.bus = bus
        self.logger = logger
        self.progress = progress
        self.process_id = process_id
        self._on_output = on_output
        self._popen = popen
        self._watchdog_interval = watchdog_interval
        self._allow_decomposition = (
            config.learning.enabled if allow_decomposition is None else allow_decomposition
        )
        self._abort_event = threading.Event()

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def is_aborted(self) -> bool:
        return self._abort_event.is_set() or self.process_manager.is_aborted(self.process_id)

    def abort(self) -> None:
        """Stop retrying and terminate the running process, if any."""
        self._abort_event.set()
        self.process_manager.kill(self.process_id)
        self.process_manager.set_aborted(True, self.process_id)

    def build_prompt(self, task: Optional[Task], guardrails: str = "", retry_context: Optional[str] = None) -> str:
        return build_prompt(
            data_dir=self.config.data_dir,
            task=task,
            guardrails=guardrails,
            retry_context=retry_context,
            allow_decomposition=self._allow_decomposition,
            completion_marker=self.config.agent.completion_marker,
        )

    def run(
        self,
        task: Optional[Task] = None,
        iteration: int = 0,
        guardrails: str = "",
        retry_context: Optional[str] = None,
    ) -> AgentRunResult:
        """
        Run the agent until it succeeds, fails fatally or runs out of retries.

        Publishes agent.complete on success and agent.error otherwise. Returns
        without publishing when aborted.

        Args:
            task: Task to work on; None lets the agent pick.
            iteration: Current iteration number, carried on events.
            guardrails: Pre-formatted guardrails section.
            retry_context: Context carried over from a previous iteration
                (for example failed verification).

        Returns:
            AgentRunResult for the final attempt.
        """
        agent_config = self.config.agent
        max_retries = agent_config.max_retries
        task_title = task.title if task else None
        task_id = task.id if task else None
        retry_contexts: list[RetryContext] = []

        self._abort_event.clear()
        self.process_manager.reset_retry(self.process_id)
        retry_count = 0

        while not self.is_aborted():
            prompt = self.build_prompt(task, guardrails, retry_context)
            if self.logger:
                self.logger.log_agent_start(task_title, retry_count + 1)
            result = self.run_once(prompt)
            result.retry_count = retry_count
            result.retry_contexts = list(retry_contexts)

            if self.is_aborted():
                break

            if result.success:
                if self.logger:
                    self.logger.log_agent_complete(task_title, result.exit_code, result.is_complete)
                if self.bus:
                    self.bus.emit_agent_complete(
                        task_title,
                        iteration,
                        result.exit_code,
                        result.output,
                        result.is_complete,
                        retry_count=retry_count,
                        decomposition_request=result.decomposition_request,
                        task_id=task_id,
                        retry_contexts=result.retry_contexts,
                    )
                return result

            error = result.error or ""
            classification = categorize_agent_error(error, result.exit_code)
            result.error_type = result.error_type or classification.error_type

            if classification.is_fatal:
                result.is_fatal = True
                result.error = f"Fatal error: {error}"
                self._log("agent_fatal_error", {
                    "error": error,
                    "error_type": classification.error_type.value,
                    "exit_code": result.exit_code,
                }, level="error")
                self._publish_error(result, task_title, task_id, iteration)
                return result

            if retry_count >= max_retries:
                result.error = f"Max retries ({max_retries}) exceeded. Last error: {error}"
                self._publish_error(result, task_title, task_id, iteration)
                return result

            retry_count = self.process_manager.increment_retry(self.process_id)
            delay_ms = calculate_retry_delay_ms(agent_config.retry_delay_ms, retry_count)

            analysis = analyze_failure(error, result.output, result.exit_code)
            retry_contexts.append(RetryContext(
                attempt_number=retry_count,
                failure_category=analysis.category,
                root_cause=analysis.root_cause,
            ))
            if agent_config.retry_with_context:
                retry_context = generate_retry_context(analysis, retry_count)

            self._log("agent_retry", {
                "task": task_title,
                "attempt": retry_count,
                "max_retries": max_retries,
                "delay_ms": delay_ms,
                "category": analysis.category.value,
            }, level="warn")
            if self.progress:
                self.progress.entry(
                    "retry",
                    f"Retry {retry_count}/{max_retries} after {delay_ms}ms: {analysis.root_cause}",
                    iteration=iteration,
                    context={"category": analysis.category.value, "task": task_title},
                )

            if self._abort_event.wait(delay_ms / 1000):
                break

        return AgentRunResult(
            success=False,
            exit_code=None,
            output="",
            is_complete=False,
            error="Agent execution was aborted",
            retry_count=retry_count,
            retry_contexts=retry_contexts,
        )

    def _publish_error(
        self,
        result: AgentRunResult,
        task_title: Optional[str],
        task_id: Optional[str],
        iteration: int,
    ) -> None:
        if self.logger:
            self.logger.log_agent_error(task_title, result.error or "", result.exit_code, result.is_fatal)
        if self.bus:
            self.bus.emit_agent_error(
                task_title,
                iteration,
                result.error or "",
                result.exit_code,
                result.is_fatal,
                (result.error_type or AgentErrorType.UNKNOWN).value,
                output=result.output,
                retry_count=result.retry_count,
                task_id=task_id,
            )

    def run_once(self, prompt: str) -> AgentRunResult:
        """Spawn the agent once and wait for it to exit."""
        agent_config = self.config.agent
        cmd = [*agent_config.command, prompt]

        try:
            handle = self._popen(
                cmd,
                cwd=str(self.config.repo_root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            return AgentRunResult(
                success=False,
                exit_code=None,
                output="",
                is_complete=False,
                error=f"Agent command not found: {e.filename or cmd[0]}",
                error_type=AgentErrorType.NOT_FOUND,
            )
        except PermissionError as e:
            return AgentRunResult(
                success=False,
                exit_code=None,
                output="",
                is_complete=False,
                error=f"Agent command not executable: {e}",
                error_type=AgentErrorType.NOT_EXECUTABLE,
            )

        self.process_manager.set_process(handle, self.process_id)
        detector = CompletionDetector(agent_config.completion_marker)
        collector = _OutputCollector(detector, self._on_output)
        readers = [
            threading.Thread(target=collector.read_stdout, args=(handle.stdout,), daemon=True),
            threading.Thread(target=collector.read_stderr, args=(handle.stderr,), daemon=True),
        ]
        for reader in readers:
            reader.start()

        exit_code, timed_out, stuck = self._wait(handle, collector)

        # Grandchildren can inherit the pipes and keep them open after exit
        for reader in readers:
            reader.join(timeout=self.process_manager.force_kill_timeout)
        self.process_manager.clear_force_kill_timeout(self.process_id)
        if self.process_manager.get_process(self.process_id) is handle:
            self.process_manager.set_process(None, self.process_id)

        output = collector.output
        is_complete = detector.is_complete()

        if timed_out:
            minutes = round(agent_config.timeout_seconds / 60)
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=f"Agent timed out after {minutes} minutes",
                error_type=AgentErrorType.TIMEOUT,
            )
        if stuck:
            minutes = round(agent_config.stuck_threshold_seconds / 60)
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=f"Agent stuck (no output for {minutes} minutes)",
                error_type=AgentErrorType.STUCK,
            )
        if exit_code != 0 and not is_complete:
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=collector.stderr.strip() or f"Agent exited with code {exit_code}",
            )

        decomposition = parse_decomposition_request(output)
        if decomposition.detected and decomposition.error:
            self._log("decomposition_parse_failed", {"error": decomposition.error}, level="warn")

        return AgentRunResult(
            success=True,
            exit_code=exit_code,
            output=output,
            is_complete=is_complete,
            decomposition_request=decomposition.request,
        )

    def _wait(self, handle: Any, collector: _OutputCollector) -> tuple[Optional[int], bool, bool]:
        """
        Wait for exit while enforcing the timeout, stuck and abort checks.

        Returns:
            (exit_code, timed_out, stuck)
        """
        agent_config = self.config.agent
        start = time.monotonic()
        timed_out = stuck = terminating = False

        while True:
            try:
                return handle.wait(timeout=self._watchdog_interval), timed_out, stuck
            except subprocess.TimeoutExpired:
                pass

            if terminating:
                continue

            if self.is_aborted():
                terminating = True
            elif agent_config.timeout_seconds > 0 and time.monotonic() - start >= agent_config.timeout_seconds:
                timed_out = terminating = True
                self._log("agent_timeout", {
                    "timeout_seconds": agent_config.timeout_seconds,
                }, level="warn")
            elif (
                agent_config.stuck_threshold_seconds > 0
                and collector.idle_seconds() >= agent_config.stuck_threshold_seconds
            ):
                stuck = terminating = True
                self._log("agent_stuck", {
                    "stuck_threshold_seconds": agent_config.stuck_threshold_seconds,
                }, level="warn")

            if terminating:
                self._terminate(handle)

    def _terminate(self, handle: Any) -> None:
        try:
            handle.terminate()
        except OSError:
            return
        self.process_manager.schedule_force_kill(
            self.process_id,
            handle,
            self.process_manager.force_kill_timeout,
        )
