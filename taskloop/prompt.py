"""
Agent prompt construction.

The prompt points the agent at the PRD and progress journal, states the
one-task-per-iteration workflow, and appends guardrails, retry context and
the specific task to work on.
"""

from __future__ import annotations

from typing import Optional

from taskloop.config import COMPLETION_MARKER
from taskloop.models import Task

DECOMPOSITION_MARKER = "<promise>DECOMPOSE</promise>"
DECOMPOSITION_OUTPUT_START = "<decomposition>"
DECOMPOSITION_OUTPUT_END = "</decomposition>"


def _decomposition_instructions() -> str:
    return f"""## Task Decomposition
If the task is too large to finish in one iteration, do not start it. Instead output
{DECOMPOSITION_MARKER} followed by a JSON payload wrapped in {DECOMPOSITION_OUTPUT_START} and {DECOMPOSITION_OUTPUT_END}:
{DECOMPOSITION_OUTPUT_START}
{{"originalTaskTitle": "<exact task title>", "reason": "<why>", "suggestedSubtasks": [{{"title": "...", "description": "...", "steps": ["..."]}}]}}
{DECOMPOSITION_OUTPUT_END}
"""


def _task_section(task: Task) -> str:
    lines = ["## Current Task", f"Title: {task.title}"]
    if task.description:
        lines.append(f"Description: {task.description}")
    if task.steps:
        lines.append("Steps:")
        lines.extend(f"{index}. {step}" for index, step in enumerate(task.steps, start=1))
    lines.append("")
    lines.append("Work ONLY on this task in this iteration.")
    return "\n".join(lines) + "\n"


def build_prompt(
    data_dir: str = ".taskloop",
    task: Optional[Task] = None,
    guardrails: str = "",
    retry_context: Optional[str] = None,
    allow_decomposition: bool = True,
    completion_marker: str = COMPLETION_MARKER,
) -> str:
    """
    Build the full agent prompt.

    Args:
        data_dir: Project data directory, relative to the repository root.
        task: Specific task to work on. When None the agent picks the next one.
        guardrails: Pre-formatted guardrails section.
        retry_context: Retry context from a previous failed attempt.
        allow_decomposition: Whether to describe the decomposition protocol.
        completion_marker: Marker printed when every task is done.

    Returns:
        The prompt text.
    """
    prd = f"{data_dir}/prd.json"
    progress = f"{data_dir}/progress.txt"

    sections = [f"""@{prd} @{progress}

You are a coding agent working on a long running project.
Your workflow is as follows:
1. Get oriented by reading {progress} and {prd}
2. Find the next most important task to work on
3. Implement ONLY that task
4. Verify your implementation
5. Update {progress} and set the task as done in {prd}
6. Stage and commit your changes with a meaningful commit message

## Rules
- ONLY work on ONE task at a time
- Always leave the codebase in a buildable state
- If the build fails, fix it before committing
- Ensure you are using the proper tools in this project
"""]

    if guardrails:
        sections.append(guardrails)
    if task is not None:
        sections.append(_task_section(task))
    if retry_context:
        sections.append(retry_context + "\n")
    if allow_decomposition:
        sections.append(_decomposition_instructions())

    sections.append(f"""IMPORTANT:
If all tasks in {prd} are marked as done, output EXACTLY this: {completion_marker}
""")

    return "\n".join(sections)
