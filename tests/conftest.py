# tests/conftest.py

import json
import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest
from typer.testing import CliRunner

from taskloop.config import TaskloopConfig, clear_config_cache


# Shared helpers for fake agent scripts. The prompt is the last argv entry and
# the working directory is the repo root.
AGENT_PRELUDE = '''
import json
import pathlib
import sys

PROMPT = sys.argv[-1]
PRD_PATH = pathlib.Path(".taskloop") / "prd.json"


def load_prd():
    return json.loads(PRD_PATH.read_text())


def save_prd(prd):
    PRD_PATH.write_text(json.dumps(prd, indent=2))


def current_title():
    for line in PROMPT.splitlines():
        if line.startswith("Title: "):
            return line[len("Title: "):]
    return None


def mark_done(title):
    prd = load_prd()
    for task in prd["tasks"]:
        if task["title"] == title:
            task["done"] = True
    save_prd(prd)
    return prd
'''


@pytest.fixture(autouse=True)
def _clear_config_cache():
    """Keep the module-level config cache from leaking between tests."""
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def config(tmp_path) -> TaskloopConfig:
    """Config rooted at tmp_path with no delays between iterations or retries."""
    config = TaskloopConfig(repo_root=str(tmp_path))
    config.iterations.delay_ms = 0
    config.agent.retry_delay_ms = 0
    config.data_path.mkdir(parents=True, exist_ok=True)
    return config


@pytest.fixture
def write_prd(config) -> Callable[..., Path]:
    """Write .taskloop/prd.json from a list of task dicts."""

    def write(tasks: list[dict], project: str = "demo") -> Path:
        normalized = [
            {"description": "", "steps": [], "done": False, **task}
            for task in tasks
        ]
        config.prd_path.write_text(json.dumps({"project": project, "tasks": normalized}, indent=2))
        return config.prd_path

    return write


@pytest.fixture
def read_prd(config) -> Callable[[], dict]:
    def read() -> dict:
        return json.loads(config.prd_path.read_text())

    return read


@pytest.fixture
def fake_agent(tmp_path) -> Callable[..., list[str]]:
    """Write a Python agent script and return the argv that runs it."""
    counter = {"n": 0}

    def make(body: str, name: str = None) -> list[str]:
        counter["n"] += 1
        path = tmp_path / "agents" / (name or f"agent_{counter['n']}.py")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(AGENT_PRELUDE + "\n" + textwrap.dedent(body))
        return [sys.executable, str(path)]

    return make


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
