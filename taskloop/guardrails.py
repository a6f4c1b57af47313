"""
Prompt guardrails.

Guardrails are standing instructions injected into every agent prompt. They
live in guardrails.json; when that file is missing or unreadable the three
built-in defaults apply.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

from taskloop.models import Guardrail, GuardrailCategory, GuardrailTrigger
from taskloop.state_store import GuardrailsStore

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_default_guardrails() -> list[Guardrail]:
    timestamp = utc_now_iso()
    return [
        Guardrail(
            id="verify-before-commit",
            instruction="Verify changes work before committing",
            category=GuardrailCategory.QUALITY,
            added_at=timestamp,
        ),
        Guardrail(
            id="read-existing-patterns",
            instruction="Read existing code patterns before writing new code",
            category=GuardrailCategory.QUALITY,
            added_at=timestamp,
        ),
        Guardrail(
            id="fix-build-before-proceeding",
            instruction="If build fails, fix it before proceeding",
            category=GuardrailCategory.SAFETY,
            added_at=timestamp,
        ),
    ]


def generate_guardrail_id(prefix: str = "guardrail") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def format_guardrails_for_prompt(guardrails: list[Guardrail]) -> str:
    """Numbered '## Guardrails' section, or an empty string when there are none."""
    if not guardrails:
        return ""
    rules = "\n".join(f"{index}. {g.instruction}" for index, g in enumerate(guardrails, start=1))
    return f"## Guardrails\n{rules}\n"


class GuardrailManager:
    """Loads, edits and selects guardrails backed by a GuardrailsStore."""

    def __init__(self, store: GuardrailsStore) -> None:
        self._store = store
        self._cache: Optional[list[Guardrail]] = None

    def load(self) -> list[Guardrail]:
        """Read guardrails from disk, falling back to defaults."""
        result = self._store.reload()
        if result.error:
            logger.warning("Using default guardrails: %s", result.error)
        if result.value is None:
            return create_default_guardrails()
        return list(result.value)

    def get(self) -> list[Guardrail]:
        if self._cache is None:
            self._cache = self.load()
        return self._cache

    def save(self, guardrails: list[Guardrail]) -> None:
        self._store.save(guardrails)
        self._cache = guardrails

    def exists(self) -> bool:
        return self._store.exists()

    def initialize(self) -> None:
        """Write the defaults if no guardrails file exists yet."""
        if not self.exists():
            self.save(create_default_guardrails())

    def add(
        self,
        instruction: str,
        trigger: GuardrailTrigger = GuardrailTrigger.ALWAYS,
        category: GuardrailCategory = GuardrailCategory.QUALITY,
        enabled: bool = True,
        added_after_failure: Optional[str] = None,
    ) -> Guardrail:
        guardrail = Guardrail(
            id=generate_guardrail_id(),
            instruction=instruction,
            trigger=trigger,
            category=category,
            enabled=enabled,
            added_at=utc_now_iso(),
            added_after_failure=added_after_failure,
        )
        guardrails = self.get()
        guardrails.append(guardrail)
        self.save(guardrails)
        return guardrail

    def remove(self, guardrail_id: str) -> bool:
        guardrails = self.get()
        remaining = [g for g in guardrails if g.id != guardrail_id]
        if len(remaining) == len(guardrails):
            return False
        self.save(remaining)
        return True

    def toggle(self, guardrail_id: str) -> Optional[Guardrail]:
        guardrails = self.get()
        guardrail = next((g for g in guardrails if g.id == guardrail_id), None)
        if guardrail is None:
            return None
        guardrail.enabled = not guardrail.enabled
        self.save(guardrails)
        return guardrail

    def get_by_id(self, guardrail_id: str) -> Optional[Guardrail]:
        return next((g for g in self.get() if g.id == guardrail_id), None)

    def get_active(self, trigger: Optional[GuardrailTrigger] = None) -> list[Guardrail]:
        """Enabled guardrails; with a trigger, those matching it or firing always."""
        active = []
        for guardrail in self.get():
            if not guardrail.enabled:
                continue
            if (
                trigger is not None
                and guardrail.trigger != trigger
                and guardrail.trigger != GuardrailTrigger.ALWAYS
            ):
                continue
            active.append(guardrail)
        return active

    def format_for_prompt(self, trigger: Optional[GuardrailTrigger] = None) -> str:
        return format_guardrails_for_prompt(self.get_active(trigger))
