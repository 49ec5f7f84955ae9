"""Principle-conflict council and decision log.

The council is advisory. The executor calls :meth:`Council.detect_conflict`
on every successful primary output; when a conflict marker is present it asks
the agent for a resolution, otherwise it records any ``**Decision**:`` /
``**Rationale**:`` markers the agent reported on its own. Errors raised here
are swallowed by the executor and never change the loop outcome.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable

import yaml

from claude_loop.constants import CONFLICT_PATTERNS, DECISION_PATTERN, RATIONALE_PATTERN
from claude_loop.iteration import AgentClient
from claude_loop.models import (
    CouncilConfig,
    CouncilError,
    CouncilResult,
    Decision,
    LoopCancelledError,
)
from claude_loop.prompts import build_council_prompt


def _detect_conflict(output: str) -> bool:
    return any(pattern.search(output) for pattern in CONFLICT_PATTERNS)


def _extract_decision(output: str) -> tuple[str, str]:
    decision = ""
    rationale = ""
    match = DECISION_PATTERN.search(output)
    if match is not None:
        decision = match.group(1).strip()
    match = RATIONALE_PATTERN.search(output)
    if match is not None:
        rationale = match.group(1).strip()
    return (decision, rationale)


class DecisionLogger:
    """Appends decisions to a YAML multi-document log file."""

    def __init__(self, log_file: Path, enabled: bool) -> None:
        self.log_file = Path(log_file)
        self.enabled = enabled

    def log(self, decision: Decision | None) -> None:
        if not self.enabled or decision is None:
            return
        if not decision.decision and not decision.rationale:
            return
        entry = {
            "timestamp": decision.timestamp,
            "iteration": decision.iteration,
            "decision": decision.decision,
            "rationale": decision.rationale,
            "preset": decision.preset,
            "council_invoked": decision.council_invoked,
        }
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as handle:
                yaml.safe_dump(entry, handle, sort_keys=False, explicit_start=True)
        except OSError as exc:
            raise CouncilError("log", f"failed to write decision log {self.log_file}") from exc


def _load_decisions(log_file: Path) -> list[dict]:
    """Read every decision entry back from *log_file* (missing file -> [])."""
    if not log_file.exists():
        return []
    with log_file.open("r", encoding="utf-8") as handle:
        return [entry for entry in yaml.safe_load_all(handle) if isinstance(entry, dict)]


class Council:
    def __init__(
        self,
        config: CouncilConfig,
        client: AgentClient,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._client = client
        self._clock = clock
        self._logger = DecisionLogger(config.log_file, config.log_decisions)

    @property
    def preset(self) -> str:
        if self.config.principles is None:
            return ""
        return self.config.principles.preset

    def detect_conflict(self, output: str) -> bool:
        return _detect_conflict(output)

    def extract_decision(self, output: str) -> tuple[str, str]:
        return _extract_decision(output)

    def resolve(
        self, conflict_context: str, cancel_event: threading.Event | None = None
    ) -> CouncilResult:
        if self.config.principles is None:
            raise CouncilError("resolve", "no principles configured")
        prompt = build_council_prompt(conflict_context, self.config.principles)
        started = self._clock()
        try:
            result = self._client.execute(prompt, cancel_event)
        except LoopCancelledError:
            raise
        except Exception as exc:
            raise CouncilError("resolve", "council invocation failed") from exc
        decision, rationale = _extract_decision(result.output)
        return CouncilResult(
            output=result.output,
            cost=result.cost,
            duration=self._clock() - started,
            resolution=decision,
            rationale=rationale,
        )

    def log_decision(self, decision: Decision) -> None:
        self._logger.log(decision)
