from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from claude_loop.config import default_principles
from claude_loop.council import Council, DecisionLogger, _load_decisions
from claude_loop.models import (
    AgentError,
    CouncilConfig,
    CouncilError,
    Decision,
    IterationResult,
    LoopCancelledError,
)


class _RecordingClient:
    def __init__(self, outcome: IterationResult | BaseException) -> None:
        self._outcome = outcome
        self.prompts: list[str] = []

    def execute(self, prompt: str, cancel_event: threading.Event | None = None) -> IterationResult:
        self.prompts.append(prompt)
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome


def _decision(**overrides) -> Decision:
    payload = {
        "timestamp": "2026-01-02T03:04:05Z",
        "iteration": 4,
        "decision": "keep the API stable",
        "rationale": "Reversibility=9",
        "preset": "opensource",
        "council_invoked": False,
    }
    payload.update(overrides)
    return Decision(**payload)


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("PRINCIPLE_CONFLICT_UNRESOLVED", True),
        ("note: principle_conflict_unresolved here", True),
        ("I cannot resolve which principle wins", True),
        ("Conflicting principles remain unresolved", True),
        ("principles were consistent", False),
        ("", False),
    ],
)
def test_detect_conflict(output: str, expected: bool) -> None:
    council = Council(CouncilConfig(principles=default_principles()), _RecordingClient(IterationResult()))

    assert council.detect_conflict(output) is expected


def test_extract_decision_trims_markers() -> None:
    council = Council(CouncilConfig(principles=None), _RecordingClient(IterationResult()))

    decision, rationale = council.extract_decision(
        "Work done.\n**Decision**:   split the module  \n**Rationale**: Clarity=8\n"
    )

    assert decision == "split the module"
    assert rationale == "Clarity=8"
    assert council.extract_decision("no markers") == ("", "")


def test_resolve_embeds_context_and_principles() -> None:
    client = _RecordingClient(
        IterationResult(output="**Decision**: defer the feature\n**Rationale**: Scope=3", cost=0.07)
    )
    ticks = iter([10.0, 12.5])
    council = Council(
        CouncilConfig(principles=default_principles("startup")),
        client,
        clock=lambda: next(ticks),
    )

    result = council.resolve("PRINCIPLE_CONFLICT_UNRESOLVED: scope vs ux")

    assert result.resolution == "defer the feature"
    assert result.rationale == "Scope=3"
    assert result.cost == pytest.approx(0.07)
    assert result.duration == pytest.approx(2.5)
    prompt = client.prompts[0]
    assert "## Conflict Context\nPRINCIPLE_CONFLICT_UNRESOLVED: scope vs ux" in prompt
    assert "preset: startup" in prompt
    assert "**Decision**: <your recommendation>" in prompt


def test_resolve_requires_principles() -> None:
    client = _RecordingClient(IterationResult())
    council = Council(CouncilConfig(principles=None), client)

    with pytest.raises(CouncilError) as excinfo:
        council.resolve("conflict")

    assert excinfo.value.phase == "resolve"
    assert client.prompts == []


def test_resolve_wraps_agent_failure() -> None:
    council = Council(
        CouncilConfig(principles=default_principles()),
        _RecordingClient(AgentError("claude returned error")),
    )

    with pytest.raises(CouncilError, match="council invocation failed"):
        council.resolve("conflict")


def test_resolve_passes_cancellation_through() -> None:
    council = Council(CouncilConfig(principles=default_principles()), _RecordingClient(LoopCancelledError()))

    with pytest.raises(LoopCancelledError):
        council.resolve("conflict")


def test_decision_logger_appends_yaml_documents(tmp_path: Path) -> None:
    log_file = tmp_path / ".claude" / "principles-decisions.log"
    logger = DecisionLogger(log_file, enabled=True)

    logger.log(_decision())
    logger.log(_decision(iteration=5, council_invoked=True))

    text = log_file.read_text(encoding="utf-8")
    assert text.count("---") == 2
    entries = list(yaml.safe_load_all(text))
    assert [entry["iteration"] for entry in entries] == [4, 5]
    assert list(entries[0]) == [
        "timestamp",
        "iteration",
        "decision",
        "rationale",
        "preset",
        "council_invoked",
    ]
    assert entries[0]["timestamp"] == "2026-01-02T03:04:05Z"
    assert _load_decisions(log_file) == entries


@pytest.mark.parametrize(
    ("enabled", "decision"),
    [
        (False, _decision()),
        (True, None),
        (True, _decision(decision="", rationale="")),
    ],
)
def test_decision_logger_skips_without_writing(tmp_path: Path, enabled: bool, decision: Decision | None) -> None:
    log_file = tmp_path / "decisions.log"

    DecisionLogger(log_file, enabled=enabled).log(decision)

    assert not log_file.exists()


def test_decision_logger_reports_io_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")
    logger = DecisionLogger(blocker / "decisions.log", enabled=True)

    with pytest.raises(CouncilError) as excinfo:
        logger.log(_decision())

    assert excinfo.value.phase == "log"


def test_load_decisions_missing_file_is_empty(tmp_path: Path) -> None:
    assert _load_decisions(tmp_path / "missing.log") == []
