"""Data models for claude-loop: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from claude_loop.constants import (
    DEFAULT_COMPLETION_SIGNAL,
    DEFAULT_COMPLETION_THRESHOLD,
    DEFAULT_DECISION_LOG_FILE,
    DEFAULT_MAX_CONSECUTIVE_ERRORS,
    DEFAULT_NOTES_FILE,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LoopError(RuntimeError):
    """Loop-level error tagged with the field or subsystem that raised it."""

    kind = "loop"

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(f"{field_name}: {message}")
        self.field = field_name
        self.message = message


class LoopCancelledError(LoopError):
    """Raised when the caller's cancel event fires before or during a call."""

    kind = "cancelled"

    def __init__(self, message: str = "context cancelled") -> None:
        super().__init__("context", message)


class IterationError(RuntimeError):
    """A primary agent iteration failed; carries the iteration number."""

    kind = "iteration"

    def __init__(self, iteration: int, message: str) -> None:
        self.iteration = iteration
        self.message = message
        super().__init__(f"iteration {iteration}: {message}")

    def __str__(self) -> str:
        if self.__cause__ is not None:
            return f"iteration {self.iteration}: {self.message}: {self.__cause__}"
        return f"iteration {self.iteration}: {self.message}"


class ReviewerError(RuntimeError):
    """Raised when a reviewer pass cannot build its prompt or execute."""

    kind = "reviewer"

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        self.message = message
        super().__init__(f"reviewer {phase}: {message}")

    def __str__(self) -> str:
        if self.__cause__ is not None:
            return f"reviewer {self.phase}: {self.message}: {self.__cause__}"
        return f"reviewer {self.phase}: {self.message}"


class CouncilError(RuntimeError):
    """Raised by the advisory council; never surfaced past the executor."""

    kind = "council"

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        self.message = message
        super().__init__(f"council {phase}: {message}")

    def __str__(self) -> str:
        if self.__cause__ is not None:
            return f"council {self.phase}: {self.message}: {self.__cause__}"
        return f"council {self.phase}: {self.message}"


class AgentError(RuntimeError):
    """Raised when the agent CLI fails or reports an error result."""

    kind = "agent"

    def __init__(self, message: str, *, result_text: str = "", stderr: str = "") -> None:
        self.message = message
        self.result_text = result_text
        self.stderr = stderr
        if result_text:
            super().__init__(f"claude: {message}: {result_text}")
        else:
            super().__init__(f"claude: {message}")


class ConfigError(RuntimeError):
    """Raised when configuration, principles, or CLI values are invalid."""

    kind = "config"


# ---------------------------------------------------------------------------
# Loop types
# ---------------------------------------------------------------------------


class StopReason(str, enum.Enum):
    NONE = ""
    MAX_RUNS = "max_runs_reached"
    MAX_COST = "max_cost_reached"
    MAX_DURATION = "max_duration_reached"
    COMPLETION_SIGNAL = "completion_signal"
    CONSECUTIVE_ERRORS = "consecutive_errors"
    CONTEXT_CANCELLED = "context_cancelled"

    def __str__(self) -> str:
        return self.value


@dataclass
class IterationResult:
    """Outcome of one agent call (primary, reviewer, or council)."""

    output: str = ""
    cost: float = 0.0
    duration: float = 0.0
    completion_signal_found: bool = False


@dataclass
class LoopState:
    """Per-run accumulator. Only the executor and its components mutate it."""

    start_time: float
    successful_iterations: int = 0
    total_iterations: int = 0
    error_count: int = 0
    completion_signal_count: int = 0
    total_cost: float = 0.0
    reviewer_cost: float = 0.0
    reviewer_error_count: int = 0
    council_cost: float = 0.0
    council_invocations: int = 0
    last_iteration_time: float | None = None

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.start_time)


@dataclass(frozen=True)
class CheckResult:
    limit_reached: bool
    reason: StopReason = StopReason.NONE


@dataclass(frozen=True)
class LoopResult:
    state: LoopState
    stop_reason: StopReason
    last_error: BaseException | None = None


# ---------------------------------------------------------------------------
# Principles / council types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principles:
    version: str
    preset: str
    created_at: str
    layer0: dict[str, int] = field(default_factory=dict)
    layer1: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "preset": self.preset,
            "created_at": self.created_at,
            "layer0": dict(self.layer0),
            "layer1": dict(self.layer1),
        }


@dataclass(frozen=True)
class CouncilConfig:
    principles: Principles | None
    log_decisions: bool = False
    log_file: Path = Path(DEFAULT_DECISION_LOG_FILE)


@dataclass(frozen=True)
class CouncilResult:
    output: str
    cost: float
    duration: float
    resolution: str
    rationale: str


@dataclass(frozen=True)
class Decision:
    timestamp: str
    iteration: int
    decision: str
    rationale: str
    preset: str
    council_invoked: bool


# ---------------------------------------------------------------------------
# Prompt types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromptContext:
    user_prompt: str
    completion_signal: str
    iteration: int
    notes_file: str = ""
    principles: Principles | None = None


@dataclass(frozen=True)
class BuiltPrompt:
    prompt: str
    notes_included: bool = False
    principles_injected: bool = False


# ---------------------------------------------------------------------------
# Loop configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoopConfig:
    """Immutable run parameters, constructed once and passed to the executor."""

    prompt: str
    max_runs: int = 0
    max_cost: float = 0.0
    max_duration: float = 0.0
    completion_signal: str = DEFAULT_COMPLETION_SIGNAL
    completion_threshold: int = DEFAULT_COMPLETION_THRESHOLD
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
    dry_run: bool = False
    on_progress: Callable[[LoopState], None] | None = None
    review_prompt: str = ""
    council: CouncilConfig | None = None
    notes_file: str = DEFAULT_NOTES_FILE
    principles: Principles | None = None
    log_file: Path | None = None

