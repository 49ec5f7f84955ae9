"""Defaults, principle presets, paths, and patterns."""

from __future__ import annotations

import re
from pathlib import Path

DEFAULT_COMPLETION_SIGNAL = "CONTINUOUS_CLAUDE_PROJECT_COMPLETE"
DEFAULT_COMPLETION_THRESHOLD = 3
DEFAULT_MAX_CONSECUTIVE_ERRORS = 3
DEFAULT_NOTES_FILE = "SHARED_TASK_NOTES.md"
DEFAULT_PRINCIPLES_FILE = ".claude/principles.yaml"
DEFAULT_DECISION_LOG_FILE = ".claude/principles-decisions.log"
DEFAULT_POLICY_FILE = Path(".claude-loop") / "config.yaml"
DEFAULT_RUN_LOG_FILE = Path(".claude-loop") / "logs" / "loop.log"

DRY_RUN_OUTPUT = "[dry-run] Simulated execution"

DEFAULT_CLAUDE_PATH = "claude"
DEFAULT_CLAUDE_FLAGS: tuple[str, ...] = (
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
    "--verbose",
)
AGENT_POLL_INTERVAL_SECONDS = 0.2
AGENT_TERMINATE_GRACE_SECONDS = 5.0
AGENT_PIPE_DRAIN_SECONDS = 10.0
MAX_CAPTURED_STDERR_CHARS = 2400

PRINCIPLES_SCHEMA_VERSION = "2.3"
PRINCIPLE_MIN_VALUE = 1
PRINCIPLE_MAX_VALUE = 10
PRINCIPLE_PRESETS = ("startup", "enterprise", "opensource", "custom")

LAYER0_KEYS = (
    "trust_architecture",
    "curation_model",
    "scope_philosophy",
    "monetization_model",
    "privacy_posture",
    "ux_philosophy",
    "authority_stance",
    "auditability",
    "interoperability",
)
LAYER1_KEYS = (
    "speed_correctness",
    "innovation_stability",
    "blast_radius",
    "clarity_of_intent",
    "reversibility_priority",
    "security_posture",
    "urgency_tiers",
    "cost_efficiency",
    "migration_burden",
)

# Weights are listed in LAYER0_KEYS / LAYER1_KEYS order.
PRESET_WEIGHTS: dict[str, tuple[tuple[int, ...], tuple[int, ...]]] = {
    "startup": (
        (7, 6, 3, 5, 7, 4, 6, 5, 7),
        (4, 6, 7, 6, 7, 7, 3, 6, 5),
    ),
    "enterprise": (
        (9, 8, 7, 8, 9, 6, 7, 9, 6),
        (8, 8, 9, 8, 9, 9, 5, 5, 7),
    ),
    "opensource": (
        (6, 5, 6, 2, 8, 5, 4, 7, 9),
        (7, 7, 8, 9, 8, 8, 4, 7, 8),
    ),
}

CONFLICT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)PRINCIPLE_CONFLICT_UNRESOLVED"),
    re.compile(r"(?i)cannot\s+resolve.*principle"),
    re.compile(r"(?i)conflicting\s+principles.*unresolved"),
)
DECISION_PATTERN = re.compile(r"\*\*Decision\*\*:\s*([^*\n]+)")
RATIONALE_PATTERN = re.compile(r"\*\*Rationale\*\*:\s*([^*\n]+)")

VERSION_PATTERN = re.compile(r"^\d+\.\d+$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DURATION_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")

LOOP_POLICY_KEYS = (
    "max_runs",
    "max_cost",
    "max_duration",
    "completion_signal",
    "completion_threshold",
    "max_consecutive_errors",
    "notes_file",
    "review_prompt",
    "log_decisions",
    "principles_file",
    "log_file",
)
