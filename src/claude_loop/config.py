from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from claude_loop.constants import (
    DEFAULT_COMPLETION_SIGNAL,
    DEFAULT_COMPLETION_THRESHOLD,
    DEFAULT_DECISION_LOG_FILE,
    DEFAULT_MAX_CONSECUTIVE_ERRORS,
    DEFAULT_NOTES_FILE,
    DEFAULT_POLICY_FILE,
    DEFAULT_PRINCIPLES_FILE,
    DEFAULT_RUN_LOG_FILE,
    DATE_PATTERN,
    DURATION_PART_PATTERN,
    LAYER0_KEYS,
    LAYER1_KEYS,
    LOOP_POLICY_KEYS,
    PRESET_WEIGHTS,
    PRINCIPLE_MAX_VALUE,
    PRINCIPLE_MIN_VALUE,
    PRINCIPLE_PRESETS,
    PRINCIPLES_SCHEMA_VERSION,
    VERSION_PATTERN,
)
from claude_loop.models import (
    ConfigError,
    CouncilConfig,
    LoopConfig,
    LoopState,
    Principles,
    _coerce_bool,
)


# ---------------------------------------------------------------------------
# Principles
# ---------------------------------------------------------------------------


def default_principles(preset: str = "startup") -> Principles:
    """Return the preset's default weights; ``custom`` starts from ``startup``."""
    normalized = str(preset).strip().lower() or "startup"
    if normalized not in PRINCIPLE_PRESETS:
        raise ConfigError(
            f"unknown principles preset '{preset}'; expected one of {', '.join(PRINCIPLE_PRESETS)}"
        )
    layer0_weights, layer1_weights = PRESET_WEIGHTS.get(normalized, PRESET_WEIGHTS["startup"])
    return Principles(
        version=PRINCIPLES_SCHEMA_VERSION,
        preset=normalized,
        created_at=datetime.now(timezone.utc).strftime("%Y-%m-%d"),
        layer0=dict(zip(LAYER0_KEYS, layer0_weights)),
        layer1=dict(zip(LAYER1_KEYS, layer1_weights)),
    )


def _coerce_layer(raw: Any, keys: tuple[str, ...], *, layer_name: str, path: Path) -> dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: {layer_name} must be a mapping")
    layer: dict[str, int] = {}
    for key in keys:
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{path}: {layer_name}.{key} must be an integer (got {value!r})")
        layer[key] = value
    return layer


def _principles_from_mapping(payload: Any, path: Path) -> Principles:
    if not isinstance(payload, dict):
        raise ConfigError(f"{path}: principles file must contain a mapping")
    return Principles(
        version=str(payload.get("version", "") or ""),
        preset=str(payload.get("preset", "") or ""),
        created_at=str(payload.get("created_at", "") or ""),
        layer0=_coerce_layer(payload.get("layer0"), LAYER0_KEYS, layer_name="layer0", path=path),
        layer1=_coerce_layer(payload.get("layer1"), LAYER1_KEYS, layer_name="layer1", path=path),
    )


def load_principles(path: Path) -> Principles:
    if not path.exists():
        raise ConfigError(f"{path}: principles file not found")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"{path}: failed to read principles file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML syntax: {exc}") from exc
    return _principles_from_mapping(loaded, path)


def load_principles_or_default(path: Path, preset: str = "startup") -> Principles:
    if not path.exists():
        return default_principles(preset)
    return load_principles(path)


def save_principles(path: Path, principles: Principles) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(principles.to_dict(), sort_keys=False), encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"{path}: failed to write principles file: {exc}") from exc


def validate_principles(principles: Principles) -> list[str]:
    """Return every validation failure; an empty list means the file is valid."""
    errors: list[str] = []
    if not principles.version:
        errors.append("version is required")
    elif not VERSION_PATTERN.match(principles.version):
        errors.append(f"version must be in X.Y format (got {principles.version!r})")

    if not principles.preset:
        errors.append("preset is required")
    elif principles.preset not in PRINCIPLE_PRESETS:
        errors.append(
            f"preset must be one of: {', '.join(PRINCIPLE_PRESETS)} (got {principles.preset!r})"
        )

    if not principles.created_at:
        errors.append("created_at is required")
    elif not DATE_PATTERN.match(principles.created_at):
        errors.append(f"created_at must be in YYYY-MM-DD format (got {principles.created_at!r})")

    for layer_name, keys, layer in (
        ("layer0", LAYER0_KEYS, principles.layer0),
        ("layer1", LAYER1_KEYS, principles.layer1),
    ):
        for key in keys:
            value = layer.get(key, 0)
            if value < PRINCIPLE_MIN_VALUE or value > PRINCIPLE_MAX_VALUE:
                errors.append(
                    f"{layer_name}.{key} must be between {PRINCIPLE_MIN_VALUE} and "
                    f"{PRINCIPLE_MAX_VALUE} (got {value})"
                )
    return errors


# ---------------------------------------------------------------------------
# Loop policy
# ---------------------------------------------------------------------------


def _parse_duration(value: Any, *, field_name: str = "max_duration") -> float:
    """Parse seconds from a number or a ``1h30m`` / ``45s`` / ``500ms`` string."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a duration (got {value!r})")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            position = 0
            for match in DURATION_PART_PATTERN.finditer(text):
                if match.start() != position:
                    break
                amount = float(match.group(1))
                unit = match.group(2)
                seconds += amount * {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}[unit]
                position = match.end()
            if position == 0 or position != len(text):
                raise ConfigError(
                    f"{field_name} must be seconds or a duration like '1h30m' (got {value!r})"
                )
    if seconds < 0:
        raise ConfigError(f"{field_name} cannot be negative")
    return seconds


def _load_loop_policy(policy_path: Path) -> dict[str, Any]:
    """Return the ``loop:`` mapping of the policy file (missing file -> ``{}``)."""
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"{policy_path}: failed to read config: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"{policy_path}: invalid YAML syntax: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{policy_path}: config must be a mapping")
    loop_policy = loaded.get("loop", {})
    if loop_policy is None:
        return {}
    if not isinstance(loop_policy, dict):
        raise ConfigError(f"{policy_path}: 'loop' must be a mapping")
    unknown = sorted(str(key) for key in loop_policy if key not in LOOP_POLICY_KEYS)
    if unknown:
        raise ConfigError(f"{policy_path}: unknown loop keys: {', '.join(unknown)}")
    return dict(loop_policy)


def _resolve_policy_path(repo_root: Path, config_path: str | Path | None) -> Path:
    if config_path is None or str(config_path).strip() == "":
        return repo_root / DEFAULT_POLICY_FILE
    candidate = Path(config_path).expanduser()
    if not candidate.is_absolute():
        candidate = repo_root / candidate
    return candidate


def _policy_int(policy: dict[str, Any], key: str, default: int) -> int:
    value = policy.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer (got {value!r})")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer (got {value!r})") from exc
    if parsed < 0:
        raise ConfigError(f"{key} cannot be negative")
    return parsed


def _policy_float(policy: dict[str, Any], key: str, default: float) -> float:
    value = policy.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number (got {value!r})")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number (got {value!r})") from exc
    if parsed < 0:
        raise ConfigError(f"{key} cannot be negative")
    return parsed


def build_loop_config(
    repo_root: Path,
    *,
    prompt: str,
    overrides: dict[str, Any] | None = None,
    config_path: str | Path | None = None,
    on_progress: Callable[[LoopState], None] | None = None,
    council: bool = False,
) -> LoopConfig:
    """Merge policy-file defaults with CLI overrides into one :class:`LoopConfig`.

    Override values of ``None`` mean "not given on the command line". The
    result is validated: a prompt and at least one budget limit are required.
    """
    overrides = dict(overrides or {})
    policy = _load_loop_policy(_resolve_policy_path(repo_root, config_path))
    merged = dict(policy)
    merged.update(
        {key: value for key, value in overrides.items() if key in LOOP_POLICY_KEYS and value is not None}
    )

    if not str(prompt or "").strip():
        raise ConfigError("prompt is required: use -p or --prompt")

    max_runs = _policy_int(merged, "max_runs", 0)
    max_cost = _policy_float(merged, "max_cost", 0.0)
    max_duration = _parse_duration(merged.get("max_duration"), field_name="max_duration")
    completion_threshold = _policy_int(merged, "completion_threshold", DEFAULT_COMPLETION_THRESHOLD)
    max_consecutive_errors = _policy_int(
        merged, "max_consecutive_errors", DEFAULT_MAX_CONSECUTIVE_ERRORS
    )
    if max_consecutive_errors < 1:
        raise ConfigError("max_consecutive_errors must be at least 1")
    if max_runs <= 0 and max_cost <= 0 and max_duration <= 0:
        raise ConfigError(
            "at least one limit required: use -m/--max-runs, --max-cost, or --max-duration"
        )

    dry_run = _coerce_bool(overrides.get("dry_run"), default=False)
    if dry_run and max_runs <= 0 and max_duration <= 0:
        raise ConfigError("dry run costs nothing: use -m/--max-runs or --max-duration to bound it")

    completion_signal = str(merged.get("completion_signal") or DEFAULT_COMPLETION_SIGNAL)
    notes_file = merged.get("notes_file", DEFAULT_NOTES_FILE)
    notes_file = "" if notes_file is None else str(notes_file)
    review_prompt = str(merged.get("review_prompt") or "")

    log_file_raw = merged.get("log_file", DEFAULT_RUN_LOG_FILE)
    log_file: Path | None = None
    if log_file_raw:
        log_file = Path(str(log_file_raw)).expanduser()
        if not log_file.is_absolute():
            log_file = repo_root / log_file

    principles_file = merged.get("principles_file", DEFAULT_PRINCIPLES_FILE)
    principles: Principles | None = None
    if principles_file:
        principles_path = Path(str(principles_file)).expanduser()
        if not principles_path.is_absolute():
            principles_path = repo_root / principles_path
        if principles_path.exists():
            principles = load_principles(principles_path)
            problems = validate_principles(principles)
            if problems:
                raise ConfigError(f"{principles_path}: invalid principles: {problems[0]}")
    if principles is None and council:
        principles = default_principles("startup")

    # Loaded principles always enable the council; --council only supplies defaults.
    council_config: CouncilConfig | None = None
    if principles is not None:
        council_config = CouncilConfig(
            principles=principles,
            log_decisions=_coerce_bool(merged.get("log_decisions"), default=False),
            log_file=repo_root / DEFAULT_DECISION_LOG_FILE,
        )

    return LoopConfig(
        prompt=prompt,
        max_runs=max_runs,
        max_cost=max_cost,
        max_duration=max_duration,
        completion_signal=completion_signal,
        completion_threshold=completion_threshold,
        max_consecutive_errors=max_consecutive_errors,
        dry_run=dry_run,
        on_progress=on_progress,
        review_prompt=review_prompt,
        council=council_config,
        notes_file=notes_file,
        principles=principles,
        log_file=log_file,
    )
