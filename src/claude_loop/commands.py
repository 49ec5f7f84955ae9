from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import yaml

from claude_loop.config import (
    build_loop_config,
    default_principles,
    load_principles,
    save_principles,
    validate_principles,
)
from claude_loop.constants import (
    DEFAULT_DECISION_LOG_FILE,
    DEFAULT_PRINCIPLES_FILE,
    PRINCIPLE_PRESETS,
)
from claude_loop.council import _load_decisions
from claude_loop.executor import Executor
from claude_loop.models import ConfigError, LoopConfig, LoopResult, LoopState, StopReason
from claude_loop.runners import ClaudeClient
from claude_loop.utils import _append_log, _fmt_duration

EXIT_OK = 0
EXIT_LOOP_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


# ---------------------------------------------------------------------------
# Progress / summary output
# ---------------------------------------------------------------------------


def _make_progress_printer(
    *,
    max_runs: int,
    completion_threshold: int,
    verbose: bool,
    clock: Callable[[], float] = time.monotonic,
) -> Callable[[LoopState], None]:
    max_runs_label = str(max_runs) if max_runs > 0 else "unlimited"
    previous_cost = [0.0]

    def _print_progress(state: LoopState) -> None:
        elapsed = _fmt_duration(state.elapsed(clock()))
        if verbose:
            status = "Failed" if state.error_count > 0 else "Complete"
            print(f"\n--- Iteration {state.total_iterations}/{max_runs_label} {status} ---")
            print(
                f"Cost: ${state.total_cost - previous_cost[0]:.4f} "
                f"(Total: ${state.total_cost:.4f})"
            )
            print(f"Elapsed: {elapsed}")
            if state.completion_signal_count > 0:
                print(f"Completion signals: {state.completion_signal_count}/{completion_threshold}")
            if state.error_count > 0:
                print(f"Consecutive errors: {state.error_count}")
            print()
        else:
            print(
                f"[{state.successful_iterations}/{max_runs_label}] "
                f"Cost: ${state.total_cost:.4f} | Elapsed: {elapsed}"
            )
        previous_cost[0] = state.total_cost

    return _print_progress


_STOP_REASON_LABELS = {
    StopReason.MAX_RUNS: "maximum runs reached",
    StopReason.MAX_COST: "maximum cost reached",
    StopReason.MAX_DURATION: "maximum duration reached",
    StopReason.COMPLETION_SIGNAL: "completion signal threshold reached",
    StopReason.CONSECUTIVE_ERRORS: "too many consecutive errors",
    StopReason.CONTEXT_CANCELLED: "cancelled",
}


def _display_loop_result(result: LoopResult, *, clock: Callable[[], float] = time.monotonic) -> None:
    state = result.state
    print("")
    print("=== Loop Complete ===")
    print(f"stop_reason: {_STOP_REASON_LABELS.get(result.stop_reason, str(result.stop_reason))}")
    print(f"iterations: {state.successful_iterations} successful / {state.total_iterations} total")
    print(f"total_cost: ${state.total_cost:.4f}")
    if state.reviewer_cost > 0:
        print(f"reviewer_cost: ${state.reviewer_cost:.4f}")
    if state.council_invocations > 0:
        print(f"council: {state.council_invocations} invocation(s), ${state.council_cost:.4f}")
    print(f"elapsed: {_fmt_duration(state.elapsed(clock()))}")
    if result.last_error is not None:
        print(f"last_error: {result.last_error}")


def _exit_code_for(result: LoopResult) -> int:
    if result.stop_reason == StopReason.CONSECUTIVE_ERRORS:
        return EXIT_LOOP_FAILED
    if result.stop_reason == StopReason.CONTEXT_CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK


def _print_stream_text(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _run_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "max_runs": args.max_runs,
        "max_cost": args.max_cost,
        "max_duration": args.max_duration,
        "completion_signal": args.completion_signal,
        "completion_threshold": args.completion_threshold,
        "max_consecutive_errors": args.max_consecutive_errors,
        "notes_file": args.notes_file,
        "review_prompt": args.review_prompt,
        "log_decisions": True if args.log_decisions else None,
        "principles_file": args.principles_file,
        "log_file": args.log_file,
        "dry_run": args.dry_run,
    }


def _install_interrupt_handler(cancel_event: threading.Event) -> Any:
    def _handle_interrupt(_signum: int, _frame: Any) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        print("\nReceived interrupt signal, stopping...", file=sys.stderr)
        cancel_event.set()

    try:
        return signal.signal(signal.SIGINT, _handle_interrupt)
    except ValueError:
        # signal handlers can only be installed from the main thread
        return None


def _execute_loop(
    config: LoopConfig,
    *,
    repo_root: Path,
    stream: bool,
    cancel_event: threading.Event,
) -> LoopResult:
    client = ClaudeClient(
        stream_handler=_print_stream_text if stream else None,
        cwd=repo_root,
        log_file=config.log_file,
    )
    return Executor(config, client).run(cancel_event)


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = Path.cwd()
    verbose = bool(args.verbose)
    try:
        config = build_loop_config(
            repo_root,
            prompt=args.prompt or "",
            overrides=_run_overrides(args),
            config_path=args.config,
            council=bool(args.council),
        )
    except ConfigError as exc:
        print(f"claude-loop run: ERROR {exc}", file=sys.stderr)
        return EXIT_USAGE

    progress = _make_progress_printer(
        max_runs=config.max_runs,
        completion_threshold=config.completion_threshold,
        verbose=verbose,
    )
    config = replace(config, on_progress=progress)

    print("claude-loop run")
    if config.max_runs > 0:
        print(f"max_runs: {config.max_runs}")
    if config.max_cost > 0:
        print(f"max_cost: ${config.max_cost:.2f}")
    if config.max_duration > 0:
        print(f"max_duration: {_fmt_duration(config.max_duration)}")
    if config.dry_run:
        print("dry_run: true")
    if config.review_prompt:
        print("reviewer: enabled")
    if config.council is not None and config.council.principles is not None:
        print(f"council: enabled (preset={config.council.principles.preset})")
    if verbose and config.log_file is not None:
        print(f"log_file: {config.log_file}")

    cancel_event = threading.Event()
    previous_handler = _install_interrupt_handler(cancel_event)
    try:
        result = _execute_loop(
            config,
            repo_root=repo_root,
            stream=bool(args.stream),
            cancel_event=cancel_event,
        )
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    _display_loop_result(result)
    exit_code = _exit_code_for(result)
    _append_log(config.log_file, f"claude-loop run exit_code={exit_code} stop_reason={result.stop_reason.value}")
    return exit_code


# ---------------------------------------------------------------------------
# principles / decisions
# ---------------------------------------------------------------------------


def _resolve_cli_path(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def _cmd_principles_init(args: argparse.Namespace) -> int:
    path = _resolve_cli_path(args.principles_file)
    if path.exists() and not args.force:
        print(
            f"claude-loop principles init: ERROR {path} already exists (use --force to overwrite)",
            file=sys.stderr,
        )
        return 1
    try:
        principles = default_principles(args.preset)
        save_principles(path, principles)
    except ConfigError as exc:
        print(f"claude-loop principles init: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"claude-loop principles init: wrote {path} (preset={principles.preset})")
    return 0


def _cmd_principles_show(args: argparse.Namespace) -> int:
    path = _resolve_cli_path(args.principles_file)
    try:
        principles = load_principles(path)
    except ConfigError as exc:
        print(f"claude-loop principles show: ERROR {exc}", file=sys.stderr)
        return 1
    print(yaml.safe_dump(principles.to_dict(), sort_keys=False).rstrip())
    return 0


def _cmd_principles_validate(args: argparse.Namespace) -> int:
    path = _resolve_cli_path(args.principles_file)
    try:
        principles = load_principles(path)
    except ConfigError as exc:
        print(f"claude-loop principles validate: ERROR {exc}", file=sys.stderr)
        return 1
    problems = validate_principles(principles)
    if problems:
        for problem in problems:
            print(f"claude-loop principles validate: FAIL {problem}", file=sys.stderr)
        return 1
    print(f"claude-loop principles validate: PASS {path}")
    return 0


def _cmd_decisions(args: argparse.Namespace) -> int:
    path = _resolve_cli_path(args.log_file)
    try:
        entries = _load_decisions(path)
    except (OSError, yaml.YAMLError) as exc:
        print(f"claude-loop decisions: ERROR failed to read {path}: {exc}", file=sys.stderr)
        return 1
    if not entries:
        print(f"claude-loop decisions: no decisions logged at {path}")
        return 0
    if args.limit > 0:
        entries = entries[-args.limit :]
    for entry in entries:
        marker = "council" if entry.get("council_invoked") else "agent"
        print(
            f"[{entry.get('timestamp', '')}] iteration={entry.get('iteration', '')} "
            f"preset={entry.get('preset', '')} source={marker}"
        )
        print(f"  decision: {entry.get('decision', '')}")
        if entry.get("rationale"):
            print(f"  rationale: {entry.get('rationale')}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _non_negative_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer (got {raw!r})") from exc
    if value < 0:
        raise argparse.ArgumentTypeError("value cannot be negative")
    return value


def _non_negative_float(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a number (got {raw!r})") from exc
    if value < 0:
        raise argparse.ArgumentTypeError("value cannot be negative")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-loop",
        description="Run Claude Code repeatedly against one goal until a limit or completion signal stops it",
    )
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run the iteration loop")
    run.add_argument("-p", "--prompt", default=None, help="Goal given to every iteration (required)")
    run.add_argument(
        "-m",
        "--max-runs",
        type=_non_negative_int,
        default=None,
        help="Stop after this many successful iterations (0 = no run limit)",
    )
    run.add_argument(
        "--max-cost",
        type=_non_negative_float,
        default=None,
        help="Stop once cumulative spend in USD reaches this amount",
    )
    run.add_argument(
        "--max-duration",
        default=None,
        help="Stop once wall-clock time reaches this duration (seconds or e.g. 1h30m)",
    )
    run.add_argument(
        "--completion-signal",
        default=None,
        help="Phrase the agent emits when the whole project is done",
    )
    run.add_argument(
        "--completion-threshold",
        type=_non_negative_int,
        default=None,
        help="Consecutive completion signals required to stop (default: 3)",
    )
    run.add_argument(
        "--max-consecutive-errors",
        type=_non_negative_int,
        default=None,
        help="Consecutive failures tolerated before stopping (default: 3)",
    )
    run.add_argument("-r", "--review-prompt", default=None, help="Enable a reviewer pass with this prompt")
    run.add_argument("--notes-file", default=None, help="Shared notes file path (default: SHARED_TASK_NOTES.md)")
    run.add_argument(
        "--principles-file",
        default=None,
        help=f"Principles file injected into prompts (default: {DEFAULT_PRINCIPLES_FILE})",
    )
    run.add_argument("--council", action="store_true", help="Enable the council pass with startup principles when no principles file exists")
    run.add_argument("--log-decisions", action="store_true", help="Append decisions to the decision log")
    run.add_argument("--dry-run", action="store_true", help="Simulate iterations without calling the agent")
    run.add_argument("--verbose", action="store_true", help="Print a detailed block after every iteration")
    run.add_argument("--stream", action="store_true", help="Stream agent text output as it arrives")
    run.add_argument("--log-file", default=None, help="Run log path (default: .claude-loop/logs/loop.log)")
    run.add_argument("--config", default=None, help="Policy file path (default: .claude-loop/config.yaml)")
    run.set_defaults(handler=_cmd_run)

    principles = subparsers.add_parser("principles", help="Manage the decision principles file")
    principles_subparsers = principles.add_subparsers(dest="principles_command")

    principles_init = principles_subparsers.add_parser("init", help="Write a preset principles file")
    principles_init.add_argument("--preset", choices=PRINCIPLE_PRESETS, default="startup")
    principles_init.add_argument("--principles-file", default=DEFAULT_PRINCIPLES_FILE)
    principles_init.add_argument("--force", action="store_true", help="Overwrite an existing file")
    principles_init.set_defaults(handler=_cmd_principles_init)

    principles_show = principles_subparsers.add_parser("show", help="Print the principles file")
    principles_show.add_argument("--principles-file", default=DEFAULT_PRINCIPLES_FILE)
    principles_show.set_defaults(handler=_cmd_principles_show)

    principles_validate = principles_subparsers.add_parser("validate", help="Validate the principles file")
    principles_validate.add_argument("--principles-file", default=DEFAULT_PRINCIPLES_FILE)
    principles_validate.set_defaults(handler=_cmd_principles_validate)

    decisions = subparsers.add_parser("decisions", help="Print logged decisions")
    decisions.add_argument("--log-file", default=DEFAULT_DECISION_LOG_FILE)
    decisions.add_argument("--limit", type=_non_negative_int, default=0, help="Show only the last N entries")
    decisions.set_defaults(handler=_cmd_decisions)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return EXIT_USAGE
    return int(handler(args))
