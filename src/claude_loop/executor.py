"""Iteration control engine.

:class:`Executor` owns one :class:`LoopState` per run and loops until a stop
condition fires. Stop conditions are checked in a fixed precedence order:
cancellation, run count, cost, duration, completion threshold, consecutive
errors. Budget and completion checks run both before each cycle and after each
successful cycle, so a limit reached by the previous cycle never costs an
extra iteration.

Reviewer and Council passes run only after a successful primary iteration and
never in dry-run mode. Reviewer failures have their own consecutive-error
counter; Council failures are always swallowed.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from claude_loop.completion import CompletionDetector
from claude_loop.council import Council
from claude_loop.iteration import AgentClient, IterationHandler, PromptBuilder
from claude_loop.limits import LimitChecker
from claude_loop.models import (
    CheckResult,
    CouncilError,
    Decision,
    IterationResult,
    LoopCancelledError,
    LoopConfig,
    LoopResult,
    LoopState,
    ReviewerError,
    StopReason,
)
from claude_loop.prompts import build_prompt
from claude_loop.reviewer import Reviewer
from claude_loop.utils import _append_log, _compact_log_text, _utc_now


class Executor:
    def __init__(
        self,
        config: LoopConfig,
        client: AgentClient | None,
        *,
        reviewer: Reviewer | None = None,
        council: Council | None = None,
        prompt_builder: PromptBuilder = build_prompt,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self.limit_checker = LimitChecker(config, clock=clock)
        self.completion_detector = CompletionDetector(config)
        self.iteration_handler = IterationHandler(
            config, client, prompt_builder=prompt_builder, clock=clock
        )

        if reviewer is None and config.review_prompt and client is not None:
            reviewer = Reviewer(config.review_prompt, client)
        self.reviewer = reviewer

        if council is None and config.council is not None and client is not None:
            council = Council(config.council, client, clock=clock)
        self.council = council

    def _log(self, message: str) -> None:
        _append_log(self.config.log_file, message)

    def _stop(
        self,
        state: LoopState,
        reason: StopReason,
        error: BaseException | None = None,
    ) -> LoopResult:
        if error is not None:
            self._log(f"loop stop reason={reason.value} error={_compact_log_text(str(error))}")
        else:
            self._log(f"loop stop reason={reason.value}")
        return LoopResult(state=state, stop_reason=reason, last_error=error)

    def _check_stop(self, state: LoopState) -> CheckResult:
        result = self.limit_checker.check(state)
        if result.limit_reached:
            return result
        return self.completion_detector.check_threshold(state)

    def _report_progress(self, state: LoopState) -> None:
        if self.config.on_progress is not None:
            self.config.on_progress(state)

    def run(self, cancel_event: threading.Event | None = None) -> LoopResult:
        """Run cycles until a stop condition fires and return the result."""
        state = LoopState(start_time=self._clock())
        self._log(
            f"loop start max_runs={self.config.max_runs} max_cost={self.config.max_cost} "
            f"max_duration={self.config.max_duration} dry_run={self.config.dry_run} "
            f"reviewer={self.reviewer is not None} council={self.council is not None}"
        )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return self._stop(state, StopReason.CONTEXT_CANCELLED, LoopCancelledError())

            check = self._check_stop(state)
            if check.limit_reached:
                return self._stop(state, check.reason)

            try:
                iteration_result = self.iteration_handler.execute(state, cancel_event)
            except LoopCancelledError as exc:
                self._report_progress(state)
                return self._stop(state, StopReason.CONTEXT_CANCELLED, exc)
            except Exception as exc:
                should_continue = self.iteration_handler.handle_error(state, exc)
                self._log(
                    f"iteration failed total={state.total_iterations} "
                    f"consecutive_errors={state.error_count}: {_compact_log_text(str(exc))}"
                )
                self._report_progress(state)
                if not should_continue:
                    return self._stop(state, StopReason.CONSECUTIVE_ERRORS, exc)
                continue

            self._log(
                f"iteration ok total={state.total_iterations} cost={iteration_result.cost:.4f} "
                f"signal={iteration_result.completion_signal_found}"
            )

            try:
                if self.council is not None and not self.config.dry_run:
                    self._run_council_pass(self.council, state, iteration_result.output, cancel_event)

                if self.reviewer is not None and not self.config.dry_run:
                    reviewer_error = self._run_reviewer_pass(self.reviewer, state, cancel_event)
                    if reviewer_error is not None:
                        return self._stop(state, StopReason.CONSECUTIVE_ERRORS, reviewer_error)
            except LoopCancelledError as exc:
                self._report_progress(state)
                return self._stop(state, StopReason.CONTEXT_CANCELLED, exc)

            self._report_progress(state)

            check = self._check_stop(state)
            if check.limit_reached:
                return self._stop(state, check.reason)

    def run_once(
        self, state: LoopState, cancel_event: threading.Event | None = None
    ) -> IterationResult:
        return self.iteration_handler.execute(state, cancel_event)

    def _run_reviewer_pass(
        self,
        reviewer: Reviewer,
        state: LoopState,
        cancel_event: threading.Event | None,
    ) -> ReviewerError | None:
        """Run the reviewer; return the error only when its breaker trips."""
        try:
            review = reviewer.run(cancel_event)
        except ReviewerError as exc:
            state.reviewer_error_count += 1
            self._log(
                f"reviewer failed consecutive_errors={state.reviewer_error_count}: "
                f"{_compact_log_text(str(exc))}"
            )
            if state.reviewer_error_count >= self.config.max_consecutive_errors:
                return exc
            return None

        state.reviewer_cost += review.cost
        state.total_cost += review.cost
        state.reviewer_error_count = 0

        # Reviewer output only corroborates; absence never resets the counter.
        if self.completion_detector.detect(review.output):
            state.completion_signal_count += 1
        return None

    def _run_council_pass(
        self,
        council: Council,
        state: LoopState,
        output: str,
        cancel_event: threading.Event | None,
    ) -> None:
        if council.detect_conflict(output):
            try:
                resolution = council.resolve(output, cancel_event)
            except CouncilError as exc:
                self._log(f"council resolve failed (ignored): {_compact_log_text(str(exc))}")
                return

            state.council_cost += resolution.cost
            state.total_cost += resolution.cost
            state.council_invocations += 1
            self._log(
                f"council resolved conflict iteration={state.total_iterations} "
                f"decision={_compact_log_text(resolution.resolution, 120)}"
            )
            self._log_decision(
                council,
                Decision(
                    timestamp=_utc_now(),
                    iteration=state.total_iterations,
                    decision=resolution.resolution,
                    rationale=resolution.rationale,
                    preset=council.preset,
                    council_invoked=True,
                ),
            )
            return

        decision, rationale = council.extract_decision(output)
        if decision or rationale:
            self._log_decision(
                council,
                Decision(
                    timestamp=_utc_now(),
                    iteration=state.total_iterations,
                    decision=decision,
                    rationale=rationale,
                    preset=council.preset,
                    council_invoked=False,
                ),
            )

    def _log_decision(self, council: Council, decision: Decision) -> None:
        try:
            council.log_decision(decision)
        except CouncilError as exc:
            self._log(f"council decision log failed (ignored): {_compact_log_text(str(exc))}")
