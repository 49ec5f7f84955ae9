"""Single primary iteration: build prompt, call the agent, update state."""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from claude_loop.completion import CompletionDetector
from claude_loop.constants import DRY_RUN_OUTPUT
from claude_loop.models import (
    BuiltPrompt,
    IterationError,
    IterationResult,
    LoopCancelledError,
    LoopConfig,
    LoopState,
    PromptContext,
)
from claude_loop.prompts import build_prompt
from claude_loop.utils import _append_log


class AgentClient(Protocol):
    def execute(
        self, prompt: str, cancel_event: threading.Event | None = None
    ) -> IterationResult: ...


PromptBuilder = Callable[[PromptContext], BuiltPrompt]


class IterationHandler:
    def __init__(
        self,
        config: LoopConfig,
        client: AgentClient | None,
        *,
        prompt_builder: PromptBuilder = build_prompt,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._client = client
        self._prompt_builder = prompt_builder
        self._clock = clock
        self._completion = CompletionDetector(config)

    def execute(
        self, state: LoopState, cancel_event: threading.Event | None = None
    ) -> IterationResult:
        """Run one primary iteration.

        ``total_iterations`` is incremented before anything else, so a failed
        attempt still counts. Failures raise :class:`IterationError` and leave
        the success counters untouched; cancellation propagates unwrapped.
        """
        state.total_iterations += 1

        if self._config.dry_run:
            result = IterationResult(output=DRY_RUN_OUTPUT, cost=0.0, duration=0.0)
            self._record_success(state, result)
            return result

        iteration = state.total_iterations
        try:
            built = self._prompt_builder(
                PromptContext(
                    user_prompt=self._config.prompt,
                    completion_signal=self._config.completion_signal,
                    iteration=iteration,
                    notes_file=self._config.notes_file,
                    principles=self._config.principles,
                )
            )
        except Exception as exc:
            raise IterationError(iteration, "failed to build prompt") from exc
        _append_log(
            self._config.log_file,
            f"iteration {iteration} prompt_chars={len(built.prompt)} "
            f"notes={built.notes_included} principles={built.principles_injected}",
        )

        if self._client is None:
            raise IterationError(iteration, "no agent client configured")
        try:
            result = self._client.execute(built.prompt, cancel_event)
        except LoopCancelledError:
            raise
        except Exception as exc:
            raise IterationError(iteration, "claude execution failed") from exc

        self._record_success(state, result)
        return result

    def _record_success(self, state: LoopState, result: IterationResult) -> None:
        state.successful_iterations += 1
        state.total_cost += result.cost
        state.last_iteration_time = self._clock()
        state.error_count = 0

        signal_found = self._completion.detect(result.output)
        result.completion_signal_found = signal_found
        self._completion.update_state(state, signal_found)

    def handle_error(self, state: LoopState, error: BaseException) -> bool:
        """Count a primary failure; return False once the breaker trips."""
        state.error_count += 1
        return state.error_count < self._config.max_consecutive_errors
