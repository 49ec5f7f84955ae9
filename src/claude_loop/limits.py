"""Budget limits for run count, spend, and wall-clock duration."""

from __future__ import annotations

import time
from typing import Callable

from claude_loop.models import CheckResult, LoopConfig, LoopState, StopReason

_NOT_REACHED = CheckResult(limit_reached=False)


class LimitChecker:
    """Decides whether a budget limit has been reached.

    Limits are evaluated in a fixed order (runs, cost, duration) and the first
    one reached wins. A limit of zero or less is disabled. None of the methods
    mutate the state.
    """

    def __init__(
        self,
        config: LoopConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clock = clock

    def check(self, state: LoopState) -> CheckResult:
        for check in (self._check_runs, self._check_cost, self._check_duration):
            result = check(state)
            if result.limit_reached:
                return result
        return _NOT_REACHED

    def _check_runs(self, state: LoopState) -> CheckResult:
        if self._config.max_runs > 0 and state.successful_iterations >= self._config.max_runs:
            return CheckResult(limit_reached=True, reason=StopReason.MAX_RUNS)
        return _NOT_REACHED

    def _check_cost(self, state: LoopState) -> CheckResult:
        if self._config.max_cost > 0 and state.total_cost >= self._config.max_cost:
            return CheckResult(limit_reached=True, reason=StopReason.MAX_COST)
        return _NOT_REACHED

    def _check_duration(self, state: LoopState) -> CheckResult:
        if self._config.max_duration > 0 and state.elapsed(self._clock()) >= self._config.max_duration:
            return CheckResult(limit_reached=True, reason=StopReason.MAX_DURATION)
        return _NOT_REACHED

    def remaining_budget(self, state: LoopState) -> float:
        """Return USD left before the cost limit, or -1 when unlimited."""
        if self._config.max_cost <= 0:
            return -1
        return max(0.0, self._config.max_cost - state.total_cost)

    def remaining_time(self, state: LoopState) -> float:
        """Return seconds left before the duration limit, or -1 when unlimited."""
        if self._config.max_duration <= 0:
            return -1
        return max(0.0, self._config.max_duration - state.elapsed(self._clock()))

    def remaining_runs(self, state: LoopState) -> int:
        """Return successful runs left before the run limit, or -1 when unlimited."""
        if self._config.max_runs <= 0:
            return -1
        return max(0, self._config.max_runs - state.successful_iterations)
