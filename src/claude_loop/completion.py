"""Completion-signal detection with a consecutive-signal counter."""

from __future__ import annotations

from claude_loop.models import CheckResult, LoopConfig, LoopState, StopReason


class CompletionDetector:
    def __init__(self, config: LoopConfig) -> None:
        self._config = config

    def detect(self, output: str) -> bool:
        """Return True when the configured signal occurs verbatim in *output*."""
        signal = self._config.completion_signal
        if not signal:
            return False
        return signal in output

    def update_state(self, state: LoopState, signal_found: bool) -> None:
        if signal_found:
            state.completion_signal_count += 1
        else:
            state.completion_signal_count = 0

    def check_threshold(self, state: LoopState) -> CheckResult:
        threshold = self._config.completion_threshold
        if threshold > 0 and state.completion_signal_count >= threshold:
            return CheckResult(limit_reached=True, reason=StopReason.COMPLETION_SIGNAL)
        return CheckResult(limit_reached=False)
