from __future__ import annotations

from claude_loop.completion import CompletionDetector
from claude_loop.models import LoopConfig, LoopState, StopReason


def _detector(**overrides) -> CompletionDetector:
    return CompletionDetector(LoopConfig(prompt="goal", **overrides))


def test_detect_is_case_sensitive_substring_match() -> None:
    detector = _detector(completion_signal="DONE_DONE")

    assert detector.detect("all work finished. DONE_DONE") is True
    assert detector.detect("xxDONE_DONExx") is True
    assert detector.detect("done_done") is False
    assert detector.detect("") is False


def test_empty_signal_never_matches() -> None:
    detector = _detector(completion_signal="")

    assert detector.detect("anything at all") is False
    assert detector.detect("") is False


def test_update_state_increments_then_resets() -> None:
    detector = _detector()
    state = LoopState(start_time=0.0)

    detector.update_state(state, True)
    detector.update_state(state, True)
    assert state.completion_signal_count == 2

    detector.update_state(state, False)
    assert state.completion_signal_count == 0


def test_check_threshold_stops_at_configured_count() -> None:
    detector = _detector(completion_threshold=2)
    state = LoopState(start_time=0.0, completion_signal_count=1)

    assert detector.check_threshold(state).limit_reached is False

    state.completion_signal_count = 2
    result = detector.check_threshold(state)
    assert result.limit_reached is True
    assert result.reason == StopReason.COMPLETION_SIGNAL


def test_zero_threshold_disables_completion_stop() -> None:
    detector = _detector(completion_threshold=0)
    state = LoopState(start_time=0.0, completion_signal_count=50)

    assert detector.check_threshold(state).limit_reached is False
