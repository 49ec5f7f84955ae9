from __future__ import annotations

import json
import subprocess
import threading
import time
from pathlib import Path

import pytest

import claude_loop.runners as runners
from claude_loop.models import AgentError, LoopCancelledError
from claude_loop.runners import ClaudeClient, ParsedStream, _parse_stream_line, _StreamParser


class _StaticStream:
    def __init__(self, lines: list[str]) -> None:
        self._lines = list(lines)

    def readline(self) -> str:
        if self._lines:
            return self._lines.pop(0)
        time.sleep(0.005)
        return ""

    def close(self) -> None:
        return None


def _parse_lines(lines: list[str], handler=None) -> ParsedStream:
    parser = _StreamParser(handler)
    for line in lines:
        parser.feed(line)
    return parser.result()


def _assistant(text: str) -> str:
    return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}) + "\n"


def _result(*, cost: float = 0.0, is_error: bool = False, result: str = "") -> str:
    return (
        json.dumps(
            {
                "type": "result",
                "result": result,
                "total_cost_usd": cost,
                "is_error": is_error,
                "session_id": "sess-1",
            }
        )
        + "\n"
    )


def _process_factory(stdout_lines: list[str], *, returncode: int = 0, stderr_lines: list[str] | None = None):
    captured: dict = {}

    class _ExitProcess:
        def __init__(self, command, **kwargs) -> None:
            captured["command"] = command
            captured["kwargs"] = kwargs
            self.stdout = _StaticStream(stdout_lines)
            self.stderr = _StaticStream(stderr_lines or [])
            self.pid = 999999

        def wait(self, timeout: float | None = None) -> int:
            return returncode

        def poll(self) -> int | None:
            return returncode

        def terminate(self) -> None:
            return None

        def kill(self) -> None:
            return None

    return _ExitProcess, captured


# ---------------------------------------------------------------------------
# stream-json parsing
# ---------------------------------------------------------------------------


def test_parse_stream_line_skips_blank_and_malformed_lines() -> None:
    assert _parse_stream_line("") is None
    assert _parse_stream_line("   \n") is None
    assert _parse_stream_line("not json") is None
    assert _parse_stream_line("[1, 2]") is None
    assert _parse_stream_line('{"type": "system"}') == {"type": "system"}


def test_stream_parser_concatenates_text_and_reads_result() -> None:
    streamed: list[str] = []
    lines = [
        '{"type": "system", "subtype": "init"}\n',
        _assistant("Hello "),
        json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Bash"},
                        {"type": "text", "text": "world"},
                        {"type": "text", "text": ""},
                    ]
                },
            }
        ),
        "garbage line\n",
        _result(cost=0.0123, result="final answer"),
    ]

    parsed = _parse_lines(lines, streamed.append)

    assert parsed.output == "Hello world"
    assert parsed.result_text == "final answer"
    assert parsed.total_cost_usd == pytest.approx(0.0123)
    assert parsed.is_error is False
    assert parsed.session_id == "sess-1"
    assert parsed.saw_result is True
    assert streamed == ["Hello ", "world"]


def test_stream_parser_without_result_message() -> None:
    parsed = _parse_lines([_assistant("partial")])

    assert parsed.output == "partial"
    assert parsed.total_cost_usd == 0.0
    assert parsed.saw_result is False


# ---------------------------------------------------------------------------
# ClaudeClient.execute
# ---------------------------------------------------------------------------


def test_execute_returns_output_and_cost(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    process_cls, captured = _process_factory([_assistant("did the work "), _assistant("DONE"), _result(cost=0.42)])
    monkeypatch.setattr(runners.subprocess, "Popen", process_cls)
    streamed: list[str] = []
    client = ClaudeClient(stream_handler=streamed.append, cwd=tmp_path, log_file=tmp_path / "loop.log")

    result = client.execute("fix the bug")

    assert result.output == "did the work DONE"
    assert result.cost == pytest.approx(0.42)
    assert result.completion_signal_found is False
    assert streamed == ["did the work ", "DONE"]
    assert captured["command"] == [
        "claude",
        "-p",
        "fix the bug",
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--verbose",
    ]
    assert captured["kwargs"]["cwd"] == tmp_path
    assert captured["kwargs"]["shell"] is False
    log_text = (tmp_path / "loop.log").read_text(encoding="utf-8")
    assert "claude start" in log_text
    assert "claude exit returncode=0" in log_text
    assert "result_seen=True session=sess-1" in log_text


def test_execute_raises_on_error_result(monkeypatch: pytest.MonkeyPatch) -> None:
    process_cls, _ = _process_factory([_result(is_error=True, result="rate limited")], returncode=1)
    monkeypatch.setattr(runners.subprocess, "Popen", process_cls)

    with pytest.raises(AgentError) as excinfo:
        ClaudeClient().execute("prompt")

    assert excinfo.value.result_text == "rate limited"
    assert excinfo.value.kind == "agent"
    assert str(excinfo.value) == "claude: claude returned error: rate limited"


def test_execute_raises_on_non_zero_exit_with_redacted_stderr(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    process_cls, _ = _process_factory(
        [_assistant("partial")],
        returncode=2,
        stderr_lines=["auth failed token=abc123secret\n"],
    )
    monkeypatch.setattr(runners.subprocess, "Popen", process_cls)

    with pytest.raises(AgentError) as excinfo:
        ClaudeClient(log_file=tmp_path / "loop.log").execute("prompt")

    assert "claude exited with error" in str(excinfo.value)
    assert "abc123secret" not in str(excinfo.value)
    assert "token=<redacted>" in str(excinfo.value)
    assert excinfo.value.stderr == "auth failed token=abc123secret"
    assert "abc123secret" not in (tmp_path / "loop.log").read_text(encoding="utf-8")


def test_execute_reports_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(*_args, **_kwargs):
        raise FileNotFoundError("claude")

    monkeypatch.setattr(runners.subprocess, "Popen", _missing)

    with pytest.raises(AgentError, match="not found"):
        ClaudeClient(claude_path="/opt/missing/claude").execute("prompt")


def test_execute_refuses_when_already_cancelled(monkeypatch: pytest.MonkeyPatch) -> None:
    def _unexpected(*_args, **_kwargs):
        raise AssertionError("Popen should not be called")

    monkeypatch.setattr(runners.subprocess, "Popen", _unexpected)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(LoopCancelledError):
        ClaudeClient().execute("prompt", cancel_event)


def test_execute_terminates_child_when_cancelled(monkeypatch: pytest.MonkeyPatch) -> None:
    cancel_event = threading.Event()
    spawned: list = []

    class _HangingProcess:
        def __init__(self, *_args, **_kwargs) -> None:
            self.stdout = _StaticStream([])
            self.stderr = _StaticStream([])
            self.pid = 999999
            self.terminated = False
            spawned.append(self)

        def wait(self, timeout: float | None = None) -> int:
            if self.terminated:
                return 143
            cancel_event.set()
            raise subprocess.TimeoutExpired(cmd="claude", timeout=timeout or 0.0)

        def poll(self) -> int | None:
            return 143 if self.terminated else None

        def terminate(self) -> None:
            self.terminated = True

        def kill(self) -> None:
            self.terminated = True

    monkeypatch.setattr(runners.subprocess, "Popen", _HangingProcess)

    with pytest.raises(LoopCancelledError):
        ClaudeClient(poll_interval=0.01).execute("prompt", cancel_event)

    assert spawned[0].terminated is True


def test_execute_fails_when_stdout_is_not_drained(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    release = threading.Event()

    class _HeldOpenStream:
        def __init__(self) -> None:
            self._sent = False

        def readline(self) -> str:
            if not self._sent:
                self._sent = True
                return _assistant("partial")
            release.wait(5)
            return ""

        def close(self) -> None:
            return None

    class _ExitedProcess:
        def __init__(self, *_args, **_kwargs) -> None:
            self.stdout = _HeldOpenStream()
            self.stderr = _StaticStream([])
            self.pid = 999999

        def wait(self, timeout: float | None = None) -> int:
            return 0

        def poll(self) -> int | None:
            return 0

        def terminate(self) -> None:
            return None

        def kill(self) -> None:
            return None

    monkeypatch.setattr(runners.subprocess, "Popen", _ExitedProcess)
    client = ClaudeClient(drain_timeout=0.05, log_file=tmp_path / "loop.log")

    try:
        with pytest.raises(AgentError, match="stdout not drained"):
            client.execute("prompt")
    finally:
        release.set()

    assert "claude stdout not drained returncode=0" in (tmp_path / "loop.log").read_text(encoding="utf-8")
