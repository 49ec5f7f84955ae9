from __future__ import annotations

import json
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from claude_loop.constants import (
    AGENT_PIPE_DRAIN_SECONDS,
    AGENT_POLL_INTERVAL_SECONDS,
    AGENT_TERMINATE_GRACE_SECONDS,
    DEFAULT_CLAUDE_FLAGS,
    DEFAULT_CLAUDE_PATH,
    MAX_CAPTURED_STDERR_CHARS,
)
from claude_loop.models import AgentError, IterationResult, LoopCancelledError
from claude_loop.utils import _append_log, _compact_log_text, _redact_sensitive_text

StreamHandler = Callable[[str], None]


@dataclass
class ParsedStream:
    """Aggregated view of one ``stream-json`` transcript."""

    output: str = ""
    result_text: str = ""
    total_cost_usd: float = 0.0
    is_error: bool = False
    session_id: str = ""
    saw_result: bool = False


def _parse_stream_line(line: str) -> dict[str, Any] | None:
    """Decode one stream-json line; blank or malformed lines yield ``None``."""
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _assistant_text_blocks(payload: dict[str, Any]) -> list[str]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    texts: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if isinstance(text, str) and text:
            texts.append(text)
    return texts


class _StreamParser:
    def __init__(self, handler: StreamHandler | None = None) -> None:
        self._handler = handler
        self._chunks: list[str] = []
        self._parsed = ParsedStream()

    def feed(self, line: str) -> None:
        payload = _parse_stream_line(line)
        if payload is None:
            return
        kind = payload.get("type")
        if kind == "assistant":
            for text in _assistant_text_blocks(payload):
                self._chunks.append(text)
                if self._handler is not None:
                    self._handler(text)
        elif kind == "result":
            result = payload.get("result")
            self._parsed.result_text = result if isinstance(result, str) else ""
            try:
                self._parsed.total_cost_usd = float(payload.get("total_cost_usd") or 0.0)
            except (TypeError, ValueError):
                self._parsed.total_cost_usd = 0.0
            self._parsed.is_error = bool(payload.get("is_error", False))
            self._parsed.session_id = str(payload.get("session_id") or "")
            self._parsed.saw_result = True

    def result(self) -> ParsedStream:
        self._parsed.output = "".join(self._chunks)
        return self._parsed


def _terminate_process(process: Any, grace_seconds: float) -> None:
    process.terminate()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class ClaudeClient:
    """Runs the ``claude`` CLI once per call and parses its stream-json output.

    The prompt is passed with ``-p``; stdout is parsed line by line on a pump
    thread while the calling thread polls for exit and for the cancel event.
    Cancellation terminates the child and raises :class:`LoopCancelledError`.
    """

    def __init__(
        self,
        *,
        claude_path: str = DEFAULT_CLAUDE_PATH,
        flags: Iterable[str] = DEFAULT_CLAUDE_FLAGS,
        stream_handler: StreamHandler | None = None,
        cwd: Path | None = None,
        log_file: Path | None = None,
        poll_interval: float = AGENT_POLL_INTERVAL_SECONDS,
        terminate_grace: float = AGENT_TERMINATE_GRACE_SECONDS,
        drain_timeout: float = AGENT_PIPE_DRAIN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.claude_path = claude_path or DEFAULT_CLAUDE_PATH
        self.flags = tuple(flags)
        self.stream_handler = stream_handler
        self.cwd = cwd
        self.log_file = log_file
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace
        self.drain_timeout = drain_timeout
        self._clock = clock

    def build_command(self, prompt: str) -> list[str]:
        return [self.claude_path, "-p", prompt, *self.flags]

    def execute(
        self, prompt: str, cancel_event: threading.Event | None = None
    ) -> IterationResult:
        if cancel_event is not None and cancel_event.is_set():
            raise LoopCancelledError()

        command = self.build_command(prompt)
        started = self._clock()
        parser = _StreamParser(self.stream_handler)
        stderr_chunks: list[str] = []
        stderr_len = [0]

        def _pump_stdout(stream: Any) -> None:
            if stream is None:
                return
            try:
                for line in iter(stream.readline, ""):
                    parser.feed(line)
            finally:
                try:
                    stream.close()
                except OSError:
                    pass

        def _pump_stderr(stream: Any) -> None:
            if stream is None:
                return
            try:
                for line in iter(stream.readline, ""):
                    if stderr_len[0] < MAX_CAPTURED_STDERR_CHARS:
                        room = MAX_CAPTURED_STDERR_CHARS - stderr_len[0]
                        snippet = line[:room]
                        stderr_chunks.append(snippet)
                        stderr_len[0] += len(snippet)
            finally:
                try:
                    stream.close()
                except OSError:
                    pass

        _append_log(
            self.log_file,
            f"claude start path={self.claude_path} prompt_chars={len(prompt)} "
            f"flags={_redact_sensitive_text(' '.join(self.flags))}",
        )
        try:
            process = subprocess.Popen(
                command,
                cwd=self.cwd,
                shell=False,
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise AgentError(f"failed to start claude: {self.claude_path} not found") from exc
        except OSError as exc:
            raise AgentError(f"failed to start claude: {exc}") from exc

        stdout_thread = threading.Thread(target=_pump_stdout, args=(process.stdout,), daemon=True)
        stderr_thread = threading.Thread(target=_pump_stderr, args=(process.stderr,), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    _append_log(self.log_file, "claude cancelled; terminating child process")
                    _terminate_process(process, self.terminate_grace)
                    raise LoopCancelledError()
                try:
                    returncode = process.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    continue
        finally:
            stdout_thread.join(timeout=self.drain_timeout)
            stderr_thread.join(timeout=self.drain_timeout)

        # A pipe held open by a grandchild leaves the transcript incomplete.
        if stdout_thread.is_alive():
            _append_log(self.log_file, f"claude stdout not drained returncode={returncode}")
            raise AgentError(
                f"claude stdout not drained {self.drain_timeout:g}s after exit (status {returncode})"
            )

        parsed = parser.result()
        stderr = "".join(stderr_chunks).strip()
        duration = self._clock() - started
        if stderr:
            _append_log(
                self.log_file,
                f"claude stderr: {_compact_log_text(_redact_sensitive_text(stderr))}",
            )
        _append_log(
            self.log_file,
            f"claude exit returncode={returncode} cost={parsed.total_cost_usd:.4f} "
            f"is_error={parsed.is_error} result_seen={parsed.saw_result} "
            f"session={parsed.session_id or '-'} duration={duration:.1f}s",
        )

        if parsed.is_error:
            raise AgentError("claude returned error", result_text=parsed.result_text, stderr=stderr)
        if returncode != 0:
            detail = _compact_log_text(_redact_sensitive_text(stderr)) if stderr else f"exit status {returncode}"
            raise AgentError(f"claude exited with error: {detail}", stderr=stderr)

        return IterationResult(
            output=parsed.output,
            cost=parsed.total_cost_usd,
            duration=duration,
        )
