"""Reviewer pass that validates the changes made by the last primary iteration."""

from __future__ import annotations

import threading

from claude_loop.iteration import AgentClient
from claude_loop.models import IterationResult, LoopCancelledError, ReviewerError
from claude_loop.prompts import build_reviewer_prompt


class Reviewer:
    def __init__(self, review_prompt: str, client: AgentClient) -> None:
        self.review_prompt = review_prompt
        self._client = client

    def run(self, cancel_event: threading.Event | None = None) -> IterationResult:
        prompt = build_reviewer_prompt(self.review_prompt)
        try:
            return self._client.execute(prompt, cancel_event)
        except LoopCancelledError:
            raise
        except Exception as exc:
            raise ReviewerError("execute", "claude execution failed") from exc
