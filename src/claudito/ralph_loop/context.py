"""Prompt construction for the worker and reviewer runs."""

from __future__ import annotations

from typing import List, Optional

from ..models import RalphLoopState
from ..templates import render_template

MAX_WORKER_OUTPUT_CHARS = 20_000
MAX_PREVIOUS_SUMMARIES = 5


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return "[... earlier output truncated ...]\n" + text[-limit:]


class ContextInitializer:
    """Renders the prompts given to each phase of an iteration."""

    def __init__(self, worker_template: str = "worker.jinja", reviewer_template: str = "reviewer.jinja"):
        self.worker_template = worker_template
        self.reviewer_template = reviewer_template

    def build_worker_prompt(self, state: RalphLoopState) -> str:
        return render_template(self.worker_template, {
            "task_description": state.config.task_description,
            "iteration": state.current_iteration,
            "max_turns": state.config.max_turns,
            "previous_summaries": state.summaries[-MAX_PREVIOUS_SUMMARIES:],
            "feedback": state.latest_feedback,
        })

    def build_reviewer_prompt(
        self,
        state: RalphLoopState,
        worker_output: str,
        files_modified: Optional[List[str]] = None,
    ) -> str:
        if files_modified is None and state.summaries:
            files_modified = state.summaries[-1].files_modified
        return render_template(self.reviewer_template, {
            "task_description": state.config.task_description,
            "iteration": state.current_iteration,
            "max_turns": state.config.max_turns,
            "worker_output": _truncate(worker_output, MAX_WORKER_OUTPUT_CHARS),
            "files_modified": files_modified or [],
        })
