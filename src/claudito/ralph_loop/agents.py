"""Worker and reviewer agents of the Ralph Loop.

Each agent wraps a single Claude CLI run. The worker edits the project; the
reviewer inspects the result and answers with a JSON verdict.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, List, Optional

from ..agents.command import ClaudeCommand, build_claude_args
from ..agents.process import ClaudeProcess, ClaudeRunResult, default_process_factory
from ..errors import ClauditoError, CommandError
from ..events import EventEmitter
from ..json_extractor import JSONExtractor
from ..models import (
    AgentMessage,
    MessageType,
    RalphLoopState,
    ReviewerDecision,
    ReviewerFeedback,
    ReviewerVerdict,
    WorkerSummary,
)
from .context import ContextInitializer

logger = logging.getLogger(__name__)

UNPARSED_FEEDBACK_CHARS = 2000


class AgentStopped(ClauditoError):
    """The agent's process was stopped before it finished."""


class LoopAgent(EventEmitter):
    """Shared plumbing: run one CLI invocation and forward its output.

    Emits ``output(content)`` for assistant text and tool calls.
    """

    role = "agent"
    default_permission_mode: Optional[str] = None

    def __init__(
        self,
        project_path: str,
        model: Optional[str],
        context_initializer: ContextInitializer,
        *,
        claude_path: str = "claude",
        permission_mode: Optional[str] = None,
        process_factory: Callable[[List[str], str], ClaudeProcess] = default_process_factory,
    ):
        super().__init__()
        self.project_path = project_path
        self.model = model
        self.context_initializer = context_initializer
        self.claude_path = claude_path
        self.permission_mode = permission_mode or self.default_permission_mode
        self._process_factory = process_factory
        self._process: Optional[ClaudeProcess] = None
        self._stopped = False

    def _forward(self, message: AgentMessage) -> None:
        if message.type == MessageType.STDOUT:
            self.emit("output", message.content)
        elif message.type == MessageType.TOOL_USE:
            self.emit("output", f"[tool] {message.content}")

    async def _execute(self, prompt: str) -> ClaudeRunResult:
        if self._stopped:
            raise AgentStopped(f"{self.role} was stopped")

        args = build_claude_args(
            ClaudeCommand(prompt=prompt, model=self.model, permission_mode=self.permission_mode),
            claude_path=self.claude_path,
        )
        self._process = self._process_factory(args, self.project_path)
        try:
            result = await self._process.run(on_message=self._forward)
        finally:
            self._process = None

        if result.stopped or self._stopped:
            raise AgentStopped(f"{self.role} was stopped")
        if not result.ok:
            raise CommandError(args[:1], result.exit_code, result.stderr)
        return result

    async def stop(self) -> None:
        self._stopped = True
        if self._process is not None:
            await self._process.stop()


class WorkerAgent(LoopAgent):
    role = "worker"
    default_permission_mode = "acceptEdits"

    async def run(self, state: RalphLoopState) -> WorkerSummary:
        prompt = self.context_initializer.build_worker_prompt(state)
        started = time.monotonic()
        result = await self._execute(prompt)

        return WorkerSummary(
            iteration_number=state.current_iteration,
            worker_output=result.text,
            files_modified=[self._relative(path) for path in result.files_modified],
            tokens_used=result.total_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _relative(self, path: str) -> str:
        if os.path.isabs(path):
            try:
                relative = os.path.relpath(path, self.project_path)
            except ValueError:
                return path
            if not relative.startswith(".."):
                return relative
        return path


class ReviewerAgent(LoopAgent):
    role = "reviewer"
    default_permission_mode = "default"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.extractor = JSONExtractor()

    async def run(self, state: RalphLoopState, worker_output: str) -> ReviewerFeedback:
        prompt = self.context_initializer.build_reviewer_prompt(state, worker_output)
        result = await self._execute(prompt)
        return self.parse_feedback(result.text, state.current_iteration)

    def parse_feedback(self, text: str, iteration: int) -> ReviewerFeedback:
        """Turn the reviewer's answer into feedback.

        An answer without a valid verdict counts as ``needs_changes`` so the
        worker gets another turn with the reviewer's prose as guidance.
        """
        verdict = self.extractor.extract_to_model(text, ReviewerVerdict)
        if verdict is None:
            logger.warning("Reviewer output for iteration %d has no JSON verdict", iteration)
            return ReviewerFeedback(
                iteration_number=iteration,
                decision=ReviewerDecision.NEEDS_CHANGES,
                feedback=text.strip()[-UNPARSED_FEEDBACK_CHARS:],
            )

        return ReviewerFeedback(
            iteration_number=iteration,
            decision=verdict.decision,
            feedback=verdict.feedback,
            specific_issues=verdict.specific_issues,
            suggested_improvements=verdict.suggested_improvements,
        )
