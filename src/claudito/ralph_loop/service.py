"""Ralph Loop orchestration: worker -> reviewer -> decision, repeated.

Each iteration runs a worker agent on the task, then a reviewer agent on the
worker's output. The reviewer's decision ends the loop (``approve`` or
``reject``) or starts another iteration (``needs_changes``) until
``max_turns`` is reached. State and per-iteration artifacts are persisted by
the repository after every step, so the UI can reload a loop at any time.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import ClauditoError, ConflictError, NotFoundError
from ..events import EventEmitter
from ..models import (
    RalphLoopConfig,
    RalphLoopFinalStatus,
    RalphLoopState,
    RalphLoopStatus,
    ReviewerDecision,
    ReviewerFeedback,
    WorkerSummary,
)
from ..repositories import RalphLoopRepository, generate_task_id
from .agents import ReviewerAgent, WorkerAgent
from .context import ContextInitializer

logger = logging.getLogger(__name__)

STOP_WAIT_SECONDS = 10.0
STOPPED_BY_USER = "Loop stopped by user"

AgentFactory = Callable[[str, Optional[str], ContextInitializer], Any]


@dataclass
class ActiveLoop:
    """In-memory bookkeeping for a loop that is currently being driven."""
    project_id: str
    task_id: str
    should_continue: bool = True
    stopping: bool = False
    current_phase: Optional[str] = None
    worker: Optional[WorkerAgent] = None
    reviewer: Optional[ReviewerAgent] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    # run paused earlier whose phase is still finishing
    previous: Optional["ActiveLoop"] = field(default=None, repr=False)

    @property
    def key(self) -> str:
        return f"{self.project_id}:{self.task_id}"


class RalphLoopService(EventEmitter):
    """Drives Ralph Loops and reports progress through events.

    Events:
        status_change(project_id, task_id, status)
        iteration_start(project_id, task_id, iteration)
        output(project_id, task_id, source, content)
        worker_complete(project_id, task_id, WorkerSummary)
        reviewer_complete(project_id, task_id, ReviewerFeedback)
        loop_complete(project_id, task_id, final_status)
        loop_error(project_id, task_id, message)
    """

    def __init__(
        self,
        repository: RalphLoopRepository,
        project_path_resolver: Callable[[str], Optional[str]],
        *,
        context_initializer: Optional[ContextInitializer] = None,
        worker_factory: Optional[AgentFactory] = None,
        reviewer_factory: Optional[AgentFactory] = None,
        claude_path: str = "claude",
    ):
        super().__init__()
        self.repository = repository
        self._resolve_path = project_path_resolver
        self.context_initializer = context_initializer or ContextInitializer()
        self.worker_factory = worker_factory or functools.partial(WorkerAgent, claude_path=claude_path)
        self.reviewer_factory = reviewer_factory or functools.partial(ReviewerAgent, claude_path=claude_path)
        self._active: Dict[str, ActiveLoop] = {}

    @staticmethod
    def _key(project_id: str, task_id: str) -> str:
        return f"{project_id}:{task_id}"

    # --- public API -------------------------------------------------------------

    async def start(self, project_id: str, config: RalphLoopConfig) -> RalphLoopState:
        if self._resolve_path(project_id) is None:
            raise NotFoundError("Project")

        task_id = generate_task_id()
        logger.info("Starting Ralph Loop %s for project %s (max %d turns)", task_id, project_id, config.max_turns)
        state = self.repository.create(project_id, config, task_id=task_id)

        self._launch(ActiveLoop(project_id=project_id, task_id=task_id))
        return state

    async def stop(self, project_id: str, task_id: str) -> None:
        if self.repository.find_by_id(project_id, task_id) is None:
            raise NotFoundError("Ralph Loop")

        active = self._active.pop(self._key(project_id, task_id), None)
        if active is not None:
            await self._halt(active)
        self._mark_stopped(project_id, task_id)

    async def stop_project(self, project_id: str) -> int:
        """Stop every active loop of a project before the project goes away."""
        keys = [key for key, active in self._active.items() if active.project_id == project_id]
        for key in keys:
            active = self._active.pop(key)
            await self._halt(active)
            self._mark_stopped(project_id, active.task_id)
        return len(keys)

    def _mark_stopped(self, project_id: str, task_id: str) -> None:
        self.repository.update(
            project_id,
            task_id,
            status=RalphLoopStatus.COMPLETED,
            final_status=RalphLoopFinalStatus.CRITICAL_FAILURE,
            error=STOPPED_BY_USER,
        )
        self.emit("status_change", project_id, task_id, RalphLoopStatus.COMPLETED)
        logger.info("Ralph Loop %s stopped", task_id)

    async def pause(self, project_id: str, task_id: str) -> None:
        state = self.repository.find_by_id(project_id, task_id)
        if state is None:
            raise NotFoundError("Ralph Loop")
        if state.status in (RalphLoopStatus.COMPLETED, RalphLoopStatus.FAILED):
            raise ConflictError(f"Cannot pause loop in status: {state.status.value}")

        active = self._active.get(self._key(project_id, task_id))
        if active is not None:
            active.should_continue = False

        self._update_status(project_id, task_id, RalphLoopStatus.PAUSED)
        logger.info("Ralph Loop %s paused", task_id)

    async def resume(self, project_id: str, task_id: str) -> None:
        state = self.repository.find_by_id(project_id, task_id)
        if state is None:
            raise NotFoundError("Ralph Loop")
        if state.status != RalphLoopStatus.PAUSED:
            raise ConflictError(f"Cannot resume loop in status: {state.status.value}")

        previous = self._active.get(self._key(project_id, task_id))
        if previous is not None and (previous.task is None or previous.task.done()):
            previous = None

        self._update_status(project_id, task_id, RalphLoopStatus.IDLE)
        self._launch(ActiveLoop(project_id=project_id, task_id=task_id, previous=previous))
        logger.info("Ralph Loop %s resumed", task_id)

    async def get_state(self, project_id: str, task_id: str) -> Optional[RalphLoopState]:
        return self.repository.find_by_id(project_id, task_id)

    async def list_by_project(self, project_id: str) -> List[RalphLoopState]:
        return self.repository.find_by_project(project_id)

    async def delete(self, project_id: str, task_id: str) -> None:
        if self.repository.find_by_id(project_id, task_id) is None:
            raise NotFoundError("Ralph Loop")

        active = self._active.pop(self._key(project_id, task_id), None)
        if active is not None:
            await self._halt(active)
        self.repository.delete(project_id, task_id)
        logger.info("Ralph Loop %s deleted", task_id)

    def is_active(self, project_id: str, task_id: str) -> bool:
        return self._key(project_id, task_id) in self._active

    def active_loops(self) -> List[Dict[str, Any]]:
        return [
            {"projectId": a.project_id, "taskId": a.task_id, "phase": a.current_phase}
            for a in self._active.values()
        ]

    async def shutdown(self) -> None:
        """Stop every active loop, recording why."""
        for key in list(self._active):
            active = self._active.pop(key)
            await self._halt(active)
            self._record_failure(active, "Server shut down while the loop was running")

    # --- loop driving -------------------------------------------------------------

    def _launch(self, active: ActiveLoop) -> None:
        self._active[active.key] = active
        active.task = asyncio.ensure_future(self._drive(active))

    async def _halt(self, active: ActiveLoop) -> None:
        active.should_continue = False
        active.stopping = True
        if active.previous is not None:
            await self._halt(active.previous)
        for agent in (active.worker, active.reviewer):
            if agent is not None:
                await agent.stop()

        task = active.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            done, _ = await asyncio.wait({task}, timeout=STOP_WAIT_SECONDS)
            if not done:
                logger.warning("Ralph Loop %s did not wind down in time", active.task_id)

    def _update_status(self, project_id: str, task_id: str, status: RalphLoopStatus) -> None:
        self.repository.update(project_id, task_id, status=status)
        self.emit("status_change", project_id, task_id, status)

    def _project_path(self, project_id: str) -> str:
        path = self._resolve_path(project_id)
        if path is None:
            raise ClauditoError(f"Project path not found for: {project_id}")
        return path

    async def _drive(self, active: ActiveLoop) -> None:
        try:
            if active.previous is not None:
                # The paused phase keeps the project until it finishes
                await asyncio.gather(active.previous.task, return_exceptions=True)
                active.previous = None
            await self._run_iterations(active)
        except Exception as exc:
            if not active.should_continue:
                logger.debug("Ralph Loop %s ended after stop: %s", active.task_id, exc)
                return
            self._handle_error(active, exc)
        finally:
            if self._active.get(active.key) is active:
                del self._active[active.key]

    async def _run_iterations(self, active: ActiveLoop) -> None:
        project_id, task_id = active.project_id, active.task_id

        while active.should_continue:
            state = self.repository.find_by_id(project_id, task_id)
            if state is None or state.final_status is not None:
                return

            summary = self._unreviewed_summary(state)
            if summary is None:
                if state.current_iteration >= state.config.max_turns:
                    self._complete(active, RalphLoopFinalStatus.MAX_TURNS_REACHED)
                    return

                iteration = state.current_iteration + 1
                self.repository.update(project_id, task_id, current_iteration=iteration)
                self.emit("iteration_start", project_id, task_id, iteration)

                summary = await self._run_worker_phase(active, iteration)
                if summary is None or not active.should_continue:
                    return

            feedback = await self._run_reviewer_phase(active, summary.iteration_number, summary.worker_output)
            # a paused loop still applies the verdict of a review that finished
            if feedback is None or active.stopping:
                return

            if feedback.decision == ReviewerDecision.APPROVE:
                self._complete(active, RalphLoopFinalStatus.APPROVED)
                return
            if feedback.decision == ReviewerDecision.REJECT:
                self._complete(active, RalphLoopFinalStatus.CRITICAL_FAILURE)
                return

    @staticmethod
    def _unreviewed_summary(state: RalphLoopState) -> Optional[WorkerSummary]:
        """Worker result of the current iteration that has no review yet."""
        if not state.summaries or state.summaries[-1].iteration_number != state.current_iteration:
            return None
        if any(f.iteration_number == state.current_iteration for f in state.feedback):
            return None
        return state.summaries[-1]

    async def _run_worker_phase(self, active: ActiveLoop, iteration: int) -> Optional[WorkerSummary]:
        if not active.should_continue:
            return None
        project_id, task_id = active.project_id, active.task_id

        active.current_phase = "worker"
        self._update_status(project_id, task_id, RalphLoopStatus.WORKER_RUNNING)
        state = self.repository.find_by_id(project_id, task_id)
        if state is None:
            return None

        logger.info("Running worker phase of %s, iteration %d", task_id, iteration)
        worker = self.worker_factory(self._project_path(project_id), state.config.worker_model, self.context_initializer)
        worker.on("output", lambda content: self.emit("output", project_id, task_id, "worker", content))
        active.worker = worker

        try:
            summary = await worker.run(state)
        finally:
            active.worker = None

        self.repository.add_summary(project_id, task_id, summary)
        self.emit("worker_complete", project_id, task_id, summary)
        return summary

    async def _run_reviewer_phase(self, active: ActiveLoop, iteration: int, worker_output: str) -> Optional[ReviewerFeedback]:
        if not active.should_continue:
            return None
        project_id, task_id = active.project_id, active.task_id

        active.current_phase = "reviewer"
        self._update_status(project_id, task_id, RalphLoopStatus.REVIEWER_RUNNING)
        state = self.repository.find_by_id(project_id, task_id)
        if state is None:
            return None

        logger.info("Running reviewer phase of %s, iteration %d", task_id, iteration)
        reviewer = self.reviewer_factory(self._project_path(project_id), state.config.reviewer_model, self.context_initializer)
        reviewer.on("output", lambda content: self.emit("output", project_id, task_id, "reviewer", content))
        active.reviewer = reviewer

        try:
            feedback = await reviewer.run(state, worker_output)
        finally:
            active.reviewer = None

        self.repository.add_feedback(project_id, task_id, feedback)
        self.emit("reviewer_complete", project_id, task_id, feedback)
        return feedback

    def _complete(self, active: ActiveLoop, final_status: RalphLoopFinalStatus) -> None:
        if self._active.get(active.key) is active:
            del self._active[active.key]
        active.current_phase = None

        self.repository.update(
            active.project_id,
            active.task_id,
            status=RalphLoopStatus.COMPLETED,
            final_status=final_status,
        )
        self.emit("status_change", active.project_id, active.task_id, RalphLoopStatus.COMPLETED)
        self.emit("loop_complete", active.project_id, active.task_id, final_status)
        logger.info("Ralph Loop %s completed: %s", active.task_id, final_status.value)

    def _handle_error(self, active: ActiveLoop, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        if self._active.get(active.key) is active:
            del self._active[active.key]

        self._record_failure(active, message)
        self.emit("loop_error", active.project_id, active.task_id, message)
        logger.error("Ralph Loop %s failed: %s", active.task_id, message)

    def _record_failure(self, active: ActiveLoop, message: str) -> None:
        try:
            self.repository.update(
                active.project_id,
                active.task_id,
                status=RalphLoopStatus.FAILED,
                final_status=RalphLoopFinalStatus.CRITICAL_FAILURE,
                error=message,
            )
        except NotFoundError:
            logger.warning("Ralph Loop %s is gone, failure not recorded: %s", active.task_id, message)
