"""Persistence for Ralph Loop runs.

A loop lives inside the project it works on::

    <project>/.claudito/ralph-loop/<task_id>/
        state.json                  full RalphLoopState
        iteration-001-worker.json   WorkerSummary of iteration 1
        iteration-001-review.json   ReviewerFeedback of iteration 1
"""

from __future__ import annotations

import logging
import secrets
import shutil
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..errors import NotFoundError
from ..models import RalphLoopConfig, RalphLoopState, ReviewerFeedback, WorkerSummary, utc_now
from .storage import read_json, write_json, write_text_atomic

logger = logging.getLogger(__name__)

LOOPS_DIR = Path(".claudito") / "ralph-loop"


def generate_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class RalphLoopRepository:
    """Stores loop state next to the project it belongs to.

    Args:
        project_path_resolver: Maps a project id to its directory, or None
            when the project is unknown.
    """

    def __init__(self, project_path_resolver: Callable[[str], Optional[str]]):
        self._resolve = project_path_resolver

    def _loops_dir(self, project_id: str) -> Path:
        path = self._resolve(project_id)
        if path is None:
            raise NotFoundError("Project")
        return Path(path) / LOOPS_DIR

    def _task_dir(self, project_id: str, task_id: str) -> Path:
        return self._loops_dir(project_id) / task_id

    def _save(self, state: RalphLoopState) -> None:
        write_text_atomic(self._task_dir(state.project_id, state.task_id) / "state.json", state.to_json())

    def create(self, project_id: str, config: RalphLoopConfig, task_id: Optional[str] = None) -> RalphLoopState:
        state = RalphLoopState(
            task_id=task_id or generate_task_id(),
            project_id=project_id,
            config=config,
        )
        self._save(state)
        return state

    def find_by_id(self, project_id: str, task_id: str) -> Optional[RalphLoopState]:
        data = read_json(self._task_dir(project_id, task_id) / "state.json")
        if data is None:
            return None
        return RalphLoopState.model_validate(data)

    def find_by_project(self, project_id: str) -> List[RalphLoopState]:
        loops_dir = self._loops_dir(project_id)
        if not loops_dir.is_dir():
            return []

        states = []
        for state_file in loops_dir.glob("*/state.json"):
            try:
                states.append(RalphLoopState.model_validate(read_json(state_file)))
            except ValueError:
                logger.warning("Skipping unreadable loop state %s", state_file)
        states.sort(key=lambda s: s.created_at, reverse=True)
        return states

    def update(self, project_id: str, task_id: str, **changes: Any) -> RalphLoopState:
        state = self.find_by_id(project_id, task_id)
        if state is None:
            raise NotFoundError("Ralph Loop")
        state = state.model_copy(update={**changes, "updated_at": utc_now()})
        self._save(state)
        return state

    def add_summary(self, project_id: str, task_id: str, summary: WorkerSummary) -> RalphLoopState:
        state = self.find_by_id(project_id, task_id)
        if state is None:
            raise NotFoundError("Ralph Loop")
        write_json(self._artifact(project_id, task_id, summary.iteration_number, "worker"), summary.to_api())
        return self.update(project_id, task_id, summaries=state.summaries + [summary])

    def add_feedback(self, project_id: str, task_id: str, feedback: ReviewerFeedback) -> RalphLoopState:
        state = self.find_by_id(project_id, task_id)
        if state is None:
            raise NotFoundError("Ralph Loop")
        write_json(self._artifact(project_id, task_id, feedback.iteration_number, "review"), feedback.to_api())
        return self.update(project_id, task_id, feedback=state.feedback + [feedback])

    def _artifact(self, project_id: str, task_id: str, iteration: int, kind: str) -> Path:
        return self._task_dir(project_id, task_id) / f"iteration-{iteration:03d}-{kind}.json"

    def delete(self, project_id: str, task_id: str) -> bool:
        task_dir = self._task_dir(project_id, task_id)
        if not task_dir.is_dir():
            return False
        shutil.rmtree(task_dir)
        return True
