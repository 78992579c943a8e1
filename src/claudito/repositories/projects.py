"""Project registry persisted as a single JSON document."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import List, Optional

from ..errors import ConflictError, NotFoundError
from ..models import Project, utc_now
from .storage import read_json, write_json

logger = logging.getLogger(__name__)


class ProjectRepository:
    """Stores registered projects in ``<data_dir>/projects.json``."""

    def __init__(self, data_dir: Path):
        self.file = data_dir / "projects.json"

    def _load(self) -> List[Project]:
        data = read_json(self.file) or []
        return [Project.model_validate(item) for item in data]

    def _save(self, projects: List[Project]) -> None:
        write_json(self.file, [p.to_api() for p in projects])

    def find_all(self) -> List[Project]:
        return sorted(self._load(), key=lambda p: p.name.lower())

    def find_by_id(self, project_id: str) -> Optional[Project]:
        for project in self._load():
            if project.id == project_id:
                return project
        return None

    def get(self, project_id: str) -> Project:
        """Like find_by_id but raises NotFoundError."""
        project = self.find_by_id(project_id)
        if project is None:
            raise NotFoundError("Project")
        return project

    def find_by_path(self, path: str | Path) -> Optional[Project]:
        resolved = str(Path(path).expanduser().resolve())
        for project in self._load():
            if project.path == resolved:
                return project
        return None

    def get_project_path(self, project_id: str) -> Optional[str]:
        project = self.find_by_id(project_id)
        return project.path if project else None

    def create(self, name: str, path: str | Path) -> Project:
        resolved = str(Path(path).expanduser().resolve())
        projects = self._load()
        if any(p.path == resolved for p in projects):
            raise ConflictError(f"A project already exists for {resolved}")

        project = Project(id=str(uuid.uuid4()), name=name, path=resolved)
        projects.append(project)
        self._save(projects)
        logger.info("Registered project %s at %s", name, resolved)
        return project

    def update(self, project_id: str, *, name: Optional[str] = None) -> Project:
        projects = self._load()
        for index, project in enumerate(projects):
            if project.id == project_id:
                changes = {"updated_at": utc_now()}
                if name is not None:
                    changes["name"] = name
                projects[index] = project.model_copy(update=changes)
                self._save(projects)
                return projects[index]
        raise NotFoundError("Project")

    def delete(self, project_id: str) -> bool:
        projects = self._load()
        remaining = [p for p in projects if p.id != project_id]
        if len(remaining) == len(projects):
            return False
        self._save(remaining)
        return True
