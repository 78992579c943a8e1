"""JSON file repositories."""

from .conversations import ConversationRepository
from .projects import ProjectRepository
from .ralph_loops import RalphLoopRepository, generate_task_id
from .settings import SettingsRepository

__all__ = [
    "ConversationRepository",
    "ProjectRepository",
    "RalphLoopRepository",
    "SettingsRepository",
    "generate_task_id",
]
