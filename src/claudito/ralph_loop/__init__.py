"""Ralph Loop: iterate a worker agent against a reviewer agent."""

from .agents import AgentStopped, ReviewerAgent, WorkerAgent
from .context import ContextInitializer
from .service import RalphLoopService

__all__ = [
    "AgentStopped",
    "ContextInitializer",
    "RalphLoopService",
    "ReviewerAgent",
    "WorkerAgent",
]
