from .git import GitService
from .optimization import OptimizationService
from .shell import ShellService

__all__ = ["GitService", "OptimizationService", "ShellService"]
