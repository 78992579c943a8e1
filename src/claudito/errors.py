"""Exception types shared by the services and the HTTP layer.

Every error that should reach an API client derives from ``ClauditoError``
and carries the HTTP status the server middleware responds with.
"""

from __future__ import annotations

from typing import List, Optional


class ClauditoError(Exception):
    """Base class for all application errors."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ClauditoError):
    """Request data failed validation."""

    status = 400


class NotFoundError(ClauditoError):
    """A requested resource does not exist."""

    status = 404

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(ClauditoError):
    """The operation conflicts with the current state of a resource."""

    status = 409


class ConfigError(ClauditoError):
    pass


class CommandError(ClauditoError):
    """An external command (git, claude, shell) exited unsuccessfully."""

    status = 500

    def __init__(
        self,
        command: List[str],
        exit_code: Optional[int],
        stderr: str = "",
        message: Optional[str] = None,
    ):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        if message is None:
            detail = stderr.strip()[:500] or "no output"
            message = f"{command[0]} failed with exit code {exit_code}: {detail}"
        super().__init__(message)
