"""Per-project shell sessions streamed to the browser.

Sessions are plain subprocesses with piped stdio; output is forwarded as it
arrives through the ``data`` event.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import secrets
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import NotFoundError, ValidationError
from ..events import EventEmitter

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
KILL_GRACE_SECONDS = 3.0


def default_shell() -> List[str]:
    if sys.platform == "win32":
        return [os.environ.get("COMSPEC", "cmd.exe")]
    return [os.environ.get("SHELL", "/bin/bash")]


def project_id_from_session(session_id: str) -> str:
    """``<projectId>-<8 hex>`` -> ``<projectId>``."""
    return session_id.rsplit("-", 1)[0]


@dataclass
class ShellSession:
    id: str
    project_id: str
    cwd: str
    process: asyncio.subprocess.Process
    reader: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_api(self) -> Dict[str, object]:
        return {"id": self.id, "projectId": self.project_id, "cwd": self.cwd, "pid": self.process.pid}


class ShellService(EventEmitter):
    """Events: data(session_id, text), exit(session_id, code), error(session_id, message)."""

    def __init__(self, shell_command: Optional[List[str]] = None):
        super().__init__()
        self.shell_command = shell_command or default_shell()
        self._sessions: Dict[str, ShellSession] = {}

    async def create(self, project_id: str, cwd: str) -> str:
        if not os.path.isdir(cwd):
            raise ValidationError(f"Directory does not exist: {cwd}")

        session_id = f"{project_id}-{secrets.token_hex(4)}"
        env = dict(os.environ, TERM="dumb")
        process = await asyncio.create_subprocess_exec(
            *self.shell_command,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
        session = ShellSession(id=session_id, project_id=project_id, cwd=cwd, process=process)
        self._sessions[session_id] = session
        session.reader = asyncio.ensure_future(self._pump(session))
        logger.info("Shell %s started in %s (pid %s)", session_id, cwd, process.pid)
        return session_id

    async def _pump(self, session: ShellSession) -> None:
        assert session.process.stdout is not None
        # multi-byte characters may straddle two reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await session.process.stdout.read(READ_CHUNK)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    self.emit("data", session.id, text)
                if not chunk:
                    break
        except Exception as e:
            logger.warning("Shell %s read failed: %s", session.id, e)
            self.emit("error", session.id, str(e))

        code = await session.process.wait()
        self._sessions.pop(session.id, None)
        logger.info("Shell %s exited with %s", session.id, code)
        self.emit("exit", session.id, code)

    def _require(self, session_id: str) -> ShellSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Shell session")
        return session

    async def write(self, session_id: str, data: str) -> None:
        session = self._require(session_id)
        stdin = session.process.stdin
        if stdin is None or stdin.is_closing():
            raise ValidationError("Shell session is not accepting input")
        stdin.write(data.encode("utf-8"))
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self.emit("error", session_id, str(e))
            raise ValidationError("Shell session is not accepting input") from e

    async def kill(self, session_id: str) -> None:
        session = self._require(session_id)
        process = session.process
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                process.kill()
        if session.reader is not None:
            await asyncio.gather(session.reader, return_exceptions=True)

    def list(self, project_id: Optional[str] = None) -> List[ShellSession]:
        return [s for s in self._sessions.values() if project_id is None or s.project_id == project_id]

    async def kill_all(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.kill(session_id)
            except NotFoundError:
                continue
