"""Running the Claude CLI as an asyncio subprocess."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..errors import CommandError
from ..models import AgentMessage
from .stream import StreamParser

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results
STREAM_LIMIT = 16 * 1024 * 1024
STOP_GRACE_SECONDS = 5.0

MessageCallback = Callable[[AgentMessage], Union[None, Awaitable[None]]]


@dataclass
class ClaudeRunResult:
    exit_code: Optional[int]
    text: str
    session_id: Optional[str] = None
    files_modified: List[str] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    total_tokens: int = 0
    stderr: str = ""
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.stopped


class ClaudeProcess:
    """One CLI invocation in a project directory.

    Example:
        process = ClaudeProcess(build_claude_args(ClaudeCommand(prompt="hi")), cwd="/repo")
        result = await process.run(on_message=print)
    """

    def __init__(self, args: List[str], cwd: str, env: Optional[Dict[str, str]] = None):
        self.args = args
        self.cwd = cwd
        self.env = env
        self.parser = StreamParser()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stopped = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def session_id(self) -> Optional[str]:
        return self.parser.session_id

    def _build_env(self) -> Dict[str, str]:
        env = dict(os.environ if self.env is None else self.env)
        # A nested CLI refuses to start when it thinks it runs inside another session
        env.pop("CLAUDECODE", None)
        return env

    async def start(self) -> None:
        if self._stopped:
            logger.debug("Not starting %s, stop already requested", self.args[0])
            return
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.args,
                cwd=self.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise CommandError(
                self.args,
                None,
                message=f"{self.args[0]} command not found. Ensure the Claude CLI is installed and in PATH.",
            )
        logger.debug("Started %s (pid %s) in %s", self.args[0], self._process.pid, self.cwd)

    async def run(self, on_message: Optional[MessageCallback] = None) -> ClaudeRunResult:
        """Start the process if needed, stream its messages and wait for exit."""
        if self._process is None:
            await self.start()
        if self._process is None:
            return self._result(None, "")
        if self._stopped:
            # stop() landed while the subprocess was being spawned
            await self.stop()
        assert self._process.stdout is not None

        stderr_task = asyncio.ensure_future(self._read_stderr())

        async for raw in self._process.stdout:
            line = raw.decode("utf-8", errors="replace")
            for message in self.parser.feed(line):
                if on_message is None:
                    continue
                result = on_message(message)
                if asyncio.iscoroutine(result):
                    await result

        exit_code = await self._process.wait()
        stderr = await stderr_task
        return self._result(exit_code, stderr)

    def _result(self, exit_code: Optional[int], stderr: str) -> ClaudeRunResult:
        return ClaudeRunResult(
            exit_code=exit_code,
            text=self.parser.text,
            session_id=self.parser.session_id,
            files_modified=list(self.parser.files_modified),
            usage=dict(self.parser.usage),
            total_tokens=self.parser.total_tokens,
            stderr=stderr,
            stopped=self._stopped,
        )

    async def _read_stderr(self) -> str:
        assert self._process is not None and self._process.stderr is not None
        data = await self._process.stderr.read()
        return data.decode("utf-8", errors="replace")

    async def stop(self, grace: float = STOP_GRACE_SECONDS) -> None:
        """Terminate the process, killing it if it ignores SIGTERM."""
        self._stopped = True
        process = self._process
        if process is None or process.returncode is not None:
            return

        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored SIGTERM, killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


ProcessFactory = Callable[..., Any]


def default_process_factory(args: List[str], cwd: str) -> ClaudeProcess:
    return ClaudeProcess(args, cwd)
