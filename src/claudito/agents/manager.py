"""Agent manager: one interactive Claude agent per project plus one-off runs.

The manager enforces the concurrent-agent limit, queues projects that must
wait for a free slot, queues follow-up messages sent while an agent is busy,
persists every agent message to the project's conversation, and tracks the
PIDs it spawned so processes orphaned by a crash can be cleaned up on the
next start.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import ConflictError
from ..events import EventEmitter
from ..models import AgentMessage, ImageAttachment, MessageType
from ..repositories import ConversationRepository, ProjectRepository, SettingsRepository
from ..repositories.storage import read_json, write_json
from ..templates import render_string
from .command import ClaudeCommand, build_claude_args, build_user_message, write_mcp_config
from .process import ClaudeProcess, ClaudeRunResult, default_process_factory

logger = logging.getLogger(__name__)

STATUS_STOPPED = "stopped"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"


@dataclass
class AgentRequest:
    project_id: str
    message: str
    permission_mode: Optional[str] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    images: List[ImageAttachment] = field(default_factory=list)


@dataclass
class ProjectAgent:
    """Runtime state of a project's interactive agent."""
    project_id: str
    status: str = STATUS_STOPPED
    process: Optional[ClaudeProcess] = None
    task: Optional[asyncio.Task] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    permission_mode: Optional[str] = None
    queued_messages: List[str] = field(default_factory=list)
    queued_images: List[List[ImageAttachment]] = field(default_factory=list)
    is_waiting_for_input: bool = False
    waiting_version: int = 0
    last_command: List[str] = field(default_factory=list)
    context_usage: Optional[Dict[str, Any]] = None
    stop_requested: bool = False
    mcp_config_path: Optional[str] = None


@dataclass
class OneOffAgent:
    id: str
    project_id: str
    process: ClaudeProcess
    task: Optional[asyncio.Task] = None


@dataclass
class OrphanCleanupResult:
    found_count: int = 0
    killed_pids: List[int] = field(default_factory=list)
    skipped_pids: List[int] = field(default_factory=list)
    failed_pids: List[int] = field(default_factory=list)

    @property
    def killed_count(self) -> int:
        return len(self.killed_pids)


class AgentManager(EventEmitter):
    """Owns every Claude process started on behalf of the web UI.

    Events:
        message(project_id, AgentMessage)
        status(project_id, status)
        waitingForInput(project_id, is_waiting, version)
        queueChange(queued_requests)
        sessionRecovery(project_id, old_session_id, new_session_id)
        oneOffMessage(one_off_id, AgentMessage)
        oneOffStatus(one_off_id, status)
    """

    def __init__(
        self,
        projects: ProjectRepository,
        settings: SettingsRepository,
        conversations: ConversationRepository,
        *,
        pids_file: Path,
        max_concurrent: int = 3,
        claude_path: str = "claude",
        process_factory: Callable[[List[str], str], ClaudeProcess] = default_process_factory,
    ):
        super().__init__()
        self.projects = projects
        self.settings = settings
        self.conversations = conversations
        self.pids_file = pids_file
        self.claude_path = claude_path
        self._max_concurrent = max_concurrent
        self._process_factory = process_factory
        self._agents: Dict[str, ProjectAgent] = {}
        self._queue: List[AgentRequest] = []
        self._one_offs: Dict[str, OneOffAgent] = {}
        self._tracked_pids: Dict[int, str] = {}

    # --- status ---------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def _agent(self, project_id: str) -> ProjectAgent:
        if project_id not in self._agents:
            self._agents[project_id] = ProjectAgent(project_id=project_id)
        return self._agents[project_id]

    def is_running(self, project_id: str) -> bool:
        agent = self._agents.get(project_id)
        return agent is not None and agent.status == STATUS_RUNNING

    def is_queued(self, project_id: str) -> bool:
        return any(r.project_id == project_id for r in self._queue)

    def get_running_project_ids(self) -> List[str]:
        return [pid for pid, agent in self._agents.items() if agent.status == STATUS_RUNNING]

    def get_agent_status(self, project_id: str) -> str:
        agent = self._agents.get(project_id)
        return agent.status if agent else STATUS_STOPPED

    def get_session_id(self, project_id: str) -> Optional[str]:
        agent = self._agents.get(project_id)
        return agent.session_id if agent else None

    def get_context_usage(self, project_id: str) -> Optional[Dict[str, Any]]:
        agent = self._agents.get(project_id)
        return agent.context_usage if agent else None

    def get_last_command(self, project_id: str) -> Optional[str]:
        agent = self._agents.get(project_id)
        if agent is None or not agent.last_command:
            return None
        return " ".join(agent.last_command)

    def get_queued_messages(self, project_id: str) -> List[str]:
        agent = self._agents.get(project_id)
        return list(agent.queued_messages) if agent else []

    def get_full_status(self, project_id: str) -> Dict[str, Any]:
        agent = self._agents.get(project_id) or ProjectAgent(project_id=project_id)
        return {
            "status": agent.status,
            "queued": self.is_queued(project_id),
            "queuedMessageCount": len(agent.queued_messages),
            "isWaitingForInput": agent.is_waiting_for_input,
            "waitingVersion": agent.waiting_version,
            "sessionId": agent.session_id,
            "conversationId": agent.conversation_id,
            "permissionMode": agent.permission_mode,
            "pid": agent.process.pid if agent.process and agent.status == STATUS_RUNNING else None,
        }

    def get_resource_status(self) -> Dict[str, Any]:
        return {
            "runningCount": len(self.get_running_project_ids()),
            "maxConcurrent": self._max_concurrent,
            "queuedCount": len(self._queue),
            "queuedProjects": [r.project_id for r in self._queue],
        }

    # --- interactive agents ------------------------------------------------------

    async def start_agent(
        self,
        project_id: str,
        message: str,
        *,
        permission_mode: Optional[str] = None,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        images: Optional[List[ImageAttachment]] = None,
    ) -> str:
        """Start the project's agent, or queue it when no slot is free.

        Returns:
            "running" or "queued"
        """
        self.projects.get(project_id)
        if self.is_running(project_id):
            raise ConflictError("Agent is already running for this project")
        if self.is_queued(project_id):
            raise ConflictError("Agent is already queued for this project")

        request = AgentRequest(
            project_id=project_id,
            message=message,
            permission_mode=permission_mode,
            session_id=session_id,
            conversation_id=conversation_id,
            images=list(images or []),
        )

        if len(self.get_running_project_ids()) >= self._max_concurrent:
            self._queue.append(request)
            logger.info("Queued agent for project %s (%d waiting)", project_id, len(self._queue))
            self.emit("queueChange", list(self._queue))
            self.emit("status", project_id, self.get_agent_status(project_id))
            return "queued"

        await self._launch(request)
        return STATUS_RUNNING

    async def send_input(self, project_id: str, message: str,
                         images: Optional[List[ImageAttachment]] = None) -> str:
        """Send a follow-up message.

        While the agent runs the message is queued and delivered when the
        current run ends; otherwise a new run resumes the last session.
        """
        agent = self._agent(project_id)
        if agent.status == STATUS_RUNNING:
            agent.queued_messages.append(message)
            agent.queued_images.append(list(images or []))
            self.emit("status", project_id, agent.status)
            return "queued"

        return await self.start_agent(
            project_id,
            message,
            permission_mode=agent.permission_mode,
            session_id=agent.session_id,
            conversation_id=agent.conversation_id,
            images=images,
        )

    def remove_queued_message(self, project_id: str, index: int) -> bool:
        agent = self._agents.get(project_id)
        if agent is None or not 0 <= index < len(agent.queued_messages):
            return False
        del agent.queued_messages[index]
        del agent.queued_images[index]
        self.emit("status", project_id, agent.status)
        return True

    def remove_from_queue(self, project_id: str) -> bool:
        before = len(self._queue)
        self._queue = [r for r in self._queue if r.project_id != project_id]
        if len(self._queue) == before:
            return False
        self.emit("queueChange", list(self._queue))
        return True

    async def stop_agent(self, project_id: str) -> None:
        self.remove_from_queue(project_id)
        agent = self._agents.get(project_id)
        if agent is None:
            return

        agent.queued_messages.clear()
        agent.queued_images.clear()
        if agent.process is not None and agent.status == STATUS_RUNNING:
            agent.stop_requested = True
            await agent.process.stop()
            if agent.task is not None:
                await asyncio.gather(agent.task, return_exceptions=True)
        logger.info("Stopped agent for project %s", project_id)

    async def stop_all_agents(self) -> None:
        self._queue.clear()
        await asyncio.gather(*(self.stop_agent(pid) for pid in list(self._agents)))
        await asyncio.gather(*(self.stop_one_off_agent(oid) for oid in list(self._one_offs)))

    async def set_max_concurrent_agents(self, value: int) -> None:
        self._max_concurrent = max(1, int(value))
        logger.info("Max concurrent agents set to %d", self._max_concurrent)
        await self._drain_queue()

    async def _launch(self, request: AgentRequest) -> None:
        project = self.projects.get(request.project_id)
        settings = self.settings.get()
        agent = self._agent(request.project_id)

        conversation_id = request.conversation_id
        if conversation_id is None or self.conversations.get(project.id, conversation_id) is None:
            conversation_id = self.conversations.create(project.id, label=request.message[:60]).id
        self.conversations.add_user_message(project.id, conversation_id, request.message)

        prompt = request.message
        if not request.session_id and settings.agent_prompt_template:
            prompt = render_string(
                settings.agent_prompt_template,
                {"project_path": project.path, "project_name": project.name, "message": request.message},
            )
        prompt = build_user_message(prompt, request.images)

        enabled_servers = [s for s in settings.mcp_servers if s.enabled]
        mcp_config_path = write_mcp_config(enabled_servers, project.id)

        args = build_claude_args(
            ClaudeCommand(
                prompt=prompt,
                model=settings.default_model or None,
                session_id=request.session_id,
                permission_mode=request.permission_mode,
                permissions=settings.claude_permissions,
                append_system_prompt=settings.append_system_prompt or None,
                mcp_config_path=mcp_config_path,
            ),
            claude_path=self.claude_path,
        )

        # The slot is claimed before the first await so concurrent starts see it
        process = self._process_factory(args, project.path)
        previous_status = agent.status
        agent.process = process
        agent.status = STATUS_RUNNING
        agent.stop_requested = False
        try:
            await process.start()
        except Exception:
            agent.process = None
            agent.status = previous_status
            if mcp_config_path:
                Path(mcp_config_path).unlink(missing_ok=True)
            raise

        agent.is_waiting_for_input = False
        agent.conversation_id = conversation_id
        agent.permission_mode = request.permission_mode
        agent.last_command = args
        agent.mcp_config_path = mcp_config_path
        if process.pid is not None:
            self._track_pid(process.pid, project.id)

        logger.info("Agent started for project %s (pid %s)", project.id, process.pid)
        self.emit("status", project.id, agent.status)
        agent.task = asyncio.ensure_future(self._run(agent, process, request))

    async def _run(self, agent: ProjectAgent, process: ClaudeProcess, request: AgentRequest) -> None:
        project_id = agent.project_id
        result: Optional[ClaudeRunResult] = None
        try:
            result = await process.run(on_message=lambda m: self._handle_message(agent, m))
        except Exception:
            logger.exception("Agent run failed for project %s", project_id)
        finally:
            if process.pid is not None:
                self._untrack_pid(process.pid)
            if agent.mcp_config_path:
                Path(agent.mcp_config_path).unlink(missing_ok=True)
                agent.mcp_config_path = None

        self._finish_run(agent, request, result)
        await self._after_run(agent)

    def _handle_message(self, agent: ProjectAgent, message: AgentMessage) -> None:
        if agent.conversation_id:
            self.conversations.add_message(agent.project_id, agent.conversation_id, message)
        if agent.process is not None:
            usage = agent.process.parser.context_usage()
            if usage is not None:
                agent.context_usage = usage
        self.emit("message", agent.project_id, message)

    def _finish_run(self, agent: ProjectAgent, request: AgentRequest, result: Optional[ClaudeRunResult]) -> None:
        project_id = agent.project_id

        if result is not None and result.session_id:
            if request.session_id and result.session_id != request.session_id:
                logger.info("Session %s for project %s continued as %s", request.session_id, project_id, result.session_id)
                self.emit("sessionRecovery", project_id, request.session_id, result.session_id)
            agent.session_id = result.session_id
            if agent.conversation_id:
                self.conversations.set_session_id(project_id, agent.conversation_id, result.session_id)

        if result is None or (not result.ok and not agent.stop_requested):
            agent.status = STATUS_ERROR
            if result is not None and result.stderr.strip():
                self._handle_message(agent, AgentMessage(type=MessageType.STDERR, content=result.stderr.strip()))
        else:
            agent.status = STATUS_STOPPED

        agent.process = None
        agent.task = None
        self.emit("status", project_id, agent.status)

    async def _after_run(self, agent: ProjectAgent) -> None:
        if agent.queued_messages and not agent.stop_requested:
            message = agent.queued_messages.pop(0)
            images = agent.queued_images.pop(0) if agent.queued_images else []
            request = AgentRequest(
                project_id=agent.project_id,
                message=message,
                permission_mode=agent.permission_mode,
                session_id=agent.session_id,
                conversation_id=agent.conversation_id,
                images=images,
            )
            try:
                await self._launch(request)
            except Exception:
                logger.exception("Failed to deliver queued message for project %s", agent.project_id)
                agent.status = STATUS_ERROR
                self.emit("status", agent.project_id, agent.status)
        elif agent.status == STATUS_STOPPED and not agent.stop_requested:
            agent.is_waiting_for_input = True
            agent.waiting_version += 1
            self.emit("waitingForInput", agent.project_id, True, agent.waiting_version)

        await self._drain_queue()

    async def _drain_queue(self) -> None:
        while self._queue and len(self.get_running_project_ids()) < self._max_concurrent:
            request = self._queue.pop(0)
            self.emit("queueChange", list(self._queue))
            try:
                await self._launch(request)
            except Exception:
                logger.exception("Failed to start queued agent for project %s", request.project_id)
                self._agent(request.project_id).status = STATUS_ERROR
                self.emit("status", request.project_id, STATUS_ERROR)

    # --- one-off agents ----------------------------------------------------------

    async def start_one_off_agent(
        self,
        project_id: str,
        message: str,
        permission_mode: Optional[str] = "plan",
        model: Optional[str] = None,
    ) -> str:
        """Run a single prompt outside the project's interactive session."""
        project = self.projects.get(project_id)
        settings = self.settings.get()
        args = build_claude_args(
            ClaudeCommand(
                prompt=message,
                model=model,
                permission_mode=permission_mode,
                permissions=settings.claude_permissions,
            ),
            claude_path=self.claude_path,
        )

        one_off_id = f"oneoff-{uuid.uuid4().hex[:12]}"
        process = self._process_factory(args, project.path)
        await process.start()
        one_off = OneOffAgent(id=one_off_id, project_id=project_id, process=process)
        self._one_offs[one_off_id] = one_off
        if process.pid is not None:
            self._track_pid(process.pid, project_id)

        self.emit("oneOffStatus", one_off_id, STATUS_RUNNING)
        one_off.task = asyncio.ensure_future(self._run_one_off(one_off))
        return one_off_id

    async def _run_one_off(self, one_off: OneOffAgent) -> None:
        status = STATUS_ERROR
        try:
            result = await one_off.process.run(
                on_message=lambda m: self.emit("oneOffMessage", one_off.id, m)
            )
            status = STATUS_STOPPED if result.ok or result.stopped else STATUS_ERROR
        except Exception:
            logger.exception("One-off agent %s failed", one_off.id)
        finally:
            if one_off.process.pid is not None:
                self._untrack_pid(one_off.process.pid)
            self._one_offs.pop(one_off.id, None)
        self.emit("oneOffStatus", one_off.id, status)

    async def stop_one_off_agent(self, one_off_id: str) -> None:
        one_off = self._one_offs.get(one_off_id)
        if one_off is None:
            return
        await one_off.process.stop()
        if one_off.task is not None:
            await asyncio.gather(one_off.task, return_exceptions=True)

    def is_one_off_running(self, one_off_id: str) -> bool:
        return one_off_id in self._one_offs

    # --- PID tracking ------------------------------------------------------------

    def _write_pids(self) -> None:
        write_json(self.pids_file, [{"pid": pid, "projectId": p} for pid, p in self._tracked_pids.items()])

    def _track_pid(self, pid: int, project_id: str) -> None:
        self._tracked_pids[pid] = project_id
        self._write_pids()

    def _untrack_pid(self, pid: int) -> None:
        if self._tracked_pids.pop(pid, None) is not None:
            self._write_pids()

    def get_tracked_processes(self) -> List[Dict[str, Any]]:
        return [{"pid": pid, "projectId": p} for pid, p in self._tracked_pids.items()]

    async def cleanup_orphan_processes(self) -> OrphanCleanupResult:
        """Kill Claude processes left behind by a previous server run."""
        result = OrphanCleanupResult()
        entries = read_json(self.pids_file) or []
        result.found_count = len(entries)

        for entry in entries:
            pid = int(entry.get("pid", 0))
            if pid <= 0 or not _pid_alive(pid):
                continue
            if "claude" not in (await _process_command_line(pid)).lower():
                result.skipped_pids.append(pid)
                continue
            try:
                os.kill(pid, signal.SIGTERM)
                result.killed_pids.append(pid)
            except OSError:
                result.failed_pids.append(pid)

        self._tracked_pids.clear()
        self._write_pids()
        return result


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def _process_command_line(pid: int) -> str:
    proc_file = Path(f"/proc/{pid}/cmdline")
    if proc_file.exists():
        return proc_file.read_bytes().replace(b"\0", b" ").decode("utf-8", errors="replace")
    if sys.platform == "win32":
        return ""
    process = await asyncio.create_subprocess_exec(
        "ps", "-p", str(pid), "-o", "command=",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    stdout, _ = await process.communicate()
    return stdout.decode("utf-8", errors="replace")


__all__ = [
    "AgentManager",
    "AgentRequest",
    "OrphanCleanupResult",
    "STATUS_ERROR",
    "STATUS_RUNNING",
    "STATUS_STOPPED",
]
