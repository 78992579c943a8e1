"""WebSocket fan-out of service events to browser clients.

Every message is an envelope ``{"type", "projectId", "data"}``. Clients
subscribe to projects; project-scoped events only reach subscribers of that
project, while resource-level events go to every client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Set

from aiohttp import WSMsgType, web

from ..agents import AgentManager
from ..models import AgentMessage, CamelModel
from ..ralph_loop import RalphLoopService
from ..services import OptimizationService, ShellService
from ..services.shell import project_id_from_session

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    if isinstance(value, CamelModel):
        return value.to_api()
    if isinstance(value, Enum):
        return value.value
    return value


class WebSocketHub:
    def __init__(self) -> None:
        self._clients: Dict[web.WebSocketResponse, Set[str]] = {}
        self.agents: Optional[AgentManager] = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def subscribers(self, project_id: str) -> int:
        return sum(1 for projects in self._clients.values() if project_id in projects)

    # --- wiring -----------------------------------------------------------------

    def attach(
        self,
        agents: Optional[AgentManager] = None,
        ralph_loops: Optional[RalphLoopService] = None,
        shell: Optional[ShellService] = None,
        optimization: Optional[OptimizationService] = None,
    ) -> None:
        if agents is not None:
            self._attach_agents(agents)
        if ralph_loops is not None:
            self._attach_ralph_loops(ralph_loops)
        if shell is not None:
            self._attach_shell(shell)
        if optimization is not None:
            optimization.on("optimizationProgress", lambda p: self.send_to_project(
                p["projectId"], "optimization_progress", p))
            optimization.on("optimizationComplete", lambda p: self.send_to_project(
                p["projectId"], "optimization_complete", p))

    def _attach_agents(self, agents: AgentManager) -> None:
        self.agents = agents

        def on_message(project_id: str, message: AgentMessage):
            data = message.to_api()
            data["contextUsage"] = agents.get_context_usage(project_id)
            return self.send_to_project(project_id, "agent_message", data)

        agents.on("message", on_message)
        agents.on("status", lambda project_id, _status: self.send_to_project(
            project_id, "agent_status", agents.get_full_status(project_id)))
        agents.on("waitingForInput", lambda project_id, waiting, version: self.send_to_project(
            project_id, "agent_waiting", {"isWaiting": waiting, "version": version}))
        agents.on("queueChange", lambda _queue: self.broadcast(
            "queue_change", agents.get_resource_status()))
        agents.on("sessionRecovery", lambda project_id, old, new: self.send_to_project(
            project_id, "session_recovery", {"oldSessionId": old, "newSessionId": new}))

    def _attach_ralph_loops(self, loops: RalphLoopService) -> None:
        def forward(event: str, ws_type: str, key: str):
            def listener(project_id: str, task_id: str, value: Any):
                return self.send_to_project(project_id, ws_type, {"taskId": task_id, key: _plain(value)})
            loops.on(event, listener)

        forward("status_change", "ralph_loop_status", "status")
        forward("iteration_start", "ralph_loop_iteration", "iteration")
        forward("worker_complete", "ralph_loop_worker_complete", "summary")
        forward("reviewer_complete", "ralph_loop_reviewer_complete", "feedback")
        forward("loop_complete", "ralph_loop_complete", "finalStatus")
        forward("loop_error", "ralph_loop_error", "error")
        loops.on("output", lambda project_id, task_id, source, content: self.send_to_project(
            project_id, "ralph_loop_output", {"taskId": task_id, "source": source, "content": content}))

    def _attach_shell(self, shell: ShellService) -> None:
        shell.on("data", lambda sid, text: self.send_to_project(
            project_id_from_session(sid), "shell_data", {"sessionId": sid, "data": text}))
        shell.on("exit", lambda sid, code: self.send_to_project(
            project_id_from_session(sid), "shell_exit", {"sessionId": sid, "exitCode": code}))
        shell.on("error", lambda sid, message: self.send_to_project(
            project_id_from_session(sid), "shell_error", {"sessionId": sid, "error": message}))

    # --- sending ----------------------------------------------------------------

    async def _send(self, ws: web.WebSocketResponse, payload: Dict[str, Any]) -> None:
        if ws.closed:
            self._clients.pop(ws, None)
            return
        try:
            await ws.send_json(payload)
        except (ConnectionResetError, RuntimeError) as e:
            logger.debug("Dropping websocket client: %s", e)
            self._clients.pop(ws, None)

    async def broadcast(self, msg_type: str, data: Any = None) -> None:
        payload = {"type": msg_type, "data": data}
        await asyncio.gather(*(self._send(ws, payload) for ws in list(self._clients)))

    async def send_to_project(self, project_id: str, msg_type: str, data: Any = None) -> None:
        payload = {"type": msg_type, "projectId": project_id, "data": data}
        targets = [ws for ws, projects in list(self._clients.items()) if project_id in projects]
        await asyncio.gather(*(self._send(ws, payload) for ws in targets))

    # --- connection handling ------------------------------------------------------

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._clients[ws] = set()
        logger.debug("WebSocket client connected (%d total)", len(self._clients))
        await self._send(ws, {"type": "connected", "data": None})

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._on_text(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
        finally:
            self._clients.pop(ws, None)
            logger.debug("WebSocket client disconnected (%d left)", len(self._clients))
        return ws

    async def _on_text(self, ws: web.WebSocketResponse, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON websocket message")
            return
        if not isinstance(message, dict):
            return

        msg_type = message.get("type")
        project_id = message.get("projectId")
        subscriptions = self._clients.get(ws)
        if subscriptions is None:
            return

        if msg_type == "subscribe" and isinstance(project_id, str):
            subscriptions.add(project_id)
            if self.agents is not None:
                await self._send(ws, {
                    "type": "agent_status",
                    "projectId": project_id,
                    "data": self.agents.get_full_status(project_id),
                })
        elif msg_type == "unsubscribe" and isinstance(project_id, str):
            subscriptions.discard(project_id)
        elif msg_type == "ping":
            await self._send(ws, {"type": "pong", "data": None})

    async def close(self) -> None:
        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()
