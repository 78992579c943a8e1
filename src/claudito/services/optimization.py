"""Rewrite instruction files (CLAUDE.md and friends) with a one-off agent."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any, Dict, List, Optional

from ..agents.manager import STATUS_ERROR, AgentManager
from ..errors import ConflictError
from ..events import EventEmitter
from ..models import AgentMessage, MessageType
from ..templates import render_template

logger = logging.getLogger(__name__)

OPTIMIZATION_TIMEOUT_SECONDS = 120.0

DEFAULT_GOALS = [
    "Remove any duplicated rules or instructions",
    "Consolidate similar rules into more concise versions",
    "Remove rules that contradict Claude's core values or capabilities",
    "Organize rules by category for better readability",
    "Remove vague or unclear instructions",
    "Preserve all unique and valuable content",
    "Maintain the original intent while improving clarity",
]

CODE_BLOCK = re.compile(r"```(?:markdown)?\n(.*?)```", re.DOTALL)


class OptimizationFailed(Exception):
    pass


def parse_optimization_output(content: str) -> Optional[Dict[str, str]]:
    """Extract the optimized file and change summary from agent output.

    Returns:
        ``{"optimizedContent", "summary"}`` once both sections are complete,
        otherwise None.
    """
    if "OPTIMIZED_CONTENT:" not in content or "SUMMARY:" not in content:
        return None

    after_marker = content.split("OPTIMIZED_CONTENT:", 1)[1]
    match = CODE_BLOCK.search(after_marker)
    if not match or not match.group(1):
        return None

    summary = content.split("SUMMARY:", 1)[1].strip()
    if not summary:
        return None
    return {"optimizedContent": match.group(1).strip(), "summary": summary}


def line_diff(original: str, optimized: str) -> str:
    """Positional line diff: ``- old`` / ``+ new`` for every differing line."""
    original_lines = original.split("\n")
    optimized_lines = optimized.split("\n")
    out: List[str] = []

    for i in range(max(len(original_lines), len(optimized_lines))):
        old = original_lines[i] if i < len(original_lines) else ""
        new = optimized_lines[i] if i < len(optimized_lines) else ""
        if old == new:
            continue
        if old:
            out.append(f"- {old}")
        if new:
            out.append(f"+ {new}")

    return "".join(line + "\n" for line in out)


class OptimizationService(EventEmitter):
    """Events: optimizationProgress(payload), optimizationComplete(payload)."""

    def __init__(self, agent_manager: AgentManager, timeout: float = OPTIMIZATION_TIMEOUT_SECONDS):
        super().__init__()
        self.agent_manager = agent_manager
        self.timeout = timeout
        self._active: Dict[str, Optional[str]] = {}

    def is_optimizing(self, project_id: str) -> bool:
        return project_id in self._active

    def active_optimizations(self) -> List[str]:
        return list(self._active)

    def build_prompt(self, file_path: str, content: str, goals: Optional[List[str]] = None) -> str:
        return render_template("optimization.jinja", {
            "file_name": os.path.basename(file_path),
            "goals": DEFAULT_GOALS + list(goals or []),
            "content": content,
        })

    async def optimize_file(
        self,
        project_id: str,
        file_path: str,
        content: str,
        goals: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        if self.is_optimizing(project_id):
            raise ConflictError("Optimization is already in progress for this project")
        self._active[project_id] = None

        try:
            self._progress(project_id, "starting", "Starting optimization agent...", 0)
            result = await self._run(project_id, content, self.build_prompt(file_path, content, goals))
            self._progress(project_id, "completed", "Optimization completed successfully", 100)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error("Optimization failed for project %s: %s", project_id, message)
            self._progress(project_id, "failed", message)
            result = {"success": False, "originalContent": content, "error": message}
        finally:
            one_off_id = self._active.pop(project_id, None)
            if one_off_id is not None:
                await self.agent_manager.stop_one_off_agent(one_off_id)

        self.emit("optimizationComplete", {"projectId": project_id, "filePath": file_path, "result": result})
        return result

    async def _run(self, project_id: str, original: str, prompt: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()
        collected: List[str] = []
        state: Dict[str, Optional[str]] = {"id": None}

        def on_message(one_off_id: str, message: AgentMessage) -> None:
            if one_off_id != state["id"] or done.done() or message.type != MessageType.STDOUT:
                return
            self._progress(project_id, "processing", "Processing optimization response...", 50)
            collected.append(message.content)
            parsed = parse_optimization_output("\n".join(collected))
            if parsed is not None:
                done.set_result(parsed)

        def on_status(one_off_id: str, status: str) -> None:
            if one_off_id != state["id"] or done.done():
                return
            if status == STATUS_ERROR:
                done.set_exception(OptimizationFailed("Agent encountered an error during optimization"))
            elif status != "running":
                parsed = parse_optimization_output("\n".join(collected))
                if parsed is None:
                    done.set_exception(OptimizationFailed("Agent finished without optimized content"))
                else:
                    done.set_result(parsed)

        self.agent_manager.on("oneOffMessage", on_message)
        self.agent_manager.on("oneOffStatus", on_status)
        try:
            one_off_id = await self.agent_manager.start_one_off_agent(project_id, prompt, permission_mode="plan")
            state["id"] = one_off_id
            self._active[project_id] = one_off_id
            self._progress(project_id, "running", "Optimization agent is running...", 10)
            try:
                parsed = await asyncio.wait_for(done, timeout=self.timeout)
            except asyncio.TimeoutError:
                raise OptimizationFailed("Optimization timed out")
        finally:
            self.agent_manager.off("oneOffMessage", on_message)
            self.agent_manager.off("oneOffStatus", on_status)

        return {
            "success": True,
            "originalContent": original,
            "optimizedContent": parsed["optimizedContent"],
            "summary": parsed["summary"],
            "diff": line_diff(original, parsed["optimizedContent"]),
        }

    def _progress(self, project_id: str, status: str, message: str, percentage: Optional[int] = None) -> None:
        payload: Dict[str, Any] = {"projectId": project_id, "status": status, "message": message}
        if percentage is not None:
            payload["percentage"] = percentage
        self.emit("optimizationProgress", payload)
