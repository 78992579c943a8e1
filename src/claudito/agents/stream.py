"""Parsing of the Claude CLI ``--output-format stream-json`` event stream.

Each stdout line of ``claude -p ... --output-format stream-json --verbose`` is
one JSON event. ``StreamParser`` turns those events into ``AgentMessage``
objects and keeps the run-level facts the callers need afterwards: the
session id, the final result text, token usage and the files touched by
editing tools.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from ..models import AgentMessage, MessageType, ToolInfo

logger = logging.getLogger(__name__)

FILE_EDIT_TOOLS = ("Edit", "Write", "MultiEdit", "NotebookEdit")
CONTEXT_WINDOW_TOKENS = 200_000


def files_from_tool_use(name: str, tool_input: Dict[str, Any]) -> List[str]:
    """Return the file paths an editing tool call writes to."""
    if name not in FILE_EDIT_TOOLS:
        return []
    path = tool_input.get("file_path") or tool_input.get("notebook_path")
    return [path] if isinstance(path, str) and path else []


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "\n".join(parts)
    return "" if content is None else json.dumps(content)


class StreamParser:
    """Stateful parser for one CLI run."""

    def __init__(self) -> None:
        self.session_id: Optional[str] = None
        self.result_text: Optional[str] = None
        self.is_error = False
        self.cost_usd: float = 0.0
        self.usage: Dict[str, int] = {}
        self.last_turn_usage: Dict[str, int] = {}
        self.files_modified: List[str] = []
        self._text_parts: List[str] = []

    @property
    def text(self) -> str:
        """All assistant text of the run, falling back to the result text."""
        if self._text_parts:
            return "\n".join(self._text_parts)
        return self.result_text or ""

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("input_tokens", 0)) + int(self.usage.get("output_tokens", 0))

    def context_usage(self) -> Optional[Dict[str, Any]]:
        """Tokens currently held in the context window, from the latest turn."""
        if not self.last_turn_usage:
            return None
        used = sum(
            int(self.last_turn_usage.get(key, 0))
            for key in ("input_tokens", "cache_read_input_tokens", "cache_creation_input_tokens")
        )
        return {
            "usedTokens": used,
            "maxTokens": CONTEXT_WINDOW_TOKENS,
            "percentage": round(used * 100 / CONTEXT_WINDOW_TOKENS, 1),
        }

    def feed(self, line: str) -> List[AgentMessage]:
        """Parse one output line into zero or more messages."""
        line = line.strip()
        if not line:
            return []

        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            self._text_parts.append(line)
            return [AgentMessage(type=MessageType.STDOUT, content=line)]

        if not isinstance(event, dict):
            return []

        if event.get("session_id"):
            self.session_id = event["session_id"]

        handler = getattr(self, f"_on_{event.get('type', '')}", None)
        if handler is None:
            logger.debug("Ignoring stream event %r", event.get("type"))
            return []
        return handler(event)

    def _on_system(self, event: Dict[str, Any]) -> List[AgentMessage]:
        if event.get("subtype") != "init":
            return []
        model = event.get("model", "unknown model")
        return [AgentMessage(
            type=MessageType.SYSTEM,
            content=f"Session started ({model})",
            metadata={"sessionId": event.get("session_id")},
        )]

    def _on_assistant(self, event: Dict[str, Any]) -> List[AgentMessage]:
        message = event.get("message") or {}
        if isinstance(message.get("usage"), dict):
            self.last_turn_usage = message["usage"]

        messages = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text", "").strip():
                self._text_parts.append(block["text"])
                messages.append(AgentMessage(type=MessageType.STDOUT, content=block["text"]))
            elif block_type == "tool_use":
                name = block.get("name", "unknown")
                tool_input = block.get("input") or {}
                for path in files_from_tool_use(name, tool_input):
                    if path not in self.files_modified:
                        self.files_modified.append(path)
                messages.append(AgentMessage(
                    type=MessageType.TOOL_USE,
                    content=name,
                    tool_info=ToolInfo(name=name, id=block.get("id"), input=tool_input),
                ))
        return messages

    def _on_user(self, event: Dict[str, Any]) -> List[AgentMessage]:
        messages = []
        for block in (event.get("message") or {}).get("content") or []:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                messages.append(AgentMessage(
                    type=MessageType.TOOL_RESULT,
                    content=_tool_result_text(block.get("content")),
                    metadata={"toolUseId": block.get("tool_use_id"), "isError": bool(block.get("is_error"))},
                ))
        return messages

    def _on_result(self, event: Dict[str, Any]) -> List[AgentMessage]:
        self.is_error = bool(event.get("is_error"))
        if isinstance(event.get("result"), str):
            self.result_text = event["result"]
        if isinstance(event.get("usage"), dict):
            self.usage = event["usage"]
        self.cost_usd = float(event.get("total_cost_usd") or event.get("cost_usd") or 0.0)

        turns = event.get("num_turns", 0)
        duration = (event.get("duration_ms") or 0) / 1000
        return [AgentMessage(
            type=MessageType.RESULT,
            content=f"Completed in {turns} turns, {duration:.0f}s, ${self.cost_usd:.4f}",
            metadata={
                "sessionId": self.session_id,
                "isError": self.is_error,
                "numTurns": turns,
                "costUsd": self.cost_usd,
            },
        )]
