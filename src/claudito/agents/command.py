"""Building Claude CLI command lines."""

from __future__ import annotations

import json
import re
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..models import ClaudePermissions, ImageAttachment, McpServer

MCP_DIR_NAME = "claudito-mcp"


@dataclass
class ClaudeCommand:
    """Options for a single ``claude -p`` invocation."""
    prompt: str
    model: Optional[str] = None
    session_id: Optional[str] = None
    permission_mode: Optional[str] = None
    permissions: Optional[ClaudePermissions] = None
    append_system_prompt: Optional[str] = None
    mcp_config_path: Optional[str] = None
    max_turns: Optional[int] = None
    extra_args: List[str] = field(default_factory=list)


def build_user_message(text: str, images: Optional[Sequence[ImageAttachment]] = None) -> str:
    """Prefix the message with inline image blocks the CLI can read from the prompt."""
    if not images:
        return text
    blocks = [f'<image media_type="{image.media_type}">{image.data}</image>' for image in images]
    return "\n".join(blocks) + "\n\n" + text


def build_claude_args(command: ClaudeCommand, claude_path: str = "claude") -> List[str]:
    """Build the argv list for the CLI.

    The prompt is passed with ``-p`` and output is always stream-json so the
    caller can parse it line by line.
    """
    args = [
        claude_path,
        "-p", command.prompt,
        "--output-format", "stream-json",
        "--verbose",
    ]

    if command.model:
        args.extend(["--model", command.model])
    if command.session_id:
        args.extend(["--resume", command.session_id])

    permissions = command.permissions
    mode = command.permission_mode or (permissions.default_mode.value if permissions else None)
    if mode:
        args.extend(["--permission-mode", mode])
    if permissions is not None:
        if permissions.allow_rules:
            args.extend(["--allowedTools", ",".join(permissions.allow_rules)])
        if permissions.deny_rules:
            args.extend(["--disallowedTools", ",".join(permissions.deny_rules)])
        if permissions.ask_rules:
            # No dedicated flag exists for ask rules; pass them as inline settings
            args.extend(["--settings", json.dumps({"permissions": {"ask": permissions.ask_rules}})])

    if command.append_system_prompt:
        args.extend(["--append-system-prompt", command.append_system_prompt])
    if command.mcp_config_path:
        args.extend(["--mcp-config", command.mcp_config_path])
    if command.max_turns:
        args.extend(["--max-turns", str(command.max_turns)])

    args.extend(command.extra_args)
    return args


def _server_entry(server: McpServer) -> Dict[str, Any]:
    if server.type == "http":
        entry: Dict[str, Any] = {"type": "http", "url": server.url}
        if server.headers:
            entry["headers"] = dict(server.headers)
        return entry

    entry = {"command": server.command}
    if server.args:
        entry["args"] = list(server.args)
    if server.env:
        entry["env"] = dict(server.env)
    return entry


def write_mcp_config(
    servers: Sequence[McpServer],
    project_id: str,
    tmp_dir: Optional[Path] = None,
) -> Optional[str]:
    """Write an ``--mcp-config`` file for the given servers.

    Every server passed in is included; callers choose which ones are
    enabled. Returns the file path, or None when there are no servers.
    """
    if not servers:
        return None

    directory = Path(tmp_dir or tempfile.gettempdir()) / MCP_DIR_NAME
    directory.mkdir(parents=True, exist_ok=True)

    safe_project = re.sub(r"[^A-Za-z0-9_-]", "_", project_id)
    path = directory / f"mcp-{safe_project}-{uuid.uuid4().hex[:8]}.json"
    config = {"mcpServers": {server.name: _server_entry(server) for server in servers}}
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    return str(path)
