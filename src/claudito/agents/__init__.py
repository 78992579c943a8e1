"""Claude CLI process management.

Key components:
- ClaudeProcess: runs one ``claude -p`` invocation and parses its stream-json output
- StreamParser: turns stream-json events into AgentMessage objects
- AgentManager: per-project interactive agents, queueing and one-off runs
"""

from .command import ClaudeCommand, build_claude_args, build_user_message, write_mcp_config
from .manager import STATUS_ERROR, STATUS_RUNNING, STATUS_STOPPED, AgentManager, OrphanCleanupResult
from .process import ClaudeProcess, ClaudeRunResult
from .stream import StreamParser

__all__ = [
    "STATUS_ERROR",
    "STATUS_RUNNING",
    "STATUS_STOPPED",
    "AgentManager",
    "ClaudeCommand",
    "ClaudeProcess",
    "ClaudeRunResult",
    "OrphanCleanupResult",
    "StreamParser",
    "build_claude_args",
    "build_user_message",
    "write_mcp_config",
]
