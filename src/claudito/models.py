"""Pydantic models shared by the repositories, services and API.

All models serialize to camelCase JSON (the wire and on-disk format) and
accept either camelCase or snake_case input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True)

    def to_api(self, **kwargs: Any) -> Dict[str, Any]:
        """Dump to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, **kwargs)


# --- Projects ---------------------------------------------------------------

class Project(CamelModel):
    id: str
    name: str
    path: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# --- Settings ---------------------------------------------------------------

class PermissionMode(str, Enum):
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"


class ClaudePermissions(CamelModel):
    allow_rules: List[str] = Field(default_factory=list)
    deny_rules: List[str] = Field(default_factory=list)
    ask_rules: List[str] = Field(default_factory=list)
    default_mode: PermissionMode = PermissionMode.ACCEPT_EDITS


class PromptTemplate(CamelModel):
    id: str
    name: str
    content: str
    description: Optional[str] = None


class McpServer(CamelModel):
    """An MCP server passed to the CLI through ``--mcp-config``."""

    id: str
    name: str
    enabled: bool = True
    type: str = "stdio"  # "stdio" or "http"
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


DEFAULT_AGENT_PROMPT_TEMPLATE = (
    "You are working on the project located at {{ project_path }}.\n"
    "Complete the following request:\n\n{{ message }}"
)


class Settings(CamelModel):
    max_concurrent_agents: int = 3
    default_model: str = "claude-sonnet-4-20250514"
    claude_permissions: ClaudePermissions = Field(default_factory=ClaudePermissions)
    agent_prompt_template: str = DEFAULT_AGENT_PROMPT_TEMPLATE
    send_with_ctrl_enter: bool = True
    history_limit: int = 25
    enable_desktop_notifications: bool = True
    append_system_prompt: str = ""
    prompt_templates: List[PromptTemplate] = Field(default_factory=list)
    mcp_servers: List[McpServer] = Field(default_factory=list)


class ModelInfo(CamelModel):
    id: str
    display_name: str


AVAILABLE_MODELS: List[ModelInfo] = [
    ModelInfo(id="claude-sonnet-4-20250514", display_name="Claude Sonnet 4"),
    ModelInfo(id="claude-opus-4-20250514", display_name="Claude Opus 4"),
    ModelInfo(id="claude-3-5-haiku-20241022", display_name="Claude 3.5 Haiku"),
]


# --- Agent messages and conversations ---------------------------------------

class MessageType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    USER = "user"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"


class ToolInfo(CamelModel):
    name: str
    id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)


class AgentMessage(CamelModel):
    type: MessageType
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    tool_info: Optional[ToolInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ImageAttachment(CamelModel):
    """Base64 image sent along with a user message."""
    data: str = Field(min_length=1)
    media_type: str = Field(default="image/png", pattern=r"^image/[\w.+-]+$")


class Conversation(CamelModel):
    id: str
    project_id: str
    label: str
    session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    messages: List[AgentMessage] = Field(default_factory=list)


# --- Ralph Loop -------------------------------------------------------------

class RalphLoopStatus(str, Enum):
    IDLE = "idle"
    WORKER_RUNNING = "worker_running"
    REVIEWER_RUNNING = "reviewer_running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class RalphLoopFinalStatus(str, Enum):
    APPROVED = "approved"
    MAX_TURNS_REACHED = "max_turns_reached"
    CRITICAL_FAILURE = "critical_failure"


class ReviewerDecision(str, Enum):
    APPROVE = "approve"
    NEEDS_CHANGES = "needs_changes"
    REJECT = "reject"


class RalphLoopConfig(CamelModel):
    task_description: str = Field(min_length=1)
    max_turns: int = Field(default=5, ge=1, le=100)
    worker_model: Optional[str] = None
    reviewer_model: Optional[str] = None


class WorkerSummary(CamelModel):
    iteration_number: int
    timestamp: datetime = Field(default_factory=utc_now)
    worker_output: str = ""
    files_modified: List[str] = Field(default_factory=list)
    tokens_used: int = 0
    duration_ms: int = 0


class ReviewerFeedback(CamelModel):
    iteration_number: int
    timestamp: datetime = Field(default_factory=utc_now)
    decision: ReviewerDecision
    feedback: str = ""
    specific_issues: List[str] = Field(default_factory=list)
    suggested_improvements: List[str] = Field(default_factory=list)


class ReviewerVerdict(CamelModel):
    """The JSON object a reviewer run is asked to print."""

    decision: ReviewerDecision
    feedback: str = ""
    specific_issues: List[str] = Field(default_factory=list)
    suggested_improvements: List[str] = Field(default_factory=list)

    @field_validator("decision", mode="before")
    @classmethod
    def _normalize_decision(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_").replace(" ", "_")
        return value


class RalphLoopState(CamelModel):
    task_id: str
    project_id: str
    config: RalphLoopConfig
    current_iteration: int = 0
    status: RalphLoopStatus = RalphLoopStatus.IDLE
    summaries: List[WorkerSummary] = Field(default_factory=list)
    feedback: List[ReviewerFeedback] = Field(default_factory=list)
    final_status: Optional[RalphLoopFinalStatus] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def latest_feedback(self) -> Optional[ReviewerFeedback]:
        return self.feedback[-1] if self.feedback else None
