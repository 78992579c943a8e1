"""Request bodies accepted by the REST API.

Validators raise ``ValueError`` with the message the client should see; the
error middleware turns a failed ``model_validate`` into a 400 response.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from ..models import AVAILABLE_MODELS, CamelModel, ImageAttachment, McpServer, PermissionMode

SIMPLE_RULE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
RULE_WITH_SPECIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_]*\(.+\)$", re.DOTALL)

# characters forbidden anywhere in a ref name (git check-ref-format)
_BAD_REF_CHARS = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")


def is_valid_permission_rule(rule: str) -> bool:
    """``Tool`` or ``Tool(specifier)``."""
    return bool(rule) and bool(SIMPLE_RULE.match(rule) or RULE_WITH_SPECIFIER.match(rule))


def is_valid_ref_name(name: str) -> bool:
    if not name or name == "@" or len(name) > 255:
        return False
    if _BAD_REF_CHARS.search(name):
        return False
    if name.startswith(("-", "/", ".")) or name.endswith(("/", ".", ".lock")):
        return False
    if ".." in name or "//" in name or "@{" in name or "/." in name:
        return False
    return True


def check_relative_path(path: Any) -> str:
    if not isinstance(path, str) or not path.strip():
        raise ValueError("Paths must be non-empty strings")
    normalized = path.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        raise ValueError(f"Path must be relative to the project: {path}")
    if ".." in normalized.split("/"):
        raise ValueError(f"Path must not leave the project: {path}")
    return path


def _check_ref(value: Any, what: str) -> Any:
    if value is not None and not (isinstance(value, str) and is_valid_ref_name(value)):
        raise ValueError(f"Invalid {what} name: {value}")
    return value


# --- settings -------------------------------------------------------------------

def _validate_rules(rules: Any, field_name: str) -> None:
    if rules is None:
        return
    if not isinstance(rules, list):
        raise ValueError(f"{field_name} must be an array")
    for rule in rules:
        if not isinstance(rule, str):
            raise ValueError(f"{field_name} must contain only strings")
        if not is_valid_permission_rule(rule):
            raise ValueError(f'Invalid permission rule in {field_name}: "{rule}"')


def _validate_prompt_templates(templates: Any) -> None:
    if not isinstance(templates, list):
        raise ValueError("promptTemplates must be an array")

    seen = set()
    for template in templates:
        if not isinstance(template, dict):
            raise ValueError("Each template must be an object")
        template_id = template.get("id")
        if not isinstance(template_id, str) or not template_id.strip():
            raise ValueError("Each template must have a non-empty id")
        if template_id in seen:
            raise ValueError(f"Duplicate template id: {template_id}")
        seen.add(template_id)

        name = template.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Each template must have a non-empty name")
        if not isinstance(template.get("content"), str):
            raise ValueError("Each template must have content")
        if "description" in template and template["description"] is not None \
                and not isinstance(template["description"], str):
            raise ValueError("Template description must be a string")


class SettingsUpdate(CamelModel):
    """Partial settings update; absent fields are left unchanged."""

    max_concurrent_agents: Optional[Any] = None
    default_model: Optional[str] = None
    claude_permissions: Optional[Any] = None
    agent_prompt_template: Optional[str] = None
    send_with_ctrl_enter: Optional[bool] = None
    history_limit: Optional[int] = Field(default=None, ge=1)
    enable_desktop_notifications: Optional[bool] = None
    append_system_prompt: Optional[str] = None
    prompt_templates: Optional[Any] = None
    mcp_servers: Optional[List[McpServer]] = None

    @field_validator("max_concurrent_agents", mode="before")
    @classmethod
    def _positive_agents(cls, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 1:
            raise ValueError("maxConcurrentAgents must be a positive number")
        return int(value)

    @field_validator("default_model")
    @classmethod
    def _known_model(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in {m.id for m in AVAILABLE_MODELS}:
            raise ValueError(f"Invalid model: {value}")
        return value

    @field_validator("claude_permissions", mode="before")
    @classmethod
    def _permission_rules(cls, value: Any) -> Any:
        if value is None:
            return value
        if not isinstance(value, dict):
            raise ValueError("claudePermissions must be an object")
        for field_name in ("allowRules", "denyRules", "askRules"):
            _validate_rules(value.get(field_name), field_name)
        if "defaultMode" in value:
            try:
                PermissionMode(value["defaultMode"])
            except ValueError:
                raise ValueError(f"Invalid defaultMode: {value['defaultMode']}")
        return value

    @field_validator("prompt_templates", mode="before")
    @classmethod
    def _templates(cls, value: Any) -> Any:
        if value is not None:
            _validate_prompt_templates(value)
        return value

    def changes(self) -> Dict[str, Any]:
        """Fields the client sent, keyed by attribute name."""
        return {name: getattr(self, name) for name in self.model_fields_set}


# --- projects, agents, conversations -----------------------------------------

class CreateProjectBody(CamelModel):
    name: str = Field(min_length=1)
    path: str = Field(min_length=1)
    create: bool = False


class UpdateProjectBody(CamelModel):
    name: str = Field(min_length=1)


class StartAgentBody(CamelModel):
    message: str = Field(min_length=1)
    permission_mode: Optional[PermissionMode] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    images: List[ImageAttachment] = Field(default_factory=list)


class SendMessageBody(CamelModel):
    message: str = Field(min_length=1)
    images: List[ImageAttachment] = Field(default_factory=list)


class OneOffBody(CamelModel):
    message: str = Field(min_length=1)
    permission_mode: PermissionMode = PermissionMode.PLAN
    model: Optional[str] = None


class CreateConversationBody(CamelModel):
    label: Optional[str] = None


class RenameConversationBody(CamelModel):
    label: str = Field(min_length=1)


class ShellInputBody(CamelModel):
    data: str


class FileWriteBody(CamelModel):
    path: str = Field(min_length=1)
    content: str


class OptimizeFileBody(CamelModel):
    file_path: str = Field(min_length=1)
    content: str = Field(min_length=1)
    optimization_goals: Optional[List[str]] = None


# --- git ------------------------------------------------------------------------

class GitPathsBody(CamelModel):
    paths: List[str] = Field(min_length=1)

    @field_validator("paths", mode="before")
    @classmethod
    def _relative(cls, value: Any) -> Any:
        if not isinstance(value, list) or not value:
            raise ValueError("paths must be a non-empty array")
        return [check_relative_path(p) for p in value]


class GitCommitBody(CamelModel):
    message: str

    @field_validator("message")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Commit message is required")
        return value


class GitBranchBody(CamelModel):
    name: str
    checkout: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _ref(cls, value: Any) -> Any:
        return _check_ref(value if value is not None else "", "branch")


class GitCheckoutBody(CamelModel):
    branch: str

    @field_validator("branch", mode="before")
    @classmethod
    def _ref(cls, value: Any) -> Any:
        return _check_ref(value if value is not None else "", "branch")


class GitRemoteBody(CamelModel):
    remote: str = "origin"
    branch: Optional[str] = None

    @field_validator("remote", mode="before")
    @classmethod
    def _remote(cls, value: Any) -> Any:
        return _check_ref(value, "remote")

    @field_validator("branch", mode="before")
    @classmethod
    def _branch(cls, value: Any) -> Any:
        return _check_ref(value, "branch")


class GitPushBody(GitRemoteBody):
    set_upstream: bool = False


class GitTagBody(CamelModel):
    name: str
    message: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _ref(cls, value: Any) -> Any:
        return _check_ref(value if value is not None else "", "tag")


class GitPushTagBody(CamelModel):
    remote: str = "origin"

    @field_validator("remote", mode="before")
    @classmethod
    def _remote(cls, value: Any) -> Any:
        return _check_ref(value, "remote")
