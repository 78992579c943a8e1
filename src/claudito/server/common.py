"""Shared plumbing for the route modules."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Type, TypeVar

from aiohttp import web
from pydantic import BaseModel

from ..agents import AgentManager
from ..config import AppConfig
from ..errors import ValidationError
from ..models import Project
from ..ralph_loop import RalphLoopService
from ..repositories import ConversationRepository, ProjectRepository, SettingsRepository
from ..services import GitService, OptimizationService, ShellService

ModelT = TypeVar("ModelT", bound=BaseModel)

SettingsListener = Callable[[dict], Any]


@dataclass
class Services:
    """Everything a request handler may need, attached to the app."""
    config: AppConfig
    projects: ProjectRepository
    settings: SettingsRepository
    conversations: ConversationRepository
    agents: AgentManager
    ralph_loops: RalphLoopService
    git: GitService
    shell: ShellService
    optimization: OptimizationService
    settings_listeners: List[SettingsListener] = field(default_factory=list)
    on_shutdown: Optional[Callable[[], Any]] = None


SERVICES = web.AppKey("services", Services)


def services(request: web.Request) -> Services:
    return request.app[SERVICES]


async def read_json_body(request: web.Request) -> Any:
    if not request.can_read_body:
        return {}
    try:
        return await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be valid JSON")


async def parse_body(request: web.Request, model: Type[ModelT]) -> ModelT:
    """Validate the JSON body against ``model``.

    pydantic errors propagate and are answered with 400 by the middleware.
    """
    data = await read_json_body(request)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return model.model_validate(data)


def get_project(request: web.Request) -> Project:
    return services(request).projects.get(request.match_info["id"])


def query_flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in ("1", "true", "yes")


def ok(**extra: Any) -> web.Response:
    return web.json_response({"success": True, **extra})
