"""Project registry."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

from aiohttp import web

from ...errors import NotFoundError, ValidationError
from ...models import Project
from ..common import Services, ok, parse_body, services
from ..schemas import CreateProjectBody, UpdateProjectBody

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


def _with_status(svc: Services, project: Project) -> Dict[str, Any]:
    data = project.to_api()
    data["agentStatus"] = svc.agents.get_agent_status(project.id)
    data["isQueued"] = svc.agents.is_queued(project.id)
    return data


@routes.get("/api/projects")
async def list_projects(request: web.Request) -> web.Response:
    svc = services(request)
    return web.json_response([_with_status(svc, p) for p in svc.projects.find_all()])


@routes.post("/api/projects")
async def create_project(request: web.Request) -> web.Response:
    svc = services(request)
    body = await parse_body(request, CreateProjectBody)

    path = Path(body.path).expanduser()
    if body.create:
        path.mkdir(parents=True, exist_ok=True)
    elif not path.exists():
        raise NotFoundError("Directory")
    if not path.is_dir():
        raise ValidationError(f"Not a directory: {path}")

    project = svc.projects.create(body.name, path)
    logger.info("Registered project %s at %s", project.id, project.path)
    return web.json_response(_with_status(svc, project), status=201)


@routes.get("/api/projects/{id}")
async def get_project(request: web.Request) -> web.Response:
    svc = services(request)
    return web.json_response(_with_status(svc, svc.projects.get(request.match_info["id"])))


@routes.put("/api/projects/{id}")
async def rename_project(request: web.Request) -> web.Response:
    svc = services(request)
    body = await parse_body(request, UpdateProjectBody)
    project = svc.projects.update(request.match_info["id"], name=body.name)
    return web.json_response(_with_status(svc, project))


@routes.delete("/api/projects/{id}")
async def delete_project(request: web.Request) -> web.Response:
    svc = services(request)
    project = svc.projects.get(request.match_info["id"])

    await svc.agents.stop_agent(project.id)
    await svc.ralph_loops.stop_project(project.id)
    for session in svc.shell.list(project.id):
        await svc.shell.kill(session.id)
    svc.conversations.delete_project(project.id)
    svc.projects.delete(project.id)
    logger.info("Removed project %s", project.id)
    return ok()
