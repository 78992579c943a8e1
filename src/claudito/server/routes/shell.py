"""Shell sessions in a project directory."""

from __future__ import annotations

from aiohttp import web

from ...errors import NotFoundError
from ...services.shell import project_id_from_session
from ..common import get_project, ok, parse_body, services
from ..schemas import ShellInputBody

routes = web.RouteTableDef()


def _session_of_project(request: web.Request) -> str:
    project = get_project(request)
    session_id = request.match_info["sid"]
    if project_id_from_session(session_id) != project.id:
        raise NotFoundError("Shell session")
    return session_id


@routes.get("/api/projects/{id}/shell")
async def list_sessions(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    return web.json_response({"sessions": [s.to_api() for s in svc.shell.list(project.id)]})


@routes.post("/api/projects/{id}/shell")
async def create_session(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    session_id = await svc.shell.create(project.id, project.path)
    return web.json_response({"sessionId": session_id}, status=201)


@routes.post("/api/projects/{id}/shell/{sid}/input")
async def send_input(request: web.Request) -> web.Response:
    svc = services(request)
    session_id = _session_of_project(request)
    body = await parse_body(request, ShellInputBody)
    await svc.shell.write(session_id, body.data)
    return ok()


@routes.delete("/api/projects/{id}/shell/{sid}")
async def kill_session(request: web.Request) -> web.Response:
    svc = services(request)
    await svc.shell.kill(_session_of_project(request))
    return ok()
