"""Ralph Loop lifecycle endpoints."""

from __future__ import annotations

from aiohttp import web

from ...errors import NotFoundError
from ...models import RalphLoopConfig
from ..common import get_project, ok, parse_body, services

routes = web.RouteTableDef()


@routes.post("/api/projects/{id}/ralph-loop/start")
async def start_loop(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    config = await parse_body(request, RalphLoopConfig)
    state = await svc.ralph_loops.start(project.id, config)
    return web.json_response(state.to_api(), status=201)


@routes.get("/api/projects/{id}/ralph-loop")
async def list_loops(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    return web.json_response([s.to_api() for s in await svc.ralph_loops.list_by_project(project.id)])


@routes.get("/api/projects/{id}/ralph-loop/{taskId}")
async def get_loop(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    state = await svc.ralph_loops.get_state(project.id, request.match_info["taskId"])
    if state is None:
        raise NotFoundError("Ralph Loop")
    return web.json_response(state.to_api())


@routes.post("/api/projects/{id}/ralph-loop/{taskId}/stop")
async def stop_loop(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    await svc.ralph_loops.stop(project.id, request.match_info["taskId"])
    return ok()


@routes.post("/api/projects/{id}/ralph-loop/{taskId}/pause")
async def pause_loop(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    await svc.ralph_loops.pause(project.id, request.match_info["taskId"])
    return ok()


@routes.post("/api/projects/{id}/ralph-loop/{taskId}/resume")
async def resume_loop(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    await svc.ralph_loops.resume(project.id, request.match_info["taskId"])
    return ok()


@routes.delete("/api/projects/{id}/ralph-loop/{taskId}")
async def delete_loop(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    await svc.ralph_loops.delete(project.id, request.match_info["taskId"])
    return ok()
