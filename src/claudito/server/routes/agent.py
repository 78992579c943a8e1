"""Interactive agent control, one agent per project."""

from __future__ import annotations

from aiohttp import web

from ...errors import NotFoundError, ValidationError
from ..common import get_project, ok, parse_body, services
from ..schemas import OneOffBody, SendMessageBody, StartAgentBody

routes = web.RouteTableDef()


@routes.post("/api/projects/{id}/agent/start")
async def start_agent(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    body = await parse_body(request, StartAgentBody)

    status = await svc.agents.start_agent(
        project.id,
        body.message,
        permission_mode=body.permission_mode.value if body.permission_mode else None,
        session_id=body.session_id,
        conversation_id=body.conversation_id,
        images=body.images,
    )
    return ok(status=status, agent=svc.agents.get_full_status(project.id))


@routes.post("/api/projects/{id}/agent/send")
async def send_message(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    body = await parse_body(request, SendMessageBody)
    status = await svc.agents.send_input(project.id, body.message, images=body.images)
    return ok(status=status)


@routes.post("/api/projects/{id}/agent/stop")
async def stop_agent(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    await svc.agents.stop_agent(project.id)
    return ok()


@routes.get("/api/projects/{id}/agent/status")
async def agent_status(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    status = svc.agents.get_full_status(project.id)
    status["contextUsage"] = svc.agents.get_context_usage(project.id)
    status["lastCommand"] = svc.agents.get_last_command(project.id)
    return web.json_response(status)


@routes.get("/api/projects/{id}/agent/queue")
async def queued_messages(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    return web.json_response({"messages": svc.agents.get_queued_messages(project.id)})


@routes.delete("/api/projects/{id}/agent/queue/{index}")
async def remove_queued_message(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    try:
        index = int(request.match_info["index"])
    except ValueError:
        raise ValidationError("index must be an integer")
    if not svc.agents.remove_queued_message(project.id, index):
        raise NotFoundError("Queued message")
    return ok()


@routes.delete("/api/projects/{id}/agent/queue")
async def leave_queue(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    return ok(removed=svc.agents.remove_from_queue(project.id))


@routes.post("/api/projects/{id}/agent/one-off")
async def start_one_off(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    body = await parse_body(request, OneOffBody)
    one_off_id = await svc.agents.start_one_off_agent(
        project.id, body.message, permission_mode=body.permission_mode.value, model=body.model
    )
    return ok(oneOffId=one_off_id)


@routes.delete("/api/agents/one-off/{oneOffId}")
async def stop_one_off(request: web.Request) -> web.Response:
    svc = services(request)
    one_off_id = request.match_info["oneOffId"]
    if not svc.agents.is_one_off_running(one_off_id):
        raise NotFoundError("One-off agent")
    await svc.agents.stop_one_off_agent(one_off_id)
    return ok()


@routes.get("/api/agents/resources")
async def resources(request: web.Request) -> web.Response:
    return web.json_response(services(request).agents.get_resource_status())
