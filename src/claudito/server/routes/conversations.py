"""Conversation history of a project."""

from __future__ import annotations

from aiohttp import web

from ...errors import NotFoundError
from ..common import get_project, ok, parse_body, services
from ..schemas import CreateConversationBody, RenameConversationBody

routes = web.RouteTableDef()


@routes.get("/api/projects/{id}/conversations")
async def list_conversations(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    return web.json_response([c.to_api() for c in svc.conversations.list(project.id)])


@routes.post("/api/projects/{id}/conversations")
async def create_conversation(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    body = await parse_body(request, CreateConversationBody)
    conversation = svc.conversations.create(project.id, label=body.label)
    return web.json_response(conversation.to_api(), status=201)


@routes.get("/api/projects/{id}/conversations/{cid}")
async def get_conversation(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    cid = request.match_info["cid"]
    conversation = svc.conversations.require(project.id, cid)

    limit = request.query.get("limit")
    if limit and limit.isdigit():
        recent = svc.conversations.get_recent(project.id, cid, int(limit))
        conversation = conversation.model_copy(update={"messages": recent})
    return web.json_response(conversation.to_api())


@routes.put("/api/projects/{id}/conversations/{cid}")
async def rename_conversation(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    body = await parse_body(request, RenameConversationBody)
    conversation = svc.conversations.rename(project.id, request.match_info["cid"], body.label)
    return web.json_response(conversation.model_copy(update={"messages": []}).to_api())


@routes.delete("/api/projects/{id}/conversations/{cid}")
async def delete_conversation(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    if not svc.conversations.delete(project.id, request.match_info["cid"]):
        raise NotFoundError("Conversation")
    return ok()
