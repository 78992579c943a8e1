"""File optimization runs; results arrive over the WebSocket."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from ...errors import ConflictError
from ..common import get_project, ok, parse_body, services
from ..schemas import OptimizeFileBody

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()

_background: set = set()


@routes.post("/api/projects/{id}/optimize-file")
async def optimize_file(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    body = await parse_body(request, OptimizeFileBody)

    if svc.optimization.is_optimizing(project.id):
        raise ConflictError("Optimization is already in progress for this project")

    task = asyncio.ensure_future(
        svc.optimization.optimize_file(project.id, body.file_path, body.content, body.optimization_goals)
    )
    _background.add(task)
    task.add_done_callback(_finished)
    return ok(message="Optimization started")


def _finished(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    if task.exception() is not None:
        logger.error("Optimization task failed", exc_info=task.exception())


@routes.get("/api/projects/{id}/optimization-status")
async def optimization_status(request: web.Request) -> web.Response:
    svc = services(request)
    project = get_project(request)
    return web.json_response({"isOptimizing": svc.optimization.is_optimizing(project.id)})
