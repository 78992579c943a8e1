"""Settings and model catalogue."""

from __future__ import annotations

import inspect
import logging

from aiohttp import web

from ...models import AVAILABLE_MODELS
from ..common import parse_body, services
from ..schemas import SettingsUpdate

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.get("/api/settings")
async def get_settings(request: web.Request) -> web.Response:
    return web.json_response(services(request).settings.get().to_api())


@routes.put("/api/settings")
async def update_settings(request: web.Request) -> web.Response:
    svc = services(request)
    body = await parse_body(request, SettingsUpdate)
    changes = body.changes()

    current = svc.settings.get()
    prompt_changed = (
        body.append_system_prompt is not None
        and body.append_system_prompt != current.append_system_prompt
    )

    updated = svc.settings.update(**changes)

    event = {}
    if body.max_concurrent_agents is not None:
        event["maxConcurrentAgents"] = body.max_concurrent_agents
    if prompt_changed:
        event["appendSystemPromptChanged"] = True
    if event:
        logger.info("Settings changed: %s", ", ".join(event))
        for listener in svc.settings_listeners:
            result = listener(event)
            if inspect.isawaitable(result):
                await result

    return web.json_response(updated.to_api())


@routes.get("/api/settings/models")
async def list_models(request: web.Request) -> web.Response:
    return web.json_response({"models": [m.to_api() for m in AVAILABLE_MODELS]})
