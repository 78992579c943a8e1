"""aiohttp application factory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import pydantic
from aiohttp import web

from ..agents import AgentManager
from ..agents.process import default_process_factory
from ..config import AppConfig
from ..errors import ClauditoError
from ..ralph_loop import RalphLoopService
from ..repositories import ConversationRepository, ProjectRepository, RalphLoopRepository, SettingsRepository
from ..services import GitService, OptimizationService, ShellService
from .common import SERVICES, Services
from .routes import ROUTE_TABLES
from .websocket import WebSocketHub

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"

HUB = web.AppKey("hub", WebSocketHub)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _pydantic_message(error: pydantic.ValidationError) -> str:
    first = error.errors()[0]
    message = first.get("msg", "Invalid request")
    if message.startswith("Value error, "):
        return message[len("Value error, "):]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {message}" if location else message


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ClauditoError as e:
        if e.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e.message)
        return web.json_response({"error": e.message}, status=e.status)
    except pydantic.ValidationError as e:
        return web.json_response({"error": _pydantic_message(e)}, status=400)
    except Exception:
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        return web.json_response({"error": "Internal server error"}, status=500)


def build_services(
    config: AppConfig,
    *,
    process_factory: Callable[..., Any] = default_process_factory,
) -> Services:
    """Wire repositories and services for ``config``."""
    config.data_dir.mkdir(parents=True, exist_ok=True)

    projects = ProjectRepository(config.data_dir)
    settings = SettingsRepository(config.data_dir)
    conversations = ConversationRepository(config.data_dir)

    agents = AgentManager(
        projects,
        settings,
        conversations,
        pids_file=config.pids_file,
        max_concurrent=config.max_concurrent_agents,
        claude_path=config.claude_path,
        process_factory=process_factory,
    )
    ralph_loops = RalphLoopService(
        RalphLoopRepository(projects.get_project_path),
        projects.get_project_path,
        claude_path=config.claude_path,
    )

    svc = Services(
        config=config,
        projects=projects,
        settings=settings,
        conversations=conversations,
        agents=agents,
        ralph_loops=ralph_loops,
        git=GitService(),
        shell=ShellService(),
        optimization=OptimizationService(agents),
    )

    async def apply_settings(event: dict) -> None:
        if "maxConcurrentAgents" in event:
            await agents.set_max_concurrent_agents(event["maxConcurrentAgents"])

    svc.settings_listeners.append(apply_settings)
    return svc


async def _on_startup(app: web.Application) -> None:
    svc = app[SERVICES]

    if svc.settings.file.exists():
        await svc.agents.set_max_concurrent_agents(svc.settings.get().max_concurrent_agents)

    result = await svc.agents.cleanup_orphan_processes()
    if result.found_count:
        logger.info(
            "Found %d tracked PID(s) from a previous run: killed %s, skipped %s, failed %s",
            result.found_count, result.killed_pids, result.skipped_pids, result.failed_pids,
        )


async def _on_shutdown(app: web.Application) -> None:
    await app[HUB].close()


async def _on_cleanup(app: web.Application) -> None:
    svc = app[SERVICES]
    await svc.ralph_loops.shutdown()
    await svc.agents.stop_all_agents()
    await svc.shell.kill_all()
    logger.info("All agents, loops and shells stopped")


def create_app(
    config: AppConfig,
    services: Optional[Services] = None,
    *,
    static_dir: Optional[Path] = None,
) -> web.Application:
    """Build the application.

    Args:
        config: Server configuration
        services: Pre-built services (tests inject fakes here)
        static_dir: Directory served at ``/``; defaults to the packaged UI
    """
    svc = services or build_services(config)
    hub = WebSocketHub()
    hub.attach(agents=svc.agents, ralph_loops=svc.ralph_loops, shell=svc.shell, optimization=svc.optimization)

    app = web.Application(middlewares=[error_middleware])
    app[SERVICES] = svc
    app[HUB] = hub

    for table in ROUTE_TABLES:
        app.add_routes(table)
    app.router.add_get("/ws", hub.handle)

    static = static_dir or STATIC_DIR
    if static.is_dir():
        async def index(request: web.Request) -> web.FileResponse:
            return web.FileResponse(static / "index.html")

        app.router.add_get("/", index)
        app.router.add_static("/", static, show_index=False)

    app.on_startup.append(_on_startup)
    app.on_shutdown.append(_on_shutdown)
    app.on_cleanup.append(_on_cleanup)
    return app
