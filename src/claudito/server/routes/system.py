"""Health check, filesystem browser and dev-mode controls."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from aiohttp import web

from ... import __version__
from ...errors import NotFoundError, ValidationError
from ...repositories.storage import write_text_atomic
from ..common import ok, parse_body, services
from ..schemas import FileWriteBody

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()

MAX_READ_BYTES = 2 * 1024 * 1024


@routes.get("/api/health")
async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "version": __version__})


def _resolve(raw: str) -> Path:
    if not raw:
        raise ValidationError("path is required")
    return Path(raw).expanduser().resolve()


@routes.get("/api/fs/browse")
async def browse(request: web.Request) -> web.Response:
    raw = request.query.get("path") or str(Path.home())
    directory = _resolve(raw)
    if not directory.is_dir():
        raise NotFoundError("Directory")

    directories, files = [], []
    try:
        entries = sorted(os.scandir(directory), key=lambda e: e.name.lower())
    except PermissionError:
        raise ValidationError(f"Permission denied: {directory}")

    for entry in entries:
        try:
            if entry.is_dir():
                directories.append({"name": entry.name, "path": entry.path})
            elif entry.is_file():
                files.append({"name": entry.name, "path": entry.path, "size": entry.stat().st_size})
        except OSError:
            continue

    parent = str(directory.parent) if directory.parent != directory else None
    return web.json_response({
        "path": str(directory),
        "parent": parent,
        "directories": directories,
        "files": files,
    })


@routes.get("/api/fs/read")
async def read_file(request: web.Request) -> web.Response:
    path = _resolve(request.query.get("path", ""))
    if not path.is_file():
        raise NotFoundError("File")
    if path.stat().st_size > MAX_READ_BYTES:
        raise ValidationError(f"File is too large to open ({path.stat().st_size} bytes)")
    content = path.read_text(encoding="utf-8", errors="replace")
    return web.json_response({"path": str(path), "content": content})


@routes.put("/api/fs/write")
async def write_file(request: web.Request) -> web.Response:
    body = await parse_body(request, FileWriteBody)
    path = _resolve(body.path)
    if not path.parent.is_dir():
        raise NotFoundError("Directory")
    write_text_atomic(path, body.content)
    logger.info("Wrote %s (%d chars)", path, len(body.content))
    return ok(path=str(path))


@routes.post("/api/dev/shutdown")
async def dev_shutdown(request: web.Request) -> web.Response:
    svc = services(request)
    if not svc.config.dev_mode:
        raise NotFoundError("Route")

    logger.warning("Shutdown requested through the dev API")
    if svc.on_shutdown is not None:
        # let the response go out first
        asyncio.get_running_loop().call_later(0.1, svc.on_shutdown)
    return ok(message="Server shutting down")
