"""Git operations on a project's working tree."""

from __future__ import annotations

from aiohttp import web

from ...errors import ValidationError
from ..common import get_project, ok, parse_body, query_flag, services
from ..schemas import (
    GitBranchBody,
    GitCheckoutBody,
    GitCommitBody,
    GitPathsBody,
    GitPushBody,
    GitPushTagBody,
    GitRemoteBody,
    GitTagBody,
    check_relative_path,
    is_valid_ref_name,
)

routes = web.RouteTableDef()

PREFIX = "/api/projects/{id}/git"


@routes.get(PREFIX + "/status")
async def status(request: web.Request) -> web.Response:
    project = get_project(request)
    return web.json_response(await services(request).git.get_status(project.path))


@routes.get(PREFIX + "/branches")
async def branches(request: web.Request) -> web.Response:
    project = get_project(request)
    return web.json_response(await services(request).git.get_branches(project.path))


@routes.get(PREFIX + "/diff")
async def diff(request: web.Request) -> web.Response:
    project = get_project(request)
    text = await services(request).git.get_diff(project.path, staged=query_flag(request, "staged"))
    return web.json_response({"diff": text})


@routes.get(PREFIX + "/file-diff")
async def file_diff(request: web.Request) -> web.Response:
    project = get_project(request)
    try:
        path = check_relative_path(request.query.get("path", ""))
    except ValueError as e:
        raise ValidationError(str(e))
    text = await services(request).git.get_file_diff(project.path, path, staged=query_flag(request, "staged"))
    return web.json_response({"filePath": path, "diff": text})


@routes.post(PREFIX + "/stage")
async def stage(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitPathsBody)
    await services(request).git.stage_files(project.path, body.paths)
    return ok()


@routes.post(PREFIX + "/stage-all")
async def stage_all(request: web.Request) -> web.Response:
    project = get_project(request)
    await services(request).git.stage_all(project.path)
    return ok()


@routes.post(PREFIX + "/unstage")
async def unstage(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitPathsBody)
    await services(request).git.unstage_files(project.path, body.paths)
    return ok()


@routes.post(PREFIX + "/unstage-all")
async def unstage_all(request: web.Request) -> web.Response:
    project = get_project(request)
    await services(request).git.unstage_all(project.path)
    return ok()


@routes.post(PREFIX + "/commit")
async def commit(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitCommitBody)
    return web.json_response(await services(request).git.commit(project.path, body.message))


@routes.post(PREFIX + "/branch")
async def create_branch(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitBranchBody)
    await services(request).git.create_branch(project.path, body.name, checkout=body.checkout)
    return ok()


@routes.post(PREFIX + "/checkout")
async def checkout(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitCheckoutBody)
    await services(request).git.checkout(project.path, body.branch)
    return ok()


@routes.post(PREFIX + "/push")
async def push(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitPushBody)
    result = await services(request).git.push(project.path, body.remote, body.branch, body.set_upstream)
    return web.json_response(result)


@routes.post(PREFIX + "/pull")
async def pull(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitRemoteBody)
    return web.json_response(await services(request).git.pull(project.path, body.remote, body.branch))


@routes.post(PREFIX + "/discard")
async def discard(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitPathsBody)
    await services(request).git.discard_changes(project.path, body.paths)
    return ok()


@routes.get(PREFIX + "/tags")
async def list_tags(request: web.Request) -> web.Response:
    project = get_project(request)
    return web.json_response({"tags": await services(request).git.list_tags(project.path)})


@routes.post(PREFIX + "/tags")
async def create_tag(request: web.Request) -> web.Response:
    project = get_project(request)
    body = await parse_body(request, GitTagBody)
    await services(request).git.create_tag(project.path, body.name, body.message)
    return ok()


@routes.post(PREFIX + "/tags/{name}/push")
async def push_tag(request: web.Request) -> web.Response:
    project = get_project(request)
    name = request.match_info["name"]
    if not is_valid_ref_name(name):
        raise ValidationError(f"Invalid tag name: {name}")
    body = await parse_body(request, GitPushTagBody)
    await services(request).git.push_tag(project.path, name, body.remote)
    return ok()
