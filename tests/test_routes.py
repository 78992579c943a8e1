"""HTTP API tests against the aiohttp application."""
import asyncio
import shutil

import pytest

from claudito import __version__
from claudito.models import ReviewerDecision

from conftest import ScriptedReviewer, ScriptedWorker, wait_for


class TestHealthAndSettings:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")

        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "version": __version__}

    @pytest.mark.asyncio
    async def test_default_settings(self, client):
        data = await (await client.get("/api/settings")).json()

        assert data["maxConcurrentAgents"] == 3
        assert data["claudePermissions"]["defaultMode"] == "acceptEdits"

    @pytest.mark.asyncio
    async def test_update_applies_agent_limit(self, client, app_services):
        resp = await client.put("/api/settings", json={"maxConcurrentAgents": 4, "historyLimit": 10})

        assert resp.status == 200
        data = await resp.json()
        assert data["maxConcurrentAgents"] == 4
        assert data["historyLimit"] == 10
        assert app_services.agents.max_concurrent == 4

    @pytest.mark.asyncio
    async def test_partial_permissions_update(self, client):
        await client.put("/api/settings", json={"claudePermissions": {"allowRules": ["Read", "Bash(npm test)"]}})
        resp = await client.put("/api/settings", json={"claudePermissions": {"denyRules": ["WebFetch"]}})

        permissions = (await resp.json())["claudePermissions"]
        assert permissions["allowRules"] == ["Read", "Bash(npm test)"]
        assert permissions["denyRules"] == ["WebFetch"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body, message", [
        ({"maxConcurrentAgents": 0}, "maxConcurrentAgents must be a positive number"),
        ({"maxConcurrentAgents": "three"}, "maxConcurrentAgents must be a positive number"),
        ({"defaultModel": "gpt-4"}, "Invalid model: gpt-4"),
        ({"claudePermissions": {"allowRules": ["bad rule"]}}, 'Invalid permission rule in allowRules: "bad rule"'),
        ({"claudePermissions": {"denyRules": "Bash"}}, "denyRules must be an array"),
        ({"claudePermissions": {"askRules": [1]}}, "askRules must contain only strings"),
        ({"promptTemplates": [{"id": "a", "name": "A", "content": ""}, {"id": "a", "name": "B", "content": ""}]},
         "Duplicate template id: a"),
        ({"promptTemplates": [{"id": "a", "name": " ", "content": ""}]}, "Each template must have a non-empty name"),
    ])
    async def test_invalid_updates_are_rejected(self, client, body, message):
        resp = await client.put("/api/settings", json=body)

        assert resp.status == 400
        assert (await resp.json())["error"] == message

    @pytest.mark.asyncio
    async def test_models(self, client):
        data = await (await client.get("/api/settings/models")).json()

        assert "claude-sonnet-4-20250514" in [m["id"] for m in data["models"]]
        assert all("displayName" in m for m in data["models"])


class TestProjects:

    @pytest.mark.asyncio
    async def test_project_lifecycle(self, client, tmp_path):
        target = tmp_path / "new-project"

        resp = await client.post("/api/projects", json={"name": "New", "path": str(target), "create": True})
        assert resp.status == 201
        project = await resp.json()
        assert target.is_dir()
        assert project["agentStatus"] == "stopped"
        assert project["isQueued"] is False

        listed = await (await client.get("/api/projects")).json()
        assert [p["id"] for p in listed] == [project["id"]]

        resp = await client.put(f"/api/projects/{project['id']}", json={"name": "Renamed"})
        assert (await resp.json())["name"] == "Renamed"

        resp = await client.delete(f"/api/projects/{project['id']}")
        assert await resp.json() == {"success": True}

        resp = await client.get(f"/api/projects/{project['id']}")
        assert resp.status == 404
        assert await resp.json() == {"error": "Project not found"}

    @pytest.mark.asyncio
    async def test_missing_directory(self, client, tmp_path):
        resp = await client.post("/api/projects", json={"name": "x", "path": str(tmp_path / "nope")})

        assert resp.status == 404
        assert (await resp.json())["error"] == "Directory not found"

    @pytest.mark.asyncio
    async def test_duplicate_path_conflicts(self, client, project):
        resp = await client.post("/api/projects", json={"name": "again", "path": project.path})

        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_bad_bodies(self, client):
        resp = await client.post("/api/projects", data="{not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Request body must be valid JSON"

        resp = await client.post("/api/projects", json={"path": "/tmp"})
        assert resp.status == 400
        assert "name" in (await resp.json())["error"]


class TestAgentRoutes:

    @pytest.mark.asyncio
    async def test_start_and_status(self, client, app_services, project):
        resp = await client.post(f"/api/projects/{project.id}/agent/start", json={"message": "Fix the tests"})

        data = await resp.json()
        assert resp.status == 200
        assert data["success"] is True
        assert data["status"] == "running"

        await wait_for(lambda: app_services.agents.get_agent_status(project.id) == "stopped")
        status = await (await client.get(f"/api/projects/{project.id}/agent/status")).json()
        assert status["sessionId"] == "sess-1"
        assert status["lastCommand"].startswith("claude -p")
        assert status["contextUsage"]["usedTokens"] == 100

    @pytest.mark.asyncio
    async def test_invalid_permission_mode(self, client, project):
        resp = await client.post(f"/api/projects/{project.id}/agent/start",
                                 json={"message": "x", "permissionMode": "yolo"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_start_with_images(self, client, app_services, project, process_factory):
        images = [{"data": "base64data1", "mediaType": "image/png"}]
        resp = await client.post(f"/api/projects/{project.id}/agent/start",
                                 json={"message": "What is this?", "images": images})

        assert resp.status == 200
        args = process_factory.created[0].args
        assert '<image media_type="image/png">base64data1</image>' in args[args.index("-p") + 1]
        await wait_for(lambda: app_services.agents.get_agent_status(project.id) == "stopped")

    @pytest.mark.asyncio
    async def test_image_must_be_an_image_type(self, client, project):
        resp = await client.post(f"/api/projects/{project.id}/agent/start",
                                 json={"message": "x", "images": [{"data": "abc", "mediaType": "text/html"}]})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_queue_endpoints(self, client, project, process_factory):
        process_factory.hold = True
        await client.post(f"/api/projects/{project.id}/agent/start", json={"message": "first"})
        await client.post(f"/api/projects/{project.id}/agent/send", json={"message": "second"})

        queue = await (await client.get(f"/api/projects/{project.id}/agent/queue")).json()
        assert queue == {"messages": ["second"]}

        resp = await client.delete(f"/api/projects/{project.id}/agent/queue/3")
        assert resp.status == 404
        resp = await client.delete(f"/api/projects/{project.id}/agent/queue/0")
        assert resp.status == 200

        resp = await client.post(f"/api/projects/{project.id}/agent/stop")
        assert await resp.json() == {"success": True}

    @pytest.mark.asyncio
    async def test_resources(self, client):
        data = await (await client.get("/api/agents/resources")).json()

        assert data == {"runningCount": 0, "maxConcurrent": 2, "queuedCount": 0, "queuedProjects": []}

    @pytest.mark.asyncio
    async def test_stop_unknown_one_off(self, client):
        resp = await client.delete("/api/agents/one-off/oneoff-missing")

        assert resp.status == 404


class TestConversationRoutes:

    @pytest.mark.asyncio
    async def test_crud(self, client, project):
        base = f"/api/projects/{project.id}/conversations"

        resp = await client.post(base, json={"label": "Refactor"})
        assert resp.status == 201
        conversation = await resp.json()

        listed = await (await client.get(base)).json()
        assert [c["label"] for c in listed] == ["Refactor"]

        resp = await client.put(f"{base}/{conversation['id']}", json={"label": "Cleanup"})
        assert (await resp.json())["label"] == "Cleanup"

        assert (await client.delete(f"{base}/{conversation['id']}")).status == 200
        assert (await client.delete(f"{base}/{conversation['id']}")).status == 404


class TestRalphLoopRoutes:

    @pytest.mark.asyncio
    async def test_start_and_fetch(self, client, app_services, project):
        loops = app_services.ralph_loops
        loops.worker_factory = lambda path, model, ctx: ScriptedWorker(path, model, ctx)
        loops.reviewer_factory = lambda path, model, ctx: ScriptedReviewer([ReviewerDecision.APPROVE], path, model, ctx)
        base = f"/api/projects/{project.id}/ralph-loop"

        resp = await client.post(f"{base}/start", json={"taskDescription": "Add docs", "maxTurns": 2})
        assert resp.status == 201
        task_id = (await resp.json())["taskId"]

        await wait_for(lambda: not loops.is_active(project.id, task_id))
        state = await (await client.get(f"{base}/{task_id}")).json()
        assert state["status"] == "completed"
        assert state["finalStatus"] == "approved"
        assert len(await (await client.get(base)).json()) == 1

        resp = await client.post(f"{base}/{task_id}/resume")
        assert resp.status == 409
        assert (await resp.json())["error"] == "Cannot resume loop in status: completed"

    @pytest.mark.asyncio
    async def test_deleting_project_stops_its_loop(self, client, app_services, project):
        loops = app_services.ralph_loops
        hold = asyncio.Event()
        workers = []

        def worker_factory(path, model, ctx):
            workers.append(ScriptedWorker(path, model, ctx, hold=hold))
            return workers[-1]

        loops.worker_factory = worker_factory
        resp = await client.post(f"/api/projects/{project.id}/ralph-loop/start", json={"taskDescription": "x"})
        task_id = (await resp.json())["taskId"]
        await wait_for(lambda: workers)

        resp = await client.delete(f"/api/projects/{project.id}")

        assert resp.status == 200
        assert workers[0].stopped is True
        assert not loops.is_active(project.id, task_id)

    @pytest.mark.asyncio
    async def test_unknown_loop(self, client, project):
        resp = await client.get(f"/api/projects/{project.id}/ralph-loop/task-missing")

        assert resp.status == 404
        assert await resp.json() == {"error": "Ralph Loop not found"}

    @pytest.mark.asyncio
    async def test_invalid_config(self, client, project):
        resp = await client.post(f"/api/projects/{project.id}/ralph-loop/start",
                                 json={"taskDescription": "x", "maxTurns": 0})

        assert resp.status == 400


class TestGitValidation:

    @pytest.mark.asyncio
    async def test_empty_commit_message(self, client, project):
        resp = await client.post(f"/api/projects/{project.id}/git/commit", json={"message": "   "})

        assert resp.status == 400
        assert (await resp.json())["error"] == "Commit message is required"

    @pytest.mark.asyncio
    async def test_paths_must_stay_in_project(self, client, project):
        resp = await client.post(f"/api/projects/{project.id}/git/stage", json={"paths": ["../secret"]})

        assert resp.status == 400
        assert (await resp.json())["error"] == "Path must not leave the project: ../secret"

    @pytest.mark.asyncio
    async def test_invalid_branch_name(self, client, project):
        resp = await client.post(f"/api/projects/{project.id}/git/branch", json={"name": "bad..name"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid branch name: bad..name"

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
    async def test_status_outside_repository(self, client, project):
        resp = await client.get(f"/api/projects/{project.id}/git/status")

        assert resp.status == 200
        assert (await resp.json())["isRepo"] is False


class TestFilesystemAndDev:

    @pytest.mark.asyncio
    async def test_write_read_and_browse(self, client, tmp_path):
        target = tmp_path / "notes.txt"

        resp = await client.put("/api/fs/write", json={"path": str(target), "content": "hello"})
        assert resp.status == 200

        data = await (await client.get("/api/fs/read", params={"path": str(target)})).json()
        assert data["content"] == "hello"

        listing = await (await client.get("/api/fs/browse", params={"path": str(tmp_path)})).json()
        assert "notes.txt" in [f["name"] for f in listing["files"]]
        assert listing["parent"] == str(tmp_path.resolve().parent)

    @pytest.mark.asyncio
    async def test_read_missing_file(self, client, tmp_path):
        resp = await client.get("/api/fs/read", params={"path": str(tmp_path / "missing")})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_dev_shutdown_hidden_outside_dev_mode(self, client):
        resp = await client.post("/api/dev/shutdown")

        assert resp.status == 404
