"""Shared fixtures for claudito tests."""
import asyncio
import itertools
import json
from pathlib import Path
from typing import List, Optional

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from claudito.agents import AgentManager, ClaudeRunResult, StreamParser
from claudito.config import AppConfig
from claudito.models import ReviewerFeedback, WorkerSummary
from claudito.repositories import (
    ConversationRepository,
    ProjectRepository,
    RalphLoopRepository,
    SettingsRepository,
)
from claudito.server import SERVICES, build_services, create_app

_pids = itertools.count(40000)


def stream_lines(text: str = "done", session_id: str = "sess-1", files: Optional[List[str]] = None,
                 input_tokens: int = 100, output_tokens: int = 20) -> List[str]:
    """Build the stream-json lines of a successful CLI run."""
    content = [{"type": "text", "text": text}]
    for index, path in enumerate(files or []):
        content.append({"type": "tool_use", "id": f"tool-{index}", "name": "Edit",
                        "input": {"file_path": path, "old_string": "a", "new_string": "b"}})
    events = [
        {"type": "system", "subtype": "init", "session_id": session_id, "model": "claude-test"},
        {"type": "assistant", "session_id": session_id,
         "message": {"content": content, "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}}},
        {"type": "result", "subtype": "success", "session_id": session_id, "result": text,
         "num_turns": 1, "duration_ms": 1200, "total_cost_usd": 0.01,
         "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}},
    ]
    return [json.dumps(e) for e in events]


class FakeProcess:
    """Stands in for ClaudeProcess: replays scripted stream-json lines."""

    def __init__(self, args, cwd, lines=None, exit_code=0, stderr="", hold=False,
                 start_delay=0.0, start_error=None):
        self.args = args
        self.cwd = cwd
        self.parser = StreamParser()
        self.lines = list(lines or [])
        self.exit_code = exit_code
        self.stderr = stderr
        self.pid = next(_pids)
        self.started = False
        self.start_delay = start_delay
        self.start_error = start_error
        self.stopped = False
        self._release = asyncio.Event()
        if not hold:
            self._release.set()

    @property
    def session_id(self):
        return self.parser.session_id

    async def start(self):
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def run(self, on_message=None):
        if not self.started:
            await self.start()
        for line in self.lines:
            for message in self.parser.feed(line):
                if on_message is not None:
                    result = on_message(message)
                    if asyncio.iscoroutine(result):
                        await result
        await self._release.wait()
        return ClaudeRunResult(
            exit_code=-15 if self.stopped else self.exit_code,
            text=self.parser.text,
            session_id=self.parser.session_id,
            files_modified=list(self.parser.files_modified),
            usage=dict(self.parser.usage),
            total_tokens=self.parser.total_tokens,
            stderr=self.stderr,
            stopped=self.stopped,
        )

    async def stop(self, grace=0):
        self.stopped = True
        self._release.set()

    def release(self):
        self._release.set()


class FakeProcessFactory:
    """Process factory recording every process it hands out."""

    def __init__(self):
        self.created: List[FakeProcess] = []
        self.lines = stream_lines()
        self.exit_code = 0
        self.stderr = ""
        self.hold = False
        self.start_delay = 0.0
        self.start_error = None

    def __call__(self, args, cwd):
        process = FakeProcess(args, cwd, lines=self.lines, exit_code=self.exit_code,
                              stderr=self.stderr, hold=self.hold,
                              start_delay=self.start_delay, start_error=self.start_error)
        self.created.append(process)
        return process


class ScriptedWorker:
    """Worker double returning canned summaries."""

    def __init__(self, project_path, model, context_initializer, fail_with=None, hold=None):
        self.project_path = project_path
        self.model = model
        self.context_initializer = context_initializer
        self.fail_with = fail_with
        self.hold = hold
        self.listeners = []
        self.stopped = False

    def on(self, event, listener):
        self.listeners.append(listener)

    async def run(self, state):
        for listener in self.listeners:
            listener(f"working on iteration {state.current_iteration}")
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return WorkerSummary(
            iteration_number=state.current_iteration,
            worker_output=f"output {state.current_iteration}",
            files_modified=["app.py"],
            tokens_used=10,
        )

    async def stop(self):
        self.stopped = True
        if self.hold is not None:
            self.hold.set()


class ScriptedReviewer:
    """Reviewer double answering with a fixed list of decisions."""

    def __init__(self, decisions, project_path, model, context_initializer, hold=None):
        self.decisions = decisions
        self.hold = hold
        self.listeners = []

    def on(self, event, listener):
        self.listeners.append(listener)

    async def run(self, state, worker_output):
        if self.hold is not None:
            await self.hold.wait()
        index = min(state.current_iteration - 1, len(self.decisions) - 1)
        return ReviewerFeedback(
            iteration_number=state.current_iteration,
            decision=self.decisions[index],
            feedback=f"review of {worker_output}",
        )

    async def stop(self):
        pass


@pytest.fixture
def data_dir(tmp_path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def project_dir(tmp_path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def app_config(data_dir) -> AppConfig:
    return AppConfig(data_dir=data_dir, max_concurrent_agents=2)


@pytest.fixture
def projects(data_dir) -> ProjectRepository:
    return ProjectRepository(data_dir)


@pytest.fixture
def settings_repo(data_dir) -> SettingsRepository:
    return SettingsRepository(data_dir)


@pytest.fixture
def conversations(data_dir) -> ConversationRepository:
    return ConversationRepository(data_dir)


@pytest.fixture
def project(projects, project_dir):
    return projects.create("Demo", project_dir)


@pytest.fixture
def loop_repository(projects) -> RalphLoopRepository:
    return RalphLoopRepository(projects.get_project_path)


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def agent_manager(projects, settings_repo, conversations, data_dir, process_factory) -> AgentManager:
    return AgentManager(
        projects,
        settings_repo,
        conversations,
        pids_file=data_dir / "pids.json",
        max_concurrent=2,
        process_factory=process_factory,
    )


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def client(app_config, process_factory):
    """HTTP client for an app whose agents run scripted processes."""
    app = create_app(app_config, build_services(app_config, process_factory=process_factory))
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


@pytest.fixture
def app_services(client):
    return client.server.app[SERVICES]
