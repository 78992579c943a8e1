"""Tests for the Ralph Loop service using scripted agents."""
import asyncio

import pytest

from claudito.errors import ConflictError, NotFoundError
from claudito.models import (
    RalphLoopConfig,
    RalphLoopFinalStatus,
    RalphLoopStatus,
    ReviewerDecision,
)
from claudito.ralph_loop import RalphLoopService

from conftest import ScriptedReviewer, ScriptedWorker, wait_for

APPROVE = ReviewerDecision.APPROVE
REJECT = ReviewerDecision.REJECT
NEEDS_CHANGES = ReviewerDecision.NEEDS_CHANGES


def make_service(loop_repository, projects, decisions, **worker_kwargs):
    return RalphLoopService(
        loop_repository,
        projects.get_project_path,
        worker_factory=lambda path, model, ctx: ScriptedWorker(path, model, ctx, **worker_kwargs),
        reviewer_factory=lambda path, model, ctx: ScriptedReviewer(decisions, path, model, ctx),
    )


def record(service, *events):
    seen = []
    for name in events:
        service.on(name, lambda *args, _name=name: seen.append((_name,) + args[2:]))
    return seen


async def run_to_end(service, project_id, config):
    state = await service.start(project_id, config)
    await wait_for(lambda: not service.is_active(project_id, state.task_id))
    return await service.get_state(project_id, state.task_id)


class TestLoopOutcomes:

    @pytest.mark.asyncio
    async def test_approval_on_first_iteration(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [APPROVE])
        seen = record(service, "iteration_start", "loop_complete")

        state = await run_to_end(service, project.id, RalphLoopConfig(task_description="Add a README"))

        assert state.status == RalphLoopStatus.COMPLETED
        assert state.final_status == RalphLoopFinalStatus.APPROVED
        assert state.current_iteration == 1
        assert len(state.summaries) == 1
        assert state.feedback[0].decision == APPROVE
        assert seen == [("iteration_start", 1), ("loop_complete", RalphLoopFinalStatus.APPROVED)]

    @pytest.mark.asyncio
    async def test_rejection_is_critical_failure(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [NEEDS_CHANGES, REJECT])

        state = await run_to_end(service, project.id, RalphLoopConfig(task_description="x", max_turns=5))

        assert state.final_status == RalphLoopFinalStatus.CRITICAL_FAILURE
        assert state.current_iteration == 2
        assert [f.decision for f in state.feedback] == [NEEDS_CHANGES, REJECT]

    @pytest.mark.asyncio
    async def test_max_turns_reached(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [NEEDS_CHANGES])

        state = await run_to_end(service, project.id, RalphLoopConfig(task_description="x", max_turns=3))

        assert state.status == RalphLoopStatus.COMPLETED
        assert state.final_status == RalphLoopFinalStatus.MAX_TURNS_REACHED
        assert state.current_iteration == 3
        assert len(state.summaries) == 3
        assert len(state.feedback) == 3

    @pytest.mark.asyncio
    async def test_worker_failure_marks_loop_failed(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [APPROVE], fail_with=RuntimeError("boom"))
        seen = record(service, "loop_error")

        state = await run_to_end(service, project.id, RalphLoopConfig(task_description="x"))

        assert state.status == RalphLoopStatus.FAILED
        assert state.final_status == RalphLoopFinalStatus.CRITICAL_FAILURE
        assert state.error == "boom"
        assert seen == [("loop_error", "boom")]

    @pytest.mark.asyncio
    async def test_output_is_tagged_with_source(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [APPROVE])
        outputs = []
        service.on("output", lambda p, t, source, content: outputs.append((source, content)))

        await run_to_end(service, project.id, RalphLoopConfig(task_description="x"))

        assert ("worker", "working on iteration 1") in outputs

    @pytest.mark.asyncio
    async def test_unknown_project(self, loop_repository, projects):
        service = make_service(loop_repository, projects, [APPROVE])

        with pytest.raises(NotFoundError):
            await service.start("missing", RalphLoopConfig(task_description="x"))


class TestLoopControl:

    @pytest.mark.asyncio
    async def test_stop_running_loop(self, loop_repository, projects, project):
        hold = asyncio.Event()
        service = make_service(loop_repository, projects, [APPROVE], hold=hold)
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: loop_repository.find_by_id(project.id, state.task_id).status
                       == RalphLoopStatus.WORKER_RUNNING)

        await service.stop(project.id, state.task_id)

        stored = await service.get_state(project.id, state.task_id)
        assert stored.status == RalphLoopStatus.COMPLETED
        assert stored.final_status == RalphLoopFinalStatus.CRITICAL_FAILURE
        assert stored.error == "Loop stopped by user"
        assert not service.is_active(project.id, state.task_id)
        assert stored.feedback == []

    @pytest.mark.asyncio
    async def test_pause_then_resume(self, loop_repository, projects, project):
        hold = asyncio.Event()
        service = make_service(loop_repository, projects, [NEEDS_CHANGES, APPROVE], hold=hold)
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: loop_repository.find_by_id(project.id, state.task_id).status
                       == RalphLoopStatus.WORKER_RUNNING)

        await service.pause(project.id, state.task_id)
        hold.set()
        await wait_for(lambda: not service.is_active(project.id, state.task_id))

        paused = await service.get_state(project.id, state.task_id)
        assert paused.status == RalphLoopStatus.PAUSED
        assert paused.current_iteration == 1
        assert paused.feedback == []

        await service.resume(project.id, state.task_id)
        await wait_for(lambda: not service.is_active(project.id, state.task_id))

        finished = await service.get_state(project.id, state.task_id)
        assert finished.final_status == RalphLoopFinalStatus.APPROVED
        assert finished.current_iteration == 2

    @pytest.mark.asyncio
    async def test_resume_requires_paused_loop(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [APPROVE])
        state = await run_to_end(service, project.id, RalphLoopConfig(task_description="x"))

        with pytest.raises(ConflictError, match="Cannot resume loop in status: completed"):
            await service.resume(project.id, state.task_id)
        with pytest.raises(ConflictError):
            await service.pause(project.id, state.task_id)

    @pytest.mark.asyncio
    async def test_missing_loop(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [APPROVE])

        for operation in (service.stop, service.pause, service.resume, service.delete):
            with pytest.raises(NotFoundError):
                await operation(project.id, "task-missing")

    @pytest.mark.asyncio
    async def test_list_and_delete(self, loop_repository, projects, project):
        service = make_service(loop_repository, projects, [APPROVE])
        state = await run_to_end(service, project.id, RalphLoopConfig(task_description="x"))

        assert [s.task_id for s in await service.list_by_project(project.id)] == [state.task_id]

        await service.delete(project.id, state.task_id)

        assert await service.list_by_project(project.id) == []

    @pytest.mark.asyncio
    async def test_shutdown_fails_active_loops(self, loop_repository, projects, project):
        hold = asyncio.Event()
        service = make_service(loop_repository, projects, [APPROVE], hold=hold)
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: service.active_loops() and service.active_loops()[0]["phase"] == "worker")

        await service.shutdown()

        stored = await service.get_state(project.id, state.task_id)
        assert stored.status == RalphLoopStatus.FAILED
        assert service.active_loops() == []


class TestPauseResumeOrdering:

    @pytest.mark.asyncio
    async def test_resume_waits_for_the_paused_worker(self, loop_repository, projects, project):
        hold = asyncio.Event()
        counts = {"running": 0, "peak": 0}

        class CountingWorker(ScriptedWorker):
            async def run(self, state):
                counts["running"] += 1
                counts["peak"] = max(counts["peak"], counts["running"])
                try:
                    return await super().run(state)
                finally:
                    counts["running"] -= 1

        service = RalphLoopService(
            loop_repository,
            projects.get_project_path,
            worker_factory=lambda path, model, ctx: CountingWorker(path, model, ctx, hold=hold),
            reviewer_factory=lambda path, model, ctx: ScriptedReviewer([NEEDS_CHANGES, APPROVE], path, model, ctx),
        )
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: counts["running"] == 1)

        await service.pause(project.id, state.task_id)
        await service.resume(project.id, state.task_id)
        await asyncio.sleep(0.05)
        assert counts["running"] == 1

        hold.set()
        await wait_for(lambda: not service.is_active(project.id, state.task_id))

        finished = await service.get_state(project.id, state.task_id)
        assert counts["peak"] == 1
        assert finished.final_status == RalphLoopFinalStatus.APPROVED
        assert [f.iteration_number for f in finished.feedback] == [1, 2]
        assert [s.iteration_number for s in finished.summaries] == [1, 2]

    @pytest.mark.asyncio
    async def test_review_finishing_during_pause_is_applied(self, loop_repository, projects, project):
        hold = asyncio.Event()
        service = RalphLoopService(
            loop_repository,
            projects.get_project_path,
            worker_factory=lambda path, model, ctx: ScriptedWorker(path, model, ctx),
            reviewer_factory=lambda path, model, ctx: ScriptedReviewer([APPROVE], path, model, ctx, hold=hold),
        )
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: loop_repository.find_by_id(project.id, state.task_id).status
                       == RalphLoopStatus.REVIEWER_RUNNING)

        await service.pause(project.id, state.task_id)
        hold.set()
        await wait_for(lambda: not service.is_active(project.id, state.task_id))

        stored = await service.get_state(project.id, state.task_id)
        assert stored.status == RalphLoopStatus.COMPLETED
        assert stored.final_status == RalphLoopFinalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_stop_after_resume_halts_the_paused_worker(self, loop_repository, projects, project):
        hold = asyncio.Event()
        workers = []

        def factory(path, model, ctx):
            workers.append(ScriptedWorker(path, model, ctx, hold=hold))
            return workers[-1]

        service = RalphLoopService(
            loop_repository,
            projects.get_project_path,
            worker_factory=factory,
            reviewer_factory=lambda path, model, ctx: ScriptedReviewer([APPROVE], path, model, ctx),
        )
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: workers)
        await service.pause(project.id, state.task_id)
        await service.resume(project.id, state.task_id)

        await service.stop(project.id, state.task_id)

        stored = await service.get_state(project.id, state.task_id)
        assert workers[0].stopped is True
        assert len(workers) == 1
        assert stored.error == "Loop stopped by user"
        assert stored.feedback == []


class TestProjectRemoval:

    @pytest.mark.asyncio
    async def test_stop_project_halts_its_loops(self, loop_repository, projects, project):
        hold = asyncio.Event()
        service = make_service(loop_repository, projects, [APPROVE], hold=hold)
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: service.active_loops() and service.active_loops()[0]["phase"] == "worker")

        assert await service.stop_project(project.id) == 1

        stored = await service.get_state(project.id, state.task_id)
        assert stored.error == "Loop stopped by user"
        assert service.active_loops() == []
        assert await service.stop_project(project.id) == 0

    @pytest.mark.asyncio
    async def test_project_removed_under_a_running_loop(self, loop_repository, projects, project):
        hold = asyncio.Event()
        service = make_service(loop_repository, projects, [APPROVE], hold=hold)
        seen = record(service, "loop_error")
        state = await service.start(project.id, RalphLoopConfig(task_description="x"))
        await wait_for(lambda: service.active_loops() and service.active_loops()[0]["phase"] == "worker")

        projects.delete(project.id)
        hold.set()
        await wait_for(lambda: not service.is_active(project.id, state.task_id))

        assert seen == [("loop_error", "Project not found")]
