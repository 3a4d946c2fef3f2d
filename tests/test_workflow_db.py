from datetime import datetime

import pytest

from stepflow.clock import FrozenClock
from stepflow.db import WorkflowDB
from stepflow.db.models import StepRow
from stepflow.engine import StepEngine
from stepflow.states import RunStatus, StepStatus, StoryStatus

from helpers import stories_output


@pytest.mark.asyncio
async def test_verified_loop_on_sqlite(tmp_path, templates, config, clock):
    db = WorkflowDB(f"sqlite+aiosqlite:///{tmp_path / 'flow.db'}")
    await db.init_db()
    engine = StepEngine(db, templates, config, clock)

    run = await engine.runs.create_run("verified", "dark mode", {"repo": "web"})
    claim = await engine.claim("planner")
    assert claim.resolved_input == "Plan dark mode"
    await engine.complete(claim.step_id, stories_output("S-1", "S-2"))

    for story_id in ("S-1", "S-2"):
        claim = await engine.claim("developer")
        assert f"Story {story_id}" in claim.resolved_input
        await engine.complete(claim.step_id, f"STATUS: done\nbuilt {story_id}")

        claim = await engine.claim("verifier")
        assert claim.resolved_input.startswith(f"Verify {story_id}: STATUS: done")
        result = await engine.complete(claim.step_id, "STATUS: done")

    assert result.run_completed
    run = await engine.runs.get_run(run.id)
    assert run.status == RunStatus.COMPLETED
    assert run.context["repo"] == "web"

    stories = await engine.stories.list_stories(run.id)
    assert [s.status for s in stories] == [StoryStatus.COMPLETED] * 2
    assert stories[0].acceptance_criteria == ["works"]
    steps = await engine.runs.list_steps(run.id)
    assert steps[1].loop_config.verify_step == "verify"
    assert {s.status for s in steps} == {StepStatus.COMPLETED}

    async with db.session() as session:
        row = await session.get(StepRow, steps[0].id)
        assert row.status == "completed"
        assert row.output.startswith("STATUS: done")
    await db.close()


@pytest.mark.asyncio
async def test_sqlite_reaper_and_retry(tmp_path, templates, config, clock):
    db = WorkflowDB(f"sqlite:///{tmp_path / 'reap.db'}")
    engine = StepEngine(db, templates, config, clock)

    run = await engine.runs.create_run("two-step", "login")
    first = await engine.claim("planner")
    clock.advance(minutes=16)

    assert await engine.reap_abandoned() == 1
    step = (await engine.runs.list_steps(run.id))[0]
    assert step.status == StepStatus.PENDING
    assert step.retry_count == 1

    second = await engine.claim("planner")
    assert second.step_id == first.step_id
    result = await engine.fail(second.step_id, "boom")
    assert result.retrying
    await db.close()


@pytest.mark.asyncio
async def test_sqlite_keeps_naive_timestamps_exact(tmp_path, templates, config):
    clock = FrozenClock(datetime(2024, 3, 1, 9, 30, 15, 123456))
    db = WorkflowDB(f"sqlite:///{tmp_path / 'stamps.db'}")
    engine = StepEngine(db, templates, config, clock)

    run = await engine.runs.create_run("two-step", "login")
    stored = await engine.runs.get_run(run.id)
    assert stored.created_at == clock.now()
    assert stored.created_at.tzinfo is None

    claim = await engine.claim("planner")
    running = (await engine.runs.list_steps(run.id))[0]
    assert running.updated_at == clock.now()

    clock.advance(minutes=20, microseconds=7)
    assert await engine.reap_abandoned() == 1
    step = (await engine.runs.list_steps(run.id))[0]
    assert step.id == claim.step_id
    assert step.status == StepStatus.PENDING
    assert step.updated_at == clock.now()
    await db.close()
