"""Concurrent claims must never hand the same step or story out twice."""

import asyncio

import pytest
import pytest_asyncio

from stepflow.db import WorkflowDB
from stepflow.engine import StepEngine
from stepflow.states import StepStatus

from helpers import stories_output


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path, templates, config, clock):
    db = WorkflowDB(f"sqlite:///{tmp_path / 'wf.db'}")
    await db.init_db()
    yield StepEngine(db, templates, config, clock)
    await db.close()


async def _assert_single_handout(engine):
    runs = [await engine.runs.create_run("two-step", f"task {i}") for i in range(5)]

    claims = await asyncio.gather(*(engine.claim("planner") for _ in range(10)))
    found = [c for c in claims if c.found]

    assert len(found) == len(runs)
    assert len({c.step_id for c in found}) == len(runs)
    assert {c.run_id for c in found} == {r.id for r in runs}


async def _assert_single_story(engine):
    run = await engine.runs.create_run("stories", "dark mode")
    claim = await engine.claim("planner")
    await engine.complete(claim.step_id, stories_output("S-1", "S-2", "S-3"))

    claims = await asyncio.gather(*(engine.claim("developer") for _ in range(5)))
    found = [c for c in claims if c.found]
    assert len(found) == 1

    stories = await engine.stories.list_stories(run.id)
    assert [s.status.value for s in stories] == ["running", "pending", "pending"]


async def _assert_one_completion_wins(engine):
    await engine.runs.create_run("two-step", "login")
    claim = await engine.claim("planner")

    results = await asyncio.gather(
        engine.complete(claim.step_id, "STATUS: done"),
        engine.complete(claim.step_id, "STATUS: done"),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    steps = await engine.runs.list_steps(claim.run_id)
    assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.PENDING]


@pytest.mark.asyncio
async def test_in_memory_claims_are_exclusive(engine):
    await _assert_single_handout(engine)


@pytest.mark.asyncio
async def test_in_memory_story_claims_are_exclusive(engine):
    await _assert_single_story(engine)


@pytest.mark.asyncio
async def test_in_memory_double_complete(engine):
    await _assert_one_completion_wins(engine)


@pytest.mark.asyncio
async def test_sqlite_claims_are_exclusive(sqlite_engine):
    await _assert_single_handout(sqlite_engine)


@pytest.mark.asyncio
async def test_sqlite_story_claims_are_exclusive(sqlite_engine):
    await _assert_single_story(sqlite_engine)


@pytest.mark.asyncio
async def test_sqlite_double_complete(sqlite_engine):
    await _assert_one_completion_wins(sqlite_engine)
